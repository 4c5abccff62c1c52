"""
Image Generation Service Package

Providers for scene illustration and the prompt builder that feeds them.
"""

from typing import Optional

from .base import ImageGenerationProvider, GenerationResult, GenerationStatus, GenerationRequest
from .runpod import RunPodProvider
from .stub import StubProvider
from .prompt_builder import (
    build_scene_prompt,
    BuiltPrompt,
    CharacterDescription,
    StylePreferences,
    STYLE_MODIFIERS,
    DEFAULT_NEGATIVE_PROMPT,
)


def create_provider(name: Optional[str] = None) -> ImageGenerationProvider:
    """Build the provider named in settings (or ``name``)"""
    from ...config import settings

    name = (name or settings.image_provider or "stub").lower()
    if name == "runpod":
        return RunPodProvider(
            server_url=settings.image_server_url,
            api_key=settings.image_api_key,
            timeout=settings.image_timeout,
        )
    if name == "stub":
        return StubProvider()
    raise ValueError(f"Unknown image provider: {name}")


__all__ = [
    "ImageGenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "GenerationStatus",
    "RunPodProvider",
    "StubProvider",
    "create_provider",
    "build_scene_prompt",
    "BuiltPrompt",
    "CharacterDescription",
    "StylePreferences",
    "STYLE_MODIFIERS",
    "DEFAULT_NEGATIVE_PROMPT",
]
