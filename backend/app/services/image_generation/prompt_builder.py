"""
Deterministic image prompt assembly for illustrated scenes.

The prompt is built from the scene text, the visual descriptions of the
characters in it and the story's style preferences. No LLM call is involved,
so the same inputs always give the same prompt.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)

STYLE_MODIFIERS = {
    "cinematic": "cinematic lighting, film grain, depth of field, dramatic composition",
    "illustration": "digital illustration, detailed artwork, vibrant colors",
    "realistic": "photorealistic, high detail, natural lighting, 8k resolution",
    "fantasy": "fantasy art, magical atmosphere, ethereal lighting, enchanted",
    "anime": "anime style, cel shaded, Japanese animation, expressive",
    "watercolor": "watercolor painting, soft edges, flowing colors, artistic",
    "oil-painting": "oil painting, brushstrokes, classical art, textured",
    "sketch": "pencil sketch, line art, black and white, hand drawn",
}

DEFAULT_STYLE = "cinematic"

DEFAULT_NEGATIVE_PROMPT = (
    "text, watermark, signature, logo, copyright, low quality, blurry, distorted, "
    "disfigured, bad anatomy, bad proportions, extra limbs, cloned face, ugly, "
    "poorly drawn, mutation, duplicate"
)

QUALITY_SUFFIX = "High quality, detailed illustration, professional composition"


@dataclass
class StylePreferences:
    art_style: Optional[str] = None
    mood: Optional[str] = None
    color_palette: Optional[str] = None
    style: str = DEFAULT_STYLE  # Key into STYLE_MODIFIERS

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], default_style: str = DEFAULT_STYLE) -> "StylePreferences":
        data = data or {}
        return cls(
            art_style=data.get("art_style"),
            mood=data.get("mood"),
            color_palette=data.get("color_palette"),
            style=data.get("style") or default_style,
        )


@dataclass
class CharacterDescription:
    name: str
    description: str = ""


@dataclass
class BuiltPrompt:
    prompt: str
    negative_prompt: str
    style: str
    characters: List[str] = field(default_factory=list)


def get_style_modifier(style: Optional[str]) -> str:
    """Modifier for a style key, falling back to the default style"""
    if style and style in STYLE_MODIFIERS:
        return STYLE_MODIFIERS[style]
    if style:
        logger.debug(f"[IMAGE_GEN] Unknown style '{style}', using {DEFAULT_STYLE}")
    return STYLE_MODIFIERS[DEFAULT_STYLE]


def _describe(characters: List[CharacterDescription]) -> str:
    parts = []
    for c in characters:
        if c.description:
            parts.append(f"{c.name}: {c.description}")
        else:
            parts.append(c.name)
    return "; ".join(parts)


def build_scene_prompt(
    scene_text: str,
    known_characters: Optional[List[CharacterDescription]] = None,
    new_characters: Optional[List[CharacterDescription]] = None,
    preferences: Optional[StylePreferences] = None,
    negative_prompt: Optional[str] = None,
) -> BuiltPrompt:
    """
    Assemble the image prompt for one scene.

    Sections are separated by blank lines: scene text, known character
    descriptions, newly introduced characters, the style line and the
    quality suffix.
    """
    preferences = preferences or StylePreferences()
    known_characters = known_characters or []
    new_characters = new_characters or []

    sections = [scene_text.strip()]

    if known_characters:
        sections.append(
            "Maintain visual consistency for these characters: " + _describe(known_characters)
        )
    if new_characters:
        sections.append("New characters appearing in this scene: " + _describe(new_characters))

    style_bits = []
    if preferences.art_style:
        style_bits.append(f"{preferences.art_style} art style")
    if preferences.mood:
        style_bits.append(f"{preferences.mood} mood")
    if preferences.color_palette:
        style_bits.append(f"{preferences.color_palette} color palette")
    if style_bits:
        sections.append("Style: " + ", ".join(style_bits))

    sections.append(get_style_modifier(preferences.style))
    sections.append(QUALITY_SUFFIX)

    style = preferences.style if preferences.style in STYLE_MODIFIERS else DEFAULT_STYLE
    return BuiltPrompt(
        prompt="\n\n".join(s for s in sections if s),
        negative_prompt=negative_prompt or DEFAULT_NEGATIVE_PROMPT,
        style=style,
        characters=[c.name for c in known_characters + new_characters],
    )
