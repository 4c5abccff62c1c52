"""
LLM Service Package

LiteLLM-backed text generation and YAML prompt templates for the
extraction steps of the enhancement pipeline.
"""

from .extraction_service import ExtractionLLMService, extract_json_robust
from .prompts import PromptManager, prompt_manager

__all__ = ['ExtractionLLMService', 'extract_json_robust', 'PromptManager', 'prompt_manager']
