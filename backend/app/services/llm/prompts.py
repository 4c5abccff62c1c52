"""
Prompt Management

Loads the prompt templates used by the enhancement pipeline from
``backend/prompts.yml`` and fills in template variables. Templates that are
missing from the file fall back to built-in copies so that a broken or
absent YAML file never stops scene extraction.
"""

import yaml
import os
from typing import Dict, Any, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

FALLBACK_PROMPTS: Dict[str, Dict[str, str]] = {
    "scene_extraction": {
        "system": "You select passages from novels for illustration. You answer with JSON only.",
        "user": (
            "The chapter below is about {word_count} words long. Extract {target_scenes} scenes "
            "(never fewer than {min_scenes} or more than {max_scenes}) that would make compelling images.\n\n"
            "Copy each scene's text exactly as it appears in the chapter, without summarising.\n\n"
            "Respond as JSON:\n"
            "{{\"scenes\": [{{\"text\": \"exact text from chapter\", \"reason\": \"why this is visually compelling\"}}]}}\n\n"
            "Chapter text:\n{chapter_text}"
        ),
    },
    "character_identification": {
        "system": "You identify characters in scenes from novels. You answer with JSON only.",
        "user": (
            "Known characters in this story:\n{known_characters}\n\n"
            "Scene text:\n{scene_text}\n\n"
            "List the known characters that appear in the scene and any new characters, "
            "with a brief visual description of each new one.\n\n"
            "Respond as JSON:\n"
            "{{\"knownCharacters\": [\"name\"], \"newCharacters\": [{{\"name\": \"name\", "
            "\"visualDescription\": \"description\", \"confidence\": 0.8}}]}}"
        ),
    },
}


class PromptManager:
    """YAML-backed prompt templates for extraction calls"""

    def __init__(self, prompts_file_path: Optional[str] = None):
        if prompts_file_path is None:
            # Default to prompts.yml in the backend directory
            backend_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(__file__))))
            prompts_file_path = os.path.join(backend_dir, "prompts.yml")

        self.prompts_file_path = prompts_file_path
        self._prompts_cache: Dict[str, Any] = {}
        self._load_prompts()

    def _load_prompts(self):
        try:
            with open(self.prompts_file_path, 'r', encoding='utf-8') as file:
                self._prompts_cache = yaml.safe_load(file) or {}
            logger.info(f"Loaded prompts from {self.prompts_file_path}")
        except FileNotFoundError:
            logger.error(f"Prompts file not found: {self.prompts_file_path}")
            self._prompts_cache = {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing prompts YAML: {e}")
            self._prompts_cache = {}

    def reload_prompts(self):
        """Reload prompts from file (useful for development)"""
        self._load_prompts()

    def _get_template(self, template_key: str, prompt_type: str) -> str:
        section = self._prompts_cache.get(template_key)
        if isinstance(section, dict):
            text = section.get(prompt_type)
            if isinstance(text, str) and text.strip():
                return text.strip()
        return FALLBACK_PROMPTS.get(template_key, {}).get(prompt_type, "")

    def get_prompt(self, template_key: str, prompt_type: str = "user", **template_vars) -> str:
        """
        Get a prompt with variables substituted.

        Raises KeyError when the template references a variable that was not
        supplied, since a half-filled extraction prompt produces garbage.
        """
        prompt_text = self._get_template(template_key, prompt_type)
        if not prompt_text:
            raise KeyError(f"Unknown prompt template: {template_key}.{prompt_type}")
        if not template_vars:
            return prompt_text
        return prompt_text.format(**template_vars)

    def get_prompt_pair(self, template_key: str, **template_vars) -> Tuple[str, str]:
        """(system_prompt, user_prompt) for a template"""
        return (
            self.get_prompt(template_key, "system", **template_vars),
            self.get_prompt(template_key, "user", **template_vars),
        )

    def get_max_tokens(self, template_key: str, default: int = 2048) -> int:
        try:
            return int(self._prompts_cache.get("settings", {}).get("max_tokens", {}).get(template_key, default))
        except (AttributeError, TypeError, ValueError):
            return default


# Global prompt manager instance
prompt_manager = PromptManager()
