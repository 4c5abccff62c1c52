"""
Extraction LLM Service

Provider-agnostic text generation for the structured extraction calls of the
enhancement pipeline (scene selection, character identification). Talks to
OpenAI-compatible local servers or cloud providers through LiteLLM.
"""

import litellm
from typing import Dict, Any, List, Optional, Union
import logging
import json
import os
import re

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?")
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)


def _strip_code_fences(text: str) -> str:
    """Drop a leading ```json fence and everything from the closing fence on"""
    text = text.strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text, count=1)
    end_marker = text.find("```")
    if end_marker != -1:
        text = text[:end_marker]
    return text.strip()


def _find_balanced(text: str) -> Optional[str]:
    """First complete {...} or [...] in text, honouring string literals"""
    start_idx = -1
    for i, char in enumerate(text):
        if char in "{[":
            start_idx = i
            break
    if start_idx == -1:
        return None

    opener = text[start_idx]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for i in range(start_idx, len(text)):
        char = text[i]
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif not in_string:
            if char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return text[start_idx:i + 1]
    return None


def extract_json_robust(text: str) -> Union[Dict, List]:
    """
    Extract JSON from an LLM response.

    Accepts markdown code fences, leading chatter and trailing content after
    the JSON value.

    Raises:
        json.JSONDecodeError if no valid JSON is found
    """
    if not text or not text.strip():
        raise json.JSONDecodeError("Empty response", text or "", 0)

    cleaned = _strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    candidate = _find_balanced(cleaned) or _find_balanced(text)
    if candidate is None:
        raise json.JSONDecodeError("No complete JSON object or array found", text, 0)

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.warning(f"[JSON_EXTRACT] Bracket-matched JSON failed to parse: {e}")
        raise json.JSONDecodeError(f"Extracted JSON invalid: {e.msg}", text, e.pos)


class ExtractionLLMService:
    """Text generation for extraction prompts via LiteLLM"""

    # Cloud providers that LiteLLM routes natively (no api_base needed)
    CLOUD_PROVIDERS = {
        'openai', 'anthropic', 'groq', 'mistral', 'deepseek', 'together_ai',
        'fireworks_ai', 'openrouter', 'gemini', 'cohere', 'xai',
    }

    def __init__(self, url: str = "", model: str = "", api_key: str = "",
                 temperature: float = 0.3, max_tokens: Optional[int] = None,
                 timeout_total: float = 240,
                 api_type: str = "openai-compatible"):
        """
        Args:
            url: API endpoint URL (required for local providers, optional for cloud)
            model: Model name to use
            api_key: API key if required (empty string for local servers)
            temperature: Low by default so extraction stays deterministic
            max_tokens: Maximum tokens for response (None = let server decide)
            timeout_total: Total timeout in seconds for a request
            api_type: "openai-compatible" or a LiteLLM cloud provider name
        """
        self.api_type = api_type
        self.is_cloud = api_type in self.CLOUD_PROVIDERS

        self.url = url.rstrip('/') if url else ""
        # OpenAI-compatible local servers expose the API under /v1
        if not self.is_cloud and self.url and not self.url.endswith('/v1'):
            self.url = f"{self.url}/v1"

        self.model = model
        self.api_key = api_key or "not-needed"
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_total = timeout_total

        self._configure_litellm()

    @classmethod
    def from_settings(cls) -> Optional['ExtractionLLMService']:
        """Build the service from app settings, or None when text generation is disabled"""
        from ...config import settings as app_settings

        if not app_settings.llm_enabled:
            return None
        is_cloud = app_settings.llm_api_type in cls.CLOUD_PROVIDERS
        if not app_settings.llm_model or (not app_settings.llm_base_url and not is_cloud):
            logger.warning("[EXTRACTION] Text generation enabled but model/url not configured")
            return None

        return cls(
            url=app_settings.llm_base_url,
            model=app_settings.llm_model,
            api_key=app_settings.llm_api_key,
            temperature=app_settings.llm_temperature,
            max_tokens=app_settings.llm_max_tokens,
            timeout_total=app_settings.llm_timeout_total,
            api_type=app_settings.llm_api_type,
        )

    def _configure_litellm(self):
        litellm.suppress_debug_info = True
        litellm.drop_params = True
        os.environ.setdefault("LITELLM_LOG", "ERROR")
        logger.info(f"ExtractionLLMService configured: url={self.url}, model={self.model}")

    def _build_model_string(self) -> str:
        """LiteLLM model string for the configured provider"""
        if self.is_cloud:
            if self.api_type == "openai":
                return self.model
            return f"{self.api_type}/{self.model}"
        return f"openai/{self.model}"

    def _get_generation_params(self, max_tokens: Optional[int] = None) -> Dict[str, Any]:
        resolved_max_tokens = max_tokens if max_tokens is not None else self.max_tokens
        params: Dict[str, Any] = {
            "model": self._build_model_string(),
            "api_key": self.api_key,
            "temperature": self.temperature,
        }
        if not self.is_cloud and self.url:
            params["api_base"] = self.url
        if resolved_max_tokens is not None:
            params["max_tokens"] = resolved_max_tokens
        return params

    async def generate_text(
        self,
        prompt: str,
        system_prompt: str = "",
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Single-turn completion.

        Returns the response text with any <think> block removed. Provider
        errors propagate to the caller.
        """
        params = self._get_generation_params(max_tokens=max_tokens)

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await litellm.acompletion(
                **params,
                messages=messages,
                timeout=self.timeout_total
            )
        except Exception as e:
            logger.error(f"[EXTRACTION] Text generation failed: {e}")
            raise

        content = response.choices[0].message.content
        content = content.strip() if content else ""
        return _THINK_BLOCK.sub("", content).strip()
