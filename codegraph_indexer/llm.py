"""Description providers: thin HTTP clients for hosted and local LLMs.

Every provider exposes ``async generate(prompt, max_tokens)``. Failures are
raised as :class:`~codegraph_indexer.errors.ProviderError`; rate limits,
server errors and connection problems as the retryable subclass so the
scheduler can back off and try again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from .config import ProviderConfig
from .errors import ProviderError, RetryableProviderError, classify_status

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
REQUEST_TIMEOUT = 60


class LLMProvider:
    """Base class for description providers."""

    name = "provider"

    def __init__(self, model: str, endpoint: str, api_key: str = "", timeout: float = REQUEST_TIMEOUT) -> None:
        self.model = model
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout

    async def generate(self, prompt: str, max_tokens: int = 150) -> Optional[str]:
        return await asyncio.to_thread(self._generate_sync, prompt, max_tokens)

    def _generate_sync(self, prompt: str, max_tokens: int) -> Optional[str]:
        payload, headers = self._request(prompt, max_tokens)
        try:
            response = requests.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RetryableProviderError(f"{self.model}: {exc}") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"{self.model}: {exc}") from exc
        if not response.ok:
            raise classify_status(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.model}: response is not JSON") from exc
        text = self._extract(data)
        return text.strip() if text else None

    def _request(self, prompt: str, max_tokens: int) -> Tuple[Dict[str, Any], Dict[str, str]]:
        raise NotImplementedError

    def _extract(self, data: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API (and compatible gateways)."""

    name = "anthropic"

    def _request(self, prompt: str, max_tokens: int):
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        return payload, headers

    def _extract(self, data: Dict[str, Any]) -> Optional[str]:
        blocks: List[Dict[str, Any]] = data.get("content") or []
        parts = [b.get("text", "") for b in blocks if b.get("type") == "text"]
        return "".join(parts) or None


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions (OpenAI, Groq, OpenRouter, vLLM...)."""

    name = "openai"

    def _request(self, prompt: str, max_tokens: int):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        return payload, headers

    def _extract(self, data: Dict[str, Any]) -> Optional[str]:
        choices = data.get("choices") or []
        if not choices:
            return None
        return (choices[0].get("message") or {}).get("content")


class OllamaProvider(LLMProvider):
    """Local Ollama server (``/api/generate``)."""

    name = "ollama"

    def _request(self, prompt: str, max_tokens: int):
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"num_predict": max_tokens},
        }
        return payload, {"Content-Type": "application/json"}

    def _extract(self, data: Dict[str, Any]) -> Optional[str]:
        return data.get("response")


_DEFAULT_ENDPOINTS = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "ollama": "http://127.0.0.1:11434/api/generate",
    "anthropic": "https://api.anthropic.com/v1/messages",
}

_PROVIDER_CLASSES = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "ollama": OllamaProvider,
}


def create_provider(cfg: ProviderConfig) -> LLMProvider:
    """Instantiate the provider described by *cfg*."""
    try:
        cls = _PROVIDER_CLASSES[cfg.kind]
    except KeyError:
        raise ValueError(f"Unknown provider kind {cfg.kind!r}; expected one of {sorted(_PROVIDER_CLASSES)}")
    return cls(
        model=cfg.model_name,
        endpoint=cfg.endpoint or _DEFAULT_ENDPOINTS[cfg.kind],
        api_key=cfg.api_key,
    )
