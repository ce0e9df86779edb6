"""Text model client over OpenRouter's OpenAI-compatible API."""
from __future__ import annotations

import time
from typing import Any, Protocol

from researchlens.config import settings
from researchlens.services import logger as log_service


class TextModel(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        caller: str,
        max_tokens: int = 100,
        temperature: float = 0.2,
    ) -> str: ...


class OpenRouterTextModel:
    def __init__(self, openai_client: Any, model: str):
        self._client = openai_client
        self.model = model

    async def complete(
        self,
        prompt: str,
        *,
        caller: str,
        max_tokens: int = 100,
        temperature: float = 0.2,
    ) -> str:
        started = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - started) * 1000),
                status="failed",
                error=str(exc),
            )
            raise

        usage = getattr(response, "usage", None)
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return getattr(choices[0].message, "content", None) or ""


def get_text_model() -> OpenRouterTextModel | None:
    """Build the configured text model, or None when no API key is set."""
    if not settings.openrouter_api_key:
        return None

    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )
    return OpenRouterTextModel(openai_client, settings.text_model)


_text_model: OpenRouterTextModel | None = None


def text_model() -> OpenRouterTextModel | None:
    """Get or create the shared text model."""
    global _text_model
    if _text_model is None:
        _text_model = get_text_model()
    return _text_model
