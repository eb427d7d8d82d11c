from __future__ import annotations

from functools import lru_cache

from openai import AsyncOpenAI

from deeploom.config.settings import get_settings
from .http import build_async_http_client


@lru_cache(maxsize=1)
def get_async_openai_client() -> AsyncOpenAI:
    """Retourne le client OpenAI async (base_url configurable pour les API compatibles)."""
    settings = get_settings()
    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url or None,
        http_client=build_async_http_client(settings.llm_timeout_seconds),
    )
