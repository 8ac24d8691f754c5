"""Provider adapters and their factories."""

from __future__ import annotations

from typing import TYPE_CHECKING

from switchboard.providers.base import AIService, BaseAIService, WireRequest
from switchboard.providers.gemini import GeminiService, GeminiServiceFactory
from switchboard.providers.gemini_cookie import (
    GeminiCookieService,
    GeminiCookieServiceFactory,
)
from switchboard.providers.openai_compat import (
    OpenAICompatibleService,
    OpenAICompatibleServiceFactory,
    openai_compatible_factories,
)
from switchboard.providers.qwen import QwenService, QwenServiceFactory

if TYPE_CHECKING:
    import httpx

    from switchboard.registry import AIServiceFactory


def builtin_factories(
    *, transport: httpx.AsyncBaseTransport | None = None
) -> list[AIServiceFactory]:
    """Every built-in factory, in default registration order."""
    return [
        GeminiServiceFactory(transport=transport),
        GeminiCookieServiceFactory(transport=transport),
        QwenServiceFactory(transport=transport),
        *openai_compatible_factories(transport=transport),
    ]


__all__ = [
    "AIService",
    "BaseAIService",
    "GeminiCookieService",
    "GeminiCookieServiceFactory",
    "GeminiService",
    "GeminiServiceFactory",
    "OpenAICompatibleService",
    "OpenAICompatibleServiceFactory",
    "QwenService",
    "QwenServiceFactory",
    "WireRequest",
    "builtin_factories",
    "openai_compatible_factories",
]
