"""Provider factory — returns the configured provider instance."""

from __future__ import annotations

import logging

from app.core.config import get_settings

from .base import BaseProvider, ImageInput, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = [
    "get_provider",
    "BaseProvider",
    "ImageInput",
    "ProviderResult",
    "MockProvider",
    "ProviderNotConfiguredError",
]


class ProviderNotConfiguredError(RuntimeError):
    """The requested provider cannot be built and mock fallback is disabled."""


def _unavailable(reason: str) -> BaseProvider:
    settings = get_settings()
    if settings.ai_allow_mock_fallback:
        logger.warning("%s – falling back to mock", reason)
        return MockProvider()
    logger.error("%s – no provider available", reason)
    raise ProviderNotConfiguredError(reason)


def get_provider(provider_name: str) -> BaseProvider:
    """Return a provider instance for *provider_name*.

    A provider outside the allowlist, or one without an API key, falls back to
    ``MockProvider`` only when ``AI_ALLOW_MOCK_FALLBACK=true``; otherwise
    ``ProviderNotConfiguredError`` is raised so no scan is charged for fake output.
    """
    settings = get_settings()
    name = provider_name.lower().strip()

    if name not in settings.ai_allowed_providers:
        return _unavailable(f"Provider {name!r} not in allowlist")

    if name == "mock":
        return MockProvider()

    if name == "claude":
        if not settings.anthropic_api_key:
            return _unavailable("ANTHROPIC_API_KEY not set")
        from .claude import ClaudeProvider

        return ClaudeProvider(
            api_key=settings.anthropic_api_key,
            max_output_tokens=settings.ai_provider_max_output_tokens,
        )

    if name == "openai":
        if not settings.openai_api_key:
            return _unavailable("OPENAI_API_KEY not set")
        from .openai import OpenAIProvider

        return OpenAIProvider(api_key=settings.openai_api_key)

    return _unavailable(f"Unknown provider {name!r}")
