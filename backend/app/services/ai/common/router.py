"""AI Router — resolves provider + model per scope with override > scope ENV > default chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

SCOPES = ("classify", "extract")


@dataclass(frozen=True)
class ResolvedConfig:
    """Final resolved provider + model after the override chain."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int | None
    timeout_seconds: float


def resolve(
    scope: str,
    *,
    override_provider: str | None = None,
    override_model: str | None = None,
) -> ResolvedConfig:
    """Resolve provider + model for a given *scope* (``classify`` or ``extract``).

    Resolution chain (first non-empty wins):
      1. ``override_provider`` / ``override_model`` (only when
         ``enable_ai_overrides=True``).
      2. ``AI_CLASSIFY_PROVIDER`` / ``AI_CLASSIFY_MODEL`` for the classify scope.
      3. ``AI_PROVIDER`` / ``AI_MODEL``.

    Sampling is always deterministic. Classification gets a short output budget
    and timeout; extraction is uncapped.
    """
    if scope not in SCOPES:
        raise ValueError(f"Unknown AI scope: {scope!r}")

    settings = get_settings()

    provider_name = ""
    if settings.enable_ai_overrides and override_provider:
        provider_name = override_provider.lower().strip()
    if not provider_name and scope == "classify":
        provider_name = settings.ai_classify_provider.lower().strip()
    if not provider_name:
        provider_name = settings.ai_provider.lower().strip() or "mock"

    model = ""
    if settings.enable_ai_overrides and override_model:
        model = override_model.strip()
    if not model and scope == "classify":
        model = settings.ai_classify_model.strip()
    if not model:
        model = settings.ai_model.strip()

    allowed_models = settings.ai_allowed_models.get(provider_name, [])
    if allowed_models and model and model not in allowed_models:
        logger.warning(
            "Model %r not in allowlist for %r — using first allowed: %r",
            model,
            provider_name,
            allowed_models[0],
        )
        model = allowed_models[0]

    if allowed_models and not model:
        model = allowed_models[0]

    if scope == "classify":
        max_tokens: int | None = settings.ai_classify_max_tokens
        timeout = settings.ai_classify_timeout_seconds
    else:
        max_tokens = None
        timeout = settings.ai_timeout_seconds

    provider = get_provider(provider_name)

    return ResolvedConfig(
        provider=provider,
        model=model,
        temperature=0.0,
        max_tokens=max_tokens,
        timeout_seconds=timeout,
    )
