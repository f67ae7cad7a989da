"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class ImageInput:
    """A base64-encoded image sent alongside the prompt."""

    data_base64: str
    mime_type: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data_base64}"


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement.

    ``max_tokens=None`` means no output cap. Providers raise on transport
    errors and non-2xx responses; callers decide how to degrade.
    """

    name: str = "base"

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        image: ImageInput | None = None,
        model: str = "",
        temperature: float = 0.0,
        max_tokens: int | None = None,
        timeout_seconds: float = 60.0,
    ) -> ProviderResult:
        """Send *prompt* (and optional *image*) and return a ``ProviderResult``."""
