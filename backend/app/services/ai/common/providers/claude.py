"""Anthropic / Claude provider (messages API with base64 image blocks)."""

from __future__ import annotations

import logging
import time
from typing import Any

from .base import BaseProvider, ImageInput, ProviderResult

logger = logging.getLogger(__name__)

# The messages API requires max_tokens; used when the caller asks for no cap.
DEFAULT_MAX_OUTPUT_TOKENS = 8192


class ClaudeProvider(BaseProvider):
    name = "claude"

    def __init__(self, api_key: str, *, max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS) -> None:
        self._api_key = api_key
        self._max_output_tokens = max_output_tokens

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
        import httpx

        model = model or "claude-3-5-haiku-20241022"
        t0 = time.monotonic()

        content: list[dict[str, Any]] = []
        if image is not None:
            content.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.mime_type,
                        "data": image.data_base64,
                    },
                }
            )
        content.append({"type": "text", "text": prompt})

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens if max_tokens is not None else self._max_output_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            body["system"] = system_prompt

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        text = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        )
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
