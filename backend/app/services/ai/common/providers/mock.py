"""Mock provider — deterministic responses for tests and local development."""

from __future__ import annotations

import json
import time

from .base import BaseProvider, ImageInput, ProviderResult

MOCK_CLASSIFICATION = {"documentType": "other"}
MOCK_EXTRACTION = {
    "documentType": "other",
    "confidenceScore": 0,
    "metadata": {"detectedLanguage": "", "imageQuality": "low"},
    "keyValuePairs": {},
    "tables": [],
    "rawText": "",
}


class MockProvider(BaseProvider):
    name = "mock"

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
        t0 = time.monotonic()
        # A short output budget marks the classification pass.
        payload = MOCK_CLASSIFICATION if max_tokens is not None else MOCK_EXTRACTION
        text = json.dumps(payload)
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
