"""Document extraction scope contracts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

PARSE_FAILED_MESSAGE = "Failed to parse structured data"


class DocumentType(StrEnum):
    ID = "id"
    PASSPORT = "passport"
    DRIVERS_LICENSE = "drivers_license"
    INVOICE = "invoice"
    RECEIPT = "receipt"
    BUSINESS_CARD = "business_card"
    CONTRACT = "contract"
    MEDICAL = "medical"
    FORM = "form"
    OTHER = "other"


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of one completed scan. ``data`` is what the caller receives."""

    document_type: DocumentType
    data: Any
    parsed: bool
    provider: str
    model: str
    latency_ms: float


class ScanLimitReached(Exception):
    """The entitlement gate denied the scan; no model call was made."""

    error_code = "scan_limit_reached"

    def __init__(self, plan: str, scans_used: int, scans_limit: int) -> None:
        super().__init__(f"Scan limit reached for plan {plan} ({scans_used}/{scans_limit})")
        self.plan = plan
        self.scans_used = scans_used
        self.scans_limit = scans_limit

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "plan": self.plan,
            "scansUsed": self.scans_used,
            "scansLimit": self.scans_limit,
        }


class UpstreamModelError(Exception):
    """The external model call failed; no usage was charged."""

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
