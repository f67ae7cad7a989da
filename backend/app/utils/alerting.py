import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "PAYMONGO_SIGNATURE_INVALID": 5,
    "BILLING_METADATA_INVALID": 3,
    "BILLING_PLAN_APPLY_FAILED": 1,
    "BILLING_RETRY_EXHAUSTED": 1,
    "AI_UPSTREAM_ERROR": 10,
    "SCAN_LIMIT_REACHED": 50,
    "RATE_LIMIT_BLOCKED": 20,
}


class AuditAlertTracker:
    """Counts audit actions in a sliding window and logs an alert at each threshold multiple."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, metadata: Optional[dict] = None) -> bool:
        """Record *action*; return True when this occurrence fired an alert."""
        limit = self._thresholds.get(action)
        if not limit:
            return False
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(action, deque())
            cutoff = now - self._window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            fired = len(bucket) % limit == 0
            if fired:
                logger.warning(
                    "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
                    action,
                    len(bucket),
                    self._window_seconds,
                    metadata or {},
                )
            return fired

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
