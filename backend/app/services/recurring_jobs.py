from __future__ import annotations

import asyncio
import logging

from app.core.config import get_settings
from app.core import dependencies
from app.services.billing_service import process_billing_retries_once

logger = logging.getLogger(__name__)


def run_billing_retries_once(*, batch_size: int, max_attempts: int) -> int:
    """One worker tick in its own session. Returns the number of plans applied."""
    if dependencies.SessionLocal is None:
        return 0
    db = dependencies.SessionLocal()
    try:
        applied = process_billing_retries_once(
            db,
            batch_size=batch_size,
            max_attempts=max_attempts,
        )
        db.commit()
        return applied
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def _billing_retry_loop(*, interval_seconds: int, batch_size: int, max_attempts: int) -> None:
    # Backoff on errors to avoid tight loops.
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs:
                await asyncio.sleep(interval_seconds)
                continue

            applied = await asyncio.to_thread(
                run_billing_retries_once,
                batch_size=batch_size,
                max_attempts=max_attempts,
            )
            if applied:
                logger.info("Billing retry worker applied %s plan change(s)", applied)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Billing retry worker error")
            await asyncio.sleep(error_sleep)


def start_billing_retry_worker() -> asyncio.Task | None:
    """
    Starts the in-process retry loop for webhook events whose plan change failed to apply.
    Callers should keep the returned task if they need explicit cancellation.
    """
    settings = get_settings()
    interval = int(max(5, min(300, int(settings.billing_retry_interval_seconds or 60))))
    batch_size = int(max(1, min(200, int(settings.billing_retry_batch_size or 50))))
    max_attempts = int(max(1, min(20, int(settings.billing_retry_max_attempts or 8))))
    return asyncio.create_task(
        _billing_retry_loop(
            interval_seconds=interval,
            batch_size=batch_size,
            max_attempts=max_attempts,
        )
    )
