"""PayMongo webhook reconciliation: signature check, event routing, plan application.

Only ``checkout_session.payment.paid`` changes state. A verified event whose
local apply fails is parked in ``billing_event_retries`` and re-applied by the
recurring worker, so a paid upgrade is never silently dropped.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Optional

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.account import BillingEvent, BillingEventRetry
from app.services import entitlement_service
from app.services.audit_service import create_audit_log
from app.services.plans import purchasable_plan

logger = logging.getLogger(__name__)

PAID_EVENT_TYPE = "checkout_session.payment.paid"
PROVIDER = "paymongo"
SIGNATURE_TOLERANCE_SECONDS = 300
_HEX_DIGEST_RE = re.compile(r"[0-9a-fA-F]{64}")


class WebhookOutcome(StrEnum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    QUEUED_FOR_RETRY = "queued_for_retry"
    IGNORED = "ignored"


class RetryEnqueueError(RuntimeError):
    """Plan apply failed and the retry row could not be stored either."""


@dataclass(frozen=True)
class SignatureParts:
    timestamp: int
    digest: str


@dataclass(frozen=True)
class CheckoutMetadata:
    user_email: str
    plan: str


def parse_signature_header(header: Optional[str]) -> Optional[SignatureParts]:
    """Parse ``t=<unix>,te=<test hex>,li=<live hex>``; the live digest wins when present."""
    if not header:
        return None
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.partition("=")
        if sep:
            parts[key.strip()] = value.strip()

    raw_ts = parts.get("t")
    if not raw_ts:
        return None
    try:
        timestamp = int(raw_ts)
    except ValueError:
        return None

    digest = parts.get("li") or parts.get("te")
    if not digest or not _HEX_DIGEST_RE.fullmatch(digest):
        return None
    return SignatureParts(timestamp=timestamp, digest=digest)


def compute_signature(raw_body: bytes, timestamp: int, secret: str) -> str:
    signed = str(timestamp).encode("ascii") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    *,
    now: Optional[float] = None,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
) -> bool:
    """Check the HMAC over the exact bytes received and reject stale timestamps."""
    if not secret:
        return False
    parts = parse_signature_header(header)
    if parts is None:
        return False

    current = time.time() if now is None else now
    if current - parts.timestamp > tolerance_seconds:
        return False

    expected = compute_signature(raw_body, parts.timestamp, secret)
    return hmac.compare_digest(expected, parts.digest.lower())


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def event_id(event: dict[str, Any]) -> Optional[str]:
    value = _dig(event, "data", "id")
    return str(value) if value else None


def event_type(event: dict[str, Any]) -> Optional[str]:
    value = _dig(event, "data", "attributes", "type")
    return str(value) if value else None


def extract_checkout_metadata(event: dict[str, Any]) -> Optional[CheckoutMetadata]:
    """Pull ``(user_email, plan)`` from a paid checkout event; billing email is the fallback."""
    resource = _dig(event, "data", "attributes", "data", "attributes") or {}
    metadata = resource.get("metadata") if isinstance(resource, dict) else None
    metadata = metadata if isinstance(metadata, dict) else {}

    email = metadata.get("user_email") or metadata.get("userEmail") or _dig(resource, "billing", "email")
    plan = metadata.get("plan")
    if not isinstance(email, str) or not email.strip():
        return None
    if not isinstance(plan, str) or not plan.strip():
        return None
    return CheckoutMetadata(user_email=email.strip().lower(), plan=plan.strip().lower())


def _already_processed(db: Session, provider_event_id: str) -> bool:
    found = db.execute(
        select(BillingEvent.id).where(
            BillingEvent.provider == PROVIDER,
            BillingEvent.provider_event_id == provider_event_id,
        )
    ).scalar_one_or_none()
    return found is not None


def _apply(
    db: Session,
    *,
    provider_event_id: str,
    kind: str,
    user_id: str,
    plan_key: str,
    now: Optional[datetime],
    actor_type: str,
) -> None:
    plan = purchasable_plan(plan_key)
    if plan is None:
        raise ValueError(f"Unknown plan: {plan_key!r}")

    before = entitlement_service.peek(db, user_id)
    old_value = None
    if before is not None:
        old_value = {"plan": before.plan, "scans_used": before.scans_used, "scans_limit": before.scans_limit}

    entitlement_service.apply_plan_change(db, user_id, plan.key.value, plan.scans_limit, now=now)
    db.add(
        BillingEvent(
            provider=PROVIDER,
            provider_event_id=provider_event_id,
            event_type=kind,
            user_id=user_id,
            plan=plan.key.value,
        )
    )
    create_audit_log(
        db,
        entity_type="entitlement",
        entity_id=user_id,
        action="BILLING_PLAN_APPLIED",
        old_value=old_value,
        new_value={"plan": plan.key.value, "scans_used": 0, "scans_limit": plan.scans_limit},
        actor_type=actor_type,
        actor_id=None,
        metadata={"provider_event_id": provider_event_id},
    )


def process_event(
    db: Session,
    event: dict[str, Any],
    *,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
) -> WebhookOutcome:
    """Act on a verified PayMongo event and commit.

    Raises ``RetryEnqueueError`` only when the apply failed and the retry row
    could not be written; the caller should answer 5xx so PayMongo redelivers.
    """
    kind = event_type(event)
    if kind != PAID_EVENT_TYPE:
        logger.info("PayMongo event ignored: type=%s", kind)
        return WebhookOutcome.IGNORED

    provider_event_id = event_id(event)
    metadata = extract_checkout_metadata(event)
    plan = purchasable_plan(metadata.plan) if metadata else None
    if metadata is None or plan is None or not provider_event_id:
        logger.warning(
            "PayMongo paid event %s has missing or invalid metadata (plan=%s)",
            provider_event_id,
            metadata.plan if metadata else None,
        )
        create_audit_log(
            db,
            entity_type="billing",
            entity_id=provider_event_id or "unknown",
            action="BILLING_METADATA_INVALID",
            old_value=None,
            new_value={"plan": metadata.plan if metadata else None},
            actor_type="SYSTEM_PAYMONGO",
            actor_id=None,
            ip_address=ip_address,
        )
        db.commit()
        return WebhookOutcome.SKIPPED

    if _already_processed(db, provider_event_id):
        logger.info("PayMongo event %s already processed", provider_event_id)
        return WebhookOutcome.DUPLICATE

    try:
        _apply(
            db,
            provider_event_id=provider_event_id,
            kind=kind,
            user_id=metadata.user_email,
            plan_key=plan.key.value,
            now=now,
            actor_type="SYSTEM_PAYMONGO",
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        try:
            # Lost a race with a concurrent delivery of the same event.
            if _already_processed(db, provider_event_id):
                return WebhookOutcome.DUPLICATE
        except SQLAlchemyError:
            db.rollback()
        logger.exception("Failed to apply plan %s for %s (event %s)", plan.key.value, metadata.user_email, provider_event_id)
        _enqueue_after_failure(
            db,
            provider_event_id=provider_event_id,
            kind=kind,
            user_id=metadata.user_email,
            plan_key=plan.key.value,
            error=str(exc),
        )
        return WebhookOutcome.QUEUED_FOR_RETRY

    logger.info("Applied plan %s for %s (event %s)", plan.key.value, metadata.user_email, provider_event_id)
    return WebhookOutcome.APPLIED


def _enqueue_after_failure(
    db: Session,
    *,
    provider_event_id: str,
    kind: str,
    user_id: str,
    plan_key: str,
    error: str,
) -> None:
    # Fresh session: the request session may be in an unusable state.
    retry_db = Session(bind=db.get_bind())
    try:
        enqueue_billing_retry(
            retry_db,
            provider_event_id=provider_event_id,
            kind=kind,
            user_id=user_id,
            plan=plan_key,
            error=error,
        )
        create_audit_log(
            retry_db,
            entity_type="entitlement",
            entity_id=user_id,
            action="BILLING_PLAN_APPLY_FAILED",
            old_value=None,
            new_value={"plan": plan_key},
            actor_type="SYSTEM_PAYMONGO",
            actor_id=None,
            metadata={"provider_event_id": provider_event_id, "error": error[:500]},
        )
        retry_db.commit()
    except SQLAlchemyError as exc:
        retry_db.rollback()
        logger.exception("Could not enqueue billing retry for event %s", provider_event_id)
        raise RetryEnqueueError(str(exc)) from exc
    finally:
        retry_db.close()


def _now_for(db: Session) -> datetime:
    # SQLite (used in CI/tests) stores timezone-aware datetimes as naive values.
    now = datetime.now(timezone.utc)
    if db.get_bind().dialect.name == "sqlite":
        return now.replace(tzinfo=None)
    return now


def enqueue_billing_retry(
    db: Session,
    *,
    provider_event_id: str,
    kind: str,
    user_id: str,
    plan: str,
    error: Optional[str] = None,
) -> bool:
    """Insert a retry row keyed on the provider event id; no-op if one exists."""
    values = {
        "provider_event_id": provider_event_id,
        "event_type": kind,
        "user_id": user_id,
        "plan": plan,
        "status": "PENDING",
        "attempt_count": 0,
        "next_attempt_at": _now_for(db),
        "last_error": error,
    }
    table = BillingEventRetry.__table__
    dialect_name = db.get_bind().dialect.name

    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["provider_event_id"])
        return bool(db.execute(stmt).rowcount)
    if dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=["provider_event_id"])
        return bool(db.execute(stmt).rowcount)

    existing = db.execute(
        select(BillingEventRetry.id).where(BillingEventRetry.provider_event_id == provider_event_id)
    ).scalar_one_or_none()
    if existing is not None:
        return False
    db.execute(insert(table).values(**values))
    return True


def _compute_backoff(attempt_count: int) -> timedelta:
    # 1m, 2m, 4m, 8m, ... capped to 60m
    seconds = 60 * (2 ** max(0, attempt_count - 1))
    seconds = max(60, min(3600, seconds))
    return timedelta(seconds=seconds)


def process_billing_retries_once(
    db: Session,
    *,
    batch_size: int = 50,
    max_attempts: int = 8,
    now: Optional[datetime] = None,
) -> int:
    """Re-apply due plan changes. Returns the number applied; caller commits."""
    current = now or _now_for(db)
    due = (
        db.execute(
            select(BillingEventRetry)
            .where(
                BillingEventRetry.status.in_(["PENDING", "RETRY"]),
                BillingEventRetry.next_attempt_at <= current,
            )
            .order_by(BillingEventRetry.next_attempt_at.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )

    applied = 0
    for row in due:
        row.attempt_count = int(row.attempt_count or 0) + 1
        try:
            with db.begin_nested():
                if not _already_processed(db, row.provider_event_id):
                    _apply(
                        db,
                        provider_event_id=row.provider_event_id,
                        kind=row.event_type,
                        user_id=row.user_id,
                        plan_key=row.plan,
                        now=current,
                        actor_type="SYSTEM",
                    )
            row.status = "APPLIED"
            row.applied_at = current
            row.last_error = None
            applied += 1
        except (SQLAlchemyError, ValueError) as exc:
            row.last_error = str(exc)
            if int(row.attempt_count or 0) >= int(max_attempts):
                row.status = "FAILED"
                row.next_attempt_at = current + timedelta(days=365)
                create_audit_log(
                    db,
                    entity_type="entitlement",
                    entity_id=row.user_id,
                    action="BILLING_RETRY_EXHAUSTED",
                    old_value=None,
                    new_value={"plan": row.plan},
                    actor_type="SYSTEM",
                    actor_id=None,
                    metadata={"provider_event_id": row.provider_event_id, "attempts": row.attempt_count},
                )
            else:
                row.status = "RETRY"
                row.next_attempt_at = current + _compute_backoff(int(row.attempt_count or 0))

    if due:
        logger.info("Billing retries processed: applied=%s total=%s", applied, len(due))
    return applied
