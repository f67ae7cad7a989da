"""Entitlement ledger: per-user plan, scan counter, limit and billing-cycle anchor.

Every mutation here is a single SQL statement (insert-if-absent, conditional
update, atomic increment, upsert). Nothing reads a value into Python and writes
it back, so concurrent requests from the same user cannot lose increments or
reset a cycle twice. Callers own the transaction (commit/rollback).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from app.models.account import Entitlement
from app.services.plans import (
    BILLING_CYCLE_DAYS,
    CURRENCY,
    CYCLED_PLANS,
    PLANS,
    UNLIMITED,
    PlanKey,
    get_plan,
)

logger = logging.getLogger(__name__)

TRIAL_DEFAULTS: dict[str, Any] = {
    "plan": PlanKey.TRIAL.value,
    "scans_used": 0,
    "scans_limit": PLANS[PlanKey.TRIAL].scans_limit,
    "billing_cycle_start": None,
}


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    plan: str
    scans_used: int
    scans_limit: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dialect_name(db: Session) -> str:
    bind = db.get_bind()
    return getattr(getattr(bind, "dialect", None), "name", "") or ""


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_storage(db: Session, value: datetime) -> datetime:
    # SQLite (used in CI/tests) stores timezone-aware datetimes as naive values.
    # Bind naive UTC there so comparisons against stored values stay consistent.
    value = _as_aware(value)
    if _dialect_name(db) == "sqlite":
        return value.replace(tzinfo=None)
    return value


def _load(db: Session, user_id: str) -> Entitlement | None:
    return db.execute(
        select(Entitlement)
        .where(Entitlement.user_id == user_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def peek(db: Session, user_id: str) -> Entitlement | None:
    """Read the entitlement without creating it."""
    return _load(db, user_id)


def get_or_create(db: Session, user_id: str) -> Entitlement:
    """Return the user's entitlement, creating the trial default atomically if absent."""
    values = {"user_id": user_id, **TRIAL_DEFAULTS}
    table = Entitlement.__table__
    dialect_name = _dialect_name(db)

    if dialect_name == "postgresql":
        db.execute(pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["user_id"]))
    elif dialect_name == "sqlite":
        db.execute(sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=["user_id"]))
    else:
        try:
            with db.begin_nested():
                db.execute(insert(table).values(**values))
        except IntegrityError:
            pass

    entitlement = _load(db, user_id)
    if entitlement is None:
        raise RuntimeError(f"Entitlement for {user_id!r} missing after insert-if-absent")
    return entitlement


def rollover_if_due(db: Session, entitlement: Entitlement, *, now: datetime | None = None) -> Entitlement:
    """Reset the scan counter when a paid plan's 30-day cycle has elapsed.

    Trial allowances are lifetime and never roll over. The reset is guarded on
    the stored anchor still being past the boundary, so two concurrent checks
    reset at most once.
    """
    if entitlement.plan not in CYCLED_PLANS or entitlement.billing_cycle_start is None:
        return entitlement

    now = _as_aware(now) or _now_utc()
    started = _as_aware(entitlement.billing_cycle_start)
    cycle = timedelta(days=BILLING_CYCLE_DAYS)
    if now - started < cycle:
        return entitlement

    cutoff = now - cycle
    result = db.execute(
        update(Entitlement)
        .where(
            Entitlement.user_id == entitlement.user_id,
            Entitlement.plan.in_(sorted(CYCLED_PLANS)),
            Entitlement.billing_cycle_start.is_not(None),
            Entitlement.billing_cycle_start <= _to_storage(db, cutoff),
        )
        .values(scans_used=0, billing_cycle_start=_to_storage(db, now), updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Billing cycle rolled over for user=%s plan=%s", entitlement.user_id, entitlement.plan)

    refreshed = _load(db, entitlement.user_id)
    return refreshed if refreshed is not None else entitlement


def check_permission(entitlement: Entitlement) -> PermissionDecision:
    used = int(entitlement.scans_used or 0)
    limit = int(entitlement.scans_limit if entitlement.scans_limit is not None else 0)
    allowed = limit == UNLIMITED or used < limit
    return PermissionDecision(allowed=allowed, plan=entitlement.plan, scans_used=used, scans_limit=limit)


def record_usage(db: Session, user_id: str) -> None:
    """Increment ``scans_used`` by exactly one in a single statement."""
    stmt = (
        update(Entitlement)
        .where(Entitlement.user_id == user_id)
        .values(scans_used=Entitlement.scans_used + 1, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        get_or_create(db, user_id)
        db.execute(stmt)


def apply_plan_change(
    db: Session,
    user_id: str,
    plan: str,
    new_limit: int,
    *,
    now: datetime | None = None,
) -> Entitlement:
    """Set plan and limit, zero the counter and restart the cycle (upserting the row)."""
    if get_plan(plan) is None:
        raise ValueError(f"Unknown plan: {plan!r}")

    anchor = _to_storage(db, _as_aware(now) or _now_utc())
    changes = {
        "plan": plan,
        "scans_limit": int(new_limit),
        "scans_used": 0,
        "billing_cycle_start": anchor,
    }
    table = Entitlement.__table__
    dialect_name = _dialect_name(db)

    if dialect_name in {"postgresql", "sqlite"}:
        dialect_insert = pg_insert if dialect_name == "postgresql" else sqlite_insert
        stmt = dialect_insert(table).values(user_id=user_id, **changes)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={**changes, "updated_at": func.now()},
        )
        db.execute(stmt)
    else:
        result = db.execute(
            update(Entitlement)
            .where(Entitlement.user_id == user_id)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.execute(insert(table).values(user_id=user_id, **changes))

    entitlement = _load(db, user_id)
    if entitlement is None:
        raise RuntimeError(f"Entitlement for {user_id!r} missing after upsert")
    return entitlement


def describe(db: Session, user_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    """Plan summary for the account page. Unknown users see trial defaults; nothing is created."""
    entitlement = peek(db, user_id)
    if entitlement is None:
        plan_key = PlanKey.TRIAL.value
        scans_used = TRIAL_DEFAULTS["scans_used"]
        scans_limit = TRIAL_DEFAULTS["scans_limit"]
    else:
        entitlement = rollover_if_due(db, entitlement, now=now)
        plan_key = entitlement.plan
        scans_used = int(entitlement.scans_used or 0)
        scans_limit = int(entitlement.scans_limit)

    plan = get_plan(plan_key) or PLANS[PlanKey.TRIAL]
    return {
        "plan": plan.key.value,
        "plan_name": plan.name,
        "scans_used": scans_used,
        "scans_limit": scans_limit,
        "is_unlimited": scans_limit == UNLIMITED,
        "price_in_smallest_currency_unit": plan.price,
        "currency": CURRENCY,
    }
