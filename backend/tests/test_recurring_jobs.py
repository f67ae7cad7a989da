"""
Tests for recurring jobs — billing retry worker tick.

Covers:
  - A due retry row is applied and the entitlement upgraded
  - Rows scheduled in the future are left alone
  - The tick is a no-op when no database is configured
  - The worker only starts when ENABLE_RECURRING_JOBS is on
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.core import dependencies
from app.models.account import BillingEvent, BillingEventRetry
from app.services import billing_service, entitlement_service
from app.services.recurring_jobs import run_billing_retries_once, start_billing_retry_worker


def _now_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture
def worker_sessions(monkeypatch, session_factory):
    monkeypatch.setattr(dependencies, "SessionLocal", session_factory)
    return session_factory


def _enqueue(factory, event_id, *, user_id="buyer@example.com", plan="pro"):
    db = factory()
    try:
        billing_service.enqueue_billing_retry(
            db,
            provider_event_id=event_id,
            kind=billing_service.PAID_EVENT_TYPE,
            user_id=user_id,
            plan=plan,
            error="OperationalError: database is locked",
        )
        db.commit()
    finally:
        db.close()


def test_tick_applies_due_retry(worker_sessions):
    _enqueue(worker_sessions, "evt_due")

    assert run_billing_retries_once(batch_size=10, max_attempts=3) == 1

    db = worker_sessions()
    try:
        row = db.execute(select(BillingEventRetry).where(BillingEventRetry.provider_event_id == "evt_due")).scalar_one()
        assert row.status == "APPLIED"
        assert row.applied_at is not None
        ent = entitlement_service.peek(db, "buyer@example.com")
        assert ent.plan == "pro"
        assert ent.scans_limit == -1
        assert db.execute(select(BillingEvent).where(BillingEvent.provider_event_id == "evt_due")).scalar_one()
    finally:
        db.close()

    # Second tick has nothing left to do.
    assert run_billing_retries_once(batch_size=10, max_attempts=3) == 0


def test_tick_skips_rows_not_yet_due(worker_sessions):
    _enqueue(worker_sessions, "evt_later")
    db = worker_sessions()
    try:
        row = db.execute(select(BillingEventRetry)).scalar_one()
        row.next_attempt_at = _now_naive() + timedelta(minutes=30)
        db.commit()
    finally:
        db.close()

    assert run_billing_retries_once(batch_size=10, max_attempts=3) == 0

    db = worker_sessions()
    try:
        assert db.execute(select(BillingEventRetry)).scalar_one().status == "PENDING"
        assert entitlement_service.peek(db, "buyer@example.com") is None
    finally:
        db.close()


def test_tick_without_database_is_noop(monkeypatch):
    monkeypatch.setattr(dependencies, "SessionLocal", None)
    assert run_billing_retries_once(batch_size=10, max_attempts=3) == 0


@pytest.mark.asyncio
async def test_worker_task_can_be_cancelled(monkeypatch):
    monkeypatch.setenv("ENABLE_RECURRING_JOBS", "false")
    task = start_billing_retry_worker()
    assert task is not None
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
