"""
Tests for the entitlement ledger.

Covers:
  - Implicit trial creation is idempotent
  - Permission rule incl. unlimited
  - 30-day rollover boundary; trial never rolls over
  - Atomic increments under concurrent writers (file-backed SQLite)
  - Plan change upsert for new and existing users
  - describe() does not create records
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from app.core.dependencies import build_engine
from app.models.account import Base, Entitlement
from app.services import entitlement_service

USER = "ledger@example.com"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_get_or_create_defaults_to_trial(db):
    ent = entitlement_service.get_or_create(db, USER)
    db.commit()

    assert ent.plan == "trial"
    assert ent.scans_used == 0
    assert ent.scans_limit == 3
    assert ent.billing_cycle_start is None


def test_get_or_create_is_idempotent(db):
    entitlement_service.get_or_create(db, USER)
    entitlement_service.record_usage(db, USER)
    again = entitlement_service.get_or_create(db, USER)
    db.commit()

    assert again.scans_used == 1
    assert db.query(Entitlement).count() == 1


@pytest.mark.parametrize(
    "used,limit,allowed",
    [(0, 3, True), (2, 3, True), (3, 3, False), (30, 30, False), (10_000, -1, True)],
)
def test_check_permission(used, limit, allowed):
    ent = Entitlement(user_id=USER, plan="starter", scans_used=used, scans_limit=limit)
    assert entitlement_service.check_permission(ent).allowed is allowed


def test_record_usage_creates_missing_record(db):
    entitlement_service.record_usage(db, "fresh@example.com")
    db.commit()

    assert entitlement_service.peek(db, "fresh@example.com").scans_used == 1


def _starter_with_usage(db, used: int, *, start=T0) -> Entitlement:
    entitlement_service.apply_plan_change(db, USER, "starter", 30, now=start)
    for _ in range(used):
        entitlement_service.record_usage(db, USER)
    db.commit()
    return entitlement_service.peek(db, USER)


def test_rollover_not_due_just_before_boundary(db):
    ent = _starter_with_usage(db, 7)

    ent = entitlement_service.rollover_if_due(db, ent, now=T0 + timedelta(days=30) - timedelta(seconds=1))

    assert ent.scans_used == 7


def test_rollover_resets_at_boundary_and_moves_anchor(db):
    ent = _starter_with_usage(db, 30)
    boundary = T0 + timedelta(days=30)

    ent = entitlement_service.rollover_if_due(db, ent, now=boundary)
    db.commit()

    assert ent.scans_used == 0
    assert entitlement_service._as_aware(ent.billing_cycle_start) == boundary
    assert entitlement_service.check_permission(ent).allowed is True


def test_rollover_applies_once_for_stale_snapshots(db):
    ent = _starter_with_usage(db, 5)
    stale = Entitlement(user_id=USER, plan="starter", scans_used=5, scans_limit=30, billing_cycle_start=T0)
    now = T0 + timedelta(days=31)

    entitlement_service.rollover_if_due(db, ent, now=now)
    entitlement_service.record_usage(db, USER)
    # A second check holding the pre-rollover snapshot must not reset again.
    after = entitlement_service.rollover_if_due(db, stale, now=now + timedelta(seconds=1))
    db.commit()

    assert after.scans_used == 1


def test_trial_never_rolls_over(db):
    entitlement_service.get_or_create(db, USER)
    for _ in range(3):
        entitlement_service.record_usage(db, USER)
    db.commit()
    ent = entitlement_service.peek(db, USER)

    ent = entitlement_service.rollover_if_due(db, ent, now=T0 + timedelta(days=400))

    assert ent.scans_used == 3
    assert entitlement_service.check_permission(ent).allowed is False


def test_apply_plan_change_upserts_new_user(db):
    ent = entitlement_service.apply_plan_change(db, "new@example.com", "pro", -1, now=T0)
    db.commit()

    assert (ent.plan, ent.scans_used, ent.scans_limit) == ("pro", 0, -1)
    assert entitlement_service._as_aware(ent.billing_cycle_start) == T0


def test_apply_plan_change_resets_existing_usage(db):
    entitlement_service.get_or_create(db, USER)
    entitlement_service.record_usage(db, USER)
    entitlement_service.record_usage(db, USER)

    ent = entitlement_service.apply_plan_change(db, USER, "starter", 30, now=T0)
    db.commit()

    assert (ent.plan, ent.scans_used, ent.scans_limit) == ("starter", 0, 30)
    assert db.query(Entitlement).count() == 1


def test_apply_plan_change_rejects_unknown_plan(db):
    with pytest.raises(ValueError):
        entitlement_service.apply_plan_change(db, USER, "enterprise", 1000)


def test_describe_unknown_user_has_trial_defaults_and_no_record(db):
    summary = entitlement_service.describe(db, "ghost@example.com")

    assert summary == {
        "plan": "trial",
        "plan_name": "Free Trial",
        "scans_used": 0,
        "scans_limit": 3,
        "is_unlimited": False,
        "price_in_smallest_currency_unit": 0,
        "currency": "PHP",
    }
    assert entitlement_service.peek(db, "ghost@example.com") is None


def test_describe_pro(db):
    entitlement_service.apply_plan_change(db, USER, "pro", -1, now=datetime.now(timezone.utc))
    db.commit()

    summary = entitlement_service.describe(db, USER)

    assert summary["plan_name"] == "Pro"
    assert summary["is_unlimited"] is True
    assert summary["price_in_smallest_currency_unit"] == 149900


def test_concurrent_record_usage_loses_no_increments(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    setup = Session()
    entitlement_service.get_or_create(setup, USER)
    setup.commit()
    setup.close()

    workers = 8
    per_worker = 5
    errors: list[BaseException] = []
    barrier = threading.Barrier(workers)

    def worker():
        barrier.wait()
        for _ in range(per_worker):
            session = Session()
            try:
                entitlement_service.record_usage(session, USER)
                session.commit()
            except BaseException as exc:  # surfaced below
                errors.append(exc)
                session.rollback()
            finally:
                session.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    check = Session()
    try:
        assert errors == []
        assert entitlement_service.peek(check, USER).scans_used == workers * per_worker
    finally:
        check.close()
        engine.dispose()
