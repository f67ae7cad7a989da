import logging
import os
import unittest

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from conftest import build_sqlite_engine

from app.core.config import get_settings
from app.models.account import AuditLog, Base
from app.services.audit_service import create_audit_log
from app.utils.alerting import AuditAlertTracker, alert_tracker


class AuditLogTests(unittest.TestCase):
    def setUp(self):
        get_settings.cache_clear()
        alert_tracker.reset()
        self.engine = build_sqlite_engine()
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def tearDown(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        alert_tracker.reset()

    def _write(self, **overrides):
        fields = dict(
            entity_type="entitlement",
            entity_id="buyer@example.com",
            action="BILLING_PLAN_APPLIED",
            old_value={"plan": "trial"},
            new_value={"plan": "starter"},
            actor_type="SYSTEM",
            actor_id=None,
        )
        fields.update(overrides)
        db = self.SessionLocal()
        try:
            create_audit_log(db, **fields)
            db.commit()
            return db.execute(select(AuditLog)).scalars().all()[-1]
        finally:
            db.close()

    def test_pii_keys_are_redacted_recursively(self):
        log = self._write(
            new_value={"plan": "starter", "billing": {"email": "a@b.c", "phone": "+63917"}},
            metadata={"user_email": "a@b.c", "items": [{"address": "Manila"}], "provider_event_id": "evt_1"},
        )

        self.assertEqual(log.new_value["plan"], "starter")
        self.assertEqual(log.new_value["billing"], {"email": "[REDACTED]", "phone": "[REDACTED]"})
        self.assertEqual(log.audit_meta["user_email"], "[REDACTED]")
        self.assertEqual(log.audit_meta["items"], [{"address": "[REDACTED]"}])
        self.assertEqual(log.audit_meta["provider_event_id"], "evt_1")
        self.assertIsNotNone(log.timestamp)

    def test_redaction_can_be_disabled(self):
        os.environ["PII_REDACTION_ENABLED"] = "false"
        get_settings.cache_clear()
        try:
            log = self._write(metadata={"user_email": "a@b.c"})
        finally:
            del os.environ["PII_REDACTION_ENABLED"]
            get_settings.cache_clear()

        self.assertEqual(log.audit_meta, {"user_email": "a@b.c"})

    def test_audit_row_is_not_written_without_commit(self):
        db = self.SessionLocal()
        try:
            create_audit_log(
                db,
                entity_type="scan",
                entity_id="u@example.com",
                action="SCAN_LIMIT_REACHED",
                old_value=None,
                new_value=None,
                actor_type="USER",
                actor_id="u@example.com",
            )
            db.rollback()
            self.assertEqual(db.execute(select(AuditLog)).scalars().all(), [])
        finally:
            db.close()


class AlertTrackerTests(unittest.TestCase):
    def test_fires_on_each_threshold_multiple(self):
        tracker = AuditAlertTracker(window_seconds=3600, thresholds={"PAYMONGO_SIGNATURE_INVALID": 2})

        with self.assertLogs("app.utils.alerting", level=logging.WARNING) as logs:
            fired = [tracker.record("PAYMONGO_SIGNATURE_INVALID") for _ in range(4)]

        self.assertEqual(fired, [False, True, False, True])
        self.assertEqual(len(logs.records), 2)
        self.assertIn("audit_action=PAYMONGO_SIGNATURE_INVALID", logs.output[0])

    def test_untracked_actions_never_fire(self):
        tracker = AuditAlertTracker(window_seconds=3600, thresholds={})
        self.assertFalse(tracker.record("BILLING_PLAN_APPLIED"))

    def test_single_failure_actions_alert_immediately(self):
        with self.assertLogs("app.utils.alerting", level=logging.WARNING):
            self.assertTrue(alert_tracker.record("BILLING_PLAN_APPLY_FAILED", {"provider_event_id": "evt_9"}))
