import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        parsed = uuid.UUID(str(value))
        return parsed if dialect.name == "postgresql" else str(parsed)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")


class Entitlement(Base):
    __tablename__ = "entitlements"
    __table_args__ = (
        CheckConstraint("plan IN ('trial', 'starter', 'pro')", name="ck_entitlements_plan"),
        CheckConstraint("scans_used >= 0", name="ck_entitlements_scans_used"),
        CheckConstraint("scans_limit >= -1", name="ck_entitlements_scans_limit"),
    )

    user_id = Column(String(255), primary_key=True)
    plan = Column(String(16), nullable=False, default="trial", server_default=text("'trial'"))
    scans_used = Column(Integer, nullable=False, default=0, server_default=text("0"))
    # -1 = unlimited
    scans_limit = Column(Integer, nullable=False, default=3, server_default=text("3"))
    billing_cycle_start = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class BillingEvent(Base):
    __tablename__ = "billing_events"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
    )
    provider = Column(String(32), nullable=False, default="paymongo", server_default=text("'paymongo'"))
    provider_event_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(64), nullable=False)
    user_id = Column(String(255), nullable=False)
    plan = Column(String(16), nullable=False)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class BillingEventRetry(Base):
    __tablename__ = "billing_event_retries"
    __table_args__ = (Index("ix_billing_event_retries_due", "status", "next_attempt_at"),)

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
    )
    provider_event_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(64), nullable=False)
    user_id = Column(String(255), nullable=False)
    plan = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="PENDING", server_default=text("'PENDING'"))
    attempt_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    next_attempt_at = Column(DateTime(timezone=True), nullable=False)
    applied_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ScanRecord(Base):
    __tablename__ = "scan_records"
    __table_args__ = (Index("ix_scan_records_user_created", "user_id", "created_at"),)

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id = Column(String(255), nullable=False)
    document_type = Column(String(32), nullable=False, default="other", server_default=text("'other'"))
    data = Column(JSON_TYPE, nullable=False)
    # Python-side default keeps sub-second ordering on SQLite.
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
        Index("idx_audit_logs_action_ts", "action", "timestamp"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(255), nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
