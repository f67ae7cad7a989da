"""docscan schema: entitlements, billing events, retries, scans, audit logs

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_type():
    return sa.CHAR(36).with_variant(postgresql.UUID(as_uuid=True), "postgresql")


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
    inet_type = sa.String(length=45).with_variant(postgresql.INET(), "postgresql")

    op.create_table(
        "entitlements",
        sa.Column("user_id", sa.String(length=255), primary_key=True),
        sa.Column("plan", sa.String(length=16), nullable=False, server_default=sa.text("'trial'")),
        sa.Column("scans_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("scans_limit", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("billing_cycle_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("plan IN ('trial', 'starter', 'pro')", name="ck_entitlements_plan"),
        sa.CheckConstraint("scans_used >= 0", name="ck_entitlements_scans_used"),
        sa.CheckConstraint("scans_limit >= -1", name="ck_entitlements_scans_limit"),
    )

    op.create_table(
        "billing_events",
        sa.Column("id", _uuid_type(), primary_key=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default=sa.text("'paymongo'")),
        sa.Column("provider_event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("plan", sa.String(length=16), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("provider_event_id", name="uniq_billing_events_provider_event_id"),
    )

    op.create_table(
        "billing_event_retries",
        sa.Column("id", _uuid_type(), primary_key=True),
        sa.Column("provider_event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("plan", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("provider_event_id", name="uniq_billing_event_retries_provider_event_id"),
    )
    op.create_index(
        "ix_billing_event_retries_due",
        "billing_event_retries",
        ["status", "next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "scan_records",
        sa.Column("id", _uuid_type(), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("document_type", sa.String(length=32), nullable=False, server_default=sa.text("'other'")),
        sa.Column("data", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_scan_records_user_created", "scan_records", ["user_id", "created_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", _uuid_type(), primary_key=True),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("old_value", json_type, nullable=True),
        sa.Column("new_value", json_type, nullable=True),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("ip_address", inet_type, nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"], unique=False)
    op.create_index("idx_audit_logs_action_ts", "audit_logs", ["action", "timestamp"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_audit_logs_action_ts", table_name="audit_logs")
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_scan_records_user_created", table_name="scan_records")
    op.drop_table("scan_records")
    op.drop_index("ix_billing_event_retries_due", table_name="billing_event_retries")
    op.drop_table("billing_event_retries")
    op.drop_table("billing_events")
    op.drop_table("entitlements")
