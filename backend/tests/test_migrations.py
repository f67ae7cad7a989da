"""Alembic migrations apply cleanly and match the ORM models."""

from __future__ import annotations

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.core.config import get_settings
from app.models.account import Base

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "app" / "migrations"


@pytest.fixture
def alembic_config(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'migrations.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()

    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg, url


def test_upgrade_creates_model_tables_and_downgrade_drops_them(alembic_config):
    cfg, url = alembic_config

    command.upgrade(cfg, "head")

    engine = create_engine(url)
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        assert set(Base.metadata.tables) <= tables

        for name, table in Base.metadata.tables.items():
            migrated = {col["name"] for col in inspector.get_columns(name)}
            assert migrated == {col.name for col in table.columns}, name

        retry_indexes = {ix["name"] for ix in inspector.get_indexes("billing_event_retries")}
        assert "ix_billing_event_retries_due" in retry_indexes
        audit_indexes = {ix["name"] for ix in inspector.get_indexes("audit_logs")}
        assert {"idx_audit_logs_entity", "idx_audit_logs_action_ts"} <= audit_indexes
    finally:
        engine.dispose()

    command.downgrade(cfg, "base")

    engine = create_engine(url)
    try:
        remaining = set(inspect(engine).get_table_names())
        assert not (set(Base.metadata.tables) & remaining)
    finally:
        engine.dispose()
