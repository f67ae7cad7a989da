from __future__ import annotations

import asyncio

import pytest


@pytest.fixture
def app_main(monkeypatch):
    from app import main as app_main

    monkeypatch.setattr(app_main, "_billing_retry_task", None)
    return app_main


@pytest.mark.asyncio
async def test_startup_fails_fast_on_config_errors_in_production(monkeypatch, app_main):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["missing secret"])

    with pytest.raises(RuntimeError, match="Configuration validation failed in production environment"):
        await app_main._startup_jobs()


@pytest.mark.asyncio
async def test_startup_logs_warning_only_on_config_errors_in_test(monkeypatch, app_main):
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: ["missing secret"])

    await app_main._startup_jobs()
    assert app_main._billing_retry_task is None


@pytest.mark.asyncio
async def test_startup_starts_and_shutdown_cancels_retry_worker(monkeypatch, app_main):
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setattr(type(app_main.settings), "validate_required_config", lambda _self: [])
    monkeypatch.setattr(app_main.settings, "enable_recurring_jobs", True)

    async def _idle():
        await asyncio.sleep(3600)

    monkeypatch.setattr(app_main, "start_billing_retry_worker", lambda: asyncio.create_task(_idle()))

    await app_main._startup_jobs()
    task = app_main._billing_retry_task
    assert task is not None

    await app_main._shutdown_jobs()
    assert app_main._billing_retry_task is None
    with pytest.raises(asyncio.CancelledError):
        await task


def test_validate_required_config_lists_missing_secrets():
    from app.core.config import Settings

    errors = Settings(
        database_url="",
        session_jwt_secret="",
        ai_provider="claude",
        anthropic_api_key="",
        paymongo_secret_key="",
        paymongo_webhook_secret="",
    ).validate_required_config()

    assert errors == [
        "DATABASE_URL is not set",
        "SESSION_JWT_SECRET is not set",
        "ANTHROPIC_API_KEY is not set",
        "PAYMONGO_SECRET_KEY is not set",
        "PAYMONGO_WEBHOOK_SECRET is not set",
    ]


def test_validate_required_config_passes_with_mock_provider():
    from app.core.config import Settings

    settings = Settings(
        database_url="sqlite://",
        session_jwt_secret="s",
        ai_provider="mock",
        paymongo_secret_key="sk",
        paymongo_webhook_secret="whsk",
    )
    assert settings.validate_required_config() == []
