import os
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import rate_limiter

TEST_EMAIL = "tests@example.com"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (e.g. with a different JWT secret) across tests.
    get_settings.cache_clear()
    rate_limiter.reset()
    alert_tracker.reset()
    yield
    get_settings.cache_clear()
    rate_limiter.reset()
    alert_tracker.reset()


def build_sqlite_engine():
    # One shared connection so every session (and TestClient's worker threads)
    # sees the same in-memory database.
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture
def engine():
    from app.models.account import Base

    built = build_sqlite_engine()
    Base.metadata.create_all(built)
    yield built
    Base.metadata.drop_all(built)
    built.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def mint_session_token(email: str = TEST_EMAIL, *, secret: str, audience: str | None = None, expires_in: int = 3600) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": "user-" + email.split("@", 1)[0],
        "email": email,
        "name": "Test User",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    if audience:
        payload["aud"] = audience
    return jwt.encode(payload, secret, algorithm="HS256")


def build_auth_header(email: str = TEST_EMAIL) -> dict:
    """Build auth headers.

    When SESSION_JWT_SECRET is set, mint a real JWT.
    Otherwise, use X-Test-Email consumed by the dependency override.
    """
    secret = os.getenv("SESSION_JWT_SECRET")
    if not secret:
        return {"X-Test-Email": email}
    token = mint_session_token(email, secret=secret, audience=os.getenv("SESSION_JWT_AUDIENCE") or None)
    return {"Authorization": f"Bearer {token}"}


def install_test_auth_override(app) -> None:
    """Read the caller from X-Test-Email; requests without it stay unauthenticated."""
    from fastapi import HTTPException, Request

    from app.core.auth import CurrentUser, get_current_user

    def _test_get_current_user(request: Request):
        email = (request.headers.get("x-test-email") or "").strip().lower()
        if not email:
            raise HTTPException(401, "Unauthorized")
        return CurrentUser(id=email, email=email, name="Test User")

    app.dependency_overrides[get_current_user] = _test_get_current_user


@pytest.fixture
def api_client(session_factory):
    """TestClient bound to the in-memory database with header-based auth."""
    from fastapi.testclient import TestClient

    from app.core.dependencies import get_db
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    if not os.getenv("SESSION_JWT_SECRET"):
        install_test_auth_override(app)

    # Not used as a context manager: startup jobs stay off in unit tests.
    client = TestClient(app, raise_server_exceptions=False)
    try:
        yield client
    finally:
        client.close()
        app.dependency_overrides.clear()
