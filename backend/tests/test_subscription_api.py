"""Subscription read endpoint and PayMongo checkout session creation."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from conftest import build_auth_header

from app.core.config import get_settings
from app.services import entitlement_service


def test_unknown_user_sees_trial_defaults_and_no_record(api_client, session_factory):
    resp = api_client.get("/api/v1/subscription", headers=build_auth_header("nobody@example.com"))

    assert resp.status_code == 200
    assert resp.json() == {
        "plan": "trial",
        "planName": "Free Trial",
        "scansUsed": 0,
        "scansLimit": 3,
        "isUnlimited": False,
        "priceInSmallestCurrencyUnit": 0,
        "currency": "PHP",
    }
    db = session_factory()
    try:
        assert entitlement_service.peek(db, "nobody@example.com") is None
    finally:
        db.close()


def test_starter_user_summary(api_client, session_factory):
    db = session_factory()
    entitlement_service.apply_plan_change(db, "tests@example.com", "starter", 30, now=datetime.now(timezone.utc))
    entitlement_service.record_usage(db, "tests@example.com")
    db.commit()
    db.close()

    body = api_client.get("/api/v1/subscription", headers=build_auth_header()).json()

    assert body["plan"] == "starter"
    assert body["planName"] == "Starter"
    assert body["scansUsed"] == 1
    assert body["scansLimit"] == 30
    assert body["priceInSmallestCurrencyUnit"] == 49900


def test_subscription_requires_auth(api_client):
    assert api_client.get("/api/v1/subscription").status_code == 401


@pytest.fixture
def paymongo_env(monkeypatch):
    monkeypatch.setenv("PAYMONGO_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("SITE_URL", "https://docscan.example.com")
    get_settings.cache_clear()


def _patched_paymongo(status_code=200, payload=None):
    captured: list[httpx.Request] = []
    real_client = httpx.AsyncClient
    if payload is None:
        payload = {"data": {"id": "cs_1", "attributes": {"checkout_url": "https://checkout.paymongo.com/cs_1"}}}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(status_code, json=payload)

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    return captured, patch("app.services.paymongo_client.httpx.AsyncClient", side_effect=factory)


def test_checkout_builds_paymongo_request(paymongo_env, api_client):
    captured, patcher = _patched_paymongo()
    with patcher:
        resp = api_client.post(
            "/api/v1/subscription/checkout", json={"plan": "starter"}, headers=build_auth_header()
        )

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.paymongo.com/cs_1"}

    request = captured[0]
    assert str(request.url) == "https://api.paymongo.com/v1/checkout_sessions"
    expected_auth = "Basic " + base64.b64encode(b"sk_test_123:").decode()
    assert request.headers["Authorization"] == expected_auth

    attributes = json.loads(request.content)["data"]["attributes"]
    assert attributes["metadata"] == {"user_email": "tests@example.com", "plan": "starter"}
    assert attributes["line_items"][0]["amount"] == 49900
    assert attributes["line_items"][0]["currency"] == "PHP"
    assert attributes["payment_method_types"] == ["card", "gcash", "paymaya", "grab_pay"]
    assert attributes["success_url"] == "https://docscan.example.com/payment/success?plan=starter"
    assert attributes["cancel_url"] == "https://docscan.example.com/payment/cancel"


@pytest.mark.parametrize("plan", ["trial", "gold", "free"])
def test_checkout_rejects_non_purchasable_plan(paymongo_env, api_client, plan):
    resp = api_client.post("/api/v1/subscription/checkout", json={"plan": plan}, headers=build_auth_header())
    assert resp.status_code == 400


def test_checkout_without_gateway_key_is_500(api_client, monkeypatch):
    monkeypatch.setenv("PAYMONGO_SECRET_KEY", "")
    get_settings.cache_clear()
    resp = api_client.post("/api/v1/subscription/checkout", json={"plan": "pro"}, headers=build_auth_header())
    assert resp.status_code == 500


def test_checkout_provider_error_is_502(paymongo_env, api_client):
    _, patcher = _patched_paymongo(status_code=422, payload={"errors": [{"code": "parameter_invalid"}]})
    with patcher:
        resp = api_client.post("/api/v1/subscription/checkout", json={"plan": "pro"}, headers=build_auth_header())
    assert resp.status_code == 502


def test_checkout_without_url_is_502_with_hidden_detail(paymongo_env, api_client, monkeypatch):
    from app import main as app_main

    monkeypatch.setattr(app_main.settings, "expose_error_details", False)
    _, patcher = _patched_paymongo(payload={"data": {"attributes": {}}})
    with patcher:
        resp = api_client.post("/api/v1/subscription/checkout", json={"plan": "pro"}, headers=build_auth_header())
    assert resp.status_code == 502
    assert resp.json()["detail"] == "Internal server error"


def test_checkout_error_detail_exposed_when_enabled(paymongo_env, api_client, monkeypatch):
    from app import main as app_main

    monkeypatch.setattr(app_main.settings, "expose_error_details", True)
    _, patcher = _patched_paymongo(payload={"data": {"attributes": {}}})
    with patcher:
        resp = api_client.post("/api/v1/subscription/checkout", json={"plan": "pro"}, headers=build_auth_header())
    assert resp.status_code == 502
    assert resp.json()["detail"] == "PayMongo returned no checkout URL"


@pytest.mark.parametrize(
    "payload",
    [
        {"data": [{"attributes": {"checkout_url": "https://checkout.paymongo.com/cs_1"}}]},
        {"data": {"attributes": ["https://checkout.paymongo.com/cs_1"]}},
        {"data": {"attributes": {"checkout_url": 42}}},
        ["unexpected"],
    ],
)
def test_checkout_unexpected_response_shape_is_502(paymongo_env, api_client, payload):
    _, patcher = _patched_paymongo(payload=payload)
    with patcher:
        resp = api_client.post("/api/v1/subscription/checkout", json={"plan": "pro"}, headers=build_auth_header())
    assert resp.status_code == 502
