"""PayMongo hosted checkout sessions."""

from __future__ import annotations

import base64
import logging
from typing import Any, Optional

import httpx

from app.core.config import get_settings
from app.services.plans import CURRENCY, PlanDefinition

logger = logging.getLogger(__name__)

PAYMENT_METHOD_TYPES = ["card", "gcash", "paymaya", "grab_pay"]


class CheckoutError(Exception):
    """PayMongo rejected the request or returned no checkout URL."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _basic_auth(secret_key: str) -> str:
    token = base64.b64encode(f"{secret_key}:".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def build_checkout_payload(
    *,
    user_email: str,
    user_name: Optional[str],
    plan: PlanDefinition,
    site_url: str,
) -> dict[str, Any]:
    site = site_url.rstrip("/")
    return {
        "data": {
            "attributes": {
                "send_email_receipt": True,
                "show_description": True,
                "show_line_items": True,
                "description": plan.checkout_description,
                "line_items": [
                    {
                        "currency": CURRENCY,
                        "amount": plan.price,
                        "name": plan.checkout_name,
                        "description": plan.checkout_description,
                        "quantity": 1,
                    }
                ],
                "payment_method_types": list(PAYMENT_METHOD_TYPES),
                "success_url": f"{site}/payment/success?plan={plan.key.value}",
                "cancel_url": f"{site}/payment/cancel",
                "metadata": {
                    "user_email": user_email,
                    "plan": plan.key.value,
                },
                "billing": {
                    "name": user_name or user_email,
                    "email": user_email,
                },
            }
        }
    }


def _checkout_url(data: Any) -> Optional[str]:
    for key in ("data", "attributes", "checkout_url"):
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data if isinstance(data, str) and data else None


async def create_checkout_session(
    user_email: str,
    user_name: Optional[str],
    plan: PlanDefinition,
) -> str:
    """Create a checkout session and return its hosted URL.

    Raises ``CheckoutError`` on a non-2xx reply or a reply without
    ``checkout_url``. Transport errors propagate as ``httpx.HTTPError``.
    """
    settings = get_settings()
    payload = build_checkout_payload(
        user_email=user_email,
        user_name=user_name,
        plan=plan,
        site_url=settings.site_url,
    )
    url = f"{settings.paymongo_api_base.rstrip('/')}/checkout_sessions"

    async with httpx.AsyncClient(timeout=settings.paymongo_timeout_seconds) as client:
        resp = await client.post(
            url,
            headers={
                "Authorization": _basic_auth(settings.paymongo_secret_key),
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            json=payload,
        )

    if resp.status_code >= 400:
        logger.error("PayMongo checkout failed: status=%s body=%s", resp.status_code, resp.text[:500])
        raise CheckoutError("Failed to create checkout session", status_code=resp.status_code)

    try:
        data = resp.json()
    except ValueError:
        data = {}
    checkout_url = _checkout_url(data)
    if not checkout_url:
        logger.error("PayMongo checkout returned no checkout_url")
        raise CheckoutError("PayMongo returned no checkout URL", status_code=resp.status_code)

    logger.info("PayMongo checkout session created for plan=%s", plan.key.value)
    return str(checkout_url)
