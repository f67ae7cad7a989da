"""Subscription endpoints: plan summary and PayMongo checkout."""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user
from app.core.config import get_settings
from app.core.dependencies import get_db
from app.schemas.subscription import CheckoutRequest, CheckoutResponse, SubscriptionOut
from app.services import entitlement_service
from app.services.paymongo_client import CheckoutError, create_checkout_session
from app.services.plans import purchasable_plan

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/subscription", response_model=SubscriptionOut)
def get_subscription(
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    summary = entitlement_service.describe(db, current_user.id)
    # A due rollover may have been applied while reading.
    db.commit()
    return SubscriptionOut(**summary)


@router.post("/subscription/checkout", response_model=CheckoutResponse)
async def create_checkout(
    payload: CheckoutRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    plan = purchasable_plan(payload.plan)
    if plan is None:
        raise HTTPException(400, "Invalid plan")

    settings = get_settings()
    if not settings.paymongo_secret_key:
        raise HTTPException(500, "Payment gateway not configured")

    try:
        url = await create_checkout_session(current_user.email, current_user.name, plan)
    except CheckoutError as exc:
        raise HTTPException(502, exc.message) from exc
    except httpx.HTTPError as exc:
        logger.error("PayMongo checkout transport error: %s", exc)
        raise HTTPException(500, "Failed to create checkout session") from exc

    return CheckoutResponse(url=url)
