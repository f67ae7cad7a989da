from __future__ import annotations

from pydantic import BaseModel, Field

from app.schemas.scan import CamelModel


class SubscriptionOut(CamelModel):
    plan: str
    plan_name: str
    scans_used: int
    scans_limit: int
    is_unlimited: bool
    price_in_smallest_currency_unit: int
    currency: str


class CheckoutRequest(BaseModel):
    plan: str = Field(..., min_length=1, max_length=32)


class CheckoutResponse(BaseModel):
    url: str
