"""Subscription plan catalog.

Prices are in centavos (100 centavos = PHP 1.00). ``scans_limit == -1`` means
unlimited. Only ``monthly`` plans carry a billing cycle and are rolled over.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class PlanKey(StrEnum):
    TRIAL = "trial"
    STARTER = "starter"
    PRO = "pro"


UNLIMITED = -1
BILLING_CYCLE_DAYS = 30
CURRENCY = "PHP"


@dataclass(frozen=True)
class PlanDefinition:
    key: PlanKey
    name: str
    scans_limit: int
    monthly: bool
    price: int
    checkout_name: str = ""
    checkout_description: str = ""

    @property
    def is_unlimited(self) -> bool:
        return self.scans_limit == UNLIMITED

    @property
    def purchasable(self) -> bool:
        return self.price > 0


PLANS: dict[PlanKey, PlanDefinition] = {
    PlanKey.TRIAL: PlanDefinition(
        key=PlanKey.TRIAL,
        name="Free Trial",
        scans_limit=3,
        monthly=False,
        price=0,
    ),
    PlanKey.STARTER: PlanDefinition(
        key=PlanKey.STARTER,
        name="Starter",
        scans_limit=30,
        monthly=True,
        price=49900,
        checkout_name="DocScan AI — Starter Plan",
        checkout_description="30 document scans per 30-day billing cycle",
    ),
    PlanKey.PRO: PlanDefinition(
        key=PlanKey.PRO,
        name="Pro",
        scans_limit=UNLIMITED,
        monthly=True,
        price=149900,
        checkout_name="DocScan AI — Pro Plan",
        checkout_description="Unlimited document scans per 30-day billing cycle",
    ),
}

CYCLED_PLANS = frozenset(key.value for key, plan in PLANS.items() if plan.monthly)


def get_plan(key: str | None) -> PlanDefinition | None:
    try:
        return PLANS[PlanKey((key or "").strip().lower())]
    except ValueError:
        return None


def purchasable_plan(key: str | None) -> PlanDefinition | None:
    """Return the plan for *key* if it can be bought through checkout."""
    plan = get_plan(key)
    if plan is None or not plan.purchasable:
        return None
    return plan
