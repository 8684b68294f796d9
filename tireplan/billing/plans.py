"""
Plan catalog: static prices and the feature matrix per plan.

Prices are integer amounts in KRW (no minor unit).
"""
from __future__ import annotations

from typing import Dict

from tireplan.core.exceptions import PlanPriceNotFound
from tireplan.models import BillingCycle, SubscriptionPlan

FREE_PLAN = SubscriptionPlan.FREE

PLAN_PRICES: Dict[SubscriptionPlan, Dict[BillingCycle, int]] = {
    SubscriptionPlan.FREE: {BillingCycle.MONTHLY: 0, BillingCycle.YEARLY: 0},
    SubscriptionPlan.STARTER: {BillingCycle.MONTHLY: 19900, BillingCycle.YEARLY: 199000},
    SubscriptionPlan.PRO: {BillingCycle.MONTHLY: 39000, BillingCycle.YEARLY: 390000},
    SubscriptionPlan.ENTERPRISE: {BillingCycle.MONTHLY: 89000, BillingCycle.YEARLY: 890000},
}

PLAN_FEATURES: Dict[SubscriptionPlan, Dict[str, bool]] = {
    SubscriptionPlan.FREE: {
        "taxInvoice": False,
        "advancedAnalytics": False,
        "staffManagement": False,
        "multiStore": False,
        "reservationSystem": False,
        "leaveManagement": False,
    },
    SubscriptionPlan.STARTER: {
        "taxInvoice": True,
        "advancedAnalytics": False,
        "staffManagement": True,
        "multiStore": False,
        "reservationSystem": False,
        "leaveManagement": False,
    },
    SubscriptionPlan.PRO: {
        "taxInvoice": True,
        "advancedAnalytics": True,
        "staffManagement": True,
        "multiStore": True,
        "reservationSystem": True,
        "leaveManagement": False,
    },
    SubscriptionPlan.ENTERPRISE: {
        "taxInvoice": True,
        "advancedAnalytics": True,
        "staffManagement": True,
        "multiStore": True,
        "reservationSystem": True,
        "leaveManagement": True,
    },
}


def price_of(plan: SubscriptionPlan | str, cycle: BillingCycle | str) -> int:
    """Return the charge amount for a plan/cycle pair.

    Raises PlanPriceNotFound for any pair missing from the catalog; only the
    free tier is priced at zero.
    """
    try:
        return PLAN_PRICES[SubscriptionPlan(plan)][BillingCycle(cycle)]
    except (KeyError, ValueError):
        raise PlanPriceNotFound(f"Invalid plan or billing cycle: {plan} {cycle}") from None


def is_free(plan: SubscriptionPlan | str) -> bool:
    return SubscriptionPlan(plan) is FREE_PLAN


def has_feature(plan: SubscriptionPlan | str, feature: str) -> bool:
    return PLAN_FEATURES.get(SubscriptionPlan(plan), {}).get(feature, False)


def order_name(plan: SubscriptionPlan, cycle: BillingCycle) -> str:
    return f"{plan.value} Plan ({cycle.value})"
