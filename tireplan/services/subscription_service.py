"""
Subscription lifecycle: plan selection (create/upgrade/downgrade) and cancel.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from tireplan.billing.periods import next_period_end
from tireplan.billing.plans import has_feature, is_free, order_name, price_of
from tireplan.core.exceptions import FailedPreconditionError, InvalidArgumentError, NotFoundError
from tireplan.models import (
    BillingCycle,
    BillingKey,
    PaymentHistory,
    PaymentStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    utcnow,
)
from tireplan.services.billing_worker import PaymentGateway, initial_order_id
from tireplan.services.subscription_store import PlanChange, SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionResult:
    subscription_id: str
    message: str


def _parse_plan(plan: str) -> SubscriptionPlan:
    try:
        return SubscriptionPlan(plan)
    except ValueError:
        raise InvalidArgumentError("Invalid plan") from None


def _parse_cycle(cycle: str) -> BillingCycle:
    try:
        return BillingCycle(cycle)
    except ValueError:
        raise InvalidArgumentError("Invalid billing cycle") from None


def _first_order_id(subscription_id: str, is_new: bool, now: datetime) -> str:
    if is_new:
        return initial_order_id(subscription_id)
    return f"SUB-{subscription_id}-{now:%Y%m%d%H%M%S%f}-INIT"


class SubscriptionService:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock

    async def create(
        self,
        owner_id: str,
        plan: str,
        billing_cycle: str,
        billing_key_id: Optional[str] = None,
    ) -> SubscriptionResult:
        """Start or change the owner's subscription and take the first payment.

        An existing ACTIVE/INACTIVE subscription is updated in place. For paid
        plans the first charge happens immediately; if it is declined the
        change is rolled back and FailedPreconditionError is raised. While a
        first charge is in flight, further plan changes for the owner are
        refused with FailedPreconditionError.
        """
        selected_plan = _parse_plan(plan)
        cycle = _parse_cycle(billing_cycle)
        free = is_free(selected_plan)

        billing_key: Optional[BillingKey] = None
        if not free:
            if not billing_key_id:
                raise FailedPreconditionError("Billing key required for paid plans")
            billing_key = self.store.get_billing_key(billing_key_id)
            if billing_key is None or billing_key.owner_id != owner_id:
                raise FailedPreconditionError("Billing key not found")
        amount = price_of(selected_plan, cycle)
        charge_now = billing_key is not None and amount > 0

        now = self.clock()
        period_end = next_period_end(now, cycle)
        change = self.store.upsert_current_subscription(
            owner_id,
            {
                "plan": selected_plan,
                "billing_cycle": cycle,
                "status": SubscriptionStatus.ACTIVE,
                "billing_key_id": billing_key_id or "",
                "current_period_start": now,
                "current_period_end": period_end,
                "next_billing_date": period_end,
                "canceled_at": None,
            },
            order_id_for=(lambda sub_id, is_new: _first_order_id(sub_id, is_new, now)) if charge_now else None,
            now=now,
        )
        subscription = change.subscription
        if change.unchanged:
            logger.info("Owner %s re-selected current plan; subscription %s unchanged", owner_id, subscription.id)
            return SubscriptionResult(subscription.id, f"{selected_plan.value} plan is already active.")

        if change.order_id is not None:
            await self._charge_first_period(subscription, billing_key, amount, change)

        return SubscriptionResult(subscription.id, f"{selected_plan.value} plan subscription started.")

    async def _charge_first_period(
        self,
        subscription: Subscription,
        billing_key: BillingKey,
        amount: int,
        change: PlanChange,
    ) -> None:
        order_id = change.order_id
        result = await self.gateway.charge(
            billing_key.customer_key,
            amount,
            order_id,
            order_name(subscription.plan, subscription.billing_cycle),
        )
        now = self.clock()
        settled = self.store.settle_first_charge(
            PaymentHistory(
                owner_id=subscription.owner_id,
                subscription_id=subscription.id,
                billing_key_id=billing_key.id,
                order_id=order_id,
                amount=amount,
                billing_cycle=subscription.billing_cycle,
                status=PaymentStatus.SUCCESS if result.ok else PaymentStatus.FAILED,
                failure_reason=result.reason,
                paid_at=now,
                created_at=now,
            ),
            change.previous,
        )
        if not settled:
            logger.warning(
                "Subscription %s changed while order %s was in flight; left as is", subscription.id, order_id
            )
        if result.ok:
            logger.info("First payment succeeded for subscription %s (order %s)", subscription.id, order_id)
            return

        logger.warning("First payment failed for subscription %s: %s", subscription.id, result.reason)
        raise FailedPreconditionError(f"Payment failed: {result.reason}")

    async def cancel(self, owner_id: str) -> str:
        subscription = self.store.cancel_active_subscription(owner_id, self.clock())
        if subscription is None:
            raise NotFoundError("No active subscription found")
        logger.info("Subscription canceled: %s", subscription.id)
        return "Subscription canceled. The store moves to the free plan."

    def current(self, owner_id: str) -> Subscription:
        subscription = self.store.find_current_subscription(owner_id)
        if subscription is None:
            raise NotFoundError("No current subscription")
        return subscription

    def payment_history(self, owner_id: str) -> List[PaymentHistory]:
        return self.store.list_payment_history(owner_id)

    def billing_keys(self, owner_id: str) -> List[BillingKey]:
        return self.store.list_billing_keys(owner_id)

    def feature_enabled(self, owner_id: str, feature: str) -> bool:
        subscription = self.store.find_current_subscription(owner_id)
        if subscription is None:
            return False
        return has_feature(subscription.plan, feature)
