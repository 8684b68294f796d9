"""
Single-subscription billing attempt.

One call charges the stored billing key for the plan price, appends a
payment-history entry and, in the same transaction, either rolls the period
forward or applies the dunning policy. Nothing raises past ``bill_one``.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Callable, Optional, Protocol

from tireplan.billing.dunning import DunningAction, DunningPolicy
from tireplan.billing.periods import next_period_end
from tireplan.billing.plans import order_name, price_of
from tireplan.core.exceptions import BillingKeyNotFound, PlanPriceNotFound
from tireplan.integrations.toss_payments import ChargeResult
from tireplan.models import PaymentHistory, PaymentStatus, Subscription, SubscriptionStatus, utcnow
from tireplan.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def charge(self, customer_key: str, amount: int, order_id: str, description: str) -> ChargeResult:
        ...


class BillingOutcome(str, enum.Enum):
    CHARGED = "CHARGED"
    DECLINED = "DECLINED"
    SUSPENDED = "SUSPENDED"
    RENEWED_FREE = "RENEWED_FREE"
    # Could not attempt payment (missing billing key, unpriced plan, row gone or no longer ACTIVE).
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


def scheduled_order_prefix(subscription: Subscription) -> str:
    return f"SUB-{subscription.id}-{subscription.next_billing_date:%Y%m%d}-"


def initial_order_id(subscription_id: str) -> str:
    return f"SUB-{subscription_id}-INIT"


class BillingWorker:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        policy: Optional[DunningPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.policy = policy or DunningPolicy()
        self.clock = clock

    async def bill_one(self, subscription_id: str) -> BillingOutcome:
        try:
            return await self._bill(subscription_id)
        except (PlanPriceNotFound, BillingKeyNotFound) as exc:
            logger.warning("Skipping billing for subscription %s: %s", subscription_id, exc)
            return BillingOutcome.SKIPPED
        except Exception:
            logger.exception("Error processing subscription billing for %s", subscription_id)
            return BillingOutcome.ERROR

    async def _bill(self, subscription_id: str) -> BillingOutcome:
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            logger.warning("Subscription %s vanished before billing", subscription_id)
            return BillingOutcome.SKIPPED
        if subscription.status != SubscriptionStatus.ACTIVE:
            logger.info("Subscription %s is %s; not billing", subscription_id, subscription.status.value)
            return BillingOutcome.SKIPPED

        amount = price_of(subscription.plan, subscription.billing_cycle)
        if amount == 0:
            return self._renew_free(subscription_id)

        billing_key = self.store.get_billing_key(subscription.billing_key_id)
        if billing_key is None:
            raise BillingKeyNotFound(f"Billing key not found: {subscription.billing_key_id!r}")

        prefix = scheduled_order_prefix(subscription)
        order_id = f"{prefix}{self.store.count_orders_with_prefix(prefix) + 1}"
        result = await self.gateway.charge(
            billing_key.customer_key,
            amount,
            order_id,
            order_name(subscription.plan, subscription.billing_cycle),
        )
        return self._record(subscription, order_id, amount, result)

    def _record(
        self, subscription: Subscription, order_id: str, amount: int, result: ChargeResult
    ) -> BillingOutcome:
        now = self.clock()
        with self.store.batch() as db:
            db.add(
                PaymentHistory(
                    owner_id=subscription.owner_id,
                    subscription_id=subscription.id,
                    billing_key_id=subscription.billing_key_id,
                    order_id=order_id,
                    amount=amount,
                    billing_cycle=subscription.billing_cycle,
                    status=PaymentStatus.SUCCESS if result.ok else PaymentStatus.FAILED,
                    failure_reason=result.reason,
                    paid_at=now,
                    next_retry_at=None if result.ok else self.policy.next_retry_at(now),
                    created_at=now,
                )
            )
            db.flush()

            locked = self.store.lock_subscription(db, subscription.id)
            if locked is None or locked.status != SubscriptionStatus.ACTIVE:
                # Canceled or removed while the charge was in flight; history stands.
                outcome = BillingOutcome.CHARGED if result.ok else BillingOutcome.DECLINED
            elif result.ok:
                period_end = next_period_end(now, locked.billing_cycle)
                locked.current_period_start = now
                locked.current_period_end = period_end
                locked.next_billing_date = period_end
                outcome = BillingOutcome.CHARGED
            else:
                statuses = self.store.recent_payment_statuses(db, locked.id, self.policy.failure_window)
                if self.policy.decide(statuses) is DunningAction.SUSPEND:
                    locked.status = SubscriptionStatus.SUSPENDED
                    outcome = BillingOutcome.SUSPENDED
                else:
                    outcome = BillingOutcome.DECLINED

        if outcome is BillingOutcome.CHARGED:
            logger.info("Billing successful for subscription %s (order %s)", subscription.id, order_id)
        elif outcome is BillingOutcome.SUSPENDED:
            logger.warning(
                "Subscription suspended after %s failed attempts: %s",
                self.policy.failure_window,
                subscription.id,
            )
        else:
            logger.warning("Billing failed for subscription %s: %s", subscription.id, result.reason)
        return outcome

    def _renew_free(self, subscription_id: str) -> BillingOutcome:
        now = self.clock()
        with self.store.batch() as db:
            locked = self.store.lock_subscription(db, subscription_id)
            if locked is None or locked.status != SubscriptionStatus.ACTIVE:
                return BillingOutcome.SKIPPED
            period_end = next_period_end(now, locked.billing_cycle)
            locked.current_period_start = now
            locked.current_period_end = period_end
            locked.next_billing_date = period_end
        logger.info("Free subscription %s rolled to %s", subscription_id, period_end.isoformat())
        return BillingOutcome.RENEWED_FREE
