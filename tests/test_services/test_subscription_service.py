from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from tireplan.core.exceptions import FailedPreconditionError, InvalidArgumentError, NotFoundError
from tireplan.models import BillingCycle, PaymentHistory, PaymentStatus, SubscriptionPlan, SubscriptionStatus


@pytest.mark.asyncio
async def test_create_paid_plan_charges_first_period(service, store, gateway, clock, billing_key):
    result = await service.create("owner-1", "PRO", "MONTHLY", billing_key.id)

    subscription = store.get_subscription(result.subscription_id)
    assert subscription.plan is SubscriptionPlan.PRO
    assert subscription.status is SubscriptionStatus.ACTIVE
    assert subscription.current_period_start == clock.now
    assert subscription.current_period_end == datetime(2026, 2, 15, 2, 0)
    assert subscription.next_billing_date == subscription.current_period_end
    assert subscription.pending_order_id is None

    assert gateway.calls == [
        {
            "customer_key": "cust-1",
            "amount": 39000,
            "order_id": f"SUB-{subscription.id}-INIT",
            "description": "PRO Plan (MONTHLY)",
        }
    ]
    history = store.list_payment_history("owner-1")
    assert [entry.status for entry in history] == [PaymentStatus.SUCCESS]


@pytest.mark.asyncio
async def test_invalid_plan_or_cycle_is_rejected(service, billing_key):
    with pytest.raises(InvalidArgumentError):
        await service.create("owner-1", "PLATINUM", "MONTHLY", billing_key.id)
    with pytest.raises(InvalidArgumentError):
        await service.create("owner-1", "PRO", "WEEKLY", billing_key.id)


@pytest.mark.asyncio
async def test_paid_plan_requires_owned_billing_key(service, store, owner_subscriptions):
    with pytest.raises(FailedPreconditionError):
        await service.create("owner-1", "STARTER", "MONTHLY")

    foreign = store.add_billing_key("someone-else", customer_key="cust-x")
    with pytest.raises(FailedPreconditionError):
        await service.create("owner-1", "STARTER", "MONTHLY", foreign.id)
    assert owner_subscriptions("owner-1") == []


@pytest.mark.asyncio
async def test_declined_first_payment_rolls_back_new_subscription(
    service, store, gateway, billing_key, owner_subscriptions
):
    gateway.declines["cust-1"] = "Card declined"

    with pytest.raises(FailedPreconditionError) as excinfo:
        await service.create("owner-1", "PRO", "MONTHLY", billing_key.id)

    assert "Payment failed: Card declined" in str(excinfo.value)
    assert owner_subscriptions("owner-1") == []
    assert store.find_current_subscription("owner-1") is None


@pytest.mark.asyncio
async def test_repeated_create_does_not_duplicate(service, store, gateway, billing_key, owner_subscriptions):
    first = await service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)
    second = await service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)

    assert first.subscription_id == second.subscription_id
    assert len(owner_subscriptions("owner-1")) == 1
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_declined_first_charge_with_competing_change_leaves_nothing_charged(
    slow_service, slow_gateway, store, billing_key, owner_subscriptions
):
    slow_gateway.declines["cust-1"] = "Card declined"

    first, second = await asyncio.gather(
        slow_service.create("owner-1", "STARTER", "MONTHLY", billing_key.id),
        slow_service.create("owner-1", "PRO", "YEARLY", billing_key.id),
        return_exceptions=True,
    )

    assert isinstance(first, FailedPreconditionError)
    assert first.message == "Payment failed: Card declined"
    assert isinstance(second, FailedPreconditionError)
    assert second.message == "A plan change is already being processed"
    assert owner_subscriptions("owner-1") == []
    assert len(slow_gateway.calls) == 1
    assert [entry.status for entry in store.list_payment_history("owner-1")] == [PaymentStatus.FAILED]


@pytest.mark.asyncio
async def test_competing_change_during_first_charge_is_refused(
    slow_service, slow_gateway, store, billing_key, owner_subscriptions
):
    first, second = await asyncio.gather(
        slow_service.create("owner-1", "STARTER", "MONTHLY", billing_key.id),
        slow_service.create("owner-1", "PRO", "YEARLY", billing_key.id),
        return_exceptions=True,
    )

    assert first.message == "STARTER plan subscription started."
    assert isinstance(second, FailedPreconditionError)
    subscriptions = owner_subscriptions("owner-1")
    assert [s.id for s in subscriptions] == [first.subscription_id]
    assert subscriptions[0].plan is SubscriptionPlan.STARTER
    assert subscriptions[0].status is SubscriptionStatus.ACTIVE
    assert subscriptions[0].pending_order_id is None
    assert [call["amount"] for call in slow_gateway.calls] == [19900]


@pytest.mark.asyncio
async def test_double_submit_is_not_reported_active_before_payment(
    slow_service, slow_gateway, store, billing_key, owner_subscriptions
):
    slow_gateway.declines["cust-1"] = "Card declined"

    first, second = await asyncio.gather(
        slow_service.create("owner-1", "STARTER", "MONTHLY", billing_key.id),
        slow_service.create("owner-1", "STARTER", "MONTHLY", billing_key.id),
        return_exceptions=True,
    )

    assert isinstance(first, FailedPreconditionError)
    assert isinstance(second, FailedPreconditionError)
    assert second.message == "A plan change is already being processed"
    assert owner_subscriptions("owner-1") == []
    assert len(slow_gateway.calls) == 1


@pytest.mark.asyncio
async def test_double_submit_after_payment_settles_is_a_no_op(slow_service, slow_gateway, billing_key):
    first = await slow_service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)
    again = await slow_service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)

    assert again.subscription_id == first.subscription_id
    assert again.message == "STARTER plan is already active."
    assert len(slow_gateway.calls) == 1


@pytest.mark.asyncio
async def test_cancel_during_declined_first_charge_is_not_undone(
    slow_service, slow_gateway, store, billing_key, owner_subscriptions
):
    slow_gateway.declines["cust-1"] = "Card declined"

    created, canceled = await asyncio.gather(
        slow_service.create("owner-1", "PRO", "MONTHLY", billing_key.id),
        slow_service.cancel("owner-1"),
        return_exceptions=True,
    )

    assert isinstance(created, FailedPreconditionError)
    assert isinstance(canceled, str)
    subscriptions = owner_subscriptions("owner-1")
    assert len(subscriptions) == 1
    assert subscriptions[0].status is SubscriptionStatus.CANCELED


@pytest.mark.asyncio
async def test_abandoned_first_charge_can_be_taken_over(service, store, clock, billing_key):
    stale = store.upsert_current_subscription(
        "owner-1",
        {
            "plan": SubscriptionPlan.STARTER,
            "billing_cycle": BillingCycle.MONTHLY,
            "status": SubscriptionStatus.ACTIVE,
            "billing_key_id": billing_key.id,
            "current_period_start": clock.now,
            "current_period_end": datetime(2026, 2, 15, 2, 0),
            "next_billing_date": datetime(2026, 2, 15, 2, 0),
        },
        order_id_for=lambda subscription_id, is_new: f"SUB-{subscription_id}-INIT",
        now=clock.now,
    )

    clock.advance(minutes=1)
    with pytest.raises(FailedPreconditionError):
        await service.create("owner-1", "PRO", "MONTHLY", billing_key.id)

    clock.advance(hours=1)
    result = await service.create("owner-1", "PRO", "MONTHLY", billing_key.id)
    assert result.subscription_id == stale.subscription.id

    late = PaymentHistory(
        owner_id="owner-1",
        subscription_id=stale.subscription.id,
        billing_key_id=billing_key.id,
        order_id=stale.order_id,
        amount=19900,
        billing_cycle=BillingCycle.MONTHLY,
        status=PaymentStatus.FAILED,
        paid_at=clock.now,
    )
    assert store.settle_first_charge(late, None) is False

    subscription = store.get_subscription(result.subscription_id)
    assert subscription.plan is SubscriptionPlan.PRO
    assert subscription.status is SubscriptionStatus.ACTIVE
    assert subscription.pending_order_id is None


@pytest.mark.asyncio
async def test_upgrade_updates_in_place(service, store, gateway, clock, billing_key):
    first = await service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)
    clock.advance(days=3)

    upgraded = await service.create("owner-1", "ENTERPRISE", "YEARLY", billing_key.id)

    assert upgraded.subscription_id == first.subscription_id
    subscription = store.get_subscription(first.subscription_id)
    assert subscription.plan is SubscriptionPlan.ENTERPRISE
    assert subscription.billing_cycle is BillingCycle.YEARLY
    assert subscription.next_billing_date == datetime(2027, 1, 18, 2, 0)
    assert [call["amount"] for call in gateway.calls] == [19900, 890000]
    assert gateway.calls[1]["order_id"].endswith("-INIT")
    assert gateway.calls[1]["order_id"] != gateway.calls[0]["order_id"]


@pytest.mark.asyncio
async def test_declined_upgrade_restores_previous_plan(service, store, gateway, clock, billing_key):
    first = await service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)
    gateway.declines["cust-1"] = "Limit exceeded"
    clock.advance(days=1)

    with pytest.raises(FailedPreconditionError):
        await service.create("owner-1", "PRO", "MONTHLY", billing_key.id)

    subscription = store.get_subscription(first.subscription_id)
    assert subscription.plan is SubscriptionPlan.STARTER
    assert subscription.status is SubscriptionStatus.ACTIVE
    assert subscription.next_billing_date == datetime(2026, 2, 15, 2, 0)


@pytest.mark.asyncio
async def test_free_plan_needs_no_billing_key(service, store, gateway):
    result = await service.create("owner-1", "FREE", "MONTHLY")

    subscription = store.get_subscription(result.subscription_id)
    assert subscription.plan is SubscriptionPlan.FREE
    assert subscription.billing_key_id == ""
    assert gateway.calls == []
    assert not service.feature_enabled("owner-1", "taxInvoice")


@pytest.mark.asyncio
async def test_cancel_then_cancel_again(service, store, clock, billing_key):
    result = await service.create("owner-1", "PRO", "MONTHLY", billing_key.id)
    assert service.feature_enabled("owner-1", "multiStore")
    clock.advance(days=10)

    await service.cancel("owner-1")

    subscription = store.get_subscription(result.subscription_id)
    assert subscription.status is SubscriptionStatus.CANCELED
    assert subscription.canceled_at == clock.now
    assert len(store.list_payment_history("owner-1")) == 1
    assert not service.feature_enabled("owner-1", "multiStore")

    with pytest.raises(NotFoundError):
        await service.cancel("owner-1")


@pytest.mark.asyncio
async def test_new_subscription_after_cancel_is_a_new_record(
    service, store, billing_key, owner_subscriptions
):
    first = await service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)
    await service.cancel("owner-1")

    second = await service.create("owner-1", "STARTER", "MONTHLY", billing_key.id)

    assert second.subscription_id != first.subscription_id
    assert len(owner_subscriptions("owner-1")) == 2
    with pytest.raises(NotFoundError):
        service.current("owner-2")
