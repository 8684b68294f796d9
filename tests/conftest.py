import asyncio
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import select

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault('APP_ENV', 'test')
os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('SECRET_KEY', 'test-secret')
os.environ.setdefault('TOSS_PAYMENTS_SECRET_KEY', 'test_sk_x')
os.environ.setdefault('BILLING_SCHEDULER_ENABLED', 'false')

from tireplan.billing.dunning import DunningPolicy  # noqa: E402
from tireplan.config import get_settings  # noqa: E402
from tireplan.database import build_engine, build_session_factory, init_db  # noqa: E402
from tireplan.integrations.toss_payments import ChargeResult  # noqa: E402
from tireplan.models import (  # noqa: E402
    BillingCycle,
    PaymentHistory,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from tireplan.services.billing_scheduler import BillingScheduler  # noqa: E402
from tireplan.services.billing_worker import BillingWorker  # noqa: E402
from tireplan.services.subscription_service import SubscriptionService  # noqa: E402
from tireplan.services.subscription_store import SubscriptionStore  # noqa: E402


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Scripted payment gateway; customer keys listed in ``declines`` fail.

    With ``delay`` set, each charge yields to the event loop first, like a
    real network call, so concurrent callers interleave.
    """

    def __init__(self, delay=None):
        self.calls = []
        self.declines = {}
        self.on_charge = None
        self.delay = delay

    async def charge(self, customer_key, amount, order_id, description):
        self.calls.append(
            {"customer_key": customer_key, "amount": amount, "order_id": order_id, "description": description}
        )
        if self.delay is not None:
            await asyncio.sleep(self.delay)
        if self.on_charge:
            self.on_charge(order_id)
        if customer_key in self.declines:
            return ChargeResult.failed(self.declines[customer_key], http_status=400)
        return ChargeResult.success(payment_key=f"pay-{order_id}")


@pytest.fixture
def settings():
    return get_settings().model_copy(update={"database_url": "sqlite://"})


@pytest.fixture
def engine(settings):
    engine = build_engine(settings)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return SubscriptionStore(build_session_factory(engine))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 2, 0))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def slow_gateway():
    return FakeGateway(delay=0.01)


@pytest.fixture
def worker(store, gateway, clock):
    return BillingWorker(store, gateway, policy=DunningPolicy(), clock=clock)


@pytest.fixture
def service(store, gateway, clock):
    return SubscriptionService(store, gateway, clock=clock)


@pytest.fixture
def slow_service(store, slow_gateway, clock):
    return SubscriptionService(store, slow_gateway, clock=clock)


@pytest.fixture
def scheduler(store, worker, clock):
    return BillingScheduler(store, worker, schedule_cron="0 2 * * *", tz_name="Asia/Seoul", clock=clock)


@pytest.fixture
def billing_key(store):
    return store.add_billing_key("owner-1", customer_key="cust-1", card_number="1234-****-****-5678", card_company="Hyundai")


@pytest.fixture
def make_subscription(store, clock):
    def _make(
        owner_id="owner-1",
        plan=SubscriptionPlan.STARTER,
        cycle=BillingCycle.MONTHLY,
        billing_key_id="",
        next_billing_date=None,
        status=SubscriptionStatus.ACTIVE,
    ):
        due = next_billing_date or clock.now - timedelta(hours=2)
        change = store.upsert_current_subscription(
            owner_id,
            {
                "plan": plan,
                "billing_cycle": cycle,
                "status": status,
                "billing_key_id": billing_key_id,
                "current_period_start": due - timedelta(days=31),
                "current_period_end": due,
                "next_billing_date": due,
            },
        )
        return change.subscription

    return _make


@pytest.fixture
def owner_subscriptions(store):
    """Every subscription row of an owner, current or not."""

    def _list(owner_id):
        with store.batch() as db:
            return list(db.execute(select(Subscription).where(Subscription.owner_id == owner_id)).scalars())

    return _list


@pytest.fixture
def subscription_payments(store):
    """Payment history of one subscription, newest first."""

    def _list(subscription_id):
        stmt = (
            select(PaymentHistory)
            .where(PaymentHistory.subscription_id == subscription_id)
            .order_by(PaymentHistory.created_at.desc())
        )
        with store.batch() as db:
            return list(db.execute(stmt).scalars())

    return _list
