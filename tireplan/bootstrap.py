"""Builds the shared billing collaborators once per process."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy.engine import Engine

from tireplan.billing.dunning import DunningPolicy
from tireplan.config import Settings
from tireplan.database import build_engine, build_session_factory, init_db
from tireplan.integrations.toss_payments import TossPaymentsClient
from tireplan.services.billing_scheduler import BillingScheduler
from tireplan.services.billing_worker import BillingWorker, PaymentGateway
from tireplan.services.subscription_service import SubscriptionService
from tireplan.services.subscription_store import SubscriptionStore


@dataclass
class BillingComponents:
    engine: Engine
    store: SubscriptionStore
    gateway: PaymentGateway
    worker: BillingWorker
    service: SubscriptionService
    scheduler: BillingScheduler

    async def aclose(self) -> None:
        if isinstance(self.gateway, TossPaymentsClient):
            await self.gateway.aclose()
        self.engine.dispose()


def build_components(
    settings: Settings,
    engine: Optional[Engine] = None,
    gateway: Optional[PaymentGateway] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BillingComponents:
    engine = engine or build_engine(settings)
    init_db(engine)
    store = SubscriptionStore(build_session_factory(engine))
    if gateway is None:
        gateway = TossPaymentsClient(
            secret_key=settings.toss_payments_secret_key.get_secret_value(),
            base_url=settings.toss_payments_base_url,
            timeout=settings.payment_timeout_seconds,
            transport=transport,
        )
    policy = DunningPolicy(
        failure_window=settings.dunning_failure_window,
        retry_delay=timedelta(hours=settings.dunning_retry_hours),
    )
    worker = BillingWorker(store, gateway, policy=policy)
    service = SubscriptionService(store, gateway)
    scheduler = BillingScheduler(
        store,
        worker,
        schedule_cron=settings.billing_schedule_cron,
        tz_name=settings.billing_timezone,
        max_concurrency=settings.billing_max_concurrency,
    )
    return BillingComponents(
        engine=engine,
        store=store,
        gateway=gateway,
        worker=worker,
        service=service,
        scheduler=scheduler,
    )
