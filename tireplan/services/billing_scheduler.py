"""
In-process daily billing trigger.

Sleeps until the next cron fire time in the billing time zone, then bills
every ACTIVE subscription due by the end of that local day. Re-running a pass
for the same day is harmless: successful charges have already moved the
next billing date past the cutoff.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Dict, Optional, Set
from zoneinfo import ZoneInfo

from croniter import croniter

from tireplan.models import utcnow
from tireplan.services.billing_worker import BillingOutcome, BillingWorker
from tireplan.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class BillingScheduler:
    """Runs the daily billing pass on a cron schedule."""

    def __init__(
        self,
        store: SubscriptionStore,
        worker: BillingWorker,
        schedule_cron: str = "0 2 * * *",
        tz_name: str = "Asia/Seoul",
        max_concurrency: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.worker = worker
        self.schedule_cron = schedule_cron
        self.tz = ZoneInfo(tz_name)
        self.max_concurrency = max_concurrency
        self.clock = clock
        self.last_run_at: Optional[datetime] = None
        self.last_outcomes: Dict[str, int] = {}
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._running_subscription_ids: Set[str] = set()

    def start(self) -> None:
        """Start scheduler loop as background task."""
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("BillingScheduler started (cron=%r, tz=%s)", self.schedule_cron, self.tz.key)

    async def stop(self) -> None:
        """Stop scheduler loop and wait for completion."""
        self._stop_event.set()
        if self._task:
            await self._task
        logger.info("BillingScheduler stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            now = self.clock()
            next_run = self.next_run_at(now)
            delay = max((next_run - self._localize(now)).total_seconds(), 0.0)
            logger.info("Next billing pass at %s", next_run.isoformat())
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("Daily billing pass failed: %s", exc)

    def _localize(self, now: datetime) -> datetime:
        return now.replace(tzinfo=timezone.utc).astimezone(self.tz)

    def next_run_at(self, now: datetime) -> datetime:
        """Next fire time after ``now`` (naive UTC), as an aware local datetime."""
        return croniter(self.schedule_cron, self._localize(now)).get_next(datetime)

    def due_cutoff(self, now: datetime) -> datetime:
        """Start of the next local day, as naive UTC; anything before it is due today."""
        local_today = self._localize(now).date()
        next_midnight = datetime.combine(local_today + timedelta(days=1), time.min, tzinfo=self.tz)
        return next_midnight.astimezone(timezone.utc).replace(tzinfo=None)

    async def run_once(self, as_of: Optional[datetime] = None) -> int:
        """Bill every due subscription once; return how many were due."""
        now = as_of or self.clock()
        due_ids = self.store.due_subscription_ids(self.due_cutoff(now))
        logger.info("Found %s subscriptions due for billing", len(due_ids))

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bill(subscription_id: str) -> Optional[BillingOutcome]:
            if subscription_id in self._running_subscription_ids:
                logger.info("Subscription %s already being billed; skipping", subscription_id)
                return None
            self._running_subscription_ids.add(subscription_id)
            try:
                async with semaphore:
                    return await self.worker.bill_one(subscription_id)
            finally:
                self._running_subscription_ids.discard(subscription_id)

        outcomes = await asyncio.gather(*(_bill(subscription_id) for subscription_id in due_ids))

        counts = Counter(outcome.value for outcome in outcomes if outcome is not None)
        self.last_run_at = now
        self.last_outcomes = dict(counts)
        logger.info("Daily billing pass complete: processed=%s outcomes=%s", len(due_ids), self.last_outcomes)
        return len(due_ids)
