"""
Dunning policy: decide whether a failed subscription keeps retrying or is suspended.

A subscription is suspended when the most recent ``window`` payment attempts
all failed. Any success inside the window resets it.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from tireplan.models import PaymentStatus

DEFAULT_FAILURE_WINDOW = 3
DEFAULT_RETRY_DELAY = timedelta(hours=24)


class DunningAction(str, enum.Enum):
    RETRY = "RETRY"
    SUSPEND = "SUSPEND"


@dataclass(frozen=True)
class DunningPolicy:
    failure_window: int = DEFAULT_FAILURE_WINDOW
    retry_delay: timedelta = DEFAULT_RETRY_DELAY

    def next_retry_at(self, now: datetime) -> datetime:
        # Informational only; the daily pass re-evaluates every due subscription.
        return now + self.retry_delay

    def decide(self, recent_statuses: Sequence[PaymentStatus]) -> DunningAction:
        """Decide after a failed charge.

        ``recent_statuses`` is newest first and already includes the failure
        that was just recorded.
        """
        window = list(recent_statuses[: self.failure_window])
        if len(window) == self.failure_window and all(s == PaymentStatus.FAILED for s in window):
            return DunningAction.SUSPEND
        return DunningAction.RETRY
