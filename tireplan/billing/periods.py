from __future__ import annotations

from datetime import datetime

from dateutil.relativedelta import relativedelta

from tireplan.models import BillingCycle

_CYCLE_STEP = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.YEARLY: relativedelta(years=1),
}


def next_period_end(start: datetime, cycle: BillingCycle | str) -> datetime:
    """Roll ``start`` forward by one billing cycle.

    Day-of-month overflow clamps to the last day of the target month, so
    Jan 31 rolls to Feb 28 (Feb 29 in leap years) and Feb 29 rolls to Feb 28
    of a non-leap year. Time of day is preserved.
    """
    return start + _CYCLE_STEP[BillingCycle(cycle)]
