"""Billing period arithmetic."""

import calendar as cal
from datetime import datetime

from duka_billing.models.plan import BillingCycle


def add_billing_cycle(dt: datetime, billing_cycle: str) -> datetime:
    """Add one billing cycle to a datetime."""
    if billing_cycle == BillingCycle.MONTHLY.value:
        return _add_months(dt, 1)
    elif billing_cycle == BillingCycle.ANNUAL.value:
        return _add_months(dt, 12)
    raise ValueError(f"Unknown billing cycle: {billing_cycle}")


def _add_months(dt: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to last day of month."""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(dt.day, max_day)
    return dt.replace(year=year, month=month, day=day)
