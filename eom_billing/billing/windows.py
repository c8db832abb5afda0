"""
Billing window calculator.

A window runs from the cycle start day of one month to the day before the
cycle start day of the next month, both inclusive. Start days past the end
of a short month clamp to its last day, so consecutive windows always tile
the calendar with no gap and no shared date.
"""

import calendar
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, model_validator


class BillingWindow(BaseModel):
    start: date
    end: date

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_order(self):
        if self.end < self.start:
            raise ValueError(f"window end {self.end} precedes start {self.start}")
        return self

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def next(self, cycle_start_day: int) -> "BillingWindow":
        return window_for_date(self.end + timedelta(days=1), cycle_start_day)

    def previous(self, cycle_start_day: int) -> "BillingWindow":
        return window_for_date(self.start - timedelta(days=1), cycle_start_day)


def _cycle_start(month: date, cycle_start_day: int) -> date:
    last_day = calendar.monthrange(month.year, month.month)[1]
    return month.replace(day=min(cycle_start_day, last_day))


def _validate_cycle_start_day(cycle_start_day: int) -> None:
    if not 1 <= cycle_start_day <= 31:
        raise ValueError(f"cycle_start_day must be between 1 and 31, got {cycle_start_day}")


def window_for_date(local_date: date, cycle_start_day: int) -> BillingWindow:
    """Window containing a business-calendar date."""
    _validate_cycle_start_day(cycle_start_day)

    first_of_month = local_date.replace(day=1)
    start = _cycle_start(first_of_month, cycle_start_day)
    if local_date < start:
        start = _cycle_start(first_of_month - relativedelta(months=1), cycle_start_day)

    next_month = start.replace(day=1) + relativedelta(months=1)
    end = _cycle_start(next_month, cycle_start_day) - timedelta(days=1)
    return BillingWindow(start=start, end=end)


def to_business_date(reference_instant: datetime, business_timezone: str) -> date:
    """Calendar date of an instant in the business timezone."""
    if reference_instant.tzinfo is None or reference_instant.utcoffset() is None:
        raise ValueError("reference_instant must be timezone-aware")
    return reference_instant.astimezone(ZoneInfo(business_timezone)).date()


def compute_window(
    reference_instant: datetime,
    business_timezone: str,
    cycle_start_day: int,
) -> BillingWindow:
    """
    Map an instant to its billing window.

    The instant is interpreted in the business timezone, never the server's
    local zone, so an order placed at 23:30 local time on the 25th stays in
    the window that closes on the 25th.
    """
    local_date = to_business_date(reference_instant, business_timezone)
    return window_for_date(local_date, cycle_start_day)
