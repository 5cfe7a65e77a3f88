"""
Spend forecasting from the current run rate.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ai_reliability_guard.storage.models import UsageCounters

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class SpendForecast:
    """Projected end-of-day and end-of-month spend."""
    daily_spent: float
    projected_daily: float
    monthly_spent: float
    projected_monthly: float
    daily_limit: Optional[float] = None
    monthly_limit: Optional[float] = None

    @property
    def daily_over_limit(self) -> bool:
        return self.daily_limit is not None and self.projected_daily > self.daily_limit

    @property
    def monthly_over_limit(self) -> bool:
        return self.monthly_limit is not None and self.projected_monthly > self.monthly_limit


def forecast_spend(
    counters: UsageCounters,
    now: datetime,
    daily_limit: Optional[float] = None,
    monthly_limit: Optional[float] = None
) -> SpendForecast:
    """Extrapolate current spend linearly to the end of the day and month.

    Args:
        counters: Current tenant-wide usage counters
        now: Current local time
        daily_limit: Optional daily cost limit to compare against
        monthly_limit: Optional monthly cost limit to compare against
    """
    seconds_today = now.hour * 3600 + now.minute * 60 + now.second
    day_fraction = max(seconds_today / SECONDS_PER_DAY, 1 / 24)
    daily_spent = float(counters.daily_cost_spent)
    monthly_spent = float(counters.monthly_cost_spent)
    projected_daily = daily_spent / day_fraction

    days_in_month = calendar.monthrange(now.year, now.month)[1]
    month_fraction = (now.day - 1 + day_fraction) / days_in_month
    projected_monthly = monthly_spent / month_fraction

    return SpendForecast(
        daily_spent=daily_spent,
        projected_daily=round(projected_daily, 6),
        monthly_spent=monthly_spent,
        projected_monthly=round(projected_monthly, 6),
        daily_limit=daily_limit,
        monthly_limit=monthly_limit
    )
