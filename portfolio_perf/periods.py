"""Trailing-period returns read off a performance series."""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Sequence

from .models import EPOCH, PerformancePoint, PeriodReturn, as_utc_datetime


class Period(str, Enum):
    ONE_WEEK = "1w"
    ONE_MONTH = "1m"
    THREE_MONTHS = "3m"
    YTD = "ytd"
    ONE_YEAR = "1y"
    FIVE_YEARS = "5y"
    ALL = "all"


def shift_months(value: datetime, months: int) -> datetime:
    # Day overflow rolls into the following month (Mar 31 - 1m -> Mar 3).
    total = value.year * 12 + (value.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    if value.day <= last_day:
        return value.replace(year=year, month=month)
    return value.replace(year=year, month=month, day=1) + timedelta(days=value.day - 1)


def subtract_period(value: datetime, period: Period) -> datetime:
    """Start date of ``period`` ending at ``value`` (UTC)."""

    value = as_utc_datetime(value)
    if period == Period.ONE_WEEK:
        return value - timedelta(days=7)
    if period == Period.ONE_MONTH:
        return shift_months(value, -1)
    if period == Period.THREE_MONTHS:
        return shift_months(value, -3)
    if period == Period.YTD:
        return datetime(value.year - 1, 12, 31, tzinfo=value.tzinfo)
    if period == Period.ONE_YEAR:
        return shift_months(value, -12)
    if period == Period.FIVE_YEARS:
        return shift_months(value, -60)
    if period == Period.ALL:
        return EPOCH
    raise ValueError(f"Unknown period: {period}")


def _baseline(points: Sequence[PerformancePoint], start: datetime) -> tuple[float, float]:
    """``(twr, gains_value)`` of the last point at or before ``start``.

    A start before the first point uses a virtual baseline of ``(1.0, 0.0)``.
    """

    if start < as_utc_datetime(points[0].date):
        return 1.0, 0.0
    found = points[0]
    for point in points:
        if as_utc_datetime(point.date) > start:
            break
        found = point
    return found.twr, found.gains_value


def period_return(points: Sequence[PerformancePoint], period: Period) -> PeriodReturn:
    if not points:
        return PeriodReturn()
    latest = points[-1]
    latest_date = as_utc_datetime(latest.date)
    start = subtract_period(latest_date, period)
    if start > latest_date:
        return PeriodReturn()
    start_twr, start_gains = _baseline(points, start)
    return PeriodReturn(
        perf=latest.twr / start_twr - 1,
        gain=latest.gains_value - start_gains,
    )


def extract_period_returns(points: Sequence[PerformancePoint]) -> Dict[Period, PeriodReturn]:
    """Return and gain for every standard period; all zeros for an empty series."""

    return {period: period_return(points, period) for period in Period}


_FLAT_NAMES = {
    Period.ONE_WEEK: "1w",
    Period.ONE_MONTH: "1m",
    Period.THREE_MONTHS: "3m",
    Period.YTD: "Ytd",
    Period.ONE_YEAR: "1y",
    Period.FIVE_YEARS: "5y",
    Period.ALL: "All",
}


def flatten_period_returns(returns: Dict[Period, PeriodReturn]) -> Dict[str, float]:
    """``{"perf1w": ..., "gain1w": ..., "perfYtd": ...}`` as consumed by dashboards."""

    flat: Dict[str, float] = {}
    for period, result in returns.items():
        suffix = _FLAT_NAMES[period]
        flat[f"perf{suffix}"] = result.perf
        flat[f"gain{suffix}"] = result.gain
    return flat


__all__ = [
    "Period",
    "extract_period_returns",
    "flatten_period_returns",
    "period_return",
    "shift_months",
    "subtract_period",
]
