"""
Calendar buckets used by the period aggregator.

A period is identified by (period_type, period_date) where period_date is the
first day of the bucket. Weeks start on Monday (ISO 8601), so the week
2024-W01 is keyed by 2024-01-01 and 2023-W52 by 2023-12-25.
"""
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Iterator, Optional, Tuple, Union


class PeriodType(str, Enum):
    DAY = 'day'
    WEEK = 'week'
    MONTH = 'month'
    YEAR = 'year'

    @property
    def pandas_freq(self) -> str:
        # W-SUN periods run Monday..Sunday
        return {'day': 'D', 'week': 'W-SUN', 'month': 'M', 'year': 'Y'}[self.value]


ALL_PERIOD_TYPES = tuple(PeriodType)


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def period_start(value: Union[date, datetime], period_type: PeriodType) -> date:
    """Returns the first day of the bucket containing `value`."""
    d = _as_date(value)
    period_type = PeriodType(period_type)

    if period_type is PeriodType.DAY:
        return d
    if period_type is PeriodType.WEEK:
        return d - timedelta(days=d.weekday())
    if period_type is PeriodType.MONTH:
        return d.replace(day=1)
    return d.replace(month=1, day=1)


def next_period_start(start: date, period_type: PeriodType) -> date:
    period_type = PeriodType(period_type)

    if period_type is PeriodType.DAY:
        return start + timedelta(days=1)
    if period_type is PeriodType.WEEK:
        return start + timedelta(days=7)
    if period_type is PeriodType.MONTH:
        if start.month == 12:
            return date(start.year + 1, 1, 1)
        return date(start.year, start.month + 1, 1)
    return date(start.year + 1, 1, 1)


def previous_period_start(start: date, period_type: PeriodType) -> date:
    """Start of the bucket immediately before the one starting at `start`."""
    return period_start(start - timedelta(days=1), period_type)


def period_range(start: date, period_type: PeriodType) -> Tuple[datetime, datetime]:
    """Half-open datetime range [start, end) covered by the bucket."""
    end = next_period_start(start, period_type)
    return (datetime.combine(start, datetime.min.time()),
            datetime.combine(end, datetime.min.time()))


def iter_period_starts(first: Union[date, datetime], last: Union[date, datetime],
                       period_type: PeriodType) -> Iterator[date]:
    """Yields every bucket start touching the closed interval [first, last]."""
    current = period_start(first, period_type)
    stop = period_start(last, period_type)
    while current <= stop:
        yield current
        current = next_period_start(current, period_type)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Calendar days in [start, end)."""
    current = start
    while current < end:
        yield current
        current += timedelta(days=1)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; offset-aware inputs are converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
