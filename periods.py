from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_bounds(day: date) -> tuple[date, date]:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return first, next_month - date.resolution


def current_month(today: date) -> Period:
    start, end = month_bounds(today)
    return Period("this_month", start, end)


def previous_month(today: date) -> Period:
    last_month_end = today.replace(day=1) - date.resolution
    return Period("last_month", last_month_end.replace(day=1), last_month_end)


def trailing_week(today: date) -> Period:
    """The seven full days before ``today``."""
    return Period("last_7_days", today - timedelta(days=7), today - date.resolution)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        return previous_month(today)
    if period == "last_7_days":
        return trailing_week(today)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    return current_month(today)
