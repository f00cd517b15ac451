from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional, Union


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def bounds(self) -> tuple[datetime, datetime]:
        return datetime.combine(self.start, time.min), datetime.combine(
            self.end, time.max
        )


def utc_date(value: Union[date, datetime]) -> date:
    """Calendar date of ``value`` in UTC. Naive datetimes are taken as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def utc_day_bounds(value: Union[date, datetime]) -> tuple[datetime, datetime]:
    day = utc_date(value)
    return datetime.combine(day, time.min), datetime.combine(day, time.max)


def previous_month(today: Optional[date] = None) -> Period:
    today = today or datetime.now(timezone.utc).date()
    first_this = today.replace(day=1)
    last_month_end = first_this - date.resolution
    last_month_start = last_month_end.replace(day=1)
    return Period(last_month_start.strftime("%Y-%m"), last_month_start, last_month_end)
