from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += date.resolution


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    first = date(year, month, 1)
    if month == 12:
        next_month = first.replace(year=year + 1, month=1)
    else:
        next_month = first.replace(month=month + 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month - date.resolution)


def resolve_period(
    year: Optional[int],
    month: Optional[int],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    if start or end:
        if not start or not end:
            raise ValueError("Custom range requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    today = today or date.today()
    return month_period(year or today.year, month or today.month)
