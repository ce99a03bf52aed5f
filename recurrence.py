import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Optional, Union

from models import RecurringPeriod, Transaction, TransactionType

logger = logging.getLogger(__name__)

# Upper bound on dates emitted by one series walk.
MAX_OCCURRENCES = 50_000


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def _normalize_period(period: Union[RecurringPeriod, str, None]) -> Optional[str]:
    if period is None:
        return None
    value = getattr(period, "value", period)
    return str(value).strip().lower()


def add_interval(
    base: date, interval: int, period: Union[RecurringPeriod, str, None]
) -> date:
    """Step ``base`` by ``interval`` periods.

    Month and year steps clamp to the last day of the target month
    (Jan 31 + 1 month is Feb 28/29). An unrecognized period returns ``base``
    unchanged.
    """
    unit = _normalize_period(period)
    if unit == RecurringPeriod.days.value:
        return base + timedelta(days=interval)
    if unit == RecurringPeriod.weeks.value:
        return base + timedelta(days=interval * 7)
    if unit == RecurringPeriod.months.value:
        return _add_months(base, interval)
    if unit == RecurringPeriod.years.value:
        return _add_months(base, 12 * interval)
    return base


def subtract_interval(
    base: date, interval: int, period: Union[RecurringPeriod, str, None]
) -> date:
    return add_interval(base, -interval, period)


@dataclass(frozen=True)
class LayerVisibility:
    active_layer_ids: frozenset[int] = field(default_factory=frozenset)
    default_layer_active: bool = True

    def is_visible(self, txn: Transaction) -> bool:
        if txn.layer_id is None:
            return self.default_layer_active
        return txn.layer_id in self.active_layer_ids


@dataclass(frozen=True)
class ConcreteTransaction:
    id: int
    occurrence_key: str
    account_id: int
    date: date
    amount_cents: int
    description: str
    color: Optional[str]
    type: TransactionType
    layer_id: Optional[int]
    is_recurring: bool
    is_exception: bool
    is_generated: bool
    parent_recurring_item_id: Optional[int] = None
    original_date: Optional[date] = None
    recurring_interval: Optional[int] = None
    recurring_period: Optional[RecurringPeriod] = None
    recurring_start_date: Optional[date] = None
    recurring_end_date: Optional[date] = None

    @property
    def signed_amount_cents(self) -> int:
        if self.type == TransactionType.credit:
            return self.amount_cents
        return -self.amount_cents

    @classmethod
    def from_row(cls, txn: Transaction) -> "ConcreteTransaction":
        parent_id = txn.parent_recurring_item_id
        if txn.is_recurring:
            parent_id = txn.id
        return cls(
            id=txn.id,
            occurrence_key=str(txn.id),
            account_id=txn.account_id,
            date=txn.date,
            amount_cents=txn.amount_cents,
            description=txn.description or "",
            color=txn.color,
            type=txn.type,
            layer_id=txn.layer_id,
            is_recurring=bool(txn.is_recurring),
            is_exception=bool(txn.is_exception),
            is_generated=False,
            parent_recurring_item_id=parent_id,
            original_date=txn.original_date,
            recurring_interval=txn.recurring_interval,
            recurring_period=txn.recurring_period,
            recurring_start_date=txn.recurring_start_date,
            recurring_end_date=txn.recurring_end_date,
        )

    @classmethod
    def occurrence_of(cls, series: Transaction, on: date) -> "ConcreteTransaction":
        return cls(
            id=series.id,
            occurrence_key=f"{series.id}:{on.isoformat()}",
            account_id=series.account_id,
            date=on,
            amount_cents=series.amount_cents,
            description=series.description or "",
            color=series.color,
            type=series.type,
            layer_id=series.layer_id,
            is_recurring=True,
            is_exception=False,
            is_generated=True,
            parent_recurring_item_id=series.id,
            recurring_interval=series.recurring_interval,
            recurring_period=series.recurring_period,
            recurring_start_date=series.recurring_start_date,
            recurring_end_date=series.recurring_end_date,
        )


def exception_dates_by_parent(
    transactions: Iterable[Transaction],
) -> dict[int, set[date]]:
    """Map each series id to the occurrence dates its exceptions replace.

    Edit and deletion exceptions both suppress the generated occurrence.
    """
    result: dict[int, set[date]] = {}
    for txn in transactions:
        if not txn.is_exception or txn.parent_recurring_item_id is None:
            continue
        if txn.original_date is None:
            continue
        result.setdefault(txn.parent_recurring_item_id, set()).add(txn.original_date)
    return result


def occurrence_dates(series: Transaction, start: date, end: date) -> list[date]:
    """Dates the series steps through inside ``[start, end]``.

    The walk starts at the series start (or anchor date) and stops past
    ``end`` or past the inclusive ``recurring_end_date``.
    """
    anchor = series.recurring_start_date or series.date
    end_date = series.recurring_end_date
    interval = series.recurring_interval or 0
    if interval <= 0:
        return []
    if anchor > end or (end_date is not None and end_date < start):
        return []

    current = _fast_forward(anchor, interval, series.recurring_period, start)
    dates: list[date] = []
    while current <= end:
        if end_date is not None and current > end_date:
            break
        if current >= start:
            dates.append(current)
        if len(dates) >= MAX_OCCURRENCES:
            logger.warning(
                f"recurrence_capped: series_id={series.id} "
                f"limit={MAX_OCCURRENCES} date={current.isoformat()}"
            )
            break
        try:
            next_date = add_interval(current, interval, series.recurring_period)
        except (OverflowError, ValueError):
            logger.warning(
                f"recurrence_out_of_range: series_id={series.id} "
                f"interval={interval} date={current.isoformat()}"
            )
            break
        if next_date <= current:
            logger.warning(
                f"recurrence_stalled: series_id={series.id} "
                f"period={series.recurring_period!r} date={current.isoformat()}"
            )
            break
        current = next_date
    return dates


def _fast_forward(
    anchor: date, interval: int, period: Union[RecurringPeriod, str, None], start: date
) -> date:
    """Jump a day or week series to its last step on or before ``start``.

    Month and year steps clamp at month ends, so they are walked one by one.
    """
    unit = _normalize_period(period)
    if unit == RecurringPeriod.days.value:
        step_days = interval
    elif unit == RecurringPeriod.weeks.value:
        step_days = interval * 7
    else:
        return anchor
    gap = (start - anchor).days
    if gap <= 0:
        return anchor
    return anchor + timedelta(days=(gap // step_days) * step_days)


def generate_recurring(
    transactions: Iterable[Transaction],
    start: date,
    end: date,
    visibility: LayerVisibility,
) -> list[ConcreteTransaction]:
    """Materialize recurring series and their exceptions for ``[start, end]``.

    Anchor rows are emitted as themselves, stepped dates become generated
    occurrences, and non-deletion exceptions in range are appended. Exception
    suppression ignores layer visibility; emission honours it.
    """
    rows = list(transactions)
    suppressed = exception_dates_by_parent(rows)
    generated: list[ConcreteTransaction] = []

    for series in rows:
        if not series.is_recurring or not visibility.is_visible(series):
            continue
        anchor = series.recurring_start_date or series.date
        end_date = series.recurring_end_date
        if anchor > end:
            continue
        if end_date is not None and end_date < start:
            continue

        skip = suppressed.get(series.id, set())
        if (
            start <= series.date <= end
            and series.date not in skip
            and not (end_date is not None and end_date < series.date)
        ):
            generated.append(ConcreteTransaction.from_row(series))

        for on in occurrence_dates(series, start, end):
            if on == series.date or on in skip:
                continue
            generated.append(ConcreteTransaction.occurrence_of(series, on))

    for txn in rows:
        if not txn.is_exception or txn.is_deletion_marker:
            continue
        if start <= txn.date <= end and visibility.is_visible(txn):
            generated.append(ConcreteTransaction.from_row(txn))

    return generated


def expand_range(
    transactions: Iterable[Transaction],
    start: date,
    end: date,
    visibility: LayerVisibility,
) -> list[ConcreteTransaction]:
    rows = list(transactions)
    result = [
        ConcreteTransaction.from_row(txn)
        for txn in rows
        if not txn.is_recurring
        and not txn.is_exception
        and start <= txn.date <= end
        and visibility.is_visible(txn)
    ]
    result.extend(generate_recurring(rows, start, end, visibility))
    result.sort(key=lambda item: (item.date, item.id, item.occurrence_key))
    return result


def net_by_date(items: Iterable[ConcreteTransaction]) -> dict[date, int]:
    totals: dict[date, int] = {}
    for item in items:
        totals[item.date] = totals.get(item.date, 0) + item.signed_amount_cents
    return totals
