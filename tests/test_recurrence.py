import logging
from datetime import date, timedelta

import recurrence
from models import DELETED_MARKER, RecurringPeriod, Transaction, TransactionType
from recurrence import (
    LayerVisibility,
    add_interval,
    days_in_month,
    expand_range,
    generate_recurring,
    occurrence_dates,
    subtract_interval,
)

JAN_START = date(2026, 1, 1)
JAN_END = date(2026, 1, 31)
ALL_VISIBLE = LayerVisibility(frozenset(), True)


def _series(
    txn_id: int = 1,
    start: date = JAN_START,
    interval: int = 1,
    period: RecurringPeriod = RecurringPeriod.weeks,
    end: date = None,
    layer_id: int = None,
) -> Transaction:
    return Transaction(
        id=txn_id,
        account_id=1,
        date=start,
        amount_cents=5_000,
        description="Gym",
        color="#ff0000",
        type=TransactionType.debit,
        layer_id=layer_id,
        is_recurring=True,
        recurring_interval=interval,
        recurring_period=period,
        recurring_start_date=start,
        recurring_end_date=end,
        is_exception=False,
    )


def _one_time(
    txn_id: int, on: date, amount_cents: int = 1_000, layer_id: int = None
) -> Transaction:
    return Transaction(
        id=txn_id,
        account_id=1,
        date=on,
        amount_cents=amount_cents,
        description="Coffee",
        type=TransactionType.debit,
        layer_id=layer_id,
        is_recurring=False,
        is_exception=False,
    )


def _exception(
    txn_id: int, parent_id: int, on: date, description: str = "Edited", amount_cents: int = 9_900
) -> Transaction:
    return Transaction(
        id=txn_id,
        account_id=1,
        date=on,
        amount_cents=amount_cents,
        description=description,
        type=TransactionType.debit,
        is_recurring=False,
        is_exception=True,
        parent_recurring_item_id=parent_id,
        original_date=on,
    )


def test_days_in_month_handles_leap_years():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2025, 2) == 28
    assert days_in_month(2025, 12) == 31


def test_add_interval_units():
    assert add_interval(date(2026, 1, 1), 3, "days") == date(2026, 1, 4)
    assert add_interval(date(2026, 1, 1), 2, RecurringPeriod.weeks) == date(2026, 1, 15)
    assert add_interval(date(2026, 1, 15), 1, "months") == date(2026, 2, 15)
    assert add_interval(date(2026, 3, 10), 1, "years") == date(2027, 3, 10)


def test_add_interval_clamps_to_month_end():
    assert add_interval(date(2025, 1, 31), 1, "months") == date(2025, 2, 28)
    assert add_interval(date(2024, 1, 31), 1, "months") == date(2024, 2, 29)
    assert add_interval(date(2024, 2, 29), 1, "years") == date(2025, 2, 28)


def test_add_interval_period_is_case_insensitive():
    assert add_interval(date(2026, 1, 1), 1, "WEEKS") == date(2026, 1, 8)
    assert add_interval(date(2026, 1, 1), 1, "Months") == date(2026, 2, 1)


def test_unknown_period_leaves_date_unchanged():
    assert add_interval(date(2026, 1, 1), 5, "fortnights") == date(2026, 1, 1)
    assert subtract_interval(date(2026, 1, 1), 5, "fortnights") == date(2026, 1, 1)


def test_subtract_interval_inverts_add():
    assert subtract_interval(date(2026, 1, 15), 1, "weeks") == date(2026, 1, 8)
    assert subtract_interval(date(2026, 3, 31), 1, "months") == date(2026, 2, 28)
    assert subtract_interval(date(2026, 1, 1), 1, "days") == date(2025, 12, 31)


def test_weekly_series_yields_five_january_dates():
    items = expand_range([_series()], JAN_START, JAN_END, ALL_VISIBLE)
    assert [i.date.day for i in items] == [1, 8, 15, 22, 29]
    assert items[0].is_generated is False
    assert all(i.is_generated for i in items[1:])
    assert all(i.parent_recurring_item_id == 1 for i in items)


def test_generated_instances_have_distinct_occurrence_keys():
    items = expand_range([_series()], JAN_START, JAN_END, ALL_VISIBLE)
    keys = [i.occurrence_key for i in items]
    assert len(set(keys)) == len(keys)
    assert "1:2026-01-08" in keys


def test_end_date_is_inclusive_and_bounds_output():
    series = _series(end=date(2026, 1, 15))
    items = expand_range([series], JAN_START, JAN_END, ALL_VISIBLE)
    assert [i.date.day for i in items] == [1, 8, 15]
    assert all(i.date <= date(2026, 1, 15) for i in items)


def test_end_date_before_anchor_generates_nothing():
    series = _series(start=date(2026, 1, 15), end=date(2026, 1, 10))
    assert expand_range([series], JAN_START, JAN_END, ALL_VISIBLE) == []


def test_series_starting_mid_month():
    series = _series(start=date(2026, 1, 15))
    items = expand_range([series], JAN_START, JAN_END, ALL_VISIBLE)
    assert [i.date.day for i in items] == [15, 22, 29]


def test_biweekly_series():
    series = _series(interval=2)
    items = expand_range([series], JAN_START, JAN_END, ALL_VISIBLE)
    assert [i.date.day for i in items] == [1, 15, 29]


def test_daily_and_yearly_series():
    daily = _series(txn_id=1, period=RecurringPeriod.days)
    yearly = _series(txn_id=2, start=date(2025, 1, 15), period=RecurringPeriod.years)
    items = expand_range([daily, yearly], JAN_START, JAN_END, ALL_VISIBLE)
    assert len([i for i in items if i.id == 1]) == 31
    assert [i.date for i in items if i.id == 2] == [date(2026, 1, 15)]


def test_series_started_in_earlier_month_steps_into_window():
    series = _series(start=date(2025, 12, 25))
    items = expand_range([series], JAN_START, JAN_END, ALL_VISIBLE)
    assert [i.date.day for i in items] == [1, 8, 15, 22, 29]
    assert all(i.is_generated for i in items)


def test_edit_exception_replaces_generated_occurrence():
    rows = [_series(), _exception(2, 1, date(2026, 1, 8))]
    items = expand_range(rows, JAN_START, JAN_END, ALL_VISIBLE)
    jan8 = [i for i in items if i.date == date(2026, 1, 8)]
    assert len(items) == 5
    assert len(jan8) == 1
    assert jan8[0].is_exception is True
    assert jan8[0].amount_cents == 9_900
    assert jan8[0].description == "Edited"


def test_deletion_exception_suppresses_occurrence():
    rows = [
        _series(),
        _exception(2, 1, date(2026, 1, 15), description=DELETED_MARKER, amount_cents=0),
    ]
    items = expand_range(rows, JAN_START, JAN_END, ALL_VISIBLE)
    assert [i.date.day for i in items] == [1, 8, 22, 29]


def test_exception_on_anchor_hides_anchor_row():
    rows = [_series(), _exception(2, 1, JAN_START)]
    items = expand_range(rows, JAN_START, JAN_END, ALL_VISIBLE)
    first = items[0]
    assert first.date == JAN_START
    assert first.id == 2
    assert first.is_exception is True


def test_exception_suppresses_even_when_hidden_by_layer():
    hidden_exception = _exception(2, 1, date(2026, 1, 8))
    hidden_exception.layer_id = 7
    rows = [_series(), hidden_exception]
    items = generate_recurring(rows, JAN_START, JAN_END, ALL_VISIBLE)
    assert date(2026, 1, 8) not in [i.date for i in items]


def test_layer_visibility_filters_series_and_one_time_rows():
    rows = [
        _series(txn_id=1, layer_id=10),
        _one_time(2, date(2026, 1, 3), layer_id=11),
        _one_time(3, date(2026, 1, 4)),
    ]
    only_layer_10 = LayerVisibility(frozenset({10}), default_layer_active=False)
    items = expand_range(rows, JAN_START, JAN_END, only_layer_10)
    assert {i.id for i in items} == {1}

    default_only = LayerVisibility(frozenset(), default_layer_active=True)
    items = expand_range(rows, JAN_START, JAN_END, default_only)
    assert [i.id for i in items] == [3]


def test_expansion_is_sorted_and_idempotent():
    rows = [
        _series(txn_id=1),
        _one_time(5, date(2026, 1, 8)),
        _one_time(4, date(2026, 1, 2)),
    ]
    first = expand_range(rows, JAN_START, JAN_END, ALL_VISIBLE)
    second = expand_range(rows, JAN_START, JAN_END, ALL_VISIBLE)
    assert first == second
    assert [i.date for i in first] == sorted(i.date for i in first)
    same_day = [i.id for i in first if i.date == date(2026, 1, 8)]
    assert same_day == [1, 5]


def test_unknown_period_stops_walk():
    series = _series(period=RecurringPeriod.weeks)
    series.recurring_period = "fortnights"
    items = expand_range([series], JAN_START, JAN_END, ALL_VISIBLE)
    assert [i.date for i in items] == [JAN_START]


def test_step_past_last_date_ends_walk_and_keeps_other_items():
    series = _series(interval=5_000_000, period=RecurringPeriod.days)
    rows = [series, _one_time(2, date(2026, 1, 3))]
    items = expand_range(rows, JAN_START, JAN_END, ALL_VISIBLE)
    assert [(i.id, i.date) for i in items] == [(1, JAN_START), (2, date(2026, 1, 3))]


def test_monthly_series_near_year_9999_stops_at_calendar_end():
    series = _series(start=date(9999, 12, 15), period=RecurringPeriod.months)
    items = expand_range([series], date(9999, 12, 1), date(9999, 12, 31), ALL_VISIBLE)
    assert [i.date for i in items] == [date(9999, 12, 15)]


def test_old_daily_and_weekly_series_reach_window():
    daily = _series(txn_id=1, start=date(1800, 1, 1), period=RecurringPeriod.days)
    weekly = _series(
        txn_id=2, start=JAN_START - timedelta(weeks=10_000), period=RecurringPeriod.weeks
    )
    items = expand_range([daily, weekly], JAN_START, JAN_END, ALL_VISIBLE)
    assert len([i for i in items if i.id == 1]) == 31
    assert [i.date.day for i in items if i.id == 2] == [1, 8, 15, 22, 29]


def test_occurrence_cap_is_logged(monkeypatch, caplog):
    monkeypatch.setattr(recurrence, "MAX_OCCURRENCES", 3)
    series = _series(period=RecurringPeriod.days)
    with caplog.at_level(logging.WARNING, logger="recurrence"):
        dates = occurrence_dates(series, JAN_START, JAN_END)
    assert dates == [date(2026, 1, 1), date(2026, 1, 2), date(2026, 1, 3)]
    assert "recurrence_capped" in caplog.text
