from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    DELETED_MARKER,
    Account,
    BalanceOverride,
    EditMode,
    Layer,
    Transaction,
    TransactionType,
)
from periods import Period, month_period
from recurrence import (
    ConcreteTransaction,
    LayerVisibility,
    add_interval,
    expand_range,
    net_by_date,
)
from schemas import (
    AccountIn,
    AccountRecord,
    LayerIn,
    LayerRecord,
    RecurringEditIn,
    Snapshot,
    TransactionIn,
    TransactionRecord,
)

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class InvalidArgumentError(ValueError):
    pass


def parse_edit_mode(value: Union[EditMode, str, None]) -> EditMode:
    if isinstance(value, EditMode):
        return value
    try:
        return EditMode(value)
    except ValueError as exc:
        raise InvalidArgumentError(f"Invalid edit mode: {value}") from exc


def _delete_series_rows(session: Session, series_ids: list[int]) -> None:
    if not series_ids:
        return
    session.execute(
        delete(Transaction).where(
            or_(
                Transaction.id.in_(series_ids),
                Transaction.parent_recurring_item_id.in_(series_ids),
            )
        )
    )


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        return self.session.scalars(select(Account).order_by(Account.id)).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            name=data.name,
            description=data.description,
            start_date=data.start_date,
            starting_balance_cents=data.starting_balance_cents,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        for field, value in data.model_dump().items():
            setattr(account, field, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        self.session.execute(
            delete(Transaction).where(Transaction.account_id == account_id)
        )
        self.session.execute(
            delete(BalanceOverride).where(BalanceOverride.account_id == account_id)
        )
        self.session.execute(delete(Layer).where(Layer.account_id == account_id))
        self.session.delete(account)
        self.session.commit()
        logger.info(f"account_deleted: account_id={account_id}")

    def ensure_default(self) -> Account:
        existing = self.session.scalar(select(Account).order_by(Account.id).limit(1))
        if existing:
            return existing
        settings = get_settings()
        return self.create(
            AccountIn(
                name=settings.default_account_name,
                start_date=settings.default_account_start_date,
                starting_balance_cents=settings.default_starting_balance_cents,
            )
        )


class LayerService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, account_id: Optional[int] = None) -> list[Layer]:
        stmt = select(Layer).order_by(Layer.id)
        if account_id is not None:
            stmt = stmt.where(Layer.account_id == account_id)
        return self.session.scalars(stmt).all()

    def get(self, layer_id: int, account_id: Optional[int] = None) -> Layer:
        layer = self.session.get(Layer, layer_id)
        if not layer or (account_id is not None and layer.account_id != account_id):
            raise NotFoundError("Layer not found")
        return layer

    def create(self, data: LayerIn) -> Layer:
        AccountService(self.session).get(data.account_id)
        layer = Layer(account_id=data.account_id, name=data.name, is_active=data.is_active)
        self.session.add(layer)
        self.session.commit()
        self.session.refresh(layer)
        return layer

    def update(self, layer_id: int, data: LayerIn) -> Layer:
        layer = self.get(layer_id, data.account_id)
        layer.name = data.name
        layer.is_active = data.is_active
        self.session.commit()
        self.session.refresh(layer)
        return layer

    def toggle(self, layer_id: int, account_id: Optional[int] = None) -> Layer:
        layer = self.get(layer_id, account_id)
        layer.is_active = not layer.is_active
        self.session.commit()
        self.session.refresh(layer)
        return layer

    def delete(self, layer_id: int, account_id: Optional[int] = None) -> None:
        """Delete a layer together with every item assigned to it."""
        layer = self.get(layer_id, account_id)
        series_ids = self.session.scalars(
            select(Transaction.id).where(
                Transaction.layer_id == layer_id, Transaction.is_recurring.is_(True)
            )
        ).all()
        _delete_series_rows(self.session, list(series_ids))
        self.session.execute(delete(Transaction).where(Transaction.layer_id == layer_id))
        self.session.delete(layer)
        self.session.commit()
        logger.info(
            f"layer_deleted: layer_id={layer_id} series_removed={len(series_ids)}"
        )

    def visibility(self, account_id: int, default_layer_active: bool) -> LayerVisibility:
        active_ids = self.session.scalars(
            select(Layer.id).where(
                Layer.account_id == account_id, Layer.is_active.is_(True)
            )
        ).all()
        return LayerVisibility(frozenset(active_ids), default_layer_active)


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_account(self, account_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.date, Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int, account_id: Optional[int] = None) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or (account_id is not None and txn.account_id != account_id):
            raise NotFoundError("Item not found")
        return txn

    def _check_layer(self, account_id: int, layer_id: Optional[int]) -> None:
        if layer_id is None:
            return
        LayerService(self.session).get(layer_id, account_id)

    def create(self, data: TransactionIn) -> Transaction:
        AccountService(self.session).get(data.account_id)
        self._check_layer(data.account_id, data.layer_id)
        txn = Transaction(account_id=data.account_id, is_exception=False)
        self._apply(txn, data)
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        if txn.is_exception and data.is_recurring:
            raise InvalidArgumentError("An exception cannot become a recurring series")
        AccountService(self.session).get(data.account_id)
        self._check_layer(data.account_id, data.layer_id)
        txn.account_id = data.account_id
        self._apply(txn, data)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int, account_id: Optional[int] = None) -> None:
        txn = self.get(transaction_id, account_id)
        self.session.delete(txn)
        self.session.commit()

    @staticmethod
    def _apply(txn: Transaction, data: TransactionIn) -> None:
        txn.date = data.date
        txn.amount_cents = data.amount_cents
        txn.description = data.description
        txn.color = data.color
        txn.type = data.type
        txn.layer_id = data.layer_id
        txn.is_recurring = data.is_recurring
        if data.is_recurring:
            txn.recurring_interval = data.recurring_interval
            txn.recurring_period = data.recurring_period
            txn.recurring_start_date = data.recurring_start_date or data.date
            txn.recurring_end_date = data.recurring_end_date
        else:
            txn.recurring_interval = None
            txn.recurring_period = None
            txn.recurring_start_date = None
            txn.recurring_end_date = None


class RecurringSeriesService:
    """Edits and deletes applied to one occurrence, the tail, or a whole series.

    ``ThisOne`` on the anchor occurrence moves the anchor one step forward,
    ``FromThisOne`` elsewhere ends the series one step before the target date,
    and ``AllInSeries`` rewrites or removes the parent with its exceptions.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _get_series(self, series_id: int, account_id: Optional[int]) -> Transaction:
        series = TransactionService(self.session).get(series_id, account_id)
        if not series.is_recurring:
            raise InvalidArgumentError("Item is not a recurring series")
        return series

    @staticmethod
    def _step(series: Transaction, on: date, steps: int = 1) -> date:
        try:
            return add_interval(
                on, steps * series.recurring_interval, series.recurring_period
            )
        except (OverflowError, ValueError) as exc:
            raise InvalidArgumentError(
                f"Date out of range stepping series {series.id} from {on.isoformat()}"
            ) from exc

    @classmethod
    def _advance_anchor(cls, series: Transaction) -> None:
        next_date = cls._step(series, series.date)
        series.date = next_date
        series.recurring_start_date = next_date
        if series.recurring_end_date is not None and next_date > series.recurring_end_date:
            logger.info(
                f"series_anchor_expired: series_id={series.id} "
                f"anchor={next_date.isoformat()} "
                f"end={series.recurring_end_date.isoformat()}"
            )

    @staticmethod
    def _apply_fields(series: Transaction, data: RecurringEditIn) -> None:
        series.amount_cents = data.amount_cents
        series.description = data.description
        series.color = data.color
        series.type = data.type
        series.layer_id = data.layer_id

    def update_recurring(
        self,
        series_id: int,
        data: RecurringEditIn,
        mode: Union[EditMode, str],
        account_id: Optional[int] = None,
    ) -> Transaction:
        series = self._get_series(series_id, account_id)
        edit_mode = parse_edit_mode(mode)
        if data.layer_id is not None:
            LayerService(self.session).get(data.layer_id, series.account_id)

        if edit_mode == EditMode.this_one:
            if data.date == series.date:
                self._advance_anchor(series)
            result = Transaction(
                account_id=series.account_id,
                date=data.date,
                amount_cents=data.amount_cents,
                description=data.description,
                color=data.color,
                type=data.type,
                layer_id=data.layer_id,
                is_recurring=False,
                is_exception=True,
                parent_recurring_item_id=series.id,
                original_date=data.date,
            )
            self.session.add(result)
        elif edit_mode == EditMode.from_this_one:
            if data.date == series.date:
                self._apply_fields(series, data)
                result = series
            else:
                series.recurring_end_date = self._step(series, data.date, -1)
                result = Transaction(
                    account_id=series.account_id,
                    date=data.date,
                    amount_cents=data.amount_cents,
                    description=data.description,
                    color=data.color,
                    type=data.type,
                    layer_id=data.layer_id,
                    is_recurring=True,
                    is_exception=False,
                    recurring_interval=data.recurring_interval
                    or series.recurring_interval,
                    recurring_period=data.recurring_period or series.recurring_period,
                    recurring_start_date=data.date,
                    recurring_end_date=None,
                )
                self.session.add(result)
        else:
            self._apply_fields(series, data)
            if data.recurring_interval is not None:
                series.recurring_interval = data.recurring_interval
            if data.recurring_period is not None:
                series.recurring_period = data.recurring_period
            result = series

        self.session.commit()
        self.session.refresh(result)
        logger.info(
            f"series_updated: series_id={series.id} mode={edit_mode.value} "
            f"date={data.date.isoformat()} result_id={result.id}"
        )
        return result

    def delete_recurring(
        self,
        series_id: int,
        mode: Union[EditMode, str],
        on: date,
        account_id: Optional[int] = None,
    ) -> None:
        series = self._get_series(series_id, account_id)
        edit_mode = parse_edit_mode(mode)

        if edit_mode == EditMode.this_one:
            if on == series.date:
                self._advance_anchor(series)
            else:
                self.session.add(
                    Transaction(
                        account_id=series.account_id,
                        date=on,
                        amount_cents=0,
                        description=DELETED_MARKER,
                        type=TransactionType.debit,
                        layer_id=series.layer_id,
                        is_recurring=False,
                        is_exception=True,
                        parent_recurring_item_id=series.id,
                        original_date=on,
                    )
                )
        elif edit_mode == EditMode.from_this_one:
            if on == series.date:
                _delete_series_rows(self.session, [series.id])
            else:
                series.recurring_end_date = self._step(series, on, -1)
        else:
            _delete_series_rows(self.session, [series.id])

        self.session.commit()
        logger.info(
            f"series_deleted: series_id={series_id} mode={edit_mode.value} "
            f"date={on.isoformat()}"
        )


class CalendarService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def expand_range(
        self,
        account_id: int,
        start: date,
        end: date,
        default_layer_active: bool = True,
    ) -> list[ConcreteTransaction]:
        AccountService(self.session).get(account_id)
        if start > end:
            raise InvalidArgumentError("Start date must be before end date")
        rows = TransactionService(self.session).list_for_account(account_id)
        visibility = LayerService(self.session).visibility(
            account_id, default_layer_active
        )
        return expand_range(rows, start, end, visibility)

    def month_items(
        self, account_id: int, year: int, month: int, default_layer_active: bool = True
    ) -> list[ConcreteTransaction]:
        period = month_period(year, month)
        return self.expand_range(
            account_id, period.start, period.end, default_layer_active
        )


class BalanceOverrideService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_account(self, account_id: int) -> list[BalanceOverride]:
        stmt = (
            select(BalanceOverride)
            .where(BalanceOverride.account_id == account_id)
            .order_by(BalanceOverride.date)
        )
        return self.session.scalars(stmt).all()

    def set(self, account_id: int, on: date, balance_cents: int) -> BalanceOverride:
        AccountService(self.session).get(account_id)
        override = self.session.scalar(
            select(BalanceOverride).where(
                BalanceOverride.account_id == account_id, BalanceOverride.date == on
            )
        )
        if override:
            override.balance_cents = balance_cents
        else:
            override = BalanceOverride(
                account_id=account_id, date=on, balance_cents=balance_cents
            )
            self.session.add(override)
        self.session.commit()
        self.session.refresh(override)
        return override

    def delete(self, account_id: int, on: date) -> None:
        override = self.session.scalar(
            select(BalanceOverride).where(
                BalanceOverride.account_id == account_id, BalanceOverride.date == on
            )
        )
        if not override:
            raise NotFoundError("Balance override not found")
        self.session.delete(override)
        self.session.commit()


@dataclass(frozen=True)
class DailyBalance:
    balance_cents: int
    is_override: bool


class BalanceService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def daily_balances(
        self,
        account_id: int,
        year: int,
        month: int,
        default_layer_active: bool = True,
    ) -> dict[str, DailyBalance]:
        """Running balance for every day of the month, keyed by ISO date.

        An override pins its own day and becomes the baseline for the days
        after it. Without a baseline the account starting balance applies from
        ``start_date``; earlier days are 0.
        """
        account = AccountService(self.session).get(account_id)
        period = month_period(year, month)
        overrides = {
            o.date: o.balance_cents
            for o in BalanceOverrideService(self.session).list_for_account(account_id)
            if o.date <= period.end
        }

        baseline_date: Optional[date] = None
        baseline_cents = 0
        prior = [d for d in overrides if d < period.start]
        if prior:
            baseline_date = max(prior)
            baseline_cents = overrides[baseline_date]

        if baseline_date is not None:
            window_start = baseline_date + date.resolution
        else:
            window_start = min(account.start_date, period.start)
        net = self._net_by_date(
            account_id, Period("window", window_start, period.end), default_layer_active
        )

        def net_between(after: date, through: date) -> int:
            return sum(cents for day, cents in net.items() if after < day <= through)

        balances: dict[str, DailyBalance] = {}
        for day in period.days():
            key = day.isoformat()
            if day in overrides:
                baseline_date = day
                baseline_cents = overrides[day]
                balances[key] = DailyBalance(baseline_cents, True)
            elif baseline_date is not None and day > baseline_date:
                balances[key] = DailyBalance(
                    baseline_cents + net_between(baseline_date, day), False
                )
            elif day < account.start_date:
                balances[key] = DailyBalance(0, False)
            else:
                opening = account.start_date - date.resolution
                balances[key] = DailyBalance(
                    account.starting_balance_cents + net_between(opening, day), False
                )
        return balances

    def _net_by_date(
        self, account_id: int, window: Period, default_layer_active: bool
    ) -> dict[date, int]:
        if window.start > window.end:
            return {}
        items = CalendarService(self.session).expand_range(
            account_id, window.start, window.end, default_layer_active
        )
        return net_by_date(items)


class SnapshotService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def export_all(self, account_id: Optional[int] = None) -> Snapshot:
        accounts = AccountService(self.session).list_all()
        layers = LayerService(self.session).list_all(account_id)
        items_stmt = select(Transaction).order_by(Transaction.id)
        overrides_stmt = select(BalanceOverride).order_by(
            BalanceOverride.account_id, BalanceOverride.date
        )
        if account_id is not None:
            AccountService(self.session).get(account_id)
            accounts = [a for a in accounts if a.id == account_id]
            items_stmt = items_stmt.where(Transaction.account_id == account_id)
            overrides_stmt = overrides_stmt.where(
                BalanceOverride.account_id == account_id
            )

        overrides: dict[int, dict[date, int]] = {}
        for override in self.session.scalars(overrides_stmt).all():
            overrides.setdefault(override.account_id, {})[override.date] = (
                override.balance_cents
            )
        return Snapshot(
            accounts=[AccountRecord.model_validate(a) for a in accounts],
            items=[
                TransactionRecord.model_validate(t)
                for t in self.session.scalars(items_stmt).all()
            ],
            layers=[LayerRecord.model_validate(layer) for layer in layers],
            balance_overrides=overrides,
        )

    def _wipe(self) -> None:
        self.session.execute(delete(Transaction))
        self.session.execute(delete(BalanceOverride))
        self.session.execute(delete(Layer))
        self.session.execute(delete(Account))

    def bulk_load(self, snapshot: Snapshot) -> dict[str, int]:
        """Replace the whole store with ``snapshot`` in one transaction.

        Ids are kept as given, so later inserts continue at max(id) + 1.
        Any failure rolls back and leaves the previous state in place.
        """
        try:
            self._wipe()
            self.session.add_all(
                Account(
                    id=a.id,
                    name=a.name,
                    description=a.description,
                    start_date=a.start_date,
                    starting_balance_cents=a.starting_balance_cents,
                )
                for a in snapshot.accounts
            )
            self.session.flush()
            self.session.add_all(
                Layer(
                    id=layer.id,
                    account_id=layer.account_id,
                    name=layer.name,
                    is_active=layer.is_active,
                )
                for layer in snapshot.layers
            )
            self.session.flush()
            for record in snapshot.items:
                values = record.model_dump()
                if values["is_recurring"] and values["recurring_start_date"] is None:
                    values["recurring_start_date"] = values["date"]
                self.session.add(Transaction(**values))
            self.session.flush()
            count_overrides = 0
            for account_id, by_date in snapshot.balance_overrides.items():
                for on, balance_cents in by_date.items():
                    self.session.add(
                        BalanceOverride(
                            account_id=account_id, date=on, balance_cents=balance_cents
                        )
                    )
                    count_overrides += 1
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        counts = {
            "accounts": len(snapshot.accounts),
            "items": len(snapshot.items),
            "layers": len(snapshot.layers),
            "balance_overrides": count_overrides,
        }
        logger.info(
            "bulk_load: "
            + " ".join(f"{name}={count}" for name, count in counts.items())
        )
        return counts

    def clear_all(self) -> Account:
        self._wipe()
        self.session.commit()
        logger.info("clear_all: store wiped, seeding default account")
        return AccountService(self.session).ensure_default()
