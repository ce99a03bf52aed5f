import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

DELETED_MARKER = "[DELETED]"


class TransactionType(str, Enum):
    debit = "debit"
    credit = "credit"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class RecurringPeriod(str, Enum):
    days = "days"
    weeks = "weeks"
    months = "months"
    years = "years"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class EditMode(str, Enum):
    this_one = "ThisOne"
    from_this_one = "FromThisOne"
    all_in_series = "AllInSeries"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    starting_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )


class Layer(Base, TimestampMixin):
    __tablename__ = "layers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_layers_account", "account_id"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    color: Mapped[Optional[str]] = mapped_column(String(20))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False, default=TransactionType.debit
    )
    layer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("layers.id"))

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_interval: Mapped[Optional[int]] = mapped_column(Integer)
    recurring_period: Mapped[Optional[RecurringPeriod]] = mapped_column(
        SAEnum(RecurringPeriod)
    )
    recurring_start_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    recurring_end_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    is_exception: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Not a foreign key: snapshots may carry exceptions of series removed later.
    parent_recurring_item_id: Mapped[Optional[int]] = mapped_column(Integer)
    original_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_parent", "parent_recurring_item_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "NOT (is_recurring AND is_exception)",
            name="ck_transactions_recurring_xor_exception",
        ),
    )

    @property
    def is_deletion_marker(self) -> bool:
        return bool(self.is_exception) and self.description == DELETED_MARKER


class BalanceOverride(Base, TimestampMixin):
    __tablename__ = "balance_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "date", name="uq_balance_override_account_date"),
    )
