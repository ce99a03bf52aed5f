import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from config import get_settings
from models import RecurringPeriod, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    start_date: date = Field(
        default_factory=lambda: get_settings().default_account_start_date
    )
    starting_balance_cents: int = Field(
        default_factory=lambda: get_settings().default_starting_balance_cents
    )


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    start_date: date
    starting_balance_cents: int


class LayerIn(BaseModel):
    account_id: int
    name: str = Field(..., min_length=1, max_length=100)
    is_active: bool = True


class LayerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    name: str
    is_active: bool


class TransactionIn(BaseModel):
    account_id: int
    date: date
    amount_cents: int = Field(..., ge=0)
    description: str = Field(default="", max_length=200)
    color: Optional[str] = Field(default=None, max_length=20)
    type: TransactionType = TransactionType.debit
    layer_id: Optional[int] = None
    is_recurring: bool = False
    recurring_interval: Optional[int] = Field(default=None, gt=0)
    recurring_period: Optional[RecurringPeriod] = None
    recurring_start_date: Optional[dt.date] = None
    recurring_end_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def _check_recurrence(self) -> "TransactionIn":
        if self.is_recurring:
            if self.recurring_interval is None or self.recurring_period is None:
                raise ValueError("Recurring items need an interval and a period")
        return self


class RecurringEditIn(BaseModel):
    """Edited fields for one occurrence (``date``) of a recurring series."""

    date: date
    amount_cents: int = Field(..., ge=0)
    description: str = Field(default="", max_length=200)
    color: Optional[str] = Field(default=None, max_length=20)
    type: TransactionType = TransactionType.debit
    layer_id: Optional[int] = None
    recurring_interval: Optional[int] = Field(default=None, gt=0)
    recurring_period: Optional[RecurringPeriod] = None


class TransactionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    date: date
    amount_cents: int = Field(..., ge=0)
    description: str = ""
    color: Optional[str] = None
    type: TransactionType = TransactionType.debit
    layer_id: Optional[int] = None
    is_recurring: bool = False
    recurring_interval: Optional[int] = Field(default=None, gt=0)
    recurring_period: Optional[RecurringPeriod] = None
    recurring_start_date: Optional[dt.date] = None
    recurring_end_date: Optional[dt.date] = None
    is_exception: bool = False
    parent_recurring_item_id: Optional[int] = None
    original_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def _check_kind(self) -> "TransactionRecord":
        if self.is_recurring and self.is_exception:
            raise ValueError("An item cannot be both recurring and an exception")
        if self.is_recurring and (
            self.recurring_interval is None or self.recurring_period is None
        ):
            raise ValueError("Recurring items need an interval and a period")
        return self


class ConcreteTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    original_date: Optional[dt.date] = None
    recurring_interval: Optional[int] = None
    recurring_period: Optional[RecurringPeriod] = None
    recurring_start_date: Optional[dt.date] = None
    recurring_end_date: Optional[dt.date] = None


class BalanceOverrideIn(BaseModel):
    balance_cents: int


class DailyBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    balance_cents: int
    is_override: bool


class AccountRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    start_date: date
    starting_balance_cents: int


class LayerRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    name: str = Field(..., min_length=1, max_length=100)
    is_active: bool = True


class Snapshot(BaseModel):
    """Complete client-held state; ``balance_overrides`` is keyed by account id,
    then by ISO date."""

    accounts: list[AccountRecord] = Field(default_factory=list)
    items: list[TransactionRecord] = Field(default_factory=list)
    layers: list[LayerRecord] = Field(default_factory=list)
    balance_overrides: dict[int, dict[dt.date, int]] = Field(default_factory=dict)
