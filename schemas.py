import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import (
    REGULAR_FREQUENCIES,
    BillFrequency,
    BillStatus,
    Frequency,
    PaymentMethod,
    TransactionKind,
    TransactionType,
)

LEGACY_BILL_CATEGORY = "Bill"


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Optional[TransactionKind] = None
    type: TransactionType = TransactionType.expense
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    amount_cents: int = Field(..., ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    category: str = Field(..., min_length=1, max_length=100)
    date: dt.date
    occurred_at: Optional[dt.datetime] = None

    is_recurring: bool = False
    frequency: Optional[Frequency] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    due_date: Optional[dt.date] = None
    bill_status: Optional[BillStatus] = None
    bill_frequency: Optional[BillFrequency] = None
    bill_category: Optional[str] = Field(default=None, max_length=100)
    reminder_days: Optional[int] = Field(default=None, ge=0, le=365)
    payment_method: Optional[PaymentMethod] = None

    @model_validator(mode="after")
    def _resolve_kind(self) -> "TransactionIn":
        if self.kind is None:
            self.kind = (
                TransactionKind.bill
                if self.category == LEGACY_BILL_CATEGORY
                else TransactionKind.regular
            )

        if self.kind == TransactionKind.bill:
            if self.due_date is None:
                self.due_date = self.date
            if self.is_recurring or self.frequency is not None:
                raise ValueError("Bills recur through bill_frequency, not frequency")
        else:
            if self.is_recurring:
                if self.frequency is None:
                    raise ValueError("Recurring transactions need a frequency")
                if self.frequency not in REGULAR_FREQUENCIES:
                    raise ValueError(
                        f"Frequency {self.frequency.value} is only valid for bills"
                    )
            if self.bill_frequency is not None or self.due_date is not None:
                raise ValueError("Bill fields are only valid for bills")

        anchor = self.due_date if self.kind == TransactionKind.bill else (
            self.start_date or self.date
        )
        if self.end_date is not None and self.end_date < anchor:
            raise ValueError("End date must not be before the first occurrence")
        if self.currency:
            self.currency = self.currency.upper()
        return self


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    kind: TransactionKind
    type: TransactionType
    title: str
    description: Optional[str]
    amount_cents: int
    currency: str
    category: str
    date: dt.date
    occurred_at: dt.datetime
    is_recurring: bool
    is_template: bool
    recurring_active: bool
    frequency: Optional[Frequency]
    start_date: Optional[dt.date]
    end_date: Optional[dt.date]
    template_id: Optional[int]
    occurrence_date: Optional[dt.date]
    due_date: Optional[dt.date]
    bill_status: Optional[BillStatus]
    bill_frequency: Optional[BillFrequency]
    next_due_date: Optional[dt.date]
    last_paid_date: Optional[dt.datetime]
    bill_category: Optional[str]
    reminder_days: Optional[int]
    payment_method: Optional[PaymentMethod]


class TransactionSaved(BaseModel):
    transaction: TransactionOut
    created_instances: int


class BillStatusIn(BaseModel):
    bill_status: BillStatus


class RolloverOut(BaseModel):
    updated: TransactionOut
    next_instance: Optional[TransactionOut]


class ToggleIn(BaseModel):
    active: bool


class SweepOut(BaseModel):
    processed: int
    created: int
    skipped: int
    failed: int
    errors: list[str]


class RecurringStatusOut(BaseModel):
    active_count: int
    paused_count: int
    expired_count: int
    total_instances: int
