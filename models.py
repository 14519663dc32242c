import datetime as dt
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
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionKind(str, Enum):
    regular = "regular"
    bill = "bill"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


REGULAR_FREQUENCIES = frozenset(
    {Frequency.daily, Frequency.weekly, Frequency.monthly, Frequency.yearly}
)


class BillFrequency(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    one_time = "one-time"


class BillStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    overdue = "overdue"
    pending = "pending"


class PaymentMethod(str, Enum):
    manual = "manual"
    auto_pay = "auto-pay"
    bank_transfer = "bank-transfer"
    credit_card = "credit-card"
    debit_card = "debit-card"
    cash = "cash"


def _values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


BILL_FREQUENCY_ENUM = SAEnum(
    BillFrequency, name="billfrequency", values_callable=_values
)
PAYMENT_METHOD_ENUM = SAEnum(
    PaymentMethod, name="paymentmethod", values_callable=_values
)


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    # IANA name or fixed-offset label such as "UTC+05:30"
    timezone: Mapped[Optional[str]] = mapped_column(String(64))


def classify_template(
    kind: TransactionKind,
    is_recurring: bool,
    bill_frequency: Optional[BillFrequency],
    template_id: Optional[int],
) -> bool:
    if template_id is not None:
        return False
    if kind == TransactionKind.bill:
        return bill_frequency is not None and bill_frequency != BillFrequency.one_time
    return bool(is_recurring)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False, default=TransactionKind.regular
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False, default=TransactionType.expense
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_template: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    frequency: Mapped[Optional[Frequency]] = mapped_column(SAEnum(Frequency))
    start_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    due_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    bill_status: Mapped[Optional[BillStatus]] = mapped_column(SAEnum(BillStatus))
    bill_frequency: Mapped[Optional[BillFrequency]] = mapped_column(
        BILL_FREQUENCY_ENUM
    )
    next_due_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    last_paid_date: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    bill_category: Mapped[Optional[str]] = mapped_column(String(100))
    reminder_days: Mapped[Optional[int]] = mapped_column(Integer)
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        PAYMENT_METHOD_ENUM
    )

    template: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", remote_side=[id], back_populates="instances"
    )
    instances: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="template"
    )

    __table_args__ = (
        UniqueConstraint(
            "template_id",
            "occurrence_date",
            name="uq_txn_template_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_template", "user_id", "is_template"),
        Index("ix_transactions_template_occurred", "template_id", "occurred_at"),
        Index("ix_transactions_user_kind_due", "user_id", "kind", "due_date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "template_id IS NULL OR NOT is_template",
            name="ck_transactions_instance_not_template",
        ),
    )

    @property
    def is_bill(self) -> bool:
        return self.kind == TransactionKind.bill

    @property
    def anchor_date(self) -> dt.date:
        if self.is_bill:
            return self.due_date or self.date
        return self.start_date or self.date

    @property
    def recurrence(self):
        """The frequency that drives this record's series, if any."""
        if self.is_bill:
            return self.bill_frequency
        return self.frequency
