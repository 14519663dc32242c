import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    BillFrequency,
    BillStatus,
    Frequency,
    Transaction,
    User,
)
from timezones import day_bounds, local_noon_utc, resolve, to_storage, today_in, utc_now

logger = logging.getLogger(__name__)


class InvalidFrequency(ValueError):
    pass


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Snap to the end of shorter months (Jan 31 -> Feb 29 -> Mar 29)
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def _coerce_frequency(frequency: Union[Frequency, BillFrequency, str, None]) -> Frequency:
    if frequency is None:
        raise InvalidFrequency("Recurring record has no frequency")
    value = frequency.value if hasattr(frequency, "value") else frequency
    try:
        return Frequency(value)
    except ValueError as exc:
        raise InvalidFrequency(f"Unsupported frequency: {value!r}") from exc


def step(current: date, frequency: Union[Frequency, BillFrequency, str]) -> date:
    freq = _coerce_frequency(frequency)
    if freq == Frequency.daily:
        return current + timedelta(days=1)
    if freq == Frequency.weekly:
        return current + timedelta(weeks=1)
    if freq == Frequency.monthly:
        return add_months(current, 1)
    if freq == Frequency.quarterly:
        return add_months(current, 3)
    return add_months(current, 12)


_locks_guard = threading.Lock()
_template_locks: defaultdict[int, threading.Lock] = defaultdict(threading.Lock)


def template_lock(template_id: int) -> threading.Lock:
    with _locks_guard:
        return _template_locks[template_id]


def forget_template_lock(template_id: int) -> None:
    with _locks_guard:
        _template_locks.pop(template_id, None)


@dataclass
class RolloverResult:
    updated: Transaction
    next_instance: Optional[Transaction]


# Descriptive fields an instance inherits from its template
_COPIED_FIELDS = (
    "user_id",
    "kind",
    "type",
    "title",
    "description",
    "amount_cents",
    "currency",
    "category",
    "bill_category",
    "reminder_days",
    "payment_method",
    "bill_frequency",
)


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._zones: dict[int, ZoneInfo] = {}

    def zone_for(self, user_id: int) -> ZoneInfo:
        zone = self._zones.get(user_id)
        if zone is None:
            user = self.session.get(User, user_id)
            label = user.timezone if user and user.timezone else None
            zone = resolve(label or get_settings().timezone)
            self._zones[user_id] = zone
        return zone

    def today_for(self, user_id: int) -> date:
        return today_in(self.zone_for(user_id))

    def exists(self, template_id: int, candidate: date, user_id: int) -> bool:
        start, end = day_bounds(candidate, self.zone_for(user_id))
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == user_id,
                Transaction.template_id == template_id,
                Transaction.occurred_at >= to_storage(start),
                Transaction.occurred_at < to_storage(end),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def backfill(self, template: Transaction, today: Optional[date] = None) -> int:
        if not template.is_template:
            raise ValueError(f"Transaction {template.id} is not a recurring template")
        frequency = _coerce_frequency(template.recurrence)

        with template_lock(template.id):
            today = today or self.today_for(template.user_id)
            cutoff = min(template.end_date or today, today)
            anchor = template.anchor_date
            current = anchor
            created = 0
            while current <= cutoff:
                # The anchor itself is the template; only today forces it
                if current != anchor or current == today:
                    if not self.exists(template.id, current, template.user_id):
                        if self._create_instance(template, current):
                            created += 1
                current = step(current, frequency)

        if created:
            logger.info(f"backfill: template_id={template.id} created={created}")
        return created

    def _create_instance(self, template: Transaction, occurrence: date) -> bool:
        instance = self._clone(template, occurrence)
        self.session.add(instance)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent writer got there first
            self.session.rollback()
            logger.info(
                f"backfill_conflict: template_id={template.id} date={occurrence}"
            )
            return False
        except Exception:
            self.session.rollback()
            raise
        return True

    def _clone(self, source: Transaction, occurrence: date) -> Transaction:
        zone = self.zone_for(source.user_id)
        instance = Transaction(
            **{field: getattr(source, field) for field in _COPIED_FIELDS},
            date=occurrence,
            occurred_at=local_noon_utc(occurrence, zone),
            occurrence_date=occurrence,
            template_id=source.template_id or source.id,
            is_recurring=False,
            is_template=False,
            recurring_active=False,
        )
        if source.is_bill:
            instance.due_date = occurrence
            instance.next_due_date = occurrence
            instance.bill_status = BillStatus.unpaid
        return instance

    def mark_paid(
        self, bill: Transaction, now: Optional[datetime] = None
    ) -> RolloverResult:
        if not bill.is_bill:
            raise ValueError("Only bills can be marked paid")
        if bill.bill_status == BillStatus.paid:
            raise ValueError("Bill is already paid")

        paid_at = to_storage(now or utc_now())
        frequency = bill.bill_frequency
        if frequency is None or frequency == BillFrequency.one_time:
            bill.bill_status = BillStatus.paid
            bill.last_paid_date = paid_at
            self.session.commit()
            logger.info(f"bill_paid: id={bill.id} rollover=none")
            return RolloverResult(updated=bill, next_instance=None)

        series_id = bill.id if bill.is_template else bill.template_id
        with template_lock(series_id or bill.id):
            next_due = step(bill.due_date or bill.date, frequency)
            bill.bill_status = BillStatus.paid
            bill.last_paid_date = paid_at
            bill.next_due_date = next_due
            next_instance = self._next_occurrence(bill, next_due, series_id, paid_at)

        logger.info(
            f"bill_paid: id={bill.id} next_due={next_due} "
            f"next_id={next_instance.id if next_instance else None}"
        )
        return RolloverResult(updated=bill, next_instance=next_instance)

    def _next_occurrence(
        self,
        bill: Transaction,
        next_due: date,
        series_id: Optional[int],
        paid_at: datetime,
    ) -> Transaction:
        if series_id is not None:
            existing = self._find_occurrence(series_id, next_due, bill.user_id)
            if existing is not None:
                self.session.commit()
                return existing

        instance = self._clone(bill, next_due)
        instance.template_id = series_id
        self.session.add(instance)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            bill.bill_status = BillStatus.paid
            bill.last_paid_date = paid_at
            bill.next_due_date = next_due
            existing = self._find_occurrence(series_id, next_due, bill.user_id)
            self.session.commit()
            return existing
        self.session.refresh(instance)
        return instance

    def _find_occurrence(
        self, series_id: int, occurrence: date, user_id: int
    ) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.template_id == series_id,
            Transaction.occurrence_date == occurrence,
        )
        return self.session.scalars(stmt).first()
