from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    BillFrequency,
    BillStatus,
    Transaction,
    TransactionKind,
    User,
    classify_template,
)
from recurrence import RecurringEngine, RolloverResult, forget_template_lock
from schemas import TransactionIn
from timezones import local_noon_utc, to_storage

logger = logging.getLogger(__name__)


class NotFound(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_or_create(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            user = User(id=user_id)
            self.session.add(user)
            self.session.flush()
        return user

    def set_timezone(self, user_id: int, timezone_label: Optional[str]) -> User:
        user = self.get_or_create(user_id)
        user.timezone = timezone_label
        self.session.commit()
        return user


@dataclass
class TransactionFilters:
    kind: Optional[TransactionKind] = None
    template_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    query: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFound("Transaction not found")
        return txn

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if filters.kind is not None:
            stmt = stmt.where(Transaction.kind == filters.kind)
        if filters.template_id is not None:
            stmt = stmt.where(Transaction.template_id == filters.template_id)
        if filters.start is not None:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.query:
            pattern = f"%{filters.query.strip()}%"
            stmt = stmt.where(
                or_(
                    Transaction.title.ilike(pattern),
                    Transaction.description.ilike(pattern),
                    Transaction.category.ilike(pattern),
                )
            )
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> tuple[Transaction, int]:
        txn = Transaction(user_id=self.user_id)
        self._apply(txn, data)
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn, self._expand(txn)

    def update(self, transaction_id: int, data: TransactionIn) -> tuple[Transaction, int]:
        txn = self.get(transaction_id)
        if txn.template_id is not None and data.is_recurring:
            raise ValueError("Generated instances cannot become recurring")
        if txn.is_template and txn.kind != data.kind:
            raise ValueError("A recurring template cannot change kind")
        if (
            txn.is_template
            and txn.is_bill
            and data.bill_frequency is not None
            and data.bill_frequency != txn.bill_frequency
            and self._has_instances(txn.id)
        ):
            raise ValueError("Bill frequency cannot change once instances exist")
        self._apply(txn, data)
        self.session.commit()
        self.session.refresh(txn)
        return txn, self._expand(txn)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        was_template = txn.is_template
        # Instances only hold a weak reference; the FK nulls them out
        self.session.delete(txn)
        self.session.commit()
        if was_template:
            forget_template_lock(transaction_id)

    def _apply(self, txn: Transaction, data: TransactionIn) -> None:
        zone = RecurringEngine(self.session).zone_for(self.user_id)
        txn.kind = data.kind
        txn.type = data.type
        txn.title = data.title.strip()
        txn.description = data.description
        txn.amount_cents = data.amount_cents
        txn.currency = data.currency or get_settings().default_currency
        txn.category = data.category.strip()
        txn.date = data.date
        txn.occurred_at = (
            to_storage(data.occurred_at)
            if data.occurred_at
            else local_noon_utc(data.date, zone)
        )
        txn.end_date = data.end_date
        if data.kind == TransactionKind.bill:
            txn.is_recurring = False
            txn.frequency = None
            txn.start_date = None
            txn.due_date = data.due_date
            txn.bill_status = data.bill_status or txn.bill_status or BillStatus.unpaid
            # Left out on edit keeps the stored cadence; new bills default to monthly
            txn.bill_frequency = (
                data.bill_frequency or txn.bill_frequency or BillFrequency.monthly
            )
            txn.next_due_date = txn.next_due_date or data.due_date
            txn.bill_category = data.bill_category
            txn.reminder_days = data.reminder_days
            txn.payment_method = data.payment_method
        else:
            txn.is_recurring = data.is_recurring
            txn.frequency = data.frequency if data.is_recurring else None
            txn.start_date = (data.start_date or data.date) if data.is_recurring else None
            txn.due_date = None
            txn.bill_status = None
            txn.bill_frequency = None
            txn.next_due_date = None
        txn.is_template = classify_template(
            txn.kind, txn.is_recurring, txn.bill_frequency, txn.template_id
        )

    def _expand(self, txn: Transaction) -> int:
        if not txn.is_template or not txn.recurring_active:
            return 0
        return RecurringEngine(self.session).backfill(txn)

    def _has_instances(self, template_id: int) -> bool:
        stmt = select(Transaction.id).where(Transaction.template_id == template_id)
        return self.session.execute(stmt.limit(1)).scalar_one_or_none() is not None


class BillService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _base(self):
        return select(Transaction).where(
            Transaction.user_id == self.user_id,
            Transaction.kind == TransactionKind.bill,
        )

    def _today(self) -> date:
        return RecurringEngine(self.session).today_for(self.user_id)

    def get(self, bill_id: int) -> Transaction:
        txn = self.session.get(Transaction, bill_id)
        if not txn or txn.user_id != self.user_id or not txn.is_bill:
            raise NotFound("Bill not found")
        return txn

    def list(self, status: Optional[BillStatus] = None) -> list[Transaction]:
        stmt = self._base()
        if status is not None:
            stmt = stmt.where(Transaction.bill_status == status)
        return self.session.scalars(stmt.order_by(Transaction.due_date)).all()

    def overdue(self, today: Optional[date] = None) -> list[Transaction]:
        today = today or self._today()
        stmt = self._base().where(
            Transaction.due_date < today,
            Transaction.bill_status.in_([BillStatus.unpaid, BillStatus.pending]),
        )
        return self.session.scalars(stmt.order_by(Transaction.due_date)).all()

    def upcoming(self, days: int = 7, today: Optional[date] = None) -> list[Transaction]:
        today = today or self._today()
        stmt = self._base().where(
            Transaction.due_date >= today,
            Transaction.due_date <= today + timedelta(days=days),
            Transaction.bill_status.in_([BillStatus.unpaid, BillStatus.pending]),
        )
        return self.session.scalars(stmt.order_by(Transaction.due_date)).all()

    def mark_paid(self, bill_id: int, now: Optional[datetime] = None) -> RolloverResult:
        bill = self.get(bill_id)
        return RecurringEngine(self.session).mark_paid(bill, now=now)

    def set_status(self, bill_id: int, status: BillStatus) -> RolloverResult:
        if status == BillStatus.paid:
            return self.mark_paid(bill_id)
        bill = self.get(bill_id)
        bill.bill_status = status
        self.session.commit()
        return RolloverResult(updated=bill, next_instance=None)


@dataclass
class SweepResult:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "SweepResult") -> None:
        self.processed += other.processed
        self.created += other.created
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)


class RecurringService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_template(self, template_id: int) -> Transaction:
        txn = self.session.get(Transaction, template_id)
        if not txn or txn.user_id != self.user_id or not txn.is_template:
            raise NotFound("Recurring template not found")
        return txn

    def list_templates(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id, Transaction.is_template.is_(True))
            .order_by(Transaction.date.desc())
        )
        return self.session.scalars(stmt).all()

    def toggle_active(self, template_id: int, active: bool) -> int:
        template = self.get_template(template_id)
        template.recurring_active = active
        self.session.commit()
        if active:
            return RecurringEngine(self.session).backfill(template)
        return 0

    def delete_series(self, template_id: int) -> int:
        template = self.get_template(template_id)
        result = self.session.execute(
            delete(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.template_id == template.id,
            )
        )
        deleted = result.rowcount
        self.session.execute(delete(Transaction).where(Transaction.id == template.id))
        self.session.commit()
        forget_template_lock(template_id)
        logger.info(f"series_deleted: template_id={template_id} instances={deleted}")
        return deleted

    def status(self, today: Optional[date] = None) -> dict[str, int]:
        today = today or RecurringEngine(self.session).today_for(self.user_id)
        templates = self.list_templates()
        expired = [t for t in templates if t.end_date is not None and t.end_date < today]
        active = [
            t for t in templates if t.recurring_active and t not in expired
        ]
        paused = [
            t for t in templates if not t.recurring_active and t not in expired
        ]
        total_instances = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.template_id.is_not(None),
            )
        ).scalar_one()
        return {
            "active_count": len(active),
            "paused_count": len(paused),
            "expired_count": len(expired),
            "total_instances": total_instances or 0,
        }

    def reconcile_user(self) -> SweepResult:
        return reconcile_templates(self.session, self._active_templates(self.user_id))

    def reconcile_all(self) -> SweepResult:
        stmt = select(Transaction.user_id).where(
            Transaction.is_template.is_(True),
            Transaction.recurring_active.is_(True),
        )
        user_ids = sorted(set(self.session.scalars(stmt).all()))
        logger.info(f"reconcile_all: users={len(user_ids)}")
        total = SweepResult()
        for user_id in user_ids:
            try:
                templates = self._active_templates(user_id)
            except Exception as exc:
                self.session.rollback()
                logger.exception(f"reconcile_user_failed: user_id={user_id}")
                total.failed += 1
                total.errors.append(f"user {user_id}: {exc}")
                continue
            total.merge(reconcile_templates(self.session, templates))
        return total

    def _active_templates(self, user_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.is_template.is_(True),
                Transaction.recurring_active.is_(True),
            )
            .order_by(Transaction.id)
        )
        return self.session.scalars(stmt).all()


def reconcile_templates(session: Session, templates: list[Transaction]) -> SweepResult:
    result = SweepResult()
    engine = RecurringEngine(session)
    for template in templates:
        template_id = template.id
        try:
            created = engine.backfill(template)
            today = engine.today_for(template.user_id)
            if template.end_date is not None and template.end_date < today:
                template.recurring_active = False
                session.commit()
                logger.info(f"template_deactivated: template_id={template_id}")
        except Exception as exc:
            session.rollback()
            logger.exception(f"backfill_failed: template_id={template_id}")
            result.failed += 1
            result.errors.append(f"template {template_id}: {exc}")
            continue
        result.processed += 1
        if created:
            result.created += created
        else:
            result.skipped += 1
    return result
