from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    BillFrequency,
    BillStatus,
    Transaction,
    TransactionKind,
    TransactionType,
)
from recurrence import RecurringEngine
from services import BillService, NotFound

PAID_AT = datetime(2024, 1, 31, 15, 0, tzinfo=timezone.utc)


def _bill(session: Session, due: date, frequency: BillFrequency, **overrides) -> Transaction:
    values = dict(
        user_id=1,
        kind=TransactionKind.bill,
        type=TransactionType.expense,
        title="Electricity",
        amount_cents=8000,
        currency="EUR",
        category="Utilities",
        date=due,
        occurred_at=datetime(due.year, due.month, due.day, 12),
        due_date=due,
        next_due_date=due,
        bill_status=BillStatus.unpaid,
        bill_frequency=frequency,
        is_template=frequency != BillFrequency.one_time,
    )
    values.update(overrides)
    bill = Transaction(**values)
    session.add(bill)
    session.commit()
    return bill


def _count(session: Session) -> int:
    return session.execute(select(func.count(Transaction.id))).scalar_one()


def test_mark_paid_rolls_month_end_bill_to_february_29():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bill = _bill(session, date(2024, 1, 31), BillFrequency.monthly)
        result = RecurringEngine(session).mark_paid(bill, now=PAID_AT)

        assert result.updated.bill_status == BillStatus.paid
        assert result.updated.last_paid_date == datetime(2024, 1, 31, 15, 0)
        assert result.updated.next_due_date == date(2024, 2, 29)

        nxt = result.next_instance
        assert nxt is not None
        assert nxt.due_date == date(2024, 2, 29)
        assert nxt.bill_status == BillStatus.unpaid
        assert nxt.template_id == bill.id
        assert nxt.is_template is False
        assert nxt.bill_frequency == BillFrequency.monthly
        assert _count(session) == 2


def test_paying_an_instance_keeps_pointing_at_the_series_template():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bill = _bill(session, date(2024, 1, 31), BillFrequency.monthly)
        recurring = RecurringEngine(session)
        february = recurring.mark_paid(bill, now=PAID_AT).next_instance
        march = recurring.mark_paid(february, now=PAID_AT).next_instance

        assert march.due_date == date(2024, 3, 29)
        assert march.template_id == bill.id
        assert february.bill_status == BillStatus.paid


def test_quarterly_and_yearly_bills_step_once():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        recurring = RecurringEngine(session)
        quarterly = _bill(session, date(2024, 11, 30), BillFrequency.quarterly)
        yearly = _bill(session, date(2024, 2, 29), BillFrequency.yearly)

        assert recurring.mark_paid(quarterly, now=PAID_AT).next_instance.due_date == (
            date(2025, 2, 28)
        )
        assert recurring.mark_paid(yearly, now=PAID_AT).next_instance.due_date == (
            date(2025, 2, 28)
        )


def test_one_time_bill_is_paid_without_a_new_record():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bill = _bill(session, date(2024, 3, 10), BillFrequency.one_time)
        result = RecurringEngine(session).mark_paid(bill, now=PAID_AT)

        assert result.next_instance is None
        assert result.updated.bill_status == BillStatus.paid
        assert _count(session) == 1


def test_mark_paid_twice_is_rejected():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bill = _bill(session, date(2024, 1, 15), BillFrequency.monthly)
        recurring = RecurringEngine(session)
        recurring.mark_paid(bill, now=PAID_AT)
        with pytest.raises(ValueError):
            recurring.mark_paid(bill, now=PAID_AT)
        assert _count(session) == 2


def test_mark_paid_reuses_occurrence_created_by_backfill():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bill = _bill(session, date(2024, 1, 31), BillFrequency.monthly)
        recurring = RecurringEngine(session)
        assert recurring.backfill(bill, today=date(2024, 3, 1)) == 1
        backfilled = session.scalars(
            select(Transaction).where(Transaction.template_id == bill.id)
        ).one()

        result = recurring.mark_paid(bill, now=PAID_AT)

        assert result.next_instance.id == backfilled.id
        assert result.next_instance.due_date == date(2024, 2, 29)
        assert _count(session) == 2


def test_mark_paid_rejects_regular_transactions():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = _bill(
            session,
            date(2024, 1, 5),
            BillFrequency.one_time,
            kind=TransactionKind.regular,
            bill_status=None,
            bill_frequency=None,
        )
        with pytest.raises(ValueError):
            RecurringEngine(session).mark_paid(txn, now=PAID_AT)


def test_overdue_and_upcoming_bills():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        late = _bill(session, date(2024, 3, 1), BillFrequency.one_time, title="Late")
        _bill(
            session,
            date(2024, 3, 5),
            BillFrequency.one_time,
            title="Settled",
            bill_status=BillStatus.paid,
        )
        soon = _bill(session, date(2024, 3, 12), BillFrequency.one_time, title="Soon")
        _bill(session, date(2024, 3, 30), BillFrequency.one_time, title="Later")

        service = BillService(session)
        today = date(2024, 3, 10)
        assert [b.id for b in service.overdue(today=today)] == [late.id]
        assert [b.id for b in service.upcoming(today=today)] == [soon.id]
        assert len(service.upcoming(days=30, today=today)) == 2
        assert len(service.list(BillStatus.paid)) == 1


def test_set_status_routes_paid_through_rollover():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        bill = _bill(session, date(2024, 1, 31), BillFrequency.monthly)
        service = BillService(session)

        pending = service.set_status(bill.id, BillStatus.pending)
        assert pending.updated.bill_status == BillStatus.pending
        assert pending.next_instance is None

        paid = service.set_status(bill.id, BillStatus.paid)
        assert paid.updated.bill_status == BillStatus.paid
        assert paid.next_instance.due_date == date(2024, 2, 29)

        with pytest.raises(NotFound):
            service.get(9999)
