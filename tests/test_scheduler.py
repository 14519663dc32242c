import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

import config
from database import Base
from models import Frequency, Transaction, TransactionKind, TransactionType
from scheduler import SchedulerManager


def _factory(engine):
    @contextmanager
    def scope():
        session = Session(engine)
        try:
            yield session
            session.commit()
        finally:
            session.close()

    return scope


def test_run_job_reconciles_all_templates(monkeypatch):
    monkeypatch.setattr(
        "timezones.utc_now",
        lambda: datetime(2024, 4, 1, 10, 0, tzinfo=timezone.utc),
    )
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        for user_id in (1, 2):
            session.add(
                Transaction(
                    user_id=user_id,
                    kind=TransactionKind.regular,
                    type=TransactionType.income,
                    title="Salary",
                    amount_cents=300000,
                    currency="EUR",
                    category="Work",
                    date=date(2024, 1, 1),
                    occurred_at=datetime(2024, 1, 1, 12),
                    is_recurring=True,
                    is_template=True,
                    frequency=Frequency.monthly,
                    start_date=date(2024, 1, 1),
                )
            )
        session.commit()

    manager = SchedulerManager(session_factory=_factory(engine))
    result = manager._run_job("test")

    assert result.processed == 2
    assert result.created == 6
    with Session(engine) as session:
        count = session.execute(
            select(func.count(Transaction.id)).where(Transaction.template_id.is_not(None))
        ).scalar_one()
        assert count == 6

    assert manager._run_job("test").created == 0


def test_run_job_survives_a_broken_session(caplog):
    @contextmanager
    def broken():
        raise RuntimeError("database is gone")
        yield

    manager = SchedulerManager(session_factory=broken)
    with caplog.at_level(logging.ERROR, logger="scheduler"):
        assert manager._run_job("interval") is None
    assert "scheduler_run_failed: source=interval" in caplog.text


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("LEDGER_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LEDGER_TIMEZONE", "UTC+09:00")
    monkeypatch.setenv("LEDGER_RECONCILE_INTERVAL_HOURS", "6")
    monkeypatch.setenv("LEDGER_DEFAULT_CURRENCY", "usd")
    monkeypatch.delenv("LEDGER_DATABASE_URL", raising=False)
    config.get_settings.cache_clear()
    try:
        settings = config.get_settings()
        assert settings.timezone == "UTC+09:00"
        assert settings.reconcile_interval_hours == 6
        assert settings.default_currency == "USD"
        assert settings.database_url == f"sqlite:///{tmp_path.resolve() / 'ledger.db'}"

        monkeypatch.setenv("LEDGER_RECONCILE_INTERVAL_HOURS", "0")
        config.get_settings.cache_clear()
        with pytest.raises(ValueError):
            config.get_settings()
    finally:
        config.get_settings.cache_clear()
