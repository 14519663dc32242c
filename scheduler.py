import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import RecurringService, SweepResult
from timezones import resolve


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory=session_scope) -> None:
        settings = get_settings()
        self.interval_hours = settings.reconcile_interval_hours
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=resolve(settings.timezone))

    def _run_job(self, source: str = "manual") -> Optional[SweepResult]:
        logger.info(f"scheduler_run: source={source}")
        try:
            with self.session_factory() as session:
                result = RecurringService(session).reconcile_all()
        except Exception:
            # Next tick retries; a dead sweep must not kill the scheduler thread
            logger.exception(f"scheduler_run_failed: source={source}")
            return None
        logger.info(
            f"scheduler_run: source={source} processed={result.processed} "
            f"created={result.created} skipped={result.skipped} failed={result.failed}"
        )
        return result

    def start(self) -> None:
        self._run_job("startup")

        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="recurring_reconcile",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with {self.interval_hours}h reconciliation")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
