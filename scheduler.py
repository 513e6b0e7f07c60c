import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from config import get_settings
from ledger import LedgerStore
from models import Bill, IncomeSource
from services import BillService, IncomeService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _user_ids(session) -> list[int]:
    users = set(session.scalars(select(IncomeSource.user_id).distinct()).all())
    users.update(session.scalars(select(Bill.user_id).distinct()).all())
    return sorted(users)


def maintain_occurrences(
    session, user_id: int, today: Optional[date] = None
) -> dict[str, int]:
    """Generate upcoming income and bill occurrences and mark overdue bills."""
    income = IncomeService(session, user_id).generate_occurrences(today=today)
    bills = BillService(session, user_id)
    generated = bills.generate_occurrences(today=today)
    overdue = bills.refresh_statuses(today)
    return {"income": income, "bills": generated, "overdue": overdue}


class SchedulerManager:
    def __init__(self, store: Optional[LedgerStore] = None) -> None:
        settings = get_settings()
        self.store = store or LedgerStore()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        user_ids = self.store.execute(0, _user_ids)
        for user_id in user_ids:
            counts = self.store.run(
                user_id, lambda session: maintain_occurrences(session, user_id)
            )
            logger.info(
                f"scheduler_run: source={source} user={user_id} "
                f"income_generated={counts['income']} "
                f"bills_generated={counts['bills']} overdue={counts['overdue']}"
            )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="occurrences_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="occurrences_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
