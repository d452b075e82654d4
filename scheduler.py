import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import BillService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory=session_scope) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.sweep_hour = settings.overdue_sweep_hour
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _today(self):
        return datetime.now(ZoneInfo(self.timezone)).date()

    def run_overdue_sweep(self, source: str = "manual", today=None) -> int:
        today = today or self._today()
        logger.info(f"overdue_sweep: source={source} today={today}")
        with self.session_factory() as session:
            count = BillService(session).mark_overdue(today)
        logger.info(f"overdue_sweep: source={source} bills_marked={count}")
        return count

    def start(self) -> None:
        self.run_overdue_sweep("startup")

        trigger = CronTrigger(hour=self.sweep_hour, minute=5)
        self.scheduler.add_job(
            self.run_overdue_sweep,
            trigger,
            args=[f"daily_{self.sweep_hour:02d}:05"],
            id="bills_overdue_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily overdue sweep at {self.sweep_hour:02d}:05")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
