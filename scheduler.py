import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import backfill_all_fatura_transfers, reconcile_all_account_balances


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.hour = settings.reconcile_hour
        self.minute = settings.reconcile_minute
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            transfers = backfill_all_fatura_transfers(session)
            balances = reconcile_all_account_balances(session)
        logger.info(
            f"scheduler_run: source={source} transfers_created={transfers['created']} "
            f"accounts_synced={balances['accounts']}"
        )

    def start(self) -> None:
        self._run_job("startup")

        slot = f"{self.hour:02d}:{self.minute:02d}"
        trigger = CronTrigger(hour=self.hour, minute=self.minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{slot}"],
            id="reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with daily reconciliation at {slot}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
