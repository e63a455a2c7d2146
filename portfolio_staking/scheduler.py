"""
Daily accrual scheduling

Runs InterestAccrualEngine.run_daily_accrual once per calendar day on an
APScheduler cron trigger.
"""

from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .interest import AccrualRunResult, InterestAccrualEngine
from .logging_config import get_logger


ACCRUAL_JOB_ID = "daily_interest_accrual"


class AccrualScheduler:
    """Background scheduler owning the daily accrual job"""

    def __init__(
        self,
        engine: InterestAccrualEngine,
        hour: int = 0,
        minute: int = 0,
        timezone: str = "UTC"
    ):
        self.engine = engine
        self.hour = hour
        self.minute = minute
        self.timezone = timezone
        self.logger = get_logger("staking.scheduler")
        self.scheduler = BackgroundScheduler(timezone=timezone)
        self.scheduler.add_job(
            self.run_accrual,
            trigger=CronTrigger(hour=hour, minute=minute, timezone=timezone),
            id=ACCRUAL_JOB_ID,
            name="Daily Interest Accrual",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

    def run_accrual(self) -> Optional[AccrualRunResult]:
        """Job body; errors are logged so the scheduler keeps running"""
        try:
            result = self.engine.run_daily_accrual()
        except Exception:
            self.logger.exception("Daily interest accrual run failed")
            return None

        if result.failures:
            self.logger.error(
                "Daily interest accrual finished with %d failures", len(result.failures)
            )
        else:
            self.logger.info(
                "Daily interest accrual finished: %d credited, %d skipped",
                result.credited, result.skipped
            )
        return result

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def next_run_time(self):
        job = self.scheduler.get_job(ACCRUAL_JOB_ID)
        return getattr(job, "next_run_time", None) if job else None

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            self.logger.info(
                "Accrual scheduler started (daily at %02d:%02d %s)",
                self.hour, self.minute, self.timezone
            )

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            self.logger.info("Accrual scheduler stopped")
