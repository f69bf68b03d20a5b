import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import BillingService
from stripe_gateway import StripeGateway


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Re-syncs subscriptions whose payment grace window ran out without a webhook."""

    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        if not self.settings.stripe_secret_key:
            logger.info(f"grace_sync_skipped: source={source} reason=no_stripe_key")
            return 0
        gateway = StripeGateway(self.settings)
        with session_scope() as session:
            service = BillingService(session, fetch_subscription=gateway.retrieve_subscription)
            count = service.sync_lapsed_grace()
        logger.info(f"grace_sync: source={source} profiles_synced={count}")
        return count

    def start(self) -> None:
        if self.scheduler.running:
            return
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="grace_sync_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="grace_sync_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 grace sync and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
