import logging
from collections import deque
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, get_settings
from jobs import JobRunner
from recurrence import RecurringJob


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class OwnerThrottle:
    """Hands out start slots so no owner starts more than ``limit`` jobs per ``period``."""

    def __init__(self, limit: int, period: timedelta) -> None:
        if limit < 1:
            raise ValueError("Throttle limit must be at least 1")
        self.limit = limit
        self.period = period
        self._slots: dict[object, deque] = {}
        self._lock = Lock()

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.period
        for key in list(self._slots):
            slots = self._slots[key]
            while slots and slots[0] <= cutoff:
                slots.popleft()
            if not slots:
                del self._slots[key]

    def tracked_owners(self) -> int:
        with self._lock:
            return len(self._slots)

    def reserve(self, key: object, now: datetime) -> datetime:
        with self._lock:
            self._prune(now)
            slots = self._slots.setdefault(key, deque())
            if len(slots) < self.limit:
                start = now
            else:
                start = max(now, slots[-self.limit] + self.period)
            slots.append(start)
            return start


class SchedulerManager:
    def __init__(self, runner: JobRunner, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        self.runner = runner
        self.tz = ZoneInfo(settings.timezone)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.throttle = OwnerThrottle(
            settings.recurring_throttle_limit,
            timedelta(seconds=settings.recurring_throttle_period_secs),
        )
        runner.dispatch = self.submit_recurring

    def _run_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        summary = self.runner.trigger_recurring_transactions()
        logger.info(f"scheduler_run: source={source} triggered={summary['triggered']}")

    def submit_recurring(self, jobs: list[RecurringJob]) -> None:
        now = datetime.now(self.tz)
        for job in jobs:
            run_date = self.throttle.reserve(job.user_id, now)
            self.scheduler.add_job(
                self.runner.process_recurring_transaction,
                "date",
                run_date=run_date,
                args=[job],
                id=job.key,
                replace_existing=True,
                misfire_grace_time=3600,
            )
        logger.info(f"recurring_submitted: jobs={len(jobs)}")

    def start(self) -> None:
        # Date jobs added before start() wait in the pending queue.
        self._run_recurring("startup")

        self.scheduler.add_job(
            self._run_recurring,
            CronTrigger(hour=0, minute=0),
            args=["daily_00:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_recurring,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self.runner.generate_monthly_reports,
            CronTrigger(day=1, hour=0, minute=0),
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.runner.generate_weekly_insights,
            CronTrigger(day_of_week="mon", hour=9, minute=0),
            id="weekly_insights",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.runner.check_budget_alerts,
            CronTrigger(hour="*/6", minute=0),
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=900,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily 00:00 recurring scan, hourly safety net, "
            "monthly reports, weekly insights and 6-hourly budget alerts"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
