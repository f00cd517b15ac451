import logging
from datetime import date, datetime
from typing import Callable, Optional, Sequence, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from errors import TransientQueueError, TransientStoreError
from recurrence import MaterializationResult, materialize_due
from reports import ReportTrigger


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


def run_materializer(
    source: str = "manual", as_of: Union[date, datetime, None] = None
) -> Optional[MaterializationResult]:
    settings = get_settings()
    logger.info(f"scheduler_run: job=materialize source={source}")
    try:
        with session_scope() as session:
            result = materialize_due(
                session, as_of, catch_up=settings.recurring_catch_up
            )
    except TransientStoreError:
        logger.exception(
            f"scheduler_run: job=materialize source={source} status=failed "
            "retry=next_tick"
        )
        return None
    status = "partial" if result.partially_succeeded else "ok"
    logger.info(
        f"scheduler_run: job=materialize source={source} status={status} "
        f"created={len(result.created)} advanced={len(result.advanced)} "
        f"errors={len(result.errors)}"
    )
    return result


def run_report_trigger(trigger: ReportTrigger, source: str = "manual") -> bool:
    logger.info(f"scheduler_run: job=report source={source}")
    try:
        trigger.on_monthly_tick()
    except TransientQueueError:
        logger.error(
            f"scheduler_run: job=report source={source} status=failed "
            f"pending={len(trigger.pending)} retry=next_tick"
        )
        return False
    logger.info(f"scheduler_run: job=report source={source} status=ok")
    return True


class SchedulerManager:
    def __init__(self, report_trigger: Optional[ReportTrigger] = None) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)
        self.report_trigger = report_trigger

    def on_tick(
        self,
        cron_expression: str,
        handler: Callable[..., object],
        *,
        job_id: str,
        args: Sequence[object] = (),
        misfire_grace_time: int = 3600,
    ) -> None:
        trigger = CronTrigger.from_crontab(
            cron_expression, timezone=self.settings.timezone
        )
        self.scheduler.add_job(
            handler,
            trigger,
            args=list(args),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=misfire_grace_time,
            coalesce=True,
            max_instances=1,
        )

    def register_jobs(self) -> None:
        self.on_tick(
            self.settings.materialize_cron,
            run_materializer,
            job_id="recurring_daily",
            args=["daily"],
        )
        # Reruns within the same UTC day are no-ops for series already advanced.
        self.on_tick(
            "0 * * * *",
            run_materializer,
            job_id="recurring_hourly_safety",
            args=["hourly_safety_net"],
            misfire_grace_time=300,
        )
        if self.report_trigger is not None:
            self.on_tick(
                self.settings.report_cron,
                run_report_trigger,
                job_id="report_monthly",
                args=[self.report_trigger, "monthly"],
            )

    def start(self) -> None:
        run_materializer("startup")
        self.register_jobs()
        self.scheduler.start()
        logger.info(
            f"Scheduler started: materialize={self.settings.materialize_cron!r} "
            f"report={self.settings.report_cron!r} timezone={self.settings.timezone}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
