"""
Scheduled reconciliation job (APScheduler).
Runs the full reconcile-duplicate-payments operation on a cron schedule.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import (
    EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, EVENT_JOB_MISSED,
    EVENT_SCHEDULER_STARTED, EVENT_SCHEDULER_SHUTDOWN
)

from ..common.config import ReconciliationConfig
from ..common.session import SessionManager
from ..reconciliation.service import ReconciliationReport, ReconciliationService

logger = logging.getLogger(__name__)

JOB_ID = 'reconcile_duplicate_payments'


def create_cron_trigger(cron_expr: str, timezone: str = 'UTC') -> CronTrigger:
    """
    Build a CronTrigger from a 5-field cron expression (minute hour day month day_of_week).

    Raises:
        ValueError: If the expression does not have 5 fields
    """
    parts = cron_expr.split()
    if len(parts) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {cron_expr!r}")

    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone
    )


class ReconciliationScheduler:
    """
    Wraps a BackgroundScheduler holding the single reconciliation job.

    stop() sets a cancel event so an in-flight run halts after its current
    deletion batch.
    """

    def __init__(self, session_manager: SessionManager, config: Optional[ReconciliationConfig] = None):
        self.config = config or ReconciliationConfig()
        self.service = ReconciliationService(session_manager, self.config)

        self._scheduler: Optional[BackgroundScheduler] = None
        self._cancel_event = threading.Event()
        self._running = False
        self.last_report: Optional[ReconciliationReport] = None

    def initialize(self):
        """Configure APScheduler and register the reconciliation job."""
        schedule = self.config.schedule

        self._scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=1)},
            job_defaults={
                'coalesce': schedule.coalesce,
                'max_instances': schedule.max_instances,
                'misfire_grace_time': schedule.misfire_grace_time,
            },
            timezone=schedule.timezone
        )

        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._scheduler.add_listener(self._on_scheduler_event, EVENT_SCHEDULER_STARTED | EVENT_SCHEDULER_SHUTDOWN)

        self._scheduler.add_job(
            func=self.run_job,
            trigger=create_cron_trigger(schedule.cron, schedule.timezone),
            id=JOB_ID,
            name='Reconcile duplicate payments',
            replace_existing=True
        )
        logger.info(f"Registered job {JOB_ID} ({schedule.cron}, {schedule.timezone})")

    def run_job(self) -> ReconciliationReport:
        """Job body: one full-scope reconciliation."""
        self._cancel_event.clear()
        report = self.service.reconcile(cancel_event=self._cancel_event)
        self.last_report = report
        return report

    def start(self):
        """Start the scheduler."""
        if self._running:
            logger.warning("Scheduler is already running")
            return

        if not self._scheduler:
            self.initialize()

        self._scheduler.start()
        self._running = True
        logger.info("Reconciliation scheduler started")

    def stop(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: Whether to wait for a running job to finish its current batch
        """
        if not self._running:
            logger.warning("Scheduler is not running")
            return

        logger.info("Stopping reconciliation scheduler...")
        self._cancel_event.set()
        self._scheduler.shutdown(wait=wait)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Get list of scheduled jobs."""
        if not self._scheduler:
            return []

        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger),
            })
        return jobs

    def _on_job_event(self, event):
        """Handle APScheduler job events."""
        if event.code == EVENT_JOB_ERROR:
            logger.error(f"Job {event.job_id} error: {event.exception}")
        elif event.code == EVENT_JOB_MISSED:
            logger.warning(f"Job {event.job_id} missed its scheduled run time")
        elif event.code == EVENT_JOB_EXECUTED:
            logger.debug(f"Job {event.job_id} executed successfully")

    def _on_scheduler_event(self, event):
        """Handle APScheduler lifecycle events."""
        if event.code == EVENT_SCHEDULER_STARTED:
            logger.info("APScheduler started")
        elif event.code == EVENT_SCHEDULER_SHUTDOWN:
            logger.info("APScheduler shutdown")
