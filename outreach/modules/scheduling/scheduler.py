"""
Background scheduler for the outreach engine.

Uses APScheduler to run periodic jobs:
- Starting scheduled campaigns that are due and draining campaigns that are sending
- Dispatching due recovery sequence steps
- Pruning old engine log entries
"""

import logging

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from outreach.core import LoggingService, db_log

logger = logging.getLogger(__name__)


def _on_job_error(event):
    logger.error(f"Scheduled job FAILED: job_id={event.job_id} error={event.exception}")
    if event.traceback:
        logger.error(f"Traceback for job {event.job_id}:\n{event.traceback}")
    db_log('error', 'scheduler', f"Job {event.job_id} failed", {'error': str(event.exception)})


def _on_job_missed(event):
    logger.warning(f"Scheduled job MISSED: job_id={event.job_id} scheduled_run_time={event.scheduled_run_time}")


class OutreachScheduler:
    """
    Wraps a BackgroundScheduler. Each job runs with max_instances=1 and
    coalesce=True, so a slow tick is never overlapped by the next one.
    """

    def __init__(self, lifecycle, recovery, interval_seconds=60, log_retention_days=30):
        self.lifecycle = lifecycle
        self.recovery = recovery
        self.interval_seconds = interval_seconds
        self.log_retention_days = log_retention_days
        self.scheduler = None

    @property
    def running(self):
        return self.scheduler is not None and self.scheduler.running

    def tick_campaigns(self):
        return self.lifecycle.tick()

    def tick_recovery(self):
        return self.recovery.tick()

    def cleanup_logs(self):
        return LoggingService.cleanup_old_logs(self.log_retention_days)

    def run_once(self):
        """Run one campaign pass and one recovery pass in the calling thread."""
        return {'campaigns': self.tick_campaigns(), 'recovery': self.tick_recovery()}

    def start(self):
        if self.running:
            logger.warning("Scheduler already running")
            return self.scheduler

        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60,
            }
        )
        self.scheduler.add_job(
            func=self.tick_campaigns,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id='outreach_tick_campaigns',
            name='Start Due Campaigns and Dispatch Recipients',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.tick_recovery,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id='outreach_tick_recovery',
            name='Dispatch Due Recovery Steps',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.cleanup_logs,
            trigger=CronTrigger(hour=3, minute=0),
            id='outreach_cleanup_logs',
            name='Prune Old Engine Logs',
            replace_existing=True
        )
        self.scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(_on_job_missed, EVENT_JOB_MISSED)
        self.scheduler.start()

        logger.info(f"Outreach scheduler started (every {self.interval_seconds}s)")
        return self.scheduler

    def shutdown(self, wait=True):
        if not self.running:
            return
        self.scheduler.shutdown(wait=wait)
        self.scheduler = None
        logger.info("Outreach scheduler stopped")
