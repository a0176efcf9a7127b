"""APScheduler wiring for the periodic jobs."""
from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session, sessionmaker

from govscout.alerts import AlertJob
from govscout.config import Settings
from govscout.digest import DigestJob
from govscout.notifier import Notifier

log = logging.getLogger(__name__)

ALERT_JOB_ID = "high_score_alerts"
DIGEST_JOB_ID = "weekly_digest"
TIMEZONE = "UTC"


def build_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    notifier: Notifier,
    scheduler: BaseScheduler | None = None,
) -> BaseScheduler:
    """Register the alert and digest jobs on *scheduler* without starting it.

    Each job runs at most once at a time; missed firings collapse into one run.
    """
    if scheduler is None:
        scheduler = BackgroundScheduler(timezone=TIMEZONE)

    alerts = AlertJob(session_factory, notifier, settings.alerts)
    digest = DigestJob(session_factory, notifier, settings.digest)

    scheduler.add_job(
        alerts.run,
        trigger=CronTrigger.from_crontab(settings.alerts.cron, timezone=TIMEZONE),
        id=ALERT_JOB_ID,
        name="High-score opportunity alerts",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        digest.run,
        trigger=CronTrigger.from_crontab(settings.digest.cron, timezone=TIMEZONE),
        id=DIGEST_JOB_ID,
        name="Weekly digest",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    log.info("Scheduled %s (%s) and %s (%s)",
             ALERT_JOB_ID, settings.alerts.cron, DIGEST_JOB_ID, settings.digest.cron)
    return scheduler
