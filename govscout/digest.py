"""Weekly digest job.

Summarises the trailing window (seven days by default) of pipeline activity
and emails a plain-text digest to every configured recipient. A run is
SUCCESS only when every recipient received the digest.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from govscout.config import DigestSettings
from govscout.db import session_scope
from govscout.models import SYNC_SUCCESS, DigestStats, SyncLog
from govscout.notifier import Notifier
from govscout.store import RecordStore, record_failure
from govscout.utils import utc_now

log = logging.getLogger(__name__)

SYNC_TYPE = "WEEKLY_DIGEST"

HIGH_SCORE = 80
MEDIUM_SCORE = 50


class DigestError(Exception):
    """The digest could not be delivered."""


def gather_stats(store: RecordStore, start: datetime, end: datetime) -> DigestStats:
    stats = DigestStats(
        opportunities_added=store.count_opportunities_between(start, end),
        opportunities_scored=store.count_scores_between(start, end),
        alerts_sent=store.count_dispatches_between(start, end),
        high_score_count=store.count_scores_between(start, end, min_value=HIGH_SCORE),
        medium_score_count=store.count_scores_between(start, end, min_value=MEDIUM_SCORE, below=HIGH_SCORE),
        low_score_count=store.count_scores_between(start, end, below=MEDIUM_SCORE),
    )
    log.info("Weekly stats: %d opportunities added, %d scored, %d alerts sent",
             stats.opportunities_added, stats.opportunities_scored, stats.alerts_sent)
    return stats


def build_insights(stats: DigestStats) -> list[str]:
    lines: list[str] = []
    if stats.is_empty:
        lines.append("- Quiet week - no significant activity.")
    if stats.opportunities_added == 0:
        lines.append("- No new opportunities added this week.")
    else:
        lines.append(f"- {stats.opportunities_added} new opportunities discovered.")
    if stats.high_score_count:
        lines.append(f"- {stats.high_score_count} high-value opportunities identified!")
    if stats.opportunities_scored:
        rate = stats.opportunities_scored / max(stats.opportunities_added, 1) * 100
        lines.append(f"- {rate:.0f}% of new opportunities scored by AI.")
    if stats.alerts_sent:
        lines.append(f"- {stats.alerts_sent} alerts delivered to capture team.")
    return lines


def build_digest(stats: DigestStats, start: datetime, end: datetime) -> str:
    return (
        "govscout Weekly Digest\n\n"
        f"Period: {start:%Y-%m-%d} to {end:%Y-%m-%d}\n\n"
        "Activity Summary:\n"
        "----------------\n"
        f"Opportunities Added: {stats.opportunities_added}\n"
        f"Opportunities Scored: {stats.opportunities_scored}\n"
        f"Alerts Sent: {stats.alerts_sent}\n\n"
        "Score Breakdown:\n"
        "----------------\n"
        f"High Scores (80-100): {stats.high_score_count}\n"
        f"Medium Scores (50-79): {stats.medium_score_count}\n"
        f"Low Scores (0-49): {stats.low_score_count}\n\n"
        "Key Insights:\n"
        "-------------\n"
        + "\n".join(build_insights(stats))
        + "\n\n---\n"
        "This is an automated digest from govscout.\n"
        "To adjust digest settings, contact your system administrator."
    )


class DigestJob:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        notifier: Notifier,
        settings: DigestSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def _send(self, subject: str, body: str) -> None:
        if not self.settings.recipients:
            raise DigestError("no digest recipient configured")
        failures = []
        for recipient in self.settings.recipients:
            delivery = self.notifier.send_email(recipient, subject, body)
            if not delivery.delivered:
                failures.append(f"{recipient}: {delivery.error or 'email channel disabled'}")
        if failures:
            raise DigestError("digest delivery failed for " + "; ".join(failures))
        log.info("Weekly digest sent to: %s", ", ".join(self.settings.recipients))

    def run(self) -> SyncLog | None:
        """Run once and return the sync log written. ``None`` when disabled. Never raises."""
        if not self.settings.enabled:
            log.info("Weekly digest disabled, skipping")
            return None

        started_at = self.clock()
        log.info("Starting weekly digest job")
        try:
            with session_scope(self.session_factory) as session:
                store = RecordStore(session)
                start = started_at - timedelta(days=self.settings.window_days)
                stats = gather_stats(store, start, started_at)
                self._send(f"govscout Weekly Digest - {started_at:%Y-%m-%d}", build_digest(stats, start, started_at))
                entry = store.add_sync_log(SyncLog(
                    sync_type=SYNC_TYPE,
                    status=SYNC_SUCCESS,
                    records_processed=stats.opportunities_added,
                    error_count=0,
                    started_at=started_at,
                    completed_at=self.clock(),
                ))
        except Exception as exc:
            log.error("Weekly digest job failed: %s", exc)
            return record_failure(self.session_factory, SYNC_TYPE, started_at, exc, self.clock)
        log.info("Weekly digest job completed successfully")
        return entry

