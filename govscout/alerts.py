"""High-score alert job.

Finds AI scores at or above the configured threshold created within the
lookback window and notifies chat and email for each opportunity. Every run
resends alerts for every qualifying score unless ``alerts.dedupe`` is on, in
which case scores with a recorded :class:`AlertDispatch` are skipped and the
opportunity's next highest unsent score, if any, is alerted instead.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from govscout.config import AlertSettings
from govscout.db import session_scope
from govscout.models import (
    SYNC_SUCCESS,
    AlertDispatch,
    AlertRunResult,
    Opportunity,
    OpportunityScore,
    SyncLog,
)
from govscout.notifier import DeliveryResult, Notifier
from govscout.store import RecordStore, record_failure
from govscout.utils import utc_now

log = logging.getLogger(__name__)

SYNC_TYPE = "HIGH_SCORE_ALERT"


def _fmt(value: object) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M UTC")
    return str(value)


def _agency_name(opportunity: Opportunity) -> str:
    return opportunity.agency.name if opportunity.agency else "Unknown"


def _confidence_pct(score: OpportunityScore) -> float:
    return (score.confidence or 0) * 100


def build_chat_message(opportunity: Opportunity, score: OpportunityScore) -> str:
    return "\n\n".join([
        "**High-Score Opportunity Alert**",
        f"**Title**: {opportunity.title}",
        f"**Score**: {score.score_value:.0f}/100 (AI Confidence: {_confidence_pct(score):.0f}%)",
        f"**Agency**: {_agency_name(opportunity)}",
        f"**Posted**: {_fmt(opportunity.posted_date)}",
        f"**Deadline**: {_fmt(opportunity.response_deadline)}",
        f"**Rationale**: {score.rationale}",
        f"**Link**: {opportunity.ui_link or 'N/A'}",
    ])


def build_email_message(opportunity: Opportunity, score: OpportunityScore) -> str:
    return (
        "High-Score Opportunity Alert\n\n"
        f"Title: {opportunity.title}\n\n"
        f"AI Score: {score.score_value:.0f}/100 (Confidence: {_confidence_pct(score):.0f}%)\n\n"
        f"Agency: {_agency_name(opportunity)}\n"
        f"Posted Date: {_fmt(opportunity.posted_date)}\n"
        f"Response Deadline: {_fmt(opportunity.response_deadline)}\n\n"
        f"Rationale:\n{score.rationale}\n\n"
        f"View Opportunity: {opportunity.ui_link or 'N/A'}\n\n"
        "---\n"
        "This is an automated alert from govscout."
    )


class AlertJob:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        notifier: Notifier,
        settings: AlertSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def _notify(self, opportunity: Opportunity, score: OpportunityScore) -> list[DeliveryResult]:
        log.info("Sending alerts for opportunity: %s (score: %.0f)", opportunity.title, score.score_value)
        deliveries = [self.notifier.send_chat(
            f"High-Score Opportunity: {opportunity.title}",
            build_chat_message(opportunity, score),
            opportunity.ui_link,
        )]
        subject = f"High-Score Opportunity Alert: {opportunity.title} (Score: {score.score_value:.0f})"
        body = build_email_message(opportunity, score)
        for recipient in self.settings.recipients:
            deliveries.append(self.notifier.send_email(recipient, subject, body))
        return deliveries

    def _run(self, store: RecordStore, now: datetime) -> AlertRunResult:
        result = AlertRunResult()
        since = now - timedelta(hours=self.settings.lookback_hours)
        scores = store.scores_at_or_above(self.settings.threshold, since)
        if not scores:
            log.info("No high-scoring opportunities found in last %d hours", self.settings.lookback_hours)
            return result
        log.info("Found %d high-scoring scores", len(scores))

        alerted: set[int] = set()
        for score in scores:
            if score.opportunity_id in alerted:
                continue
            if self.settings.dedupe and store.was_dispatched(score.id):
                log.debug("Alert already sent for score %s, skipping", score.id)
                result.skipped_already_sent += 1
                continue
            alerted.add(score.opportunity_id)
            try:
                opportunity = store.get_opportunity(score.opportunity_id)
                if opportunity is None:
                    raise LookupError(f"Opportunity not found: {score.opportunity_id}")
                deliveries = self._notify(opportunity, score)
            except Exception as exc:
                log.exception("Failed to send alert for opportunity %s", score.opportunity_id)
                result.errors.append(f"opportunity {score.opportunity_id}: {exc}")
                continue

            result.alerted += 1
            for d in deliveries:
                if d.failed:
                    result.delivery_failures += 1
                    result.errors.append(f"{opportunity.notice_id} via {d.channel}: {d.error}")
            channels = sorted({d.channel for d in deliveries if d.delivered})
            if channels:
                store.add_dispatch(AlertDispatch(
                    score_id=score.id,
                    opportunity_id=opportunity.id,
                    channels=",".join(channels),
                    dispatched_at=self.clock(),
                ))
            log.info("Alert processed for opportunity: %s", opportunity.notice_id)
        return result

    def run(self) -> AlertRunResult | None:
        """Run once. Returns ``None`` when alerts are disabled. Never raises."""
        if not self.settings.enabled:
            log.info("High-score alerts disabled, skipping")
            return None

        started_at = self.clock()
        log.info("Starting high-score alert job (threshold: %s, lookback: %s hours)",
                 self.settings.threshold, self.settings.lookback_hours)
        try:
            with session_scope(self.session_factory) as session:
                store = RecordStore(session)
                result = self._run(store, started_at)
                store.add_sync_log(SyncLog(
                    sync_type=SYNC_TYPE,
                    status=SYNC_SUCCESS,
                    records_processed=result.alerted,
                    error_count=len(result.errors),
                    error_log="\n".join(result.errors),
                    started_at=started_at,
                    completed_at=self.clock(),
                ))
        except Exception as exc:
            log.exception("High-score alert job failed")
            record_failure(self.session_factory, SYNC_TYPE, started_at, exc, self.clock)
            return AlertRunResult(errors=[str(exc)])
        log.info("High-score alert job completed: %d alerted, %d delivery failures",
                 result.alerted, result.delivery_failures)
        return result

