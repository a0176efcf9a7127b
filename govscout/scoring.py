"""Score unscored opportunities with the LLM scoring client.

Opportunities are read in pages (newest posting first), scored one at a time,
and written in chunks. Per-item failures never abort the run: retryable API
errors are retried a bounded number of times, then the item is skipped.
"""
from __future__ import annotations

import json
import logging

from govscout.config import ScoringSettings
from govscout.models import (
    AI_SCORE_TYPE,
    SYNC_FAILED,
    SYNC_SUCCESS,
    Opportunity,
    OpportunityScore,
    ScoringResult,
    SyncLog,
)
from govscout.scorer import ScoreResult, ScoringAPIError, ScoringClient
from govscout.store import RecordStore
from govscout.utils import utc_now

log = logging.getLogger(__name__)

SYNC_TYPE = "AI_SCORING"


def confidence_for(score: float) -> float:
    """Confidence tier of a 0-100 score: 0.90 high, 0.70 medium, 0.50 low."""
    if score >= 80:
        return 0.90
    if score >= 50:
        return 0.70
    return 0.50


class _Skip(Exception):
    """Item is left unscored."""


class ScoringPipeline:
    def __init__(self, store: RecordStore, client: ScoringClient, settings: ScoringSettings | None = None):
        self.store = store
        self.client = client
        self.settings = settings or client.settings

    def _score_with_retry(self, opportunity: Opportunity) -> ScoreResult:
        attempts = max(1, self.settings.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self.client.score(
                    opportunity.title, opportunity.description, self.settings.capabilities,
                )
            except ScoringAPIError as exc:
                log.error("Scoring API error for opportunity %s (%s/%s): %s",
                          opportunity.notice_id, attempt, attempts, exc)
                if not exc.retryable or attempt == attempts:
                    raise _Skip(f"{opportunity.notice_id}: {exc}") from exc
        raise _Skip(f"{opportunity.notice_id}: no attempts made")

    def process(self, opportunity: Opportunity) -> OpportunityScore | None:
        """Score one opportunity. ``None`` means skipped without error.

        Raises :class:`_Skip` when the item failed and should be counted as an error.
        """
        if self.store.has_score(opportunity.id, AI_SCORE_TYPE):
            log.debug("Opportunity already scored: %s", opportunity.notice_id)
            return None
        if not (opportunity.title or "").strip():
            log.warning("Opportunity missing title, skipping: %s", opportunity.notice_id)
            return None

        log.info("Scoring opportunity: %s (%s)", opportunity.title, opportunity.notice_id)
        result = self._score_with_retry(opportunity)
        log.info("Scored opportunity %s with score: %d", opportunity.notice_id, result.score)
        now = utc_now()
        return OpportunityScore(
            opportunity_id=opportunity.id,
            score_type=AI_SCORE_TYPE,
            score_value=float(result.score),
            confidence=confidence_for(result.score),
            metadata_json=json.dumps({"rationale": result.rationale, "model": self.client.model}),
            scored_at=now,
            created_at=now,
        )

    def run(self) -> ScoringResult:
        result = ScoringResult()
        chunk: list[OpportunityScore] = []
        chunk_size = max(1, self.settings.chunk_size)
        page_size = max(1, self.settings.page_size)

        def flush() -> None:
            saved, errors = self.store.save_all(chunk)
            result.scored += saved
            result.skipped += len(chunk) - saved
            result.errors.extend(errors)
            if saved:
                log.info("Saved %d opportunity scores", saved)
            chunk.clear()

        # Rows committed by other writers mid-run shift the offsets, so a page
        # can repeat opportunities whose scores are still in the chunk.
        seen: set[int] = set()
        offset = 0
        while True:
            page = self.store.opportunities_page(offset, page_size)
            if not page:
                break
            offset += len(page)
            for opportunity in page:
                if opportunity.id in seen:
                    continue
                seen.add(opportunity.id)
                try:
                    score = self.process(opportunity)
                except _Skip as exc:
                    result.skipped += 1
                    result.errors.append(str(exc))
                    continue
                except Exception as exc:
                    log.exception("Unexpected error scoring opportunity %s", opportunity.notice_id)
                    result.skipped += 1
                    result.errors.append(f"{opportunity.notice_id}: {exc}")
                    continue
                if score is None:
                    result.skipped += 1
                    continue
                chunk.append(score)
                if len(chunk) >= chunk_size:
                    flush()
        flush()
        return result


def run_scoring(
    store: RecordStore,
    client: ScoringClient,
    settings: ScoringSettings | None = None,
) -> ScoringResult:
    """Score every opportunity that has no AI score yet and record a sync log."""
    started_at = utc_now()
    try:
        result = ScoringPipeline(store, client, settings).run()
    except Exception as exc:
        log.exception("Scoring run failed")
        store.rollback()
        store.add_sync_log(SyncLog(
            sync_type=SYNC_TYPE, status=SYNC_FAILED, records_processed=0, error_count=1,
            error_log=f"Error: {exc}", started_at=started_at, completed_at=utc_now(),
        ))
        raise
    store.add_sync_log(SyncLog(
        sync_type=SYNC_TYPE,
        status=SYNC_SUCCESS,
        records_processed=result.scored,
        error_count=len(result.errors),
        error_log="\n".join(result.errors),
        started_at=started_at,
        completed_at=utc_now(),
    ))
    log.info("Scoring finished: %d scored, %d skipped", result.scored, result.skipped)
    return result
