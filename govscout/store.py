"""Record store: the only module that queries or commits.

Pipelines and jobs receive a :class:`RecordStore` wrapping one session; they
never touch the session directly.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from govscout.db import session_scope
from govscout.models import (
    SYNC_FAILED,
    Agency,
    AlertDispatch,
    Base,
    Opportunity,
    OpportunityScore,
    SyncLog,
)
from govscout.utils import utc_now

log = logging.getLogger(__name__)


def _describe(item: Base) -> str:
    if isinstance(item, Opportunity):
        return f"opportunity {item.notice_id}"
    if isinstance(item, OpportunityScore):
        return f"score for opportunity {item.opportunity_id}"
    return type(item).__name__


class RecordStore:
    def __init__(self, session: Session):
        self.session = session

    # -- writes -------------------------------------------------------------

    def save(self, item: Base) -> Base:
        self.session.add(item)
        self.session.commit()
        return item

    def save_all(self, items: Sequence[Base]) -> tuple[int, list[str]]:
        """Commit *items* as one chunk, falling back to item-by-item on failure.

        Returns ``(saved_count, errors)``. A failing item is rolled back and
        reported; the rest of the chunk is still written.
        """
        if not items:
            return 0, []
        try:
            self.session.add_all(items)
            self.session.commit()
            return len(items), []
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.warning("Chunk write of %d items failed (%s), retrying one by one",
                        len(items), exc.__class__.__name__)

        saved = 0
        errors: list[str] = []
        for item in items:
            try:
                self.session.add(item)
                self.session.commit()
                saved += 1
            except SQLAlchemyError as exc:
                self.session.rollback()
                log.warning("Skipping %s: %s", _describe(item), exc)
                errors.append(f"{_describe(item)}: write failed ({exc.__class__.__name__})")
        return saved, errors

    def rollback(self) -> None:
        self.session.rollback()

    def add_sync_log(self, entry: SyncLog) -> SyncLog:
        return self.save(entry)  # type: ignore[return-value]

    def add_dispatch(self, dispatch: AlertDispatch) -> AlertDispatch:
        return self.save(dispatch)  # type: ignore[return-value]

    # -- opportunities ------------------------------------------------------

    def exists_by_notice_id(self, notice_id: str) -> bool:
        stmt = select(Opportunity.id).where(Opportunity.notice_id == notice_id).limit(1)
        return self.session.execute(stmt).scalar() is not None

    def get_opportunity(self, opportunity_id: int) -> Opportunity | None:
        return self.session.get(Opportunity, opportunity_id)

    def opportunities_page(self, offset: int, limit: int) -> list[Opportunity]:
        stmt = (
            select(Opportunity)
            .order_by(Opportunity.posted_date.desc(), Opportunity.id)
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())

    def count_opportunities_between(self, start: datetime, end: datetime) -> int:
        stmt = select(func.count(Opportunity.id)).where(
            Opportunity.created_at >= start, Opportunity.created_at <= end,
        )
        return self.session.execute(stmt).scalar() or 0

    # -- agencies -----------------------------------------------------------

    def find_agencies_by_name(self, fragment: str) -> list[Agency]:
        """Agencies whose name contains *fragment*, case-insensitively, oldest first."""
        stmt = (
            select(Agency)
            .where(func.lower(Agency.name).contains(fragment.lower(), autoescape=True))
            .order_by(Agency.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def add_agency(self, agency: Agency) -> Agency:
        return self.save(agency)  # type: ignore[return-value]

    # -- scores -------------------------------------------------------------

    def has_score(self, opportunity_id: int, score_type: str) -> bool:
        stmt = select(OpportunityScore.id).where(
            OpportunityScore.opportunity_id == opportunity_id,
            OpportunityScore.score_type == score_type,
        ).limit(1)
        return self.session.execute(stmt).scalar() is not None

    def scores_at_or_above(self, threshold: float, since: datetime) -> list[OpportunityScore]:
        stmt = (
            select(OpportunityScore)
            .where(OpportunityScore.score_value >= threshold, OpportunityScore.created_at >= since)
            .order_by(OpportunityScore.score_value.desc(), OpportunityScore.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def count_scores_between(
        self, start: datetime, end: datetime,
        min_value: float | None = None, below: float | None = None,
    ) -> int:
        """Count scores created in ``[start, end]`` with ``min_value <= value < below``."""
        stmt = select(func.count(OpportunityScore.id)).where(
            OpportunityScore.created_at >= start, OpportunityScore.created_at <= end,
        )
        if min_value is not None:
            stmt = stmt.where(OpportunityScore.score_value >= min_value)
        if below is not None:
            stmt = stmt.where(OpportunityScore.score_value < below)
        return self.session.execute(stmt).scalar() or 0

    # -- alert dispatches ---------------------------------------------------

    def was_dispatched(self, score_id: int) -> bool:
        stmt = select(AlertDispatch.id).where(AlertDispatch.score_id == score_id).limit(1)
        return self.session.execute(stmt).scalar() is not None

    def count_dispatches_between(self, start: datetime, end: datetime) -> int:
        stmt = select(func.count(AlertDispatch.id)).where(
            AlertDispatch.dispatched_at >= start, AlertDispatch.dispatched_at <= end,
        )
        return self.session.execute(stmt).scalar() or 0

    # -- sync logs ----------------------------------------------------------

    def recent_sync_logs(self, limit: int = 20, sync_type: str | None = None) -> list[SyncLog]:
        stmt = select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
        if sync_type:
            stmt = stmt.where(SyncLog.sync_type == sync_type)
        return list(self.session.execute(stmt).scalars().all())


def record_failure(
    session_factory: sessionmaker[Session],
    sync_type: str,
    started_at: datetime,
    exc: BaseException,
    clock: Callable[[], datetime] = utc_now,
) -> SyncLog | None:
    """Write a FAILED sync log in a fresh session; logs if that fails too."""
    try:
        with session_scope(session_factory) as session:
            return RecordStore(session).add_sync_log(SyncLog(
                sync_type=sync_type,
                status=SYNC_FAILED,
                records_processed=0,
                error_count=1,
                error_log=f"Error: {exc}",
                started_at=started_at,
                completed_at=clock(),
            ))
    except Exception:
        log.exception("Could not record %s failure", sync_type)
        return None
