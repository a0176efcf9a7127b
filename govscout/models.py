from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel
from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from govscout.utils import json_parse, utc_now

AI_SCORE_TYPE = "AI"

SYNC_SUCCESS = "SUCCESS"
SYNC_FAILED = "FAILED"


class Base(DeclarativeBase):
    pass


class Agency(Base):
    __tablename__ = "agencies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    abbreviation: Mapped[str] = mapped_column(String(50), default="")
    department: Mapped[str] = mapped_column(String(500), default="")
    tier: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    opportunities: Mapped[list[Opportunity]] = relationship("Opportunity", back_populates="agency")


class Opportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notice_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    solicitation_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notice_type: Mapped[str] = mapped_column(String(50), default="Unknown")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    posted_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    response_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    naics_code: Mapped[str | None] = mapped_column(String(6), nullable=True)
    set_aside: Mapped[str | None] = mapped_column(String(100), nullable=True)
    classification_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    office_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    archive_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ui_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_info_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    point_of_contact: Mapped[str | None] = mapped_column(String(255), nullable=True)
    place_of_performance_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    place_of_performance_state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    place_of_performance_zip: Mapped[str | None] = mapped_column(String(10), nullable=True)
    place_of_performance_country: Mapped[str | None] = mapped_column(String(2), default="US")
    agency_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("agencies.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    agency: Mapped[Agency | None] = relationship("Agency", back_populates="opportunities")
    scores: Mapped[list[OpportunityScore]] = relationship(
        "OpportunityScore", back_populates="opportunity", cascade="all, delete-orphan",
    )


class OpportunityScore(Base):
    __tablename__ = "opportunity_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opportunity_id: Mapped[int] = mapped_column(Integer, ForeignKey("opportunities.id"), nullable=False)
    score_type: Mapped[str] = mapped_column(String(50), nullable=False)  # "AI" | "MANUAL" | ...
    score_value: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[str] = mapped_column("metadata", Text, default="{}")
    scored_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    opportunity: Mapped[Opportunity] = relationship("Opportunity", back_populates="scores")

    @property
    def details(self) -> dict:
        return json_parse(self.metadata_json)

    @property
    def rationale(self) -> str:
        return str(self.details.get("rationale") or "No rationale provided")


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)  # SUCCESS | FAILED
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    error_log: Mapped[str] = mapped_column(Text, default="")
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AlertDispatch(Base):
    """One alert sent for one score during one alert run."""
    __tablename__ = "alert_dispatches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    score_id: Mapped[int] = mapped_column(Integer, ForeignKey("opportunity_scores.id"), nullable=False)
    opportunity_id: Mapped[int] = mapped_column(Integer, ForeignKey("opportunities.id"), nullable=False)
    channels: Mapped[str] = mapped_column(String(100), default="")  # "chat,email"
    dispatched_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Run summaries
# ---------------------------------------------------------------------------


class ImportResult(BaseModel):
    succeeded: int = 0
    skipped: int = 0
    errors: list[str] = []

    def merge(self, other: ImportResult) -> ImportResult:
        return ImportResult(
            succeeded=self.succeeded + other.succeeded,
            skipped=self.skipped + other.skipped,
            errors=[*self.errors, *other.errors],
        )


class ScoringResult(BaseModel):
    scored: int = 0
    skipped: int = 0
    errors: list[str] = []


class AlertRunResult(BaseModel):
    alerted: int = 0
    delivery_failures: int = 0
    skipped_already_sent: int = 0
    errors: list[str] = []


class DigestStats(BaseModel):
    opportunities_added: int = 0
    opportunities_scored: int = 0
    alerts_sent: int = 0
    high_score_count: int = 0
    medium_score_count: int = 0
    low_score_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not any((
            self.opportunities_added, self.opportunities_scored, self.alerts_sent,
            self.high_score_count, self.medium_score_count, self.low_score_count,
        ))
