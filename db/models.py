from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class SourceSchedule(Base):
    """Smoothed posting rate and derived collection interval per tracked source"""
    __tablename__ = "source_schedules"

    source_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    average_items_per_day: Mapped[float] = mapped_column(Float)
    safe_interval_days: Mapped[float] = mapped_column(Float)
    last_calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    next_collection_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    # Failed dispatch backoff
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    retry_not_before: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    awaiting_first_dispatch: Mapped[bool] = mapped_column(Boolean, default=False)


class EnrichmentRequestRow(Base):
    """One deduplicated on-demand enrichment request; rows are never deleted"""
    __tablename__ = "enrichment_requests"

    request_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    term: Mapped[str] = mapped_column(String(255))
    normalized_term: Mapped[str] = mapped_column(String(255))
    entity_kind: Mapped[str] = mapped_column(String(50))
    reason: Mapped[str] = mapped_column(String(50))
    location_scope: Mapped[str] = mapped_column(String(255), default="global")
    status: Mapped[str] = mapped_column(String(20), default="pending")
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1)
    distinct_requester_count: Mapped[int] = mapped_column(Integer, default=0)
    linked_entity_id: Mapped[Optional[str]] = mapped_column(String(255))
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON)
    attempted_sources: Mapped[Optional[List[str]]] = mapped_column(JSON)
    deferred_attempts: Mapped[int] = mapped_column(Integer, default=0)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_outcome: Mapped[Optional[str]] = mapped_column(String(30))
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_enqueued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    result_counts: Mapped[Optional[Dict[str, int]]] = mapped_column(JSON)
    history: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    # owning admission while queued or processing
    attempt_token: Mapped[Optional[str]] = mapped_column(String(36))
    revision: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("uq_request_key", "normalized_term", "entity_kind", "reason", "location_scope", unique=True),
        Index("idx_request_backlog", "status", "occurrence_count", "last_seen_at"),
    )


class EnrichmentRequestRequester(Base):
    """Distinct requesters per request, pruned after the retention window"""
    __tablename__ = "enrichment_request_requesters"

    request_id: Mapped[str] = mapped_column(
        ForeignKey("enrichment_requests.request_id", ondelete="CASCADE"), primary_key=True
    )
    requester_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
