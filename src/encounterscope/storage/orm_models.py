"""SQLAlchemy ORM models for EncounterScope.

Five record kinds, each keyed by natural identity within a session:
sessions, chunk results (session + chunk number), pending encounters
(session + pending id), cascade chains (cascade id), final encounters.

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere so the same
models run against SQLite in tests.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from encounterscope.models.base import (
    ChunkStatus,
    DateSource,
    PendingStatus,
    QualityTier,
    SessionStatus,
)

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.utcnow()


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _status_enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=_enum_values)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class SessionORM(TimestampMixin, Base):
    """Progressive session table - one row per document run."""

    __tablename__ = "progressive_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    document_ref: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    total_pages: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    current_chunk: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[SessionStatus] = mapped_column(
        _status_enum(SessionStatus, "sessionstatus"), default=SessionStatus.INITIALIZED
    )
    handoff: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Metrics
    total_input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0)
    final_encounter_count: Mapped[int] = mapped_column(Integer, default=0)
    pending_count_unresolved: Mapped[int] = mapped_column(Integer, default=0)
    abandoned_group_count: Mapped[int] = mapped_column(Integer, default=0)

    # Review
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, default=False)
    review_reasons: Mapped[list] = mapped_column(JSONType, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_progressive_sessions_status", "status"),)


class ChunkResultORM(TimestampMixin, Base):
    """Chunk result audit table."""

    __tablename__ = "chunk_results"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("progressive_sessions.id", ondelete="CASCADE"), nullable=False
    )
    chunk_number: Mapped[int] = mapped_column(Integer, nullable=False)
    page_start: Mapped[int] = mapped_column(Integer, nullable=False)
    page_end: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ChunkStatus] = mapped_column(_status_enum(ChunkStatus, "chunkstatus"))
    attempt: Mapped[int] = mapped_column(Integer, default=1)

    model_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float] = mapped_column(Float, default=0.0)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)

    handoff_received: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    handoff_sent: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    encounters_completed: Mapped[int] = mapped_column(Integer, default=0)
    pendings_created: Mapped[int] = mapped_column(Integer, default=0)
    cascading_count: Mapped[int] = mapped_column(Integer, default=0)
    continues_count: Mapped[int] = mapped_column(Integer, default=0)
    cascade_ids: Mapped[list] = mapped_column(JSONType, default=list)

    raw_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "chunk_number", name="uq_chunk_results_session_chunk"),
    )


class PendingEncounterORM(TimestampMixin, Base):
    """Pending encounter table - partial per-chunk records."""

    __tablename__ = "pending_encounters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("progressive_sessions.id", ondelete="CASCADE"), nullable=False
    )
    pending_id: Mapped[str] = mapped_column(String(64), nullable=False)
    temp_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    chunk_number: Mapped[int] = mapped_column(Integer, nullable=False)
    last_seen_chunk: Mapped[int] = mapped_column(Integer, nullable=False)
    encounter_index: Mapped[int] = mapped_column(Integer, nullable=False)

    # Cascade
    cascade_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    origin_chunk: Mapped[int] = mapped_column(Integer, nullable=False)
    origin_index: Mapped[int] = mapped_column(Integer, nullable=False)
    is_cascading: Mapped[bool] = mapped_column(Boolean, default=False)
    continues_previous: Mapped[bool] = mapped_column(Boolean, default=False)
    expected_continuation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    encounter: Mapped[dict] = mapped_column(JSONType, nullable=False)
    page_ranges: Mapped[list] = mapped_column(JSONType, default=list)
    context_snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.5)

    # Lifecycle
    status: Mapped[PendingStatus] = mapped_column(
        _status_enum(PendingStatus, "pendingstatus"), default=PendingStatus.PENDING
    )
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reconciled_to: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "pending_id", name="uq_pending_encounters_session_pending"),
        Index("ix_pending_encounters_session_status", "session_id", "status"),
        Index("ix_pending_encounters_cascade", "cascade_id"),
    )


class CascadeChainORM(TimestampMixin, Base):
    """Cascade chain table."""

    __tablename__ = "cascade_chains"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    cascade_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    session_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("progressive_sessions.id", ondelete="CASCADE"), nullable=False
    )
    origin_chunk: Mapped[int] = mapped_column(Integer, nullable=False)
    origin_index: Mapped[int] = mapped_column(Integer, nullable=False)
    encounter_type: Mapped[str] = mapped_column(String(255), nullable=False)
    pendings_count: Mapped[int] = mapped_column(Integer, default=1)
    last_chunk: Mapped[int] = mapped_column(Integer, nullable=False)
    final_encounter_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_cascade_chains_session", "session_id"),)


class FinalEncounterORM(TimestampMixin, Base):
    """Final encounter table - reconciled output."""

    __tablename__ = "final_encounters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("progressive_sessions.id", ondelete="CASCADE"), nullable=False
    )
    cascade_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    encounter_type: Mapped[str] = mapped_column(String(255), nullable=False)

    start: Mapped[dict] = mapped_column(JSONType, nullable=False)
    end: Mapped[dict] = mapped_column(JSONType, nullable=False)
    position_confidence: Mapped[float] = mapped_column(Float, default=0.5)
    page_ranges: Mapped[list] = mapped_column(JSONType, default=list)

    encounter_start_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    encounter_end_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    date_source: Mapped[Optional[DateSource]] = mapped_column(
        _status_enum(DateSource, "datesource"), nullable=True
    )
    is_real_world_visit: Mapped[bool] = mapped_column(Boolean, default=False)

    patient_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    patient_date_of_birth: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    patient_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    identifiers: Mapped[list] = mapped_column(JSONType, default=list)

    provider_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    facility_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    department: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chief_complaint: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disposition: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnoses: Mapped[list] = mapped_column(JSONType, default=list)
    procedures: Mapped[list] = mapped_column(JSONType, default=list)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    quality_tier: Mapped[QualityTier] = mapped_column(
        _status_enum(QualityTier, "qualitytier"), default=QualityTier.LOW
    )
    quality_metadata: Mapped[dict] = mapped_column(JSONType, default=dict)
    source_pending_ids: Mapped[list] = mapped_column(JSONType, default=list)
    chunk_count: Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (Index("ix_final_encounters_session", "session_id"),)
