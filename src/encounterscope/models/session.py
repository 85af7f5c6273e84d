"""Session, chunk result, and cascade chain records."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import Field

from .base import BaseRecord, ChunkStatus, SessionStatus
from .handoff import HandoffPackage


class ProgressiveSession(BaseRecord):
    """One progressive extraction run over one document."""

    document_ref: Optional[str] = Field(None, description="Caller's reference for the document")
    total_pages: int = Field(..., ge=1)
    chunk_size: int = Field(..., ge=1)
    total_chunks: int = Field(..., ge=1)
    current_chunk: int = Field(default=0, ge=0)
    status: SessionStatus = Field(default=SessionStatus.INITIALIZED)
    handoff: Optional[HandoffPackage] = None

    # Metrics
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    final_encounter_count: int = 0
    pending_count_unresolved: int = 0
    abandoned_group_count: int = 0

    # Review
    requires_manual_review: bool = False
    review_reasons: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ChunkResultRecord(BaseRecord):
    """Audit row for one chunk attempt, keyed by (session_id, chunk_number)."""

    session_id: UUID
    chunk_number: int = Field(..., ge=1)
    page_start: int = Field(..., ge=1)
    page_end: int = Field(..., ge=1)
    status: ChunkStatus
    attempt: int = Field(default=1, ge=1)

    model_name: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    confidence: Optional[float] = None
    processing_time_ms: int = 0

    handoff_received: Optional[dict[str, Any]] = None
    handoff_sent: Optional[dict[str, Any]] = None
    encounters_completed: int = 0
    pendings_created: int = 0
    cascading_count: int = 0
    continues_count: int = 0
    cascade_ids: list[str] = Field(default_factory=list)

    raw_response: Optional[str] = None
    error_message: Optional[str] = None


class CascadeChain(BaseRecord):
    """Lifecycle of an encounter spanning more than one chunk."""

    cascade_id: str
    session_id: UUID
    origin_chunk: int = Field(..., ge=1)
    origin_index: int = Field(..., ge=0)
    encounter_type: str
    pendings_count: int = Field(default=1, ge=1)
    last_chunk: int = Field(..., ge=1)
    final_encounter_id: Optional[UUID] = None
    is_complete: bool = False
    completed_at: Optional[datetime] = None
