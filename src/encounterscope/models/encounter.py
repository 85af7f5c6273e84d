"""Encounter models: per-chunk candidates, pendings, and final encounters."""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from .base import (
    BaseRecord,
    BoundaryType,
    DateSource,
    EncounterStatus,
    PageRange,
    PendingStatus,
    QualityTier,
    RegionHint,
)


class EncounterBoundary(BaseModel):
    """Start or end position of an encounter."""

    page: int = Field(..., ge=1)
    boundary_type: BoundaryType = Field(default=BoundaryType.INTER_PAGE)
    text_marker: Optional[str] = Field(
        None, description="Verbatim text at the boundary, for intra-page splits"
    )
    marker_context: Optional[str] = Field(
        None, description="Nearby text used to disambiguate repeated markers"
    )
    region_hint: Optional[RegionHint] = None

    # Filled in by coordinate resolution
    text_y_top: Optional[float] = None
    text_height: Optional[float] = None
    split_y: Optional[float] = Field(
        None, description="Pixel y where the page is split (intra_page only)"
    )


class MedicalIdentifier(BaseModel):
    """Patient identifier printed on the document (MRN, Medicare, ...)."""

    identifier_type: str
    value: str
    normalized_value: str
    issuing_organization: Optional[str] = None
    format_valid: bool = True


class EncounterCandidate(BaseModel):
    """
    Canonical shape of one encounter detected within a chunk.

    The inference output is normalised into this shape by
    ``pipeline.response``; nothing downstream sees provider field names.
    """

    index: int = Field(..., ge=0, description="Position within the chunk's output")
    status: EncounterStatus
    encounter_type: str = Field(..., min_length=1)
    page_ranges: list[PageRange] = Field(..., min_length=1)
    start: EncounterBoundary
    end: EncounterBoundary
    position_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    # Continuation
    temp_id: Optional[str] = None
    expected_continuation: Optional[str] = None
    continues_previous: bool = False
    continues_temp_id: Optional[str] = Field(
        None, description="Temp id from the handoff this encounter continues"
    )

    # Timing
    encounter_start_date: Optional[str] = None
    encounter_end_date: Optional[str] = None
    date_source: DateSource = Field(default=DateSource.AI_EXTRACTED)
    is_real_world_visit: bool = False

    # Identity
    patient_name: Optional[str] = None
    patient_date_of_birth: Optional[str] = None
    patient_address: Optional[str] = None
    identifiers: list[MedicalIdentifier] = Field(default_factory=list)

    # Clinical
    provider_name: Optional[str] = None
    facility_name: Optional[str] = None
    department: Optional[str] = None
    provider_role: Optional[str] = None
    chief_complaint: Optional[str] = None
    disposition: Optional[str] = None
    diagnoses: list[str] = Field(default_factory=list)
    procedures: list[str] = Field(default_factory=list)
    summary: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @property
    def first_page(self) -> int:
        return min(r.start for r in self.page_ranges)

    @property
    def last_page(self) -> int:
        return max(r.end for r in self.page_ranges)

    @property
    def is_continuation(self) -> bool:
        return self.continues_previous or bool(self.continues_temp_id)


class CompleteEncounter(EncounterCandidate):
    """Encounter that ends within the chunk."""

    status: Literal["complete"] = "complete"


class ContinuingEncounter(EncounterCandidate):
    """Encounter the model says carries on into the next chunk."""

    status: Literal["continuing"] = "continuing"
    temp_id: str = Field(..., min_length=1)
    expected_continuation: str = Field(..., min_length=1)


EncounterPayload = Annotated[
    Union[CompleteEncounter, ContinuingEncounter],
    Field(discriminator="status"),
]


class AdmissionContext(BaseModel):
    """Open inpatient stay mentioned by the document."""

    facility_name: Optional[str] = None
    admit_date: Optional[str] = None
    provider_name: Optional[str] = None


class ActiveContextHint(BaseModel):
    """Optional context the model reports alongside its encounters."""

    current_admission: Optional[AdmissionContext] = None
    recent_providers: list[str] = Field(default_factory=list)
    recent_facilities: list[str] = Field(default_factory=list)
    document_flow: Optional[str] = None


class ChunkExtraction(BaseModel):
    """Normalised inference output for one chunk."""

    encounters: list[EncounterPayload] = Field(default_factory=list)
    active_context: Optional[ActiveContextHint] = None


class PendingEncounter(BaseRecord):
    """
    Partial encounter detected in one chunk, awaiting reconciliation.

    ``cascade_id`` is None for encounters that complete inside their own
    chunk; every pending belonging to one cascade shares the id derived
    from the cascade's origin chunk and index.
    """

    session_id: UUID
    pending_id: str
    temp_id: Optional[str] = None
    chunk_number: int = Field(..., ge=1)
    last_seen_chunk: int = Field(..., ge=1)
    encounter_index: int = Field(..., ge=0)

    # Cascade
    cascade_id: Optional[str] = None
    origin_chunk: int = Field(..., ge=1)
    origin_index: int = Field(..., ge=0)
    is_cascading: bool = False
    continues_previous: bool = False
    expected_continuation: Optional[str] = None

    encounter: EncounterCandidate
    page_ranges: list[PageRange] = Field(default_factory=list)
    context_snippet: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    # Lifecycle
    status: PendingStatus = Field(default=PendingStatus.PENDING)
    requires_review: bool = False
    review_reason: Optional[str] = None
    error_message: Optional[str] = None
    reconciled_to: Optional[UUID] = None
    reconciled_at: Optional[datetime] = None


class FinalEncounter(BaseRecord):
    """Reconciled encounter; one per cascade group."""

    session_id: UUID
    cascade_id: Optional[str] = None
    encounter_type: str

    start: EncounterBoundary
    end: EncounterBoundary
    position_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    page_ranges: list[PageRange] = Field(default_factory=list)

    encounter_start_date: Optional[str] = None
    encounter_end_date: Optional[str] = None
    date_source: Optional[DateSource] = None
    is_real_world_visit: bool = False

    patient_name: Optional[str] = None
    patient_date_of_birth: Optional[str] = None
    patient_address: Optional[str] = None
    identifiers: list[MedicalIdentifier] = Field(default_factory=list)

    provider_name: Optional[str] = None
    facility_name: Optional[str] = None
    department: Optional[str] = None
    provider_role: Optional[str] = None
    chief_complaint: Optional[str] = None
    disposition: Optional[str] = None
    diagnoses: list[str] = Field(default_factory=list)
    procedures: list[str] = Field(default_factory=list)
    summary: Optional[str] = None

    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    quality_tier: QualityTier = Field(default=QualityTier.LOW)
    quality_metadata: dict[str, Any] = Field(default_factory=dict)
    source_pending_ids: list[str] = Field(default_factory=list)
    chunk_count: int = Field(default=1, ge=1)

    @property
    def pages(self) -> list[int]:
        return [p for r in self.page_ranges for p in r.pages]
