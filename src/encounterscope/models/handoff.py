"""Handoff package carried from one chunk's prompt to the next."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .encounter import AdmissionContext


class OpenPendingSummary(BaseModel):
    """The one still-open cascading encounter, as the next chunk should see it."""

    temp_id: str
    pending_id: str
    cascade_id: str
    origin_chunk: int
    origin_index: int
    encounter_type: str
    start_page: int
    last_page: int
    expected_continuation: str
    encounter_start_date: Optional[str] = None
    provider_name: Optional[str] = None
    facility_name: Optional[str] = None
    partial_summary: Optional[str] = None
    context_snippet: Optional[str] = Field(
        None, description="Tail of the last page the encounter was seen on"
    )


class ActiveContext(BaseModel):
    current_admission: Optional[AdmissionContext] = None
    recent_providers: list[str] = Field(default_factory=list)
    recent_facilities: list[str] = Field(default_factory=list)
    document_flow: str = "unknown"
    last_confident_date: Optional[str] = None


class RecentEncounterSummary(BaseModel):
    encounter_type: str
    start_page: int
    end_page: int
    encounter_date: Optional[str] = None
    provider_name: Optional[str] = None


class HandoffPackage(BaseModel):
    """Built fresh after each chunk; consumed by the next chunk's prompt."""

    session_id: UUID
    from_chunk: int
    open_pending: Optional[OpenPendingSummary] = None
    active_context: ActiveContext = Field(default_factory=ActiveContext)
    recent_encounters: list[RecentEncounterSummary] = Field(default_factory=list)
