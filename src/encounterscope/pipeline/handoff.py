"""Handoff construction between consecutive chunks."""

import logging
from typing import Optional, Sequence
from uuid import UUID

from encounterscope.models import (
    ActiveContext,
    AdmissionContext,
    ChunkExtraction,
    HandoffPackage,
    OCRPage,
    OpenPendingSummary,
    PendingEncounter,
    RecentEncounterSummary,
)

from .dates import normalize_date

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 500
MAX_RECENT_PROVIDERS = 5
MAX_RECENT_ENCOUNTERS = 3
CONFIDENT_DATE_THRESHOLD = 0.8


def page_tail(pages: Sequence[OCRPage], page_number: int, chars: int = SNIPPET_CHARS) -> Optional[str]:
    """Last ``chars`` characters of a page's text."""
    for page in pages:
        if page.page_number == page_number:
            text = " ".join(page.plain_text.split())
            return text[-chars:] or None
    return None


def _dedupe(values: Sequence[Optional[str]], limit: int) -> list[str]:
    seen, out = set(), []
    for value in values:
        if not value:
            continue
        key = value.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(value.strip())
    return out[:limit]


def select_open_pending(pendings: Sequence[PendingEncounter]) -> Optional[PendingEncounter]:
    """
    The cascading pending to carry forward: the one reaching furthest.

    Only one open pending fits in a handoff; any other cascading pending in
    the chunk cannot be continued and will surface as an orphan.
    """
    cascading = [p for p in pendings if p.is_cascading]
    if not cascading:
        return None
    chosen = max(cascading, key=lambda p: (p.encounter.last_page, p.encounter_index))
    for other in cascading:
        if other is not chosen:
            logger.warning(
                "Chunk %d: %s also cascades but only %s is carried forward",
                other.chunk_number, other.pending_id, chosen.pending_id,
            )
    return chosen


def _open_pending_summary(
    pending: PendingEncounter,
    pages: Sequence[OCRPage],
    prior: Optional[HandoffPackage],
) -> OpenPendingSummary:
    encounter = pending.encounter
    start_page = encounter.first_page
    if prior and prior.open_pending and prior.open_pending.cascade_id == pending.cascade_id:
        start_page = prior.open_pending.start_page
    return OpenPendingSummary(
        temp_id=pending.temp_id or pending.pending_id,
        pending_id=pending.pending_id,
        cascade_id=pending.cascade_id,
        origin_chunk=pending.origin_chunk,
        origin_index=pending.origin_index,
        encounter_type=encounter.encounter_type,
        start_page=start_page,
        last_page=encounter.last_page,
        expected_continuation=pending.expected_continuation or "continuation",
        encounter_start_date=encounter.encounter_start_date,
        provider_name=encounter.provider_name,
        facility_name=encounter.facility_name,
        partial_summary=encounter.summary,
        context_snippet=page_tail(pages, encounter.last_page),
    )


def _active_context(
    pendings: Sequence[PendingEncounter],
    extraction: ChunkExtraction,
    prior: Optional[HandoffPackage],
) -> ActiveContext:
    previous = prior.active_context if prior else ActiveContext()
    hint = extraction.active_context
    encounters = [p.encounter for p in sorted(pendings, key=lambda p: p.encounter.last_page)]

    providers = list(reversed([e.provider_name for e in encounters]))
    facilities = list(reversed([e.facility_name for e in encounters]))
    if hint:
        providers = hint.recent_providers + providers
        facilities = hint.recent_facilities + facilities

    admission = hint.current_admission if hint else None
    if admission is None:
        admission = previous.current_admission
        for enc in encounters:
            kind = enc.encounter_type.lower()
            if "discharge" in kind:
                admission = None
            elif "admission" in kind or "inpatient" in kind:
                admission = AdmissionContext(
                    facility_name=enc.facility_name,
                    admit_date=enc.encounter_start_date,
                    provider_name=enc.provider_name,
                )

    last_date = previous.last_confident_date
    for enc in encounters:
        if enc.confidence < CONFIDENT_DATE_THRESHOLD:
            continue
        normalized = normalize_date(enc.encounter_end_date or enc.encounter_start_date)
        if normalized.is_valid and not normalized.ambiguous:
            last_date = normalized.iso

    return ActiveContext(
        current_admission=admission,
        recent_providers=_dedupe(providers + previous.recent_providers, MAX_RECENT_PROVIDERS),
        recent_facilities=_dedupe(facilities + previous.recent_facilities, MAX_RECENT_PROVIDERS),
        document_flow=(hint.document_flow if hint and hint.document_flow else previous.document_flow),
        last_confident_date=last_date,
    )


def build_handoff(
    session_id: UUID,
    chunk_number: int,
    pendings: Sequence[PendingEncounter],
    extraction: ChunkExtraction,
    pages: Sequence[OCRPage],
    prior: Optional[HandoffPackage] = None,
) -> HandoffPackage:
    """
    Build the handoff the next chunk will see.

    Args:
        session_id: Owning session
        chunk_number: Chunk that just finished
        pendings: Pendings written for that chunk
        extraction: Normalised model output for that chunk
        pages: The chunk's OCR pages (for the context snippet)
        prior: Handoff this chunk received

    Returns:
        HandoffPackage with at most one open pending
    """
    open_pending = select_open_pending(pendings)

    recent = list(prior.recent_encounters) if prior else []
    for pending in sorted(pendings, key=lambda p: p.encounter.first_page):
        if pending.is_cascading:
            continue
        enc = pending.encounter
        recent.append(
            RecentEncounterSummary(
                encounter_type=enc.encounter_type,
                start_page=enc.first_page,
                end_page=enc.last_page,
                encounter_date=enc.encounter_start_date,
                provider_name=enc.provider_name,
            )
        )

    return HandoffPackage(
        session_id=session_id,
        from_chunk=chunk_number,
        open_pending=_open_pending_summary(open_pending, pages, prior) if open_pending else None,
        active_context=_active_context(pendings, extraction, prior),
        recent_encounters=recent[-MAX_RECENT_ENCOUNTERS:],
    )
