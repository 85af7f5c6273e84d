"""Chunk Processing Stage - one inference call per page chunk.

For each chunk:
1. Build the prompt (chunk OCR text + prior handoff)
2. Call the inference gateway once
3. Normalise and validate the response
4. Turn every encounter into a pending, attaching cascades
5. Resolve intra-page boundary markers to pixel positions
6. Persist pendings, cascade bookkeeping and the audit row atomically
7. Build the handoff for the next chunk

A chunk is idempotent by chunk number: pending ids and the audit row are
keyed by (session, chunk), so a retry overwrites rather than duplicates.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from encounterscope.errors import CascadeValidationError, ChunkValidationError
from encounterscope.inference import InferenceGateway, InferenceRequest, InferenceResponse
from encounterscope.models import (
    BoundaryType,
    ChunkExtraction,
    ChunkResultRecord,
    ChunkStatus,
    EncounterBoundary,
    EncounterCandidate,
    HandoffPackage,
    OCRPage,
    OpenPendingSummary,
    PageRange,
    PendingEncounter,
    ProgressiveSession,
    merge_page_ranges,
)
from encounterscope.storage.database import get_session
from encounterscope.storage.repositories import ChunkResultRepository, PendingRepository

from .cascade import CascadeManager, derive_cascade_id, derive_pending_id, should_cascade
from .coordinates import CoordinateResolver, MarkerMatch
from .handoff import build_handoff, page_tail
from .prompts import build_chunk_prompt
from .response import infer_expected_continuation, parse_chunk_response

logger = logging.getLogger(__name__)

REVIEW_SNIPPET_CHARS = 300


@dataclass
class ChunkProcessorConfig:
    """Configuration for chunk processing."""

    max_output_tokens: int = 8192
    temperature: Optional[float] = 0.1
    enhanced_ocr_format: bool = True
    # Lowercase encounter types the model may emit; None accepts any non-empty type
    allowed_encounter_types: Optional[frozenset[str]] = None


@dataclass
class ChunkResult:
    """Outcome of one successfully processed chunk."""

    chunk_number: int
    page_start: int
    page_end: int
    pendings: list[PendingEncounter]
    handoff: HandoffPackage
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    confidence: Optional[float] = None
    processing_time_ms: int = 0
    cascade_ids: list[str] = field(default_factory=list)

    @property
    def cascading_count(self) -> int:
        return sum(1 for p in self.pendings if p.is_cascading)

    @property
    def continues_count(self) -> int:
        return sum(1 for p in self.pendings if p.continues_previous)


def validate_extraction(
    extraction: ChunkExtraction,
    chunk_number: int,
    page_start: int,
    page_end: int,
    allowed_types: Optional[frozenset[str]] = None,
) -> None:
    """
    Check page-range and type rules for one chunk's encounters.

    Raises:
        ChunkValidationError: A range leaves the chunk, two encounters claim
            the same page, or an encounter type is not allowed
    """
    claimed: dict[int, int] = {}
    for enc in extraction.encounters:
        if allowed_types is not None and enc.encounter_type.strip().lower() not in allowed_types:
            raise ChunkValidationError(
                f"encounter {enc.index} has unrecognised type {enc.encounter_type!r}", chunk_number
            )
        for boundary in (enc.start, enc.end):
            if not page_start <= boundary.page <= page_end:
                raise ChunkValidationError(
                    f"encounter {enc.index} boundary page {boundary.page} outside "
                    f"chunk pages {page_start}-{page_end}",
                    chunk_number,
                )
        own_pages: set[int] = set()
        for page_range in enc.page_ranges:
            if page_range.start < page_start or page_range.end > page_end:
                raise ChunkValidationError(
                    f"encounter {enc.index} page range {page_range.start}-{page_range.end} "
                    f"outside chunk pages {page_start}-{page_end}",
                    chunk_number,
                )
            own_pages.update(page_range.pages)
        for page in sorted(own_pages):
            other = claimed.get(page)
            if other is not None:
                raise ChunkValidationError(
                    f"page {page} claimed by encounters {other} and {enc.index}", chunk_number
                )
            claimed[page] = enc.index


def _review_snippet(pages: Sequence[OCRPage], page_number: int) -> Optional[str]:
    for page in pages:
        if page.page_number == page_number:
            text = " ".join(page.plain_text.split())
            return text[:REVIEW_SNIPPET_CHARS] or None
    return None


class ChunkProcessor:
    """
    Processes one chunk of a progressive session.

    Holds no per-session state; one instance can serve many sessions.
    """

    def __init__(
        self,
        gateway: InferenceGateway,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[ChunkProcessorConfig] = None,
        resolver: Optional[CoordinateResolver] = None,
    ):
        """
        Initialize chunk processor.

        Args:
            gateway: Inference gateway for the chunk call
            session_factory: Database session factory
            config: Prompt and validation settings
            resolver: Coordinate resolver for intra-page boundaries
        """
        self.gateway = gateway
        self.session_factory = session_factory
        self.config = config or ChunkProcessorConfig()
        self.resolver = resolver or CoordinateResolver()

    async def process_chunk(
        self,
        session: ProgressiveSession,
        chunk_number: int,
        pages: Sequence[OCRPage],
        prior_handoff: Optional[HandoffPackage] = None,
        attempt: int = 1,
    ) -> ChunkResult:
        """
        Process one chunk end to end.

        Args:
            session: Owning session
            chunk_number: 1-indexed chunk number
            pages: The chunk's OCR pages, in page order
            prior_handoff: Handoff from the previous chunk
            attempt: Attempt number, recorded on the audit row

        Returns:
            ChunkResult with the persisted pendings and the next handoff

        Raises:
            InferenceError: Gateway call failed
            ChunkValidationError: Response malformed or violates page rules
            CascadeValidationError: Continuation does not match the handoff
        """
        if not pages:
            raise ValueError(f"chunk {chunk_number} has no pages")
        page_start, page_end = pages[0].page_number, pages[-1].page_number
        is_final = chunk_number >= session.total_chunks
        started = time.monotonic()
        response: Optional[InferenceResponse] = None

        logger.info(
            "Session %s chunk %d/%d: pages %d-%d (attempt %d)",
            session.id, chunk_number, session.total_chunks, page_start, page_end, attempt,
        )

        try:
            prompt = build_chunk_prompt(
                chunk_number,
                session.total_chunks,
                pages,
                session.total_pages,
                prior_handoff,
                enhanced_ocr=self.config.enhanced_ocr_format,
            )
            response = await self.gateway.infer(
                InferenceRequest(
                    prompt_text=prompt,
                    max_output_tokens=self.config.max_output_tokens,
                    temperature=self.config.temperature,
                )
            )
            extraction = parse_chunk_response(response.content, chunk_number)
            validate_extraction(
                extraction, chunk_number, page_start, page_end,
                self.config.allowed_encounter_types,
            )

            pendings = self._plan_pendings(
                session, chunk_number, extraction, pages, page_end, is_final, prior_handoff
            )
            self._resolve_positions(pendings, pages)
            handoff = build_handoff(
                session.id, chunk_number, pendings, extraction, pages, prior_handoff
            )

            confidences = [p.confidence for p in pendings]
            confidence = sum(confidences) / len(confidences) if confidences else None
            elapsed_ms = int((time.monotonic() - started) * 1000)

            async with get_session(self.session_factory) as db:
                cascade_ids = await self._persist(db, session, chunk_number, pendings)
                await ChunkResultRepository(db).upsert(
                    ChunkResultRecord(
                        session_id=session.id,
                        chunk_number=chunk_number,
                        page_start=page_start,
                        page_end=page_end,
                        status=ChunkStatus.COMPLETED,
                        attempt=attempt,
                        model_name=response.model or self.gateway.model_name,
                        input_tokens=response.input_tokens,
                        output_tokens=response.output_tokens,
                        cost=response.cost,
                        confidence=confidence,
                        processing_time_ms=elapsed_ms,
                        handoff_received=(
                            prior_handoff.model_dump(mode="json") if prior_handoff else None
                        ),
                        handoff_sent=handoff.model_dump(mode="json"),
                        encounters_completed=sum(1 for p in pendings if not p.is_cascading),
                        pendings_created=len(pendings),
                        cascading_count=sum(1 for p in pendings if p.is_cascading),
                        continues_count=sum(1 for p in pendings if p.continues_previous),
                        cascade_ids=cascade_ids,
                        raw_response=response.content,
                    )
                )
        except Exception as e:
            await self._record_failure(
                session, chunk_number, page_start, page_end, attempt,
                response, started, prior_handoff, e,
            )
            raise

        logger.info(
            "Session %s chunk %d done: %d encounters (%d cascading), %d+%d tokens, %.1f ms",
            session.id, chunk_number, len(pendings),
            sum(1 for p in pendings if p.is_cascading),
            response.input_tokens, response.output_tokens, elapsed_ms,
        )
        return ChunkResult(
            chunk_number=chunk_number,
            page_start=page_start,
            page_end=page_end,
            pendings=pendings,
            handoff=handoff,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost=response.cost,
            confidence=confidence,
            processing_time_ms=elapsed_ms,
            cascade_ids=cascade_ids,
        )

    def _plan_pendings(
        self,
        session: ProgressiveSession,
        chunk_number: int,
        extraction: ChunkExtraction,
        pages: Sequence[OCRPage],
        page_end: int,
        is_final: bool,
        prior_handoff: Optional[HandoffPackage],
    ) -> list[PendingEncounter]:
        """Turn validated encounters into pendings with cascade attachment."""
        open_pending = prior_handoff.open_pending if prior_handoff else None
        continued_by: Optional[int] = None
        pendings = []

        for enc in extraction.encounters:
            index = enc.index
            source = self._continuation_source(enc, open_pending, chunk_number)
            if source is not None:
                if continued_by is not None:
                    raise ChunkValidationError(
                        f"encounters {continued_by} and {index} both continue {source.temp_id}",
                        chunk_number,
                    )
                continued_by = index

            if is_final and enc.status == "continuing":
                logger.warning(
                    "Chunk %d is final; treating continuing encounter %d as complete",
                    chunk_number, index,
                )
            cascading = should_cascade(enc, page_end, is_final)
            if cascading and enc.status == "complete":
                logger.info(
                    "Chunk %d encounter %d ends on the chunk's last page; treating as cascading",
                    chunk_number, index,
                )

            if source is not None:
                origin_chunk, origin_index = source.origin_chunk, source.origin_index
                cascade_id = derive_cascade_id(
                    session.id, origin_chunk, origin_index, source.encounter_type
                )
                if cascade_id != source.cascade_id:
                    raise CascadeValidationError(
                        f"chunk {chunk_number}: handoff cascade {source.cascade_id} "
                        f"does not match derived id {cascade_id}"
                    )
                temp_id = source.temp_id
            else:
                origin_chunk, origin_index = chunk_number, index
                cascade_id = (
                    derive_cascade_id(session.id, chunk_number, index, enc.encounter_type)
                    if cascading else None
                )
                temp_id = enc.temp_id or (f"auto-{chunk_number}-{index}" if cascading else None)

            expected = None
            if cascading:
                expected = enc.expected_continuation or infer_expected_continuation(enc.encounter_type)

            snippet_page = enc.last_page if cascading else enc.first_page
            snippet = (
                page_tail(pages, snippet_page) if cascading else _review_snippet(pages, snippet_page)
            )

            pendings.append(
                PendingEncounter(
                    session_id=session.id,
                    pending_id=derive_pending_id(session.id, chunk_number, index),
                    temp_id=temp_id,
                    chunk_number=chunk_number,
                    last_seen_chunk=chunk_number,
                    encounter_index=index,
                    cascade_id=cascade_id,
                    origin_chunk=origin_chunk,
                    origin_index=origin_index,
                    is_cascading=cascading,
                    continues_previous=source is not None,
                    expected_continuation=expected,
                    encounter=EncounterCandidate.model_validate(enc.model_dump()),
                    page_ranges=merge_page_ranges(enc.page_ranges),
                    context_snippet=snippet,
                    confidence=enc.confidence,
                )
            )

        if open_pending is not None and continued_by is None:
            logger.warning(
                "Chunk %d did not continue pending %s (cascade %s)",
                chunk_number, open_pending.temp_id, open_pending.cascade_id,
            )
        return pendings

    @staticmethod
    def _continuation_source(
        enc: EncounterCandidate,
        open_pending: Optional[OpenPendingSummary],
        chunk_number: int,
    ) -> Optional[OpenPendingSummary]:
        """The handoff pending this encounter continues, if any."""
        if not enc.is_continuation:
            return None
        if open_pending is None:
            logger.warning(
                "Chunk %d encounter %d claims a continuation but no pending was handed off; "
                "treating as new",
                chunk_number, enc.index,
            )
            return None
        if enc.continues_temp_id and enc.continues_temp_id != open_pending.temp_id:
            logger.warning(
                "Chunk %d encounter %d continues unknown temp id %r (open: %r); treating as new",
                chunk_number, enc.index, enc.continues_temp_id, open_pending.temp_id,
            )
            return None
        return open_pending

    def _resolve_positions(
        self, pendings: Sequence[PendingEncounter], pages: Sequence[OCRPage]
    ) -> None:
        """Pin intra-page boundaries to pixel positions, else fall back to inter-page."""
        by_number = {page.page_number: page for page in pages}
        for pending in pendings:
            encounter = pending.encounter
            for boundary, is_start in ((encounter.start, True), (encounter.end, False)):
                if boundary.boundary_type != BoundaryType.INTRA_PAGE:
                    continue
                page = by_number.get(boundary.page)
                result = None
                if page is not None:
                    result = self.resolver.resolve(
                        boundary.text_marker, boundary.marker_context, boundary.region_hint, page
                    )
                if isinstance(result, MarkerMatch):
                    self._apply_match(boundary, result, is_start)
                    encounter.position_confidence = min(
                        encounter.position_confidence, result.confidence
                    )
                else:
                    reason = result.reason.value if result is not None else "page_missing"
                    logger.info(
                        "%s %s boundary on page %d not resolved (%s); using page boundary",
                        pending.pending_id, "start" if is_start else "end", boundary.page, reason,
                    )
                    boundary.boundary_type = BoundaryType.INTER_PAGE
                    boundary.text_y_top = None
                    boundary.text_height = None
                    boundary.split_y = None

    @staticmethod
    def _apply_match(boundary: EncounterBoundary, match: MarkerMatch, is_start: bool) -> None:
        boundary.text_y_top = match.y_top
        boundary.text_height = match.height
        boundary.split_y = match.y_top if is_start else match.y_bottom

    async def _persist(
        self,
        db: AsyncSession,
        session: ProgressiveSession,
        chunk_number: int,
        pendings: Sequence[PendingEncounter],
    ) -> list[str]:
        """Write pendings and cascade bookkeeping in the caller's transaction."""
        repo = PendingRepository(db)
        cascades = CascadeManager(db)
        cascade_ids: list[str] = []

        for pending in pendings:
            _, created = await repo.upsert(pending)
            if pending.cascade_id is None:
                continue
            cascade_ids.append(pending.cascade_id)
            if pending.continues_previous:
                if created:
                    await cascades.record_continuation(pending.cascade_id, chunk_number)
                await self._extend_cascade(repo, pending)
            else:
                await cascades.track_open(
                    pending.cascade_id,
                    session.id,
                    pending.origin_chunk,
                    pending.origin_index,
                    pending.encounter.encounter_type,
                )
        return cascade_ids

    @staticmethod
    async def _extend_cascade(repo: PendingRepository, pending: PendingEncounter) -> None:
        """Update earlier pendings of the cascade with the new sighting."""
        for row in await repo.list_by_cascade(pending.cascade_id):
            if row.chunk_number >= pending.chunk_number:
                continue
            ranges = [PageRange.model_validate(r) for r in row.page_ranges]
            row.page_ranges = [
                r.model_dump() for r in merge_page_ranges(ranges + list(pending.page_ranges))
            ]
            row.last_seen_chunk = max(row.last_seen_chunk, pending.chunk_number)
        await repo.session.flush()

    async def _record_failure(
        self,
        session: ProgressiveSession,
        chunk_number: int,
        page_start: int,
        page_end: int,
        attempt: int,
        response: Optional[InferenceResponse],
        started: float,
        prior_handoff: Optional[HandoffPackage],
        error: Exception,
    ) -> None:
        """Write a failed audit row in its own transaction."""
        logger.error("Session %s chunk %d failed: %s", session.id, chunk_number, error)
        record = ChunkResultRecord(
            session_id=session.id,
            chunk_number=chunk_number,
            page_start=page_start,
            page_end=page_end,
            status=ChunkStatus.FAILED,
            attempt=attempt,
            model_name=(response.model if response else None) or self.gateway.model_name,
            input_tokens=response.input_tokens if response else 0,
            output_tokens=response.output_tokens if response else 0,
            cost=response.cost if response else 0.0,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            handoff_received=prior_handoff.model_dump(mode="json") if prior_handoff else None,
            raw_response=response.content if response else None,
            error_message=f"{type(error).__name__}: {error}",
        )
        try:
            async with get_session(self.session_factory) as db:
                await ChunkResultRepository(db).upsert(record)
        except SQLAlchemyError:
            logger.exception("Could not record failure of chunk %d", chunk_number)
