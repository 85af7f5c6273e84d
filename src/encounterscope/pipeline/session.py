"""Session Management - drive one document through the progressive pipeline.

Chunks run strictly in order because each prompt embeds the previous
chunk's handoff. Any chunk failure (after retries for retryable errors)
fails the whole session; reconciliation only runs once every chunk has
completed. Separate documents are independent and can run concurrently.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from encounterscope.errors import SessionAbortedError
from encounterscope.inference.retry import chunk_retrying
from encounterscope.models import (
    HandoffPackage,
    OCRPage,
    ProgressiveSession,
    SessionStatus,
)
from encounterscope.storage.database import get_session
from encounterscope.storage.repositories import PendingRepository, SessionRepository

from .stage_chunk import ChunkProcessor, ChunkResult
from .stage_reconcile import PendingReconciler, ReconciliationReport

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.7


@dataclass
class SessionManagerConfig:
    """Configuration for session orchestration."""

    chunk_size: int = 50
    max_chunk_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0


class ProcessingResult(BaseModel):
    """What a caller gets back from ``SessionManager.process``."""

    session_id: UUID
    status: SessionStatus
    total_chunks: int
    final_encounter_ids: list[UUID] = Field(default_factory=list)
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    pending_count_unresolved: int = 0
    abandoned_group_count: int = 0
    unresolved_cascade_ids: list[str] = Field(default_factory=list)
    requires_manual_review: bool = False
    review_reasons: list[str] = Field(default_factory=list)


def total_chunks_for(total_pages: int, chunk_size: int) -> int:
    """ceil(P / C)."""
    return math.ceil(total_pages / chunk_size)


def split_into_chunks(pages: Sequence[OCRPage], chunk_size: int) -> list[list[OCRPage]]:
    return [list(pages[i:i + chunk_size]) for i in range(0, len(pages), chunk_size)]


def _check_pages(pages: Sequence[OCRPage]) -> list[OCRPage]:
    if not pages:
        raise ValueError("document has no pages")
    ordered = sorted(pages, key=lambda p: p.page_number)
    numbers = [p.page_number for p in ordered]
    if numbers != list(range(1, len(ordered) + 1)):
        raise ValueError("pages must be numbered 1..N without gaps or duplicates")
    return ordered


class SessionManager:
    """
    Orchestrates chunk processing and reconciliation for a document.

    Holds no per-document state, so one manager can run many sessions
    concurrently (see ``run_sessions``).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chunk_processor: ChunkProcessor,
        reconciler: PendingReconciler,
        config: Optional[SessionManagerConfig] = None,
    ):
        """
        Initialize session manager.

        Args:
            session_factory: Database session factory
            chunk_processor: Processes one chunk
            reconciler: Merges pendings once all chunks complete
            config: Chunk size and retry settings
        """
        self.session_factory = session_factory
        self.chunk_processor = chunk_processor
        self.reconciler = reconciler
        self.config = config or SessionManagerConfig()

    async def process(
        self,
        pages: Sequence[OCRPage],
        document_ref: Optional[str] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> ProcessingResult:
        """
        Run a full progressive session over a document.

        Args:
            pages: Every OCR page of the document, numbered 1..N
            document_ref: Caller's reference stored on the session
            abort_event: Checked at each chunk boundary; when set the
                session is failed and no reconciliation happens

        Returns:
            ProcessingResult with final encounter ids and review status

        Raises:
            SessionAbortedError: abort_event was set
            InferenceError, ChunkValidationError, ...: a chunk failed; the
                session is marked failed before the error propagates
        """
        pages = _check_pages(pages)
        chunk_size = self.config.chunk_size
        session = ProgressiveSession(
            document_ref=document_ref,
            total_pages=len(pages),
            chunk_size=chunk_size,
            total_chunks=total_chunks_for(len(pages), chunk_size),
        )
        async with get_session(self.session_factory) as db:
            await SessionRepository(db).create(session)

        async with get_session(self.session_factory) as db:
            orm = await SessionRepository(db).update(
                session.id, status=SessionStatus.PROCESSING, started_at=datetime.utcnow()
            )
            session = ProgressiveSession.model_validate(orm)
        logger.info(
            "Session %s started: %d pages in %d chunks of %d",
            session.id, session.total_pages, session.total_chunks, chunk_size,
        )

        handoff: Optional[HandoffPackage] = None
        review_reasons: list[str] = []

        for chunk_number, chunk_pages in enumerate(split_into_chunks(pages, chunk_size), start=1):
            if abort_event is not None and abort_event.is_set():
                message = f"aborted before chunk {chunk_number}"
                await self._mark_failed(session.id, message)
                raise SessionAbortedError(f"session {session.id} {message}")

            try:
                result = await self._process_chunk_with_retry(
                    session, chunk_number, chunk_pages, handoff
                )
            except Exception as e:
                await self._mark_failed(session.id, f"chunk {chunk_number}: {e}")
                raise

            handoff = result.handoff
            if result.confidence is not None and result.confidence < LOW_CONFIDENCE_THRESHOLD:
                review_reasons.append(
                    f"chunk {chunk_number} low confidence ({result.confidence:.2f})"
                )
            session = await self._record_progress(session, result)

        async with get_session(self.session_factory) as db:
            await SessionRepository(db).update(session.id, status=SessionStatus.RECONCILING)

        try:
            report = await self.reconciler.reconcile(session.id)
        except Exception as e:
            await self._mark_failed(session.id, f"reconciliation: {e}")
            raise

        return await self._finalize(session, report, review_reasons)

    async def _process_chunk_with_retry(
        self,
        session: ProgressiveSession,
        chunk_number: int,
        pages: list[OCRPage],
        handoff: Optional[HandoffPackage],
    ) -> ChunkResult:
        retrying = chunk_retrying(
            max_attempts=self.config.max_chunk_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )
        attempts = 0

        async def run_attempt() -> ChunkResult:
            nonlocal attempts
            attempts += 1
            return await self.chunk_processor.process_chunk(
                session, chunk_number, pages, handoff, attempt=attempts
            )

        return await retrying(run_attempt)

    async def _record_progress(
        self, session: ProgressiveSession, result: ChunkResult
    ) -> ProgressiveSession:
        async with get_session(self.session_factory) as db:
            orm = await SessionRepository(db).update(
                session.id,
                current_chunk=result.chunk_number,
                handoff=result.handoff.model_dump(mode="json"),
                total_input_tokens=session.total_input_tokens + result.input_tokens,
                total_output_tokens=session.total_output_tokens + result.output_tokens,
                total_cost=session.total_cost + result.cost,
            )
            return ProgressiveSession.model_validate(orm)

    async def _mark_failed(self, session_id: UUID, message: str) -> None:
        logger.error("Session %s failed: %s", session_id, message)
        async with get_session(self.session_factory) as db:
            await SessionRepository(db).update(
                session_id,
                status=SessionStatus.FAILED,
                error_message=message,
                completed_at=datetime.utcnow(),
            )

    async def _finalize(
        self,
        session: ProgressiveSession,
        report: ReconciliationReport,
        review_reasons: list[str],
    ) -> ProcessingResult:
        reasons = list(review_reasons)
        for group in report.abandoned:
            reasons.append(
                f"abandoned {group.cascade_id or group.pending_ids[0]}: {group.error}"
            )
        for cascade_id in report.unresolved_cascade_ids:
            reasons.append(f"unresolved cascade {cascade_id}")

        async with get_session(self.session_factory) as db:
            unresolved = await PendingRepository(db).count_unresolved(session.id)
            requires_review = bool(reasons) or unresolved > 0
            orm = await SessionRepository(db).update(
                session.id,
                status=SessionStatus.COMPLETED,
                final_encounter_count=len(report.final_encounter_ids),
                pending_count_unresolved=unresolved,
                abandoned_group_count=len(report.abandoned),
                requires_manual_review=requires_review,
                review_reasons=reasons,
                completed_at=datetime.utcnow(),
            )
            final = ProgressiveSession.model_validate(orm)

        logger.info(
            "Session %s completed: %d encounters, %d unresolved pendings, cost %.4f",
            final.id, final.final_encounter_count, unresolved, final.total_cost,
        )
        return ProcessingResult(
            session_id=final.id,
            status=final.status,
            total_chunks=final.total_chunks,
            final_encounter_ids=list(report.final_encounter_ids),
            total_cost=final.total_cost,
            total_input_tokens=final.total_input_tokens,
            total_output_tokens=final.total_output_tokens,
            pending_count_unresolved=unresolved,
            abandoned_group_count=len(report.abandoned),
            unresolved_cascade_ids=list(report.unresolved_cascade_ids),
            requires_manual_review=requires_review,
            review_reasons=reasons,
        )


async def run_sessions(
    manager: SessionManager,
    documents: Sequence[tuple[str, Sequence[OCRPage]]],
    max_concurrency: int = 2,
) -> list:
    """
    Process several documents concurrently.

    Args:
        manager: Shared session manager
        documents: (document_ref, pages) pairs
        max_concurrency: Upper bound on sessions in flight

    Returns:
        One ProcessingResult or exception per document, in input order
    """
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def run(document_ref: str, pages: Sequence[OCRPage]) -> ProcessingResult:
        async with semaphore:
            return await manager.process(pages, document_ref=document_ref)

    return await asyncio.gather(
        *(run(ref, pages) for ref, pages in documents), return_exceptions=True
    )
