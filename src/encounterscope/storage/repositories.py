"""Repository layer for database CRUD operations.

Writes are select-then-insert/update keyed by natural identity, so a
retried unit of work overwrites its own rows instead of duplicating them.
"""

from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from encounterscope.models import (
    CascadeChain,
    ChunkResultRecord,
    ChunkStatus,
    FinalEncounter,
    PendingEncounter,
    PendingStatus,
    ProgressiveSession,
)

from .orm_models import (
    CascadeChainORM,
    ChunkResultORM,
    FinalEncounterORM,
    PendingEncounterORM,
    SessionORM,
)


class SessionRepository:
    """Repository for ProgressiveSession operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, record: ProgressiveSession) -> SessionORM:
        """Create a new session record."""
        orm = SessionORM(
            id=record.id,
            document_ref=record.document_ref,
            total_pages=record.total_pages,
            chunk_size=record.chunk_size,
            total_chunks=record.total_chunks,
            current_chunk=record.current_chunk,
            status=record.status,
            handoff=record.handoff.model_dump(mode="json") if record.handoff else None,
            review_reasons=list(record.review_reasons),
            started_at=record.started_at,
        )
        self.session.add(orm)
        await self.session.flush()
        return orm

    async def get_by_id(self, session_id: UUID) -> Optional[SessionORM]:
        """Get session by ID."""
        result = await self.session.execute(
            select(SessionORM).where(SessionORM.id == session_id)
        )
        return result.scalar_one_or_none()

    async def update(self, session_id: UUID, **fields) -> SessionORM:
        """Update session fields in place."""
        orm = await self.get_by_id(session_id)
        if orm is None:
            raise LookupError(f"session {session_id} not found")
        for key, value in fields.items():
            setattr(orm, key, value)
        await self.session.flush()
        return orm

    async def list_needing_review(self, limit: int = 100) -> Sequence[SessionORM]:
        """Get sessions flagged for manual review."""
        result = await self.session.execute(
            select(SessionORM)
            .where(SessionORM.requires_manual_review.is_(True))
            .order_by(SessionORM.created_at)
            .limit(limit)
        )
        return result.scalars().all()


class ChunkResultRepository:
    """Repository for chunk result audit rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, session_id: UUID, chunk_number: int) -> Optional[ChunkResultORM]:
        result = await self.session.execute(
            select(ChunkResultORM).where(
                ChunkResultORM.session_id == session_id,
                ChunkResultORM.chunk_number == chunk_number,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(self, record: ChunkResultRecord) -> ChunkResultORM:
        """Insert or overwrite the row for (session_id, chunk_number)."""
        values = record.model_dump(
            mode="json",
            exclude={"id", "created_at", "updated_at", "session_id", "status"},
        )
        orm = await self.get(record.session_id, record.chunk_number)
        if orm is None:
            orm = ChunkResultORM(id=record.id, session_id=record.session_id)
            self.session.add(orm)
        orm.status = record.status
        for key, value in values.items():
            setattr(orm, key, value)
        await self.session.flush()
        return orm

    async def list_for_session(self, session_id: UUID) -> Sequence[ChunkResultORM]:
        result = await self.session.execute(
            select(ChunkResultORM)
            .where(ChunkResultORM.session_id == session_id)
            .order_by(ChunkResultORM.chunk_number)
        )
        return result.scalars().all()

    async def completed_chunk_numbers(self, session_id: UUID) -> set[int]:
        """Chunk numbers with a completed result row."""
        result = await self.session.execute(
            select(ChunkResultORM.chunk_number).where(
                ChunkResultORM.session_id == session_id,
                ChunkResultORM.status == ChunkStatus.COMPLETED,
            )
        )
        return set(result.scalars().all())


class PendingRepository:
    """Repository for pending encounters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, session_id: UUID, pending_id: str) -> Optional[PendingEncounterORM]:
        result = await self.session.execute(
            select(PendingEncounterORM).where(
                PendingEncounterORM.session_id == session_id,
                PendingEncounterORM.pending_id == pending_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(self, pending: PendingEncounter) -> tuple[PendingEncounterORM, bool]:
        """
        Insert or overwrite a pending keyed by (session_id, pending_id).

        Returns:
            (ORM row, True if the row was newly created)
        """
        values = pending.model_dump(
            mode="json",
            exclude={"id", "created_at", "updated_at", "session_id", "status", "reconciled_to", "reconciled_at"},
        )
        orm = await self.get(pending.session_id, pending.pending_id)
        created = orm is None
        if created:
            orm = PendingEncounterORM(id=pending.id, session_id=pending.session_id)
            self.session.add(orm)
        orm.status = pending.status
        for key, value in values.items():
            setattr(orm, key, value)
        await self.session.flush()
        return orm, created

    async def list_for_session(
        self, session_id: UUID, status: Optional[PendingStatus] = None
    ) -> Sequence[PendingEncounterORM]:
        """Pendings in chunk order, optionally filtered by status."""
        query = select(PendingEncounterORM).where(PendingEncounterORM.session_id == session_id)
        if status is not None:
            query = query.where(PendingEncounterORM.status == status)
        result = await self.session.execute(
            query.order_by(PendingEncounterORM.chunk_number, PendingEncounterORM.pending_id)
        )
        return result.scalars().all()

    async def list_by_cascade(self, cascade_id: str) -> Sequence[PendingEncounterORM]:
        result = await self.session.execute(
            select(PendingEncounterORM)
            .where(PendingEncounterORM.cascade_id == cascade_id)
            .order_by(PendingEncounterORM.chunk_number, PendingEncounterORM.pending_id)
        )
        return result.scalars().all()

    async def list_by_ids(
        self, session_id: UUID, pending_ids: Sequence[str]
    ) -> Sequence[PendingEncounterORM]:
        result = await self.session.execute(
            select(PendingEncounterORM).where(
                PendingEncounterORM.session_id == session_id,
                PendingEncounterORM.pending_id.in_(list(pending_ids)),
            )
        )
        return result.scalars().all()

    async def count_unresolved(self, session_id: UUID) -> int:
        """Pendings still in ``pending`` status after reconciliation."""
        result = await self.session.execute(
            select(func.count())
            .select_from(PendingEncounterORM)
            .where(
                PendingEncounterORM.session_id == session_id,
                PendingEncounterORM.status == PendingStatus.PENDING,
            )
        )
        return result.scalar_one()

    async def mark_completed(
        self, session_id: UUID, pending_ids: Sequence[str], final_id: UUID
    ) -> int:
        rows = await self.list_by_ids(session_id, pending_ids)
        now = datetime.utcnow()
        for orm in rows:
            orm.status = PendingStatus.COMPLETED
            orm.reconciled_to = final_id
            orm.reconciled_at = now
        await self.session.flush()
        return len(rows)

    async def mark_abandoned(
        self, session_id: UUID, pending_ids: Sequence[str], error: str
    ) -> int:
        rows = await self.list_by_ids(session_id, pending_ids)
        for orm in rows:
            orm.status = PendingStatus.ABANDONED
            orm.error_message = error
            orm.requires_review = True
            orm.review_reason = error
        await self.session.flush()
        return len(rows)

    async def flag_for_review(
        self, session_id: UUID, pending_ids: Sequence[str], reason: str
    ) -> int:
        rows = await self.list_by_ids(session_id, pending_ids)
        for orm in rows:
            orm.requires_review = True
            orm.review_reason = reason
        await self.session.flush()
        return len(rows)

    async def list_needing_review(self, session_id: UUID) -> Sequence[PendingEncounterORM]:
        result = await self.session.execute(
            select(PendingEncounterORM)
            .where(
                PendingEncounterORM.session_id == session_id,
                PendingEncounterORM.requires_review.is_(True),
            )
            .order_by(PendingEncounterORM.chunk_number, PendingEncounterORM.pending_id)
        )
        return result.scalars().all()


class CascadeRepository:
    """Repository for cascade chains."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, chain: CascadeChain) -> CascadeChainORM:
        orm = CascadeChainORM(
            id=chain.id,
            cascade_id=chain.cascade_id,
            session_id=chain.session_id,
            origin_chunk=chain.origin_chunk,
            origin_index=chain.origin_index,
            encounter_type=chain.encounter_type,
            pendings_count=chain.pendings_count,
            last_chunk=chain.last_chunk,
            final_encounter_id=chain.final_encounter_id,
            is_complete=chain.is_complete,
            completed_at=chain.completed_at,
        )
        self.session.add(orm)
        await self.session.flush()
        return orm

    async def get(self, cascade_id: str) -> Optional[CascadeChainORM]:
        result = await self.session.execute(
            select(CascadeChainORM).where(CascadeChainORM.cascade_id == cascade_id)
        )
        return result.scalar_one_or_none()

    async def list_for_session(
        self, session_id: UUID, open_only: bool = False
    ) -> Sequence[CascadeChainORM]:
        query = select(CascadeChainORM).where(CascadeChainORM.session_id == session_id)
        if open_only:
            query = query.where(CascadeChainORM.is_complete.is_(False))
        result = await self.session.execute(
            query.order_by(CascadeChainORM.origin_chunk, CascadeChainORM.origin_index)
        )
        return result.scalars().all()


class FinalEncounterRepository:
    """Repository for reconciled encounters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, final: FinalEncounter) -> FinalEncounterORM:
        values = final.model_dump(
            mode="json",
            exclude={"id", "created_at", "updated_at", "session_id", "date_source", "quality_tier"},
        )
        orm = FinalEncounterORM(
            id=final.id,
            session_id=final.session_id,
            date_source=final.date_source,
            quality_tier=final.quality_tier,
            **values,
        )
        self.session.add(orm)
        await self.session.flush()
        return orm

    async def get_by_id(self, final_id: UUID) -> Optional[FinalEncounterORM]:
        result = await self.session.execute(
            select(FinalEncounterORM).where(FinalEncounterORM.id == final_id)
        )
        return result.scalar_one_or_none()

    async def list_for_session(self, session_id: UUID) -> Sequence[FinalEncounterORM]:
        result = await self.session.execute(
            select(FinalEncounterORM)
            .where(FinalEncounterORM.session_id == session_id)
            .order_by(FinalEncounterORM.created_at)
        )
        return result.scalars().all()
