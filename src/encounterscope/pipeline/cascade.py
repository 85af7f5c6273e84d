"""Cascade Management - track encounters that span chunk boundaries.

Cascade ids are derived from the cascade's *origin* (session, chunk,
intra-chunk index, encounter type), never from the chunk a continuation
shows up in, so every continuation resolves to the same id.
"""

import hashlib
import logging
from datetime import datetime
from typing import Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from encounterscope.errors import CascadeValidationError
from encounterscope.models import CascadeChain, EncounterCandidate
from encounterscope.storage.repositories import CascadeRepository

logger = logging.getLogger(__name__)


def derive_cascade_id(
    session_id: Union[UUID, str], origin_chunk: int, origin_index: int, encounter_type: str
) -> str:
    """
    Deterministic cascade id for an encounter's origin.

    Format: ``cascade_<session>_<chunk>_<index>_<hash8>`` where the hash is
    the first 8 hex digits of md5 over all four inputs.
    """
    key = f"{session_id}_{origin_chunk}_{origin_index}_{encounter_type}"
    digest = hashlib.md5(key.encode("utf-8")).hexdigest()[:8]
    return f"cascade_{session_id}_{origin_chunk}_{origin_index}_{digest}"


def derive_pending_id(session_id: Union[UUID, str], chunk_number: int, index: int) -> str:
    """Deterministic pending id: ``pending_<session8>_<chunk:03>_<index:03>``."""
    return f"pending_{str(session_id)[:8]}_{chunk_number:03d}_{index:03d}"


def should_cascade(
    encounter: EncounterCandidate, chunk_end_page: int, is_final_chunk: bool
) -> bool:
    """
    Decide whether an encounter carries into the next chunk.

    Explicit ``continuing`` status always cascades. As a fallback, an
    encounter ending on the chunk's last page also cascades. That catches
    an omitted flag but also fires for encounters that really do end
    there; the next chunk not continuing it leaves an orphan for review.
    Nothing cascades out of the final chunk.
    """
    if is_final_chunk:
        return False
    if encounter.status == "continuing":
        return True
    return encounter.last_page == chunk_end_page


class CascadeManager:
    """
    Durable bookkeeping for cascade chains.

    Operates inside the caller's session so chain updates commit or roll
    back together with the pendings that caused them.
    """

    def __init__(self, session: AsyncSession):
        self.repo = CascadeRepository(session)

    async def get(self, cascade_id: str) -> Optional[CascadeChain]:
        orm = await self.repo.get(cascade_id)
        return CascadeChain.model_validate(orm) if orm else None

    async def list_open(self, session_id: UUID) -> list[CascadeChain]:
        rows = await self.repo.list_for_session(session_id, open_only=True)
        return [CascadeChain.model_validate(r) for r in rows]

    async def track_open(
        self,
        cascade_id: str,
        session_id: UUID,
        origin_chunk: int,
        origin_index: int,
        encounter_type: str,
    ) -> CascadeChain:
        """Create the chain record; returns the existing one if already tracked."""
        existing = await self.repo.get(cascade_id)
        if existing is not None:
            return CascadeChain.model_validate(existing)
        orm = await self.repo.create(
            CascadeChain(
                cascade_id=cascade_id,
                session_id=session_id,
                origin_chunk=origin_chunk,
                origin_index=origin_index,
                encounter_type=encounter_type,
                pendings_count=1,
                last_chunk=origin_chunk,
            )
        )
        logger.info("Opened cascade %s at chunk %d", cascade_id, origin_chunk)
        return CascadeChain.model_validate(orm)

    async def record_continuation(self, cascade_id: str, chunk_number: int) -> CascadeChain:
        """Count one more pending for the chain."""
        orm = await self.repo.get(cascade_id)
        if orm is None:
            raise CascadeValidationError(f"continuation of unknown cascade {cascade_id}")
        if orm.is_complete:
            raise CascadeValidationError(f"cascade {cascade_id} is already complete")
        orm.pendings_count += 1
        orm.last_chunk = max(orm.last_chunk, chunk_number)
        await self.repo.session.flush()
        logger.info(
            "Cascade %s continued in chunk %d (%d pendings)",
            cascade_id, chunk_number, orm.pendings_count,
        )
        return CascadeChain.model_validate(orm)

    async def complete(
        self,
        cascade_id: str,
        last_chunk: int,
        final_encounter_id: UUID,
        merged_pending_count: int,
    ) -> CascadeChain:
        """
        Close the chain once its group has been merged.

        Raises:
            CascadeValidationError: unknown or already-closed chain, fewer
                pendings merged than were tracked, or last chunk before origin
        """
        orm = await self.repo.get(cascade_id)
        if orm is None:
            raise CascadeValidationError(f"cannot complete unknown cascade {cascade_id}")
        if orm.is_complete:
            raise CascadeValidationError(f"cascade {cascade_id} was already completed")
        if merged_pending_count < orm.pendings_count:
            raise CascadeValidationError(
                f"cascade {cascade_id}: merged {merged_pending_count} pendings "
                f"but {orm.pendings_count} were tracked"
            )
        if last_chunk < orm.origin_chunk:
            raise CascadeValidationError(
                f"cascade {cascade_id}: last chunk {last_chunk} precedes origin {orm.origin_chunk}"
            )
        orm.last_chunk = last_chunk
        orm.final_encounter_id = final_encounter_id
        orm.is_complete = True
        orm.completed_at = datetime.utcnow()
        await self.repo.session.flush()
        logger.info("Completed cascade %s -> %s", cascade_id, final_encounter_id)
        return CascadeChain.model_validate(orm)
