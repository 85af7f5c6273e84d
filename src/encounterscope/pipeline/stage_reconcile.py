"""Reconciliation Stage - merge pendings into final encounters.

Runs once per session after every chunk has completed:
1. Gate on every chunk 1..N having a completed result row
2. Load ``pending`` pendings and group them by cascade id
   (a null cascade id is its own single-pending group)
3. Leave orphaned cascades (never closed by a continuation) for review
4. Validate each group; invalid groups are abandoned with the error recorded
5. Merge each group (position, pages, flags, text fields, dates)
6. Abandon groups whose pages collide with an earlier group
7. Write each group atomically: final encounter + pendings completed +
   cascade closed. A failed write abandons only that group.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Iterable, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from encounterscope.errors import (
    EncounterScopeError,
    IncompleteSessionError,
    ReconciliationGroupError,
)
from encounterscope.models import (
    DateSource,
    FinalEncounter,
    PendingEncounter,
    PendingStatus,
    QualityTier,
    SessionStatus,
    merge_page_ranges,
)
from encounterscope.storage.database import get_session
from encounterscope.storage.repositories import (
    ChunkResultRepository,
    FinalEncounterRepository,
    PendingRepository,
    SessionRepository,
)

from .cascade import CascadeManager
from .dates import DateCandidate, describe_candidates, normalize_date, select_best_date
from .identifiers import merge_identifiers

logger = logging.getLogger(__name__)

ORPHAN_REASON = "cascade never closed by a later chunk"

TEXT_FIELDS = (
    "patient_name",
    "patient_address",
    "provider_name",
    "facility_name",
    "department",
    "provider_role",
    "chief_complaint",
    "disposition",
    "summary",
)


class AbandonedGroup(BaseModel):
    cascade_id: Optional[str] = None
    pending_ids: list[str]
    error: str


class ReconciliationReport(BaseModel):
    """Outcome of reconciling one session."""

    session_id: UUID
    final_encounter_ids: list[UUID] = Field(default_factory=list)
    abandoned: list[AbandonedGroup] = Field(default_factory=list)
    unresolved_cascade_ids: list[str] = Field(default_factory=list)
    unresolved_pending_ids: list[str] = Field(default_factory=list)


# Pure merge helpers


def best_string(values: Iterable[Optional[str]]) -> Optional[str]:
    """Longest non-empty value; earliest wins ties."""
    best = None
    for value in values:
        if value is None:
            continue
        text = value.strip()
        if text and (best is None or len(text) > len(best)):
            best = text
    return best


def merge_flags(values: Iterable[bool]) -> bool:
    """OR across the group: one assertion is enough."""
    return any(values)


def union_strings(groups: Iterable[Iterable[str]]) -> list[str]:
    """Ordered, case-insensitive union."""
    seen, out = set(), []
    for group in groups:
        for value in group:
            key = value.strip().lower()
            if key and key not in seen:
                seen.add(key)
                out.append(value.strip())
    return out


def group_pendings(pendings: Sequence[PendingEncounter]) -> list[list[PendingEncounter]]:
    """Group by cascade id in first-seen order; null cascade ids stand alone."""
    groups: "OrderedDict[str, list[PendingEncounter]]" = OrderedDict()
    for pending in pendings:
        key = pending.cascade_id or f"single:{pending.pending_id}"
        groups.setdefault(key, []).append(pending)
    return [
        sorted(group, key=lambda p: (p.chunk_number, p.encounter_index))
        for group in groups.values()
    ]


def is_orphaned(group: Sequence[PendingEncounter]) -> bool:
    """A cascade whose latest pending still expects a continuation."""
    return group[-1].cascade_id is not None and group[-1].is_cascading


def validate_group(group: Sequence[PendingEncounter]) -> None:
    """
    Check internal consistency of one group.

    Raises:
        ReconciliationGroupError: Chunks out of order or with gaps, first
            pending is not the cascade origin, or types disagree
    """
    cascade_id = group[0].cascade_id
    if cascade_id is None:
        if len(group) != 1:
            raise ReconciliationGroupError("uncascaded group with several pendings")
        return

    first = group[0]
    if first.chunk_number != first.origin_chunk:
        raise ReconciliationGroupError(
            f"first pending is from chunk {first.chunk_number}, "
            f"cascade originated in chunk {first.origin_chunk}",
            cascade_id,
        )
    for previous, current in zip(group, group[1:]):
        if current.chunk_number < previous.chunk_number:
            raise ReconciliationGroupError(
                f"chunk numbers out of order: {previous.chunk_number} then {current.chunk_number}",
                cascade_id,
            )
        if current.chunk_number - previous.chunk_number > 1:
            raise ReconciliationGroupError(
                f"gap between chunks {previous.chunk_number} and {current.chunk_number}",
                cascade_id,
            )
    types = {p.encounter.encounter_type.strip().lower() for p in group}
    if len(types) > 1:
        raise ReconciliationGroupError(
            f"encounter types disagree: {sorted(types)}", cascade_id
        )


def _date_candidates(
    group: Sequence[PendingEncounter], field_name: str, is_birth_date: bool = False
) -> list[DateCandidate]:
    candidates = []
    for order, pending in enumerate(group):
        raw = getattr(pending.encounter, field_name)
        if raw is None:
            continue
        source = DateSource.AI_EXTRACTED if is_birth_date else pending.encounter.date_source
        candidates.append(
            DateCandidate(
                normalized=normalize_date(raw, is_birth_date=is_birth_date),
                source=source,
                order=order,
                pending_id=pending.pending_id,
            )
        )
    return candidates


def quality_tier(final: FinalEncounter, date_ambiguous: bool) -> QualityTier:
    """
    Tier a final encounter by how well anchored it is.

    high: extracted unambiguous date + provider or facility + patient name
    medium: extracted date + provider or facility
    low: anything else
    """
    has_date = final.encounter_start_date is not None and final.date_source == DateSource.AI_EXTRACTED
    has_who = bool(final.provider_name or final.facility_name)
    if has_date and has_who and final.patient_name and not date_ambiguous:
        return QualityTier.HIGH
    if has_date and has_who:
        return QualityTier.MEDIUM
    return QualityTier.LOW


def merge_group(session_id: UUID, group: Sequence[PendingEncounter]) -> FinalEncounter:
    """
    Merge one validated group into a FinalEncounter (not yet persisted).

    Position: start from the earliest pending, end from the latest,
    confidence is the group minimum. Pages: normalised union. Real-world
    flag: OR. Text fields: longest non-empty. Dates: normalised, then
    ranked by source tier, ambiguity and confidence.
    """
    first, last = group[0], group[-1]
    encounters = [p.encounter for p in group]

    start_choice, start_candidates = _pick_date(group, "encounter_start_date")
    end_choice, end_candidates = _pick_date(group, "encounter_end_date")
    dob_choice, dob_candidates = _pick_date(group, "patient_date_of_birth", is_birth_date=True)

    ranges = [r for p in group for r in p.page_ranges] + [
        r for e in encounters for r in e.page_ranges
    ]

    final = FinalEncounter(
        session_id=session_id,
        cascade_id=first.cascade_id,
        encounter_type=first.encounter.encounter_type,
        start=first.encounter.start.model_copy(deep=True),
        end=last.encounter.end.model_copy(deep=True),
        position_confidence=min(e.position_confidence for e in encounters),
        page_ranges=merge_page_ranges(ranges),
        encounter_start_date=start_choice.normalized.iso if start_choice else None,
        encounter_end_date=end_choice.normalized.iso if end_choice else None,
        date_source=start_choice.source if start_choice else None,
        is_real_world_visit=merge_flags(e.is_real_world_visit for e in encounters),
        patient_date_of_birth=dob_choice.normalized.iso if dob_choice else None,
        identifiers=merge_identifiers(*(e.identifiers for e in encounters)),
        diagnoses=union_strings(e.diagnoses for e in encounters),
        procedures=union_strings(e.procedures for e in encounters),
        confidence=round(sum(p.confidence for p in group) / len(group), 4),
        source_pending_ids=[p.pending_id for p in group],
        chunk_count=len({p.chunk_number for p in group}),
        **{name: best_string(getattr(e, name) for e in encounters) for name in TEXT_FIELDS},
    )
    final.quality_tier = quality_tier(
        final, bool(start_choice and start_choice.normalized.ambiguous)
    )
    final.quality_metadata = {
        "dates": {
            "encounter_start_date": describe_candidates(start_choice, start_candidates),
            "encounter_end_date": describe_candidates(end_choice, end_candidates),
            "patient_date_of_birth": describe_candidates(dob_choice, dob_candidates),
        },
        "chunks": sorted({p.chunk_number for p in group}),
        "pending_count": len(group),
        "position_confidences": [e.position_confidence for e in encounters],
    }
    return final


def _pick_date(group: Sequence[PendingEncounter], field_name: str, is_birth_date: bool = False):
    candidates = _date_candidates(group, field_name, is_birth_date)
    chosen, rejected = select_best_date(candidates)
    for candidate in rejected:
        logger.info(
            "Rejected %s %r from %s: %s",
            field_name, candidate.normalized.raw, candidate.pending_id, candidate.normalized.reason,
        )
    return chosen, candidates


class PendingReconciler:
    """
    Reconciles a session's pendings into final encounters.

    Groups are written independently (bounded by ``concurrency``); an error
    in one group is recorded on its pendings and does not stop the others.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        concurrency: int = 4,
    ):
        self.session_factory = session_factory
        self.concurrency = max(1, concurrency)

    async def reconcile(self, session_id: UUID) -> ReconciliationReport:
        """
        Reconcile all pending encounters of a session.

        Raises:
            IncompleteSessionError: Session failed or a chunk has no completed result
        """
        report = ReconciliationReport(session_id=session_id)

        async with get_session(self.session_factory) as db:
            session_orm = await SessionRepository(db).get_by_id(session_id)
            if session_orm is None:
                raise IncompleteSessionError(f"session {session_id} not found")
            if session_orm.status == SessionStatus.FAILED:
                raise IncompleteSessionError(f"session {session_id} failed; not reconciling")
            completed = await ChunkResultRepository(db).completed_chunk_numbers(session_id)
            missing = sorted(set(range(1, session_orm.total_chunks + 1)) - completed)
            if missing:
                raise IncompleteSessionError(
                    f"session {session_id} has unfinished chunks: {missing}"
                )
            rows = await PendingRepository(db).list_for_session(session_id, PendingStatus.PENDING)
            pendings = [PendingEncounter.model_validate(row) for row in rows]

        logger.info("Reconciling session %s: %d pendings", session_id, len(pendings))

        drafts: list[tuple[FinalEncounter, list[PendingEncounter]]] = []
        for group in group_pendings(pendings):
            if is_orphaned(group):
                await self._flag_orphan(session_id, group, report)
                continue
            try:
                validate_group(group)
                drafts.append((merge_group(session_id, group), group))
            except ReconciliationGroupError as e:
                await self._abandon(session_id, group, str(e), report)

        drafts = await self._drop_page_collisions(session_id, drafts, report)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def write(final: FinalEncounter, group: list[PendingEncounter]) -> None:
            async with semaphore:
                await self._write_group(session_id, final, group, report)

        await asyncio.gather(*(write(final, group) for final, group in drafts))

        logger.info(
            "Session %s reconciled: %d final, %d abandoned, %d unresolved cascades",
            session_id,
            len(report.final_encounter_ids),
            len(report.abandoned),
            len(report.unresolved_cascade_ids),
        )
        return report

    async def _drop_page_collisions(
        self,
        session_id: UUID,
        drafts: list[tuple[FinalEncounter, list[PendingEncounter]]],
        report: ReconciliationReport,
    ) -> list[tuple[FinalEncounter, list[PendingEncounter]]]:
        """Keep page ownership exclusive; later groups lose collisions."""
        claimed: dict[int, str] = {}
        kept = []
        ordered = sorted(
            drafts, key=lambda d: (d[1][0].chunk_number, d[1][0].encounter_index)
        )
        for final, group in ordered:
            label = final.cascade_id or group[0].pending_id
            clash = next((p for p in final.pages if p in claimed), None)
            if clash is not None:
                await self._abandon(
                    session_id, group, f"page {clash} already belongs to {claimed[clash]}", report
                )
                continue
            for page in final.pages:
                claimed[page] = label
            kept.append((final, group))
        return kept

    async def _write_group(
        self,
        session_id: UUID,
        final: FinalEncounter,
        group: list[PendingEncounter],
        report: ReconciliationReport,
    ) -> None:
        """Atomically persist one merged group."""
        pending_ids = [p.pending_id for p in group]
        try:
            async with get_session(self.session_factory) as db:
                await FinalEncounterRepository(db).create(final)
                updated = await PendingRepository(db).mark_completed(
                    session_id, pending_ids, final.id
                )
                if updated != len(pending_ids):
                    raise ReconciliationGroupError(
                        f"expected {len(pending_ids)} pendings, updated {updated}",
                        final.cascade_id,
                    )
                if final.cascade_id is not None:
                    await CascadeManager(db).complete(
                        final.cascade_id,
                        last_chunk=max(p.chunk_number for p in group),
                        final_encounter_id=final.id,
                        merged_pending_count=len(group),
                    )
        except (EncounterScopeError, SQLAlchemyError) as e:
            await self._abandon(session_id, group, f"write failed: {e}", report)
            return
        report.final_encounter_ids.append(final.id)

    async def _abandon(
        self,
        session_id: UUID,
        group: Sequence[PendingEncounter],
        error: str,
        report: ReconciliationReport,
    ) -> None:
        pending_ids = [p.pending_id for p in group]
        logger.warning(
            "Abandoning group %s (%d pendings): %s",
            group[0].cascade_id or pending_ids[0], len(pending_ids), error,
        )
        async with get_session(self.session_factory) as db:
            await PendingRepository(db).mark_abandoned(session_id, pending_ids, error)
        report.abandoned.append(
            AbandonedGroup(cascade_id=group[0].cascade_id, pending_ids=pending_ids, error=error)
        )

    async def _flag_orphan(
        self,
        session_id: UUID,
        group: Sequence[PendingEncounter],
        report: ReconciliationReport,
    ) -> None:
        pending_ids = [p.pending_id for p in group]
        cascade_id = group[0].cascade_id
        logger.warning(
            "Cascade %s is orphaned after chunk %d; left for review",
            cascade_id, group[-1].chunk_number,
        )
        async with get_session(self.session_factory) as db:
            await PendingRepository(db).flag_for_review(session_id, pending_ids, ORPHAN_REASON)
        report.unresolved_cascade_ids.append(cascade_id)
        report.unresolved_pending_ids.extend(pending_ids)
