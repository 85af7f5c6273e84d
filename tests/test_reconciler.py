"""Tests for the reconciliation stage."""

from uuid import uuid4

import pytest

from encounterscope.errors import IncompleteSessionError, ReconciliationGroupError
from encounterscope.models import (
    ChunkResultRecord,
    ChunkStatus,
    DateSource,
    FinalEncounter,
    PageRange,
    PendingEncounter,
    PendingStatus,
    QualityTier,
    SessionStatus,
)
from encounterscope.pipeline import CascadeManager, PendingReconciler, derive_cascade_id
from encounterscope.pipeline.stage_reconcile import (
    ORPHAN_REASON,
    best_string,
    group_pendings,
    is_orphaned,
    merge_flags,
    merge_group,
    union_strings,
    validate_group,
)
from encounterscope.storage import (
    CascadeRepository,
    ChunkResultRepository,
    FinalEncounterRepository,
    PendingRepository,
    SessionRepository,
    get_session,
)

from factories import make_pending, persist_session

ADMISSION = "Hospital Admission"


def cascade_group(session_id, cascade_id=None, closed=True):
    """Admission spanning chunks 1-3, opened at chunk 1 index 1."""
    cascade_id = cascade_id or derive_cascade_id(session_id, 1, 1, ADMISSION)
    return [
        make_pending(
            session_id, 1, 1, (2, 2), ADMISSION, cascade_id=cascade_id, is_cascading=True,
            provider_name="Dr S", encounter_start_date="01/02/2024", is_real_world_visit=False,
        ),
        make_pending(
            session_id, 2, 0, (3, 4), ADMISSION, cascade_id=cascade_id, origin_chunk=1,
            origin_index=1, is_cascading=True, continues_previous=True, is_real_world_visit=True,
        ),
        make_pending(
            session_id, 3, 0, (5, 5), ADMISSION, cascade_id=cascade_id, origin_chunk=1,
            origin_index=1, is_cascading=not closed, continues_previous=True,
            provider_name="Dr Sarah Chen", encounter_end_date="2024-02-09",
            is_real_world_visit=False,
        ),
    ]


async def seed(session_factory, session, pendings, completed_chunks=None):
    """Write chunk rows, pendings and cascade chains as chunk processing would."""
    chunks = completed_chunks if completed_chunks is not None else range(1, session.total_chunks + 1)
    async with get_session(session_factory) as db:
        for n in chunks:
            await ChunkResultRepository(db).upsert(
                ChunkResultRecord(
                    session_id=session.id, chunk_number=n, page_start=2 * n - 1, page_end=2 * n,
                    status=ChunkStatus.COMPLETED,
                )
            )
        repo, cascades = PendingRepository(db), CascadeManager(db)
        for pending in pendings:
            await repo.upsert(pending)
            if pending.cascade_id is None:
                continue
            if pending.chunk_number == pending.origin_chunk:
                await cascades.track_open(
                    pending.cascade_id, session.id, pending.origin_chunk,
                    pending.origin_index, pending.encounter.encounter_type,
                )
            else:
                await cascades.record_continuation(pending.cascade_id, pending.chunk_number)


async def stored_pendings(session_factory, session_id):
    async with get_session(session_factory) as db:
        rows = await PendingRepository(db).list_for_session(session_id)
        return {r.pending_id: PendingEncounter.model_validate(r) for r in rows}


async def stored_finals(session_factory, session_id):
    async with get_session(session_factory) as db:
        rows = await FinalEncounterRepository(db).list_for_session(session_id)
        return [FinalEncounter.model_validate(r) for r in rows]


class TestMergeHelpers:
    """Tests for the pure merge helpers."""

    def test_best_string_prefers_longest(self):
        """The longest non-empty value wins; earliest wins ties."""
        assert best_string(["Dr S", None, "Dr Sarah Chen", "  "]) == "Dr Sarah Chen"
        assert best_string(["abc", "xyz"]) == "abc"
        assert best_string([None, ""]) is None

    def test_merge_flags_is_or(self):
        """One true assertion is enough."""
        assert merge_flags([False, True, False]) is True
        assert merge_flags([False, False]) is False

    def test_union_strings(self):
        """Ordered, case-insensitive union."""
        assert union_strings([["Asthma", "COPD"], ["asthma", "Hypertension"]]) == [
            "Asthma", "COPD", "Hypertension",
        ]

    def test_group_pendings(self):
        """Cascades group together; uncascaded pendings stand alone."""
        sid = uuid4()
        single_a = make_pending(sid, 1, 0, (1, 1), "GP Visit")
        single_b = make_pending(sid, 3, 1, (6, 6), "GP Visit")
        chain = cascade_group(sid)

        groups = group_pendings([chain[2], single_a, chain[0], single_b, chain[1]])

        assert len(groups) == 3
        cascade = next(g for g in groups if len(g) == 3)
        assert [p.chunk_number for p in cascade] == [1, 2, 3]

    def test_is_orphaned(self):
        """A cascade whose latest pending still cascades is orphaned."""
        sid = uuid4()

        assert is_orphaned(cascade_group(sid, closed=False))
        assert not is_orphaned(cascade_group(sid))
        assert not is_orphaned([make_pending(sid, 1, 0, (1, 1))])


class TestValidateGroup:
    """Tests for validate_group."""

    def test_valid_group(self):
        """A consecutive, same-type group passes."""
        validate_group(cascade_group(uuid4()))

    def test_chunk_gap(self):
        """Skipping a chunk is invalid."""
        group = cascade_group(uuid4())

        with pytest.raises(ReconciliationGroupError, match="gap"):
            validate_group([group[0], group[2]])

    def test_missing_origin(self):
        """The group must start at the cascade's origin chunk."""
        group = cascade_group(uuid4())

        with pytest.raises(ReconciliationGroupError, match="originated"):
            validate_group(group[1:])

    def test_type_mismatch(self):
        """All pendings must agree on the encounter type."""
        sid = uuid4()
        group = cascade_group(sid)
        group[1].encounter.encounter_type = "Surgery"

        with pytest.raises(ReconciliationGroupError, match="types disagree"):
            validate_group(group)


class TestMergeGroup:
    """Tests for merge_group."""

    def test_merge_cascade(self):
        """Start from the first pending, end from the last, fields merged."""
        sid = uuid4()
        group = cascade_group(sid)
        group[1].encounter.position_confidence = 0.4

        final = merge_group(sid, group)

        assert final.cascade_id == group[0].cascade_id
        assert final.start.page == 2
        assert final.end.page == 5
        assert final.page_ranges == [PageRange(start=2, end=5)]
        assert final.pages == [2, 3, 4, 5]
        assert final.provider_name == "Dr Sarah Chen"
        assert final.is_real_world_visit is True
        assert final.position_confidence == 0.4
        assert final.chunk_count == 3
        assert final.source_pending_ids == [p.pending_id for p in group]
        assert final.encounter_start_date == "2024-02-01"
        assert final.encounter_end_date == "2024-02-09"
        assert final.date_source == DateSource.AI_EXTRACTED
        assert final.quality_metadata["dates"]["encounter_start_date"]["ambiguous"] is True
        assert final.quality_metadata["chunks"] == [1, 2, 3]

    def test_unambiguous_date_preferred(self):
        """An unambiguous date in a later chunk beats an ambiguous one."""
        sid = uuid4()
        group = cascade_group(sid)
        group[2].encounter.encounter_start_date = "16/02/2024"

        final = merge_group(sid, group)

        assert final.encounter_start_date == "2024-02-16"

    def test_quality_tiers(self):
        """Tier depends on date quality, provider and patient name."""
        sid = uuid4()
        high = make_pending(
            sid, 1, 0, (1, 1), "GP Visit", encounter_start_date="16/02/2024",
            provider_name="Dr Patel", patient_name="Jane Citizen",
        )
        medium = make_pending(
            sid, 1, 0, (1, 1), "GP Visit", encounter_start_date="01/02/2024",
            provider_name="Dr Patel", patient_name="Jane Citizen",
        )
        low = make_pending(sid, 1, 0, (1, 1), "GP Visit", provider_name="Dr Patel")

        assert merge_group(sid, [high]).quality_tier == QualityTier.HIGH
        assert merge_group(sid, [medium]).quality_tier == QualityTier.MEDIUM
        assert merge_group(sid, [low]).quality_tier == QualityTier.LOW

    def test_invalid_birth_date_dropped(self):
        """Implausible birth dates do not reach the final encounter."""
        sid = uuid4()
        pending = make_pending(sid, 1, 0, (1, 1), "GP Visit", patient_date_of_birth="31/02/1960")

        final = merge_group(sid, [pending])

        assert final.patient_date_of_birth is None
        assert final.quality_metadata["dates"]["patient_date_of_birth"]["candidates"][0]["rejected"]


class TestPendingReconciler:
    """Tests for PendingReconciler against the database."""

    @pytest.fixture
    async def session(self, session_factory):
        return await persist_session(session_factory, total_pages=6, chunk_size=2)

    async def test_reconcile_groups(self, session_factory, session):
        """Singles and a closed cascade become one final encounter each."""
        chain = cascade_group(session.id)
        singles = [
            make_pending(session.id, 1, 0, (1, 1), "GP Visit"),
            make_pending(session.id, 3, 1, (6, 6), "Pathology Report"),
        ]
        await seed(session_factory, session, [singles[0], *chain, singles[1]])

        report = await PendingReconciler(session_factory, concurrency=1).reconcile(session.id)

        assert len(report.final_encounter_ids) == 3
        assert report.abandoned == []
        assert report.unresolved_cascade_ids == []

        finals = await stored_finals(session_factory, session.id)
        merged = next(f for f in finals if f.cascade_id == chain[0].cascade_id)
        assert merged.pages == [2, 3, 4, 5]
        assert merged.provider_name == "Dr Sarah Chen"

        pendings = await stored_pendings(session_factory, session.id)
        assert all(p.status == PendingStatus.COMPLETED for p in pendings.values())
        assert pendings[chain[0].pending_id].reconciled_to == merged.id

        async with get_session(session_factory) as db:
            stored_chain = await CascadeRepository(db).get(chain[0].cascade_id)
            unresolved = await PendingRepository(db).count_unresolved(session.id)
        assert stored_chain.is_complete
        assert stored_chain.final_encounter_id == merged.id
        assert stored_chain.last_chunk == 3
        assert unresolved == 0

    async def test_incomplete_chunks_block_reconciliation(self, session_factory, session):
        """Reconciliation refuses to run with a chunk missing."""
        await seed(
            session_factory, session,
            [make_pending(session.id, 1, 0, (1, 1), "GP Visit")],
            completed_chunks=[1, 3],
        )

        with pytest.raises(IncompleteSessionError, match=r"\[2\]"):
            await PendingReconciler(session_factory).reconcile(session.id)

    async def test_failed_session_not_reconciled(self, session_factory, session):
        """A failed session is never reconciled."""
        await seed(session_factory, session, [])
        async with get_session(session_factory) as db:
            await SessionRepository(db).update(session.id, status=SessionStatus.FAILED)

        with pytest.raises(IncompleteSessionError, match="failed"):
            await PendingReconciler(session_factory).reconcile(session.id)

    async def test_invalid_group_abandoned_others_continue(self, session_factory, session):
        """A type disagreement abandons that group only."""
        chain = cascade_group(session.id)
        chain[1].encounter.encounter_type = "Surgery"
        single = make_pending(session.id, 1, 0, (1, 1), "GP Visit")
        await seed(session_factory, session, [single, *chain])

        report = await PendingReconciler(session_factory, concurrency=1).reconcile(session.id)

        assert len(report.final_encounter_ids) == 1
        assert len(report.abandoned) == 1
        assert report.abandoned[0].cascade_id == chain[0].cascade_id
        pendings = await stored_pendings(session_factory, session.id)
        for pending in chain:
            stored = pendings[pending.pending_id]
            assert stored.status == PendingStatus.ABANDONED
            assert stored.requires_review
            assert "types disagree" in stored.error_message
        assert pendings[single.pending_id].status == PendingStatus.COMPLETED

    async def test_orphaned_cascade_flagged(self, session_factory, session):
        """A cascade never closed stays pending and is flagged for review."""
        chain = cascade_group(session.id, closed=False)
        await seed(session_factory, session, chain)

        report = await PendingReconciler(session_factory).reconcile(session.id)

        assert report.final_encounter_ids == []
        assert report.unresolved_cascade_ids == [chain[0].cascade_id]
        assert report.unresolved_pending_ids == [p.pending_id for p in chain]
        pendings = await stored_pendings(session_factory, session.id)
        assert all(p.status == PendingStatus.PENDING for p in pendings.values())
        assert all(p.review_reason == ORPHAN_REASON for p in pendings.values())
        async with get_session(session_factory) as db:
            assert await PendingRepository(db).count_unresolved(session.id) == 3

    async def test_page_collision_abandons_later_group(self, session_factory, session):
        """Page ownership stays exclusive across final encounters."""
        first = make_pending(session.id, 1, 0, (1, 2), "GP Visit")
        clash = make_pending(session.id, 2, 0, (2, 3), "Pathology Report")
        await seed(session_factory, session, [first, clash])

        report = await PendingReconciler(session_factory).reconcile(session.id)

        assert len(report.final_encounter_ids) == 1
        assert report.abandoned[0].pending_ids == [clash.pending_id]
        assert "page 2" in report.abandoned[0].error

    async def test_failed_write_rolls_back_group(self, session_factory, session):
        """A cascade count mismatch abandons the group without a final encounter."""
        chain = cascade_group(session.id)
        await seed(session_factory, session, chain)
        async with get_session(session_factory) as db:
            # A continuation the reconciler will never see
            await CascadeManager(db).record_continuation(chain[0].cascade_id, 3)

        report = await PendingReconciler(session_factory).reconcile(session.id)

        assert report.final_encounter_ids == []
        assert "write failed" in report.abandoned[0].error
        assert await stored_finals(session_factory, session.id) == []
        async with get_session(session_factory) as db:
            stored_chain = await CascadeRepository(db).get(chain[0].cascade_id)
        assert not stored_chain.is_complete

    async def test_reconcile_is_repeatable(self, session_factory, session):
        """A second run finds nothing left to merge."""
        await seed(session_factory, session, [make_pending(session.id, 1, 0, (1, 1), "GP Visit")])
        reconciler = PendingReconciler(session_factory)
        await reconciler.reconcile(session.id)

        report = await reconciler.reconcile(session.id)

        assert report.final_encounter_ids == []
        assert len(await stored_finals(session_factory, session.id)) == 1
