"""Tests for cascade ids and cascade bookkeeping."""

import json
from uuid import UUID, uuid4

import pytest

from encounterscope.errors import CascadeValidationError
from encounterscope.models import ProgressiveSession
from encounterscope.pipeline.cascade import (
    CascadeManager,
    derive_cascade_id,
    derive_pending_id,
    should_cascade,
)
from encounterscope.pipeline.response import parse_chunk_response
from encounterscope.storage import SessionRepository, get_session

SESSION_ID = UUID("12345678-1234-5678-1234-567812345678")


def encounter(pages, status="complete", **fields):
    payload = {"status": status, "encounter_type": "Hospital Admission", "page_ranges": [pages], **fields}
    if status == "continuing":
        payload.setdefault("temp_id", "T1")
    return parse_chunk_response(json.dumps({"encounters": [payload]})).encounters[0]


class TestDeriveIds:
    """Tests for deterministic id derivation."""

    def test_cascade_id_is_deterministic(self):
        """The same origin always yields the same id."""
        first = derive_cascade_id(SESSION_ID, 1, 2, "Hospital Admission")
        second = derive_cascade_id(str(SESSION_ID), 1, 2, "Hospital Admission")

        assert first == second
        assert first.startswith(f"cascade_{SESSION_ID}_1_2_")
        assert len(first.rsplit("_", 1)[1]) == 8

    def test_cascade_id_depends_on_origin(self):
        """Different chunk, index or type give different ids."""
        base = derive_cascade_id(SESSION_ID, 1, 2, "Hospital Admission")

        assert derive_cascade_id(SESSION_ID, 2, 2, "Hospital Admission") != base
        assert derive_cascade_id(SESSION_ID, 1, 3, "Hospital Admission") != base
        assert derive_cascade_id(SESSION_ID, 1, 2, "Surgery") != base

    def test_pending_id_format(self):
        """Pending ids use the session prefix and padded numbers."""
        assert derive_pending_id(SESSION_ID, 2, 7) == "pending_12345678_002_007"


class TestShouldCascade:
    """Tests for the cascade decision."""

    def test_explicit_continuing(self):
        """Continuing status cascades even away from the chunk end."""
        assert should_cascade(encounter([10, 20], "continuing"), 50, False)

    def test_touching_chunk_end(self):
        """A complete encounter on the last page cascades by heuristic."""
        assert should_cascade(encounter([45, 50]), 50, False)

    def test_inside_chunk(self):
        """A complete encounter ending earlier does not cascade."""
        assert not should_cascade(encounter([10, 20]), 50, False)

    def test_final_chunk_never_cascades(self):
        """Nothing cascades out of the final chunk."""
        assert not should_cascade(encounter([45, 50], "continuing"), 50, True)


class TestCascadeManager:
    """Tests for CascadeManager against the database."""

    @pytest.fixture
    async def session_id(self, session_factory):
        record = ProgressiveSession(total_pages=100, chunk_size=50, total_chunks=2)
        async with get_session(session_factory) as db:
            await SessionRepository(db).create(record)
        return record.id

    async def test_track_open_is_idempotent(self, session_factory, session_id):
        """Tracking the same cascade twice keeps one chain."""
        cascade_id = derive_cascade_id(session_id, 1, 0, "Hospital Admission")

        async with get_session(session_factory) as db:
            manager = CascadeManager(db)
            await manager.track_open(cascade_id, session_id, 1, 0, "Hospital Admission")
            chain = await manager.track_open(cascade_id, session_id, 1, 0, "Hospital Admission")
            open_chains = await manager.list_open(session_id)

        assert chain.pendings_count == 1
        assert [c.cascade_id for c in open_chains] == [cascade_id]

    async def test_continuation_and_completion(self, session_factory, session_id):
        """A continued chain completes once all pendings are merged."""
        cascade_id = derive_cascade_id(session_id, 1, 0, "Hospital Admission")
        final_id = uuid4()

        async with get_session(session_factory) as db:
            manager = CascadeManager(db)
            await manager.track_open(cascade_id, session_id, 1, 0, "Hospital Admission")
            continued = await manager.record_continuation(cascade_id, 2)
            completed = await manager.complete(cascade_id, 2, final_id, merged_pending_count=2)
            open_chains = await manager.list_open(session_id)

        assert continued.pendings_count == 2
        assert completed.is_complete
        assert completed.final_encounter_id == final_id
        assert completed.last_chunk == 2
        assert open_chains == []

    async def test_complete_rejects_short_merge(self, session_factory, session_id):
        """Merging fewer pendings than tracked is an error."""
        cascade_id = derive_cascade_id(session_id, 1, 0, "Hospital Admission")

        with pytest.raises(CascadeValidationError, match="merged 1"):
            async with get_session(session_factory) as db:
                manager = CascadeManager(db)
                await manager.track_open(cascade_id, session_id, 1, 0, "Hospital Admission")
                await manager.record_continuation(cascade_id, 2)
                await manager.complete(cascade_id, 2, uuid4(), merged_pending_count=1)

    async def test_complete_rejects_last_before_origin(self, session_factory, session_id):
        """The last chunk cannot precede the origin chunk."""
        cascade_id = derive_cascade_id(session_id, 2, 0, "Hospital Admission")

        with pytest.raises(CascadeValidationError, match="precedes origin"):
            async with get_session(session_factory) as db:
                manager = CascadeManager(db)
                await manager.track_open(cascade_id, session_id, 2, 0, "Hospital Admission")
                await manager.complete(cascade_id, 1, uuid4(), merged_pending_count=1)

    async def test_complete_twice_rejected(self, session_factory, session_id):
        """A chain can only be completed once."""
        cascade_id = derive_cascade_id(session_id, 1, 0, "Hospital Admission")
        async with get_session(session_factory) as db:
            manager = CascadeManager(db)
            await manager.track_open(cascade_id, session_id, 1, 0, "Hospital Admission")
            await manager.complete(cascade_id, 1, uuid4(), merged_pending_count=1)

        with pytest.raises(CascadeValidationError, match="already completed"):
            async with get_session(session_factory) as db:
                await CascadeManager(db).complete(cascade_id, 1, uuid4(), merged_pending_count=1)

    async def test_unknown_cascade(self, session_factory, session_id):
        """Continuing or completing an unknown chain is an error."""
        async with get_session(session_factory) as db:
            manager = CascadeManager(db)
            with pytest.raises(CascadeValidationError):
                await manager.record_continuation("cascade_missing", 2)
            with pytest.raises(CascadeValidationError):
                await manager.complete("cascade_missing", 2, uuid4(), merged_pending_count=1)
            assert await manager.get("cascade_missing") is None
