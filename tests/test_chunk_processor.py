"""Tests for the chunk processing stage."""

import pytest

from encounterscope.errors import ChunkValidationError, ProviderError
from encounterscope.models import (
    BoundaryType,
    CascadeChain,
    ChunkStatus,
    PageRange,
    PendingEncounter,
)
from encounterscope.pipeline import ChunkProcessor, ChunkProcessorConfig, derive_cascade_id
from encounterscope.storage import (
    CascadeRepository,
    ChunkResultRepository,
    PendingRepository,
    get_session,
)

from factories import ScriptedGateway, encounter_json, make_document, make_page, persist_session, response_json


async def load_pendings(session_factory, session_id):
    async with get_session(session_factory) as db:
        rows = await PendingRepository(db).list_for_session(session_id)
        return [PendingEncounter.model_validate(r) for r in rows]


async def load_chunk_row(session_factory, session_id, chunk_number):
    async with get_session(session_factory) as db:
        return await ChunkResultRepository(db).get(session_id, chunk_number)


class TestChunkProcessor:
    """Tests for ChunkProcessor.process_chunk."""

    @pytest.fixture
    def pages(self):
        return make_document(4)

    @pytest.fixture
    async def session(self, session_factory):
        return await persist_session(session_factory, total_pages=4, chunk_size=2)

    async def test_complete_and_continuing(self, session_factory, session, pages):
        """A continuing encounter becomes the handoff's open pending."""
        gateway = ScriptedGateway([
            response_json(
                encounter_json([1, 1], "GP Visit", provider_name="Dr Patel"),
                encounter_json(
                    [2, 2], "Hospital Admission", status="continuing", temp_id="T1",
                    expected_continuation="discharge_summary",
                ),
            )
        ])
        processor = ChunkProcessor(gateway, session_factory)

        result = await processor.process_chunk(session, 1, pages[:2])

        complete, cascading = result.pendings
        assert not complete.is_cascading and complete.cascade_id is None
        assert cascading.is_cascading
        assert cascading.cascade_id == derive_cascade_id(session.id, 1, 1, "Hospital Admission")
        assert cascading.pending_id == f"pending_{str(session.id)[:8]}_001_001"
        assert result.handoff.open_pending.temp_id == "T1"
        assert result.cascade_ids == [cascading.cascade_id]
        assert "CHUNK 1 of 2" in gateway.requests[0].prompt_text

        row = await load_chunk_row(session_factory, session.id, 1)
        assert row.status == ChunkStatus.COMPLETED
        assert row.pendings_created == 2
        assert row.cascading_count == 1
        assert row.encounters_completed == 1
        assert row.input_tokens == 1000
        assert row.handoff_sent["open_pending"]["temp_id"] == "T1"

        async with get_session(session_factory) as db:
            chains = await CascadeRepository(db).list_for_session(session.id, open_only=True)
        assert [CascadeChain.model_validate(c).cascade_id for c in chains] == [cascading.cascade_id]

    async def test_last_page_heuristic(self, session_factory, session, pages):
        """A complete encounter ending on the chunk's last page cascades."""
        gateway = ScriptedGateway([response_json(encounter_json([1, 2], "Hospital Admission"))])

        result = await ChunkProcessor(gateway, session_factory).process_chunk(session, 1, pages[:2])

        pending = result.pendings[0]
        assert pending.is_cascading
        assert pending.temp_id == "auto-1-0"
        assert pending.expected_continuation == "discharge_summary"
        assert result.handoff.open_pending.temp_id == "auto-1-0"

    async def test_continuation_attaches_to_origin_cascade(self, session_factory, session, pages):
        """The continuing chunk reuses the origin's cascade id and extends it."""
        gateway = ScriptedGateway([
            response_json(
                encounter_json([1, 1], "GP Visit"),
                encounter_json([2, 2], "Hospital Admission", status="continuing", temp_id="T1"),
            ),
            response_json(
                encounter_json([3, 3], "Hospital Admission", continues_temp_id="T1"),
                encounter_json([4, 4], "Pathology Report"),
            ),
        ])
        processor = ChunkProcessor(gateway, session_factory)
        first = await processor.process_chunk(session, 1, pages[:2])

        second = await processor.process_chunk(session, 2, pages[2:], first.handoff)

        continued = second.pendings[0]
        origin = first.pendings[1]
        assert continued.continues_previous
        assert continued.cascade_id == origin.cascade_id
        assert (continued.origin_chunk, continued.origin_index) == (1, 1)
        assert not continued.is_cascading
        assert '"continues_temp_id": "T1"' in gateway.requests[1].prompt_text

        stored = {p.pending_id: p for p in await load_pendings(session_factory, session.id)}
        extended = stored[origin.pending_id]
        assert extended.page_ranges == [PageRange(start=2, end=3)]
        assert extended.last_seen_chunk == 2

        async with get_session(session_factory) as db:
            chain = await CascadeRepository(db).get(origin.cascade_id)
        assert chain.pendings_count == 2
        assert chain.last_chunk == 2

    async def test_unknown_temp_id_treated_as_new(self, session_factory, session, pages):
        """Continuing a temp id that was never handed off starts a new encounter."""
        gateway = ScriptedGateway([
            response_json(encounter_json([2, 2], "Hospital Admission", status="continuing", temp_id="T1")),
            response_json(encounter_json([3, 4], "Hospital Admission", continues_temp_id="T9")),
        ])
        processor = ChunkProcessor(gateway, session_factory)
        first = await processor.process_chunk(session, 1, pages[:2])

        second = await processor.process_chunk(session, 2, pages[2:], first.handoff)

        pending = second.pendings[0]
        assert not pending.continues_previous
        assert pending.cascade_id is None
        assert pending.origin_chunk == 2

    async def test_two_continuations_rejected(self, session_factory, session, pages):
        """Only one encounter may continue the open pending."""
        gateway = ScriptedGateway([
            response_json(encounter_json([2, 2], "Hospital Admission", status="continuing", temp_id="T1")),
            response_json(
                encounter_json([3, 3], "Hospital Admission", continues_temp_id="T1"),
                encounter_json([4, 4], "Hospital Admission", continues_temp_id="T1"),
            ),
        ])
        processor = ChunkProcessor(gateway, session_factory)
        first = await processor.process_chunk(session, 1, pages[:2])

        with pytest.raises(ChunkValidationError, match="both continue T1"):
            await processor.process_chunk(session, 2, pages[2:], first.handoff)

    async def test_final_chunk_continuing_treated_as_complete(self, session_factory):
        """Nothing cascades out of the last chunk."""
        session = await persist_session(session_factory, total_pages=2, chunk_size=2)
        gateway = ScriptedGateway([
            response_json(encounter_json([1, 2], "Hospital Admission", status="continuing", temp_id="T1"))
        ])

        result = await ChunkProcessor(gateway, session_factory).process_chunk(session, 1, make_document(2))

        assert not result.pendings[0].is_cascading
        assert result.pendings[0].cascade_id is None
        assert result.handoff.open_pending is None

    async def test_page_overlap_rejected_and_audited(self, session_factory, session, pages):
        """Two encounters claiming one page fail the chunk with a failed audit row."""
        gateway = ScriptedGateway([
            response_json(encounter_json([1, 1], "GP Visit"), encounter_json([1, 2], "Pathology Report"))
        ])

        with pytest.raises(ChunkValidationError, match="page 1 claimed by encounters 0 and 1"):
            await ChunkProcessor(gateway, session_factory).process_chunk(session, 1, pages[:2])

        row = await load_chunk_row(session_factory, session.id, 1)
        assert row.status == ChunkStatus.FAILED
        assert "page 1 claimed" in row.error_message
        assert row.raw_response is not None
        assert await load_pendings(session_factory, session.id) == []

    async def test_page_outside_chunk_rejected(self, session_factory, session, pages):
        """Pages beyond the chunk are a validation error."""
        gateway = ScriptedGateway([response_json(encounter_json([1, 3], "GP Visit"))])

        with pytest.raises(ChunkValidationError, match="outside chunk pages 1-2"):
            await ChunkProcessor(gateway, session_factory).process_chunk(session, 1, pages[:2])

    async def test_disallowed_type_rejected(self, session_factory, session, pages):
        """Types outside the configured set are rejected."""
        gateway = ScriptedGateway([response_json(encounter_json([1, 1], "Spaceship Launch"))])
        config = ChunkProcessorConfig(allowed_encounter_types=frozenset({"gp visit"}))

        with pytest.raises(ChunkValidationError, match="unrecognised type"):
            await ChunkProcessor(gateway, session_factory, config).process_chunk(session, 1, pages[:2])

    async def test_inference_failure_recorded(self, session_factory, session, pages):
        """Gateway errors propagate after a failed audit row is written."""
        gateway = ScriptedGateway([ProviderError("server error 503")])

        with pytest.raises(ProviderError):
            await ChunkProcessor(gateway, session_factory).process_chunk(session, 1, pages[:2])

        row = await load_chunk_row(session_factory, session.id, 1)
        assert row.status == ChunkStatus.FAILED
        assert row.error_message.startswith("ProviderError")
        assert row.input_tokens == 0

    async def test_retry_overwrites_audit_row(self, session_factory, session, pages):
        """A successful retry replaces the failed row for the same chunk."""
        gateway = ScriptedGateway([
            ProviderError("server error 503"),
            response_json(encounter_json([1, 1], "GP Visit")),
        ])
        processor = ChunkProcessor(gateway, session_factory)
        with pytest.raises(ProviderError):
            await processor.process_chunk(session, 1, pages[:2])

        await processor.process_chunk(session, 1, pages[:2], attempt=2)

        async with get_session(session_factory) as db:
            rows = await ChunkResultRepository(db).list_for_session(session.id)
        assert len(rows) == 1
        assert rows[0].status == ChunkStatus.COMPLETED
        assert rows[0].attempt == 2
        assert rows[0].error_message is None

    async def test_reprocessing_is_idempotent(self, session_factory, session, pages):
        """Running the same chunk twice does not duplicate pendings."""
        payload = response_json(encounter_json([1, 1], "GP Visit"))
        processor = ChunkProcessor(ScriptedGateway([payload, payload]), session_factory)

        await processor.process_chunk(session, 1, pages[:2])
        await processor.process_chunk(session, 1, pages[:2], attempt=2)

        assert len(await load_pendings(session_factory, session.id)) == 1

    async def test_intra_page_boundary_resolved(self, session_factory):
        """A located marker pins the split position."""
        session = await persist_session(session_factory, total_pages=1, chunk_size=2)
        page = make_page(1, [(100, "Referral from GP"), (600, "DISCHARGE SUMMARY"), (640, "Patient discharged")])
        gateway = ScriptedGateway([
            response_json(encounter_json(
                [1, 1], "Discharge Summary",
                start_boundary_type="intra_page", start_text_marker="Discharge Summary",
                position_confidence=0.99,
            ))
        ])

        result = await ChunkProcessor(gateway, session_factory).process_chunk(session, 1, [page])

        enc = result.pendings[0].encounter
        assert enc.start.boundary_type == BoundaryType.INTRA_PAGE
        assert enc.start.split_y == 600
        assert enc.start.text_height == 20
        assert enc.position_confidence == 0.95

    async def test_unresolved_marker_falls_back_to_page_boundary(self, session_factory):
        """A marker that cannot be found downgrades to an inter-page boundary."""
        session = await persist_session(session_factory, total_pages=1, chunk_size=2)
        gateway = ScriptedGateway([
            response_json(encounter_json(
                [1, 1], "Operation Report",
                end_boundary_type="intra_page", end_text_marker="POST OPERATIVE ORDERS",
            ))
        ])

        result = await ChunkProcessor(gateway, session_factory).process_chunk(session, 1, [make_page(1)])

        end = result.pendings[0].encounter.end
        assert end.boundary_type == BoundaryType.INTER_PAGE
        assert end.split_y is None
