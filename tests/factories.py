"""Builders for OCR pages, model responses and pendings used across tests."""

import json
from typing import Optional, Sequence, Union
from uuid import UUID

from encounterscope.inference import InferenceGateway, InferenceRequest, InferenceResponse
from encounterscope.models import (
    EncounterBoundary,
    EncounterCandidate,
    OCRBlock,
    OCRBoundingPoly,
    OCRPage,
    OCRParagraph,
    OCRVertex,
    OCRWord,
    PageRange,
    PendingEncounter,
    ProgressiveSession,
    SessionStatus,
)
from encounterscope.pipeline import derive_pending_id
from encounterscope.storage import SessionRepository, get_session

WORD_HEIGHT = 20


def make_word(text: str, x: float, y: float, height: float = WORD_HEIGHT, confidence: float = 0.95) -> OCRWord:
    width = 12 * len(text)
    return OCRWord(
        text=text,
        bounding_poly=OCRBoundingPoly(
            vertices=[
                OCRVertex(x=x, y=y),
                OCRVertex(x=x + width, y=y),
                OCRVertex(x=x + width, y=y + height),
                OCRVertex(x=x, y=y + height),
            ]
        ),
        confidence=confidence,
    )


def make_page(
    page_number: int,
    lines: Sequence[tuple[float, str]] = (),
    height: Optional[float] = 1100.0,
    width: float = 850.0,
) -> OCRPage:
    """One page; each (y, text) line becomes a paragraph of word boxes."""
    if not lines:
        lines = [(100, f"Clinical notes page {page_number}")]
    paragraphs = []
    for y, text in lines:
        x = 50.0
        words = []
        for token in text.split():
            word = make_word(token, x, y)
            words.append(word)
            x = word.bounding_poly.right + 10
        paragraphs.append(OCRParagraph(words=words))
    return OCRPage(
        page_number=page_number,
        width=width,
        height=height,
        blocks=[OCRBlock(paragraphs=paragraphs)],
    )


def make_document(page_count: int) -> list[OCRPage]:
    return [make_page(n) for n in range(1, page_count + 1)]


def encounter_json(
    pages: Sequence[int],
    encounter_type: str = "Outpatient Consultation",
    status: str = "complete",
    **fields,
) -> dict:
    """Raw encounter as the model would emit it."""
    data = {
        "status": status,
        "encounter_type": encounter_type,
        "page_ranges": [list(pages)],
        "confidence": 0.9,
        "position_confidence": 0.9,
    }
    data.update(fields)
    return data


def response_json(*encounters: dict, **extra) -> dict:
    return {"encounters": list(encounters), **extra}


class ScriptedGateway(InferenceGateway):
    """Returns queued responses in order; queued exceptions are raised."""

    def __init__(self, responses: Sequence[Union[dict, str, Exception]]):
        self.responses = list(responses)
        self.requests: list[InferenceRequest] = []

    @property
    def model_name(self) -> str:
        return "scripted-model"

    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("no scripted response left")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        content = item if isinstance(item, str) else json.dumps(item)
        return InferenceResponse(
            content=content,
            input_tokens=1000,
            output_tokens=200,
            cost=0.01,
            model="scripted-model",
        )


def make_pending(
    session_id: UUID,
    chunk_number: int,
    index: int,
    pages: tuple[int, int],
    encounter_type: str = "Hospital Admission",
    cascade_id: Optional[str] = None,
    origin_chunk: Optional[int] = None,
    origin_index: Optional[int] = None,
    is_cascading: bool = False,
    continues_previous: bool = False,
    confidence: float = 0.9,
    temp_id: Optional[str] = None,
    **encounter_fields,
) -> PendingEncounter:
    """Pending record as the chunk processor would have persisted it."""
    encounter = EncounterCandidate(
        index=index,
        status="continuing" if is_cascading else "complete",
        encounter_type=encounter_type,
        page_ranges=[PageRange(start=pages[0], end=pages[1])],
        start=EncounterBoundary(page=pages[0]),
        end=EncounterBoundary(page=pages[1]),
        confidence=confidence,
        **encounter_fields,
    )
    return PendingEncounter(
        session_id=session_id,
        pending_id=derive_pending_id(session_id, chunk_number, index),
        temp_id=temp_id,
        chunk_number=chunk_number,
        last_seen_chunk=chunk_number,
        encounter_index=index,
        cascade_id=cascade_id,
        origin_chunk=origin_chunk or chunk_number,
        origin_index=index if origin_index is None else origin_index,
        is_cascading=is_cascading,
        continues_previous=continues_previous,
        encounter=encounter,
        page_ranges=list(encounter.page_ranges),
        confidence=confidence,
    )


async def persist_session(session_factory, total_pages: int, chunk_size: int) -> ProgressiveSession:
    """Create a processing session row the way SessionManager does."""
    record = ProgressiveSession(
        total_pages=total_pages,
        chunk_size=chunk_size,
        total_chunks=-(-total_pages // chunk_size),
        status=SessionStatus.PROCESSING,
    )
    async with get_session(session_factory) as db:
        await SessionRepository(db).create(record)
    return record
