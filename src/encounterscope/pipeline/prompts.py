"""Chunk prompt assembly.

A chunk prompt has five parts: task framing, chunk position, the prior
handoff (if any), the chunk's OCR text framed by page markers, and the
required JSON response shape. Encounter-type business rules live in the
framing text and are deliberately brief here.
"""

from typing import Optional, Sequence

from encounterscope.models import HandoffPackage, OCRPage

from .ocr_format import format_page_text

TASK_FRAMING = """You are reading a chunk of a long scanned medical record.
Identify every distinct healthcare encounter (visit, admission, report, letter,
summary) in the pages below. Each page belongs to at most one encounter.
Report page numbers exactly as shown in the page markers (1-indexed)."""

RESPONSE_SCHEMA = """Respond with a single JSON object:
{
  "encounters": [
    {
      "status": "complete",                 // or "continuing" if it runs past the last page
      "temp_id": "enc_temp_001",            // required when status is "continuing"
      "expected_continuation": "lab_results", // required when status is "continuing"
      "continues_temp_id": null,            // temp_id from PENDING ENCOUNTER if this continues it
      "encounter_type": "Emergency Department Visit",
      "page_ranges": [[1, 3]],
      "start_boundary_type": "inter_page",  // or "intra_page"
      "start_text_marker": null,            // verbatim heading where it starts mid-page
      "start_marker_context": null,
      "start_region_hint": null,            // top | upper_middle | lower_middle | bottom
      "end_boundary_type": "inter_page",
      "end_text_marker": null,
      "end_marker_context": null,
      "end_region_hint": null,
      "position_confidence": 0.9,
      "encounter_start_date": "2024-03-15",
      "encounter_end_date": "2024-03-15",
      "date_source": "ai_extracted",
      "is_real_world_visit": true,
      "patient_name": null,
      "patient_date_of_birth": null,
      "patient_address": null,
      "identifiers": [{"identifier_type": "MRN", "value": "..."}],
      "provider_name": "Dr. Sarah Chen",
      "facility_name": "St Vincent's Hospital",
      "department": null,
      "provider_role": null,
      "chief_complaint": null,
      "disposition": null,
      "diagnoses": [],
      "procedures": [],
      "summary": "One or two sentences",
      "confidence": 0.9
    }
  ],
  "active_context": {
    "current_admission": {"facility": null, "admit_date": null, "provider_name": null},
    "recent_providers": [],
    "recent_facilities": [],
    "document_flow": "chronological"       // chronological | reverse | mixed | by_provider
  }
}"""


def chunk_position(chunk_number: int, total_chunks: int) -> str:
    if total_chunks == 1:
        return "only"
    if chunk_number == 1:
        return "first"
    if chunk_number == total_chunks:
        return "final"
    return "middle"


POSITION_GUIDANCE = {
    "only": "This chunk is the whole document. Every encounter is complete; do not mark any as continuing.",
    "first": (
        "This is the first chunk. An encounter still in progress on the last page "
        "must be marked \"continuing\" with a temp_id."
    ),
    "middle": (
        "This is a middle chunk. Complete the pending encounter below if it continues here, "
        "and mark anything still in progress on the last page as \"continuing\"."
    ),
    "final": (
        "This is the final chunk. Complete the pending encounter below if present; "
        "nothing can continue past this chunk, so every encounter is \"complete\"."
    ),
}


def render_handoff(handoff: Optional[HandoffPackage]) -> str:
    """Render the prior chunk's handoff for the prompt."""
    if handoff is None:
        return "No context from previous chunks."

    lines = [f"CONTEXT FROM CHUNK {handoff.from_chunk}"]
    pending = handoff.open_pending
    if pending is not None:
        lines += [
            "",
            "PENDING ENCOUNTER (continues into this chunk):",
            f"- temp_id: {pending.temp_id}",
            f"- type: {pending.encounter_type}",
            f"- pages so far: {pending.start_page}-{pending.last_page}",
            f"- expected continuation: {pending.expected_continuation}",
        ]
        if pending.encounter_start_date:
            lines.append(f"- start date: {pending.encounter_start_date}")
        if pending.provider_name:
            lines.append(f"- provider: {pending.provider_name}")
        if pending.facility_name:
            lines.append(f"- facility: {pending.facility_name}")
        if pending.partial_summary:
            lines.append(f"- summary so far: {pending.partial_summary}")
        if pending.context_snippet:
            lines.append(f"- last text seen: \"...{pending.context_snippet}\"")
        lines.append(
            f"If this chunk continues it, set \"continues_temp_id\": \"{pending.temp_id}\"."
        )

    ctx = handoff.active_context
    lines += ["", "ACTIVE CONTEXT:"]
    if ctx.current_admission is not None:
        admission = ctx.current_admission
        lines.append(
            f"- open admission: {admission.facility_name or 'unknown facility'}"
            f" since {admission.admit_date or 'unknown date'}"
        )
    if ctx.recent_providers:
        lines.append(f"- recent providers: {', '.join(ctx.recent_providers)}")
    if ctx.recent_facilities:
        lines.append(f"- recent facilities: {', '.join(ctx.recent_facilities)}")
    lines.append(f"- document flow: {ctx.document_flow}")
    if ctx.last_confident_date:
        lines.append(f"- last confident date: {ctx.last_confident_date}")

    if handoff.recent_encounters:
        lines += ["", "RECENTLY COMPLETED ENCOUNTERS:"]
        for enc in handoff.recent_encounters:
            when = f" on {enc.encounter_date}" if enc.encounter_date else ""
            who = f" ({enc.provider_name})" if enc.provider_name else ""
            lines.append(f"- {enc.encounter_type}, pages {enc.start_page}-{enc.end_page}{when}{who}")

    return "\n".join(lines)


def build_chunk_prompt(
    chunk_number: int,
    total_chunks: int,
    pages: Sequence[OCRPage],
    total_pages: int,
    prior_handoff: Optional[HandoffPackage] = None,
    enhanced_ocr: bool = True,
) -> str:
    """
    Assemble the prompt for one chunk.

    Args:
        chunk_number: 1-indexed chunk number
        total_chunks: Number of chunks in the session
        pages: OCR pages of this chunk, in order
        total_pages: Page count of the whole document
        prior_handoff: Handoff produced by the previous chunk
        enhanced_ocr: Render word coordinates alongside text

    Returns:
        Prompt text
    """
    first, last = pages[0].page_number, pages[-1].page_number
    position = chunk_position(chunk_number, total_chunks)

    sections = [
        TASK_FRAMING,
        (
            f"CHUNK {chunk_number} of {total_chunks}: pages {first}-{last} "
            f"of a {total_pages}-page document."
        ),
        POSITION_GUIDANCE[position],
        render_handoff(prior_handoff),
        "OCR TEXT:",
    ]
    for page in pages:
        sections.append(
            f"--- PAGE {page.page_number} START ---\n"
            f"{format_page_text(page, enhanced=enhanced_ocr)}\n"
            f"--- PAGE {page.page_number} END ---"
        )
    sections.append(RESPONSE_SCHEMA)
    return "\n\n".join(sections)
