"""Inference response normalisation.

The only module that knows the model's output format. Maps both the
snake_case and camelCase field conventions (plus a few legacy spellings)
onto the canonical ``ChunkExtraction`` shape, then validates it as a
tagged union of complete and continuing encounters.
"""

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from encounterscope.errors import ChunkValidationError
from encounterscope.models import BoundaryType, ChunkExtraction, DateSource, RegionHint

from .identifiers import extract_identifiers

logger = logging.getLogger(__name__)

FIELD_ALIASES = {
    # type / status
    "encounterType": "encounter_type",
    "type": "encounter_type",
    "encounterStatus": "status",
    # continuation
    "tempId": "temp_id",
    "temp_encounter_id": "temp_id",
    "encounter_id": "temp_id",
    "encounterId": "temp_id",
    "expectedContinuation": "expected_continuation",
    "expected_next": "expected_continuation",
    "continuesPrevious": "continues_previous",
    "is_continuation": "continues_previous",
    "isContinuation": "continues_previous",
    "continuesTempId": "continues_temp_id",
    "continues_from": "continues_temp_id",
    "continuesFrom": "continues_temp_id",
    "previous_temp_id": "continues_temp_id",
    "isCascading": "is_cascading",
    # pages / position
    "pageRanges": "page_ranges",
    "pages": "page_ranges",
    "positionConfidence": "position_confidence",
    "startPage": "start_page",
    "endPage": "end_page",
    "startBoundaryType": "start_boundary_type",
    "endBoundaryType": "end_boundary_type",
    "startMarker": "start_text_marker",
    "start_marker": "start_text_marker",
    "startTextMarker": "start_text_marker",
    "endMarker": "end_text_marker",
    "end_marker": "end_text_marker",
    "endTextMarker": "end_text_marker",
    "startMarkerContext": "start_marker_context",
    "endMarkerContext": "end_marker_context",
    "startRegionHint": "start_region_hint",
    "endRegionHint": "end_region_hint",
    # dates
    "encounterStartDate": "encounter_start_date",
    "start_date": "encounter_start_date",
    "encounterEndDate": "encounter_end_date",
    "end_date": "encounter_end_date",
    "dateSource": "date_source",
    "isRealWorldVisit": "is_real_world_visit",
    "real_world_visit": "is_real_world_visit",
    # identity
    "patientName": "patient_name",
    "patient_full_name": "patient_name",
    "patientFullName": "patient_name",
    "patientDateOfBirth": "patient_date_of_birth",
    "date_of_birth": "patient_date_of_birth",
    "dob": "patient_date_of_birth",
    "patientAddress": "patient_address",
    "medical_identifiers": "identifiers",
    "medicalIdentifiers": "identifiers",
    # clinical
    "provider": "provider_name",
    "providerName": "provider_name",
    "facility": "facility_name",
    "facilityName": "facility_name",
    "providerRole": "provider_role",
    "chiefComplaint": "chief_complaint",
}

BOUNDARY_KEYS = {
    "page": "page",
    "boundary_type": "boundary_type",
    "text_marker": "text_marker",
    "marker_context": "marker_context",
    "region_hint": "region_hint",
}

STATUS_ALIASES = {
    "complete": "complete",
    "completed": "complete",
    "closed": "complete",
    "continuing": "continuing",
    "continues": "continuing",
    "cascading": "continuing",
    "incomplete": "continuing",
}

EXPECTED_CONTINUATION_BY_TYPE = [
    (("admission", "inpatient"), "discharge_summary"),
    (("surgery", "surgical", "procedure", "operation"), "post_operative_notes"),
    (("emergency",), "disposition_or_admission"),
    (("consult",), "recommendations"),
    (("diagnostic", "imaging", "radiology", "pathology"), "results_or_report"),
]

FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def infer_expected_continuation(encounter_type: Optional[str]) -> str:
    """Best guess at what follows a continuing encounter of this type."""
    lowered = (encounter_type or "").lower()
    for keywords, expected in EXPECTED_CONTINUATION_BY_TYPE:
        if any(keyword in lowered for keyword in keywords):
            return expected
    return "continuation"


def strip_code_fences(content: str) -> str:
    text = content.strip()
    match = FENCE_PATTERN.match(text)
    return match.group(1) if match else text


def _camel_to_snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _canonical_keys(raw: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = FIELD_ALIASES.get(key) or _camel_to_snake(key)
        # First non-null spelling wins
        if out.get(canonical) is None:
            out[canonical] = value
    return out


def _normalize_status(data: dict[str, Any]) -> None:
    status = data.get("status")
    if isinstance(status, str):
        data["status"] = STATUS_ALIASES.get(status.strip().lower(), status.strip().lower())
    elif data.get("is_cascading"):
        data["status"] = "continuing"
    else:
        data["status"] = "complete"


def _normalize_enum_text(value: Any, enum_cls) -> Optional[str]:
    """Snake-case an enum value; None if it is not a member of ``enum_cls``."""
    if not isinstance(value, str):
        return None
    text = re.sub(r"[\s\-]+", "_", value.strip()).lower()
    if text not in {member.value for member in enum_cls}:
        logger.debug("Ignoring unknown %s value %r", enum_cls.__name__, value)
        return None
    return text


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, int):
        return {"page": value}
    return {}


def _page_ranges(data: dict[str, Any]) -> list:
    ranges = data.get("page_ranges")
    if isinstance(ranges, dict):
        ranges = [ranges]
    if isinstance(ranges, list) and ranges and all(isinstance(p, int) for p in ranges):
        # Flat page list like [3, 4, 5]
        ranges = [[min(ranges), max(ranges)]]
    if not ranges:
        start = data.get("start_page") or _as_dict(data.get("start")).get("page")
        end = data.get("end_page") or _as_dict(data.get("end")).get("page") or start
        if start is not None:
            ranges = [[start, end]]
    return ranges or []


def _range_pages(ranges: list) -> list[int]:
    pages = []
    for r in ranges:
        if isinstance(r, dict):
            r = [r.get("start"), r.get("end")]
        if isinstance(r, (list, tuple)):
            pages.extend(p for p in r if isinstance(p, int))
    return pages


def _boundary(data: dict[str, Any], prefix: str, default_page: Optional[int]) -> dict[str, Any]:
    boundary = _canonical_keys(_as_dict(data.get(prefix)))
    for key, target in BOUNDARY_KEYS.items():
        flat = data.get(f"{prefix}_{key}")
        if boundary.get(target) is None and flat is not None:
            boundary[target] = flat
    if boundary.get("page") is None:
        boundary["page"] = default_page
    boundary["boundary_type"] = _normalize_enum_text(boundary.get("boundary_type"), BoundaryType)
    boundary["region_hint"] = _normalize_enum_text(boundary.get("region_hint"), RegionHint)
    return {
        k: v for k, v in boundary.items()
        if v is not None and (k in BOUNDARY_KEYS.values() or k.startswith("text_"))
    }


def _string_list(values: Any) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        return [values]
    out = []
    for value in values:
        if isinstance(value, dict):
            value = value.get("name") or value.get("description") or value.get("text")
        if value:
            out.append(str(value).strip())
    return out


def normalize_encounter(raw: dict[str, Any], index: int) -> dict[str, Any]:
    """
    Map one raw encounter object onto canonical field names.

    Args:
        raw: Encounter as emitted by the model
        index: Position in the model's encounter list

    Returns:
        Dict ready for ``ChunkExtraction`` validation
    """
    data = _canonical_keys(raw)

    partial = data.pop("partial_data", None)
    if isinstance(partial, dict):
        for key, value in _canonical_keys(partial).items():
            if data.get(key) is None:
                data[key] = value

    date_range = data.pop("date_range", None)
    if isinstance(date_range, dict):
        if data.get("encounter_start_date") is None:
            data["encounter_start_date"] = date_range.get("start")
        if data.get("encounter_end_date") is None:
            data["encounter_end_date"] = date_range.get("end")

    _normalize_status(data)
    data["index"] = index

    ranges = _page_ranges(data)
    data["page_ranges"] = ranges
    pages = _range_pages(ranges)
    first_page = min(pages) if pages else None
    last_page = max(pages) if pages else None
    data["start"] = _boundary(data, "start", first_page)
    data["end"] = _boundary(data, "end", last_page)

    data["date_source"] = _normalize_enum_text(data.get("date_source"), DateSource)

    if data["status"] == "continuing" and not data.get("expected_continuation"):
        data["expected_continuation"] = infer_expected_continuation(data.get("encounter_type"))

    data["identifiers"] = extract_identifiers(data.get("identifiers"))
    data["diagnoses"] = _string_list(data.get("diagnoses"))
    data["procedures"] = _string_list(data.get("procedures"))

    # Drop nulls so model defaults apply
    return {k: v for k, v in data.items() if v is not None}


def parse_chunk_response(content: str, chunk_number: Optional[int] = None) -> ChunkExtraction:
    """
    Parse raw model output into a ChunkExtraction.

    Args:
        content: JSON text returned by the inference gateway
        chunk_number: Used in error messages

    Returns:
        Validated ChunkExtraction

    Raises:
        ChunkValidationError: Output is not JSON or does not fit the schema
    """
    try:
        parsed = json.loads(strip_code_fences(content))
    except json.JSONDecodeError as e:
        raise ChunkValidationError(f"response is not valid JSON: {e}", chunk_number) from e

    if isinstance(parsed, list):
        parsed = {"encounters": parsed}
    if not isinstance(parsed, dict):
        raise ChunkValidationError("response must be a JSON object", chunk_number)

    raw_encounters = parsed.get("encounters")
    if raw_encounters is None:
        raw_encounters = []
    if not isinstance(raw_encounters, list):
        raise ChunkValidationError("'encounters' must be a list", chunk_number)

    encounters = []
    for index, raw in enumerate(raw_encounters):
        if not isinstance(raw, dict):
            raise ChunkValidationError(f"encounter {index} is not an object", chunk_number)
        encounters.append(normalize_encounter(raw, index))

    active = parsed.get("active_context") or parsed.get("activeContext")
    if isinstance(active, dict):
        active = _canonical_keys(active)
        if "active_providers" in active and not active.get("recent_providers"):
            active["recent_providers"] = active.pop("active_providers")
        admission = active.get("current_admission")
        if isinstance(admission, dict):
            active["current_admission"] = _canonical_keys(admission)
        active = {
            k: v for k, v in active.items()
            if k in {"current_admission", "recent_providers", "recent_facilities", "document_flow"}
            and v is not None
        }
    else:
        active = None

    try:
        return ChunkExtraction.model_validate(
            {"encounters": encounters, "active_context": active}
        )
    except ValidationError as e:
        raise ChunkValidationError(f"response failed validation: {e}", chunk_number) from e
