"""Medical identifier extraction and normalisation.

Identifiers reported by the model are normalised (lowercase, whitespace,
hyphens and underscores removed), mapped to canonical types, format
checked, and de-duplicated by (type, normalised value). A failed format
check is logged and recorded on the identifier; it does not drop it.
"""

import logging
import re
from typing import Any, Iterable, Optional

from encounterscope.models import MedicalIdentifier

logger = logging.getLogger(__name__)

IDENTIFIER_TYPE_ALIASES = {
    "mrn": "MRN",
    "medical_record_number": "MRN",
    "urn": "MRN",
    "patient_id": "MRN",
    "medicare": "MEDICARE",
    "medicare_number": "MEDICARE",
    "insurance": "INSURANCE",
    "insurance_number": "INSURANCE",
    "health_fund": "INSURANCE",
    "ihi": "IHI",
    "individual_healthcare_identifier": "IHI",
    "dva": "DVA",
    "dva_number": "DVA",
    "pension": "PENSION_CARD",
    "pension_card": "PENSION_CARD",
    "healthcare_card": "HEALTHCARE_CARD",
    "health_care_card": "HEALTHCARE_CARD",
}

# Patterns apply to normalised values
IDENTIFIER_FORMATS = {
    "MRN": re.compile(r"^[a-z0-9]{3,20}$"),
    "MEDICARE": re.compile(r"^\d{10,11}$"),
    "IHI": re.compile(r"^8003608\d{9}$"),
    "DVA": re.compile(r"^[a-z]{1,4}\d{4,7}[a-z]?$"),
}

TYPE_KEYS = ("identifier_type", "identifierType", "type", "id_type")
VALUE_KEYS = ("identifier_value", "identifierValue", "value", "id_value")
ISSUER_KEYS = ("issuing_organization", "issuingOrganization", "issuer")


def normalize_identifier_value(value: str) -> str:
    """Lowercase and strip whitespace, hyphens and underscores."""
    return re.sub(r"[\s\-_]", "", value).lower()


def canonical_identifier_type(raw_type: Optional[str]) -> str:
    if not raw_type:
        return "OTHER"
    key = re.sub(r"[\s\-]+", "_", raw_type.strip()).lower()
    return IDENTIFIER_TYPE_ALIASES.get(key, key.upper())


def validate_identifier_format(identifier_type: str, normalized_value: str) -> bool:
    pattern = IDENTIFIER_FORMATS.get(identifier_type)
    if pattern is None:
        return True
    return bool(pattern.match(normalized_value))


def _first(raw: dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def extract_identifiers(raw_items: Optional[Iterable[Any]]) -> list[MedicalIdentifier]:
    """
    Build MedicalIdentifiers from the model's raw identifier list.

    Args:
        raw_items: Dicts with type/value keys in either naming convention

    Returns:
        De-duplicated identifiers in first-seen order
    """
    identifiers: list[MedicalIdentifier] = []
    for raw in raw_items or []:
        if not isinstance(raw, dict):
            continue
        value = _first(raw, VALUE_KEYS)
        if value is None:
            continue
        normalized = normalize_identifier_value(value)
        if not normalized:
            continue
        identifier_type = canonical_identifier_type(_first(raw, TYPE_KEYS))
        valid = validate_identifier_format(identifier_type, normalized)
        if not valid:
            logger.warning("Identifier %s value %r failed format check", identifier_type, value)
        identifiers.append(
            MedicalIdentifier(
                identifier_type=identifier_type,
                value=value.strip(),
                normalized_value=normalized,
                issuing_organization=_first(raw, ISSUER_KEYS),
                format_valid=valid,
            )
        )
    return merge_identifiers(identifiers)


def merge_identifiers(*groups: Iterable[MedicalIdentifier]) -> list[MedicalIdentifier]:
    """Union identifier lists, keeping the first of each (type, value)."""
    seen: set[tuple[str, str]] = set()
    merged = []
    for group in groups:
        for identifier in group:
            key = (identifier.identifier_type, identifier.normalized_value)
            if key in seen:
                continue
            seen.add(key)
            merged.append(identifier)
    return merged
