"""Date normalization and quality ranking.

Every raw date string is normalised to ISO ``YYYY-MM-DD`` before it is
ranked. Results carry an ambiguity flag and a confidence so reconciliation
can keep them in the final encounter's quality metadata.

Numeric day/month disambiguation:
- first number > 12  -> it is the day (16/02/1959)
- second number > 12 -> it is the day (02/16/1959)
- both <= 12         -> day-first, flagged ambiguous (01/02/2024)
"""

import logging
import re
from datetime import date, datetime
from typing import Iterable, Optional

from dateutil import parser as date_parser
from pydantic import BaseModel

from encounterscope.models import DateSource

logger = logging.getLogger(__name__)

ISO_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")
YEAR_FIRST_PATTERN = re.compile(r"^(\d{4})[/.](\d{1,2})[/.](\d{1,2})$")
NUMERIC_PATTERN = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{2}|\d{4})$")

AMBIGUOUS_CONFIDENCE = 0.6
MONTH_ONLY_CONFIDENCE = 0.5
MAX_LIFETIME_YEARS = 120

# dateutil fills absent components from ``default``; two defaults that
# differ in year, month and day show which components the text supplied.
SENTINEL_DEFAULTS = (datetime(2000, 1, 1), datetime(2004, 12, 28))


class NormalizedDate(BaseModel):
    """Outcome of normalising one raw date string."""

    raw: Optional[str] = None
    iso: Optional[str] = None
    ambiguous: bool = False
    confidence: float = 0.0
    method: str = "none"
    rejected: bool = False
    reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.iso is not None and not self.rejected


class DateCandidate(BaseModel):
    """A normalised date offered by one pending, with its provenance."""

    normalized: NormalizedDate
    source: DateSource
    order: int = 0  # chunk order of the contributing pending
    pending_id: Optional[str] = None

    def rank_key(self) -> tuple:
        # lower sorts first
        return (
            -self.source.rank,
            self.normalized.ambiguous,
            -self.normalized.confidence,
            self.order,
        )


def _reject(raw: Optional[str], reason: str, method: str = "none") -> NormalizedDate:
    logger.debug("Rejected date %r: %s", raw, reason)
    return NormalizedDate(raw=raw, rejected=True, reason=reason, method=method)


def _expand_year(year_text: str, is_birth_date: bool, today: date) -> int:
    year = int(year_text)
    if len(year_text) == 4:
        return year
    candidate = 2000 + year
    if is_birth_date and candidate > today.year:
        return 1900 + year
    return candidate


def _build(
    raw: str,
    year: int,
    month: int,
    day: int,
    *,
    confidence: float,
    method: str,
    ambiguous: bool = False,
    is_birth_date: bool,
    today: date,
) -> NormalizedDate:
    try:
        value = date(year, month, day)
    except ValueError as e:
        return _reject(raw, f"invalid calendar date: {e}", method)

    if is_birth_date:
        if value > today:
            return _reject(raw, "birth date is in the future", method)
        if today.year - value.year > MAX_LIFETIME_YEARS:
            return _reject(raw, "birth year outside plausible lifetime", method)

    return NormalizedDate(
        raw=raw,
        iso=value.isoformat(),
        ambiguous=ambiguous,
        confidence=confidence,
        method=method,
    )


def normalize_date(
    raw: Optional[str],
    is_birth_date: bool = False,
    today: Optional[date] = None,
) -> NormalizedDate:
    """
    Normalise a raw date string to ISO format.

    Args:
        raw: Date as written in the document or reported by the model
        is_birth_date: Apply the human-lifetime window check
        today: Reference date for the lifetime window (defaults to today)

    Returns:
        NormalizedDate; rejected results carry a reason instead of an ISO value
    """
    today = today or date.today()
    if raw is None or not str(raw).strip():
        return _reject(raw, "empty")
    text = str(raw).strip()

    match = ISO_PATTERN.match(text)
    if match:
        y, m, d = (int(g) for g in match.groups())
        return _build(
            text, y, m, d, confidence=1.0, method="iso",
            is_birth_date=is_birth_date, today=today,
        )

    match = YEAR_FIRST_PATTERN.match(text)
    if match:
        y, m, d = (int(g) for g in match.groups())
        return _build(
            text, y, m, d, confidence=0.95, method="year_first",
            is_birth_date=is_birth_date, today=today,
        )

    match = NUMERIC_PATTERN.match(text)
    if match:
        first, second = int(match.group(1)), int(match.group(2))
        year = _expand_year(match.group(3), is_birth_date, today)
        if first > 12 and second > 12:
            return _reject(text, "neither component can be a month", "numeric")
        if first > 12:
            day, month, confidence, ambiguous = first, second, 0.95, False
        elif second > 12:
            day, month, confidence, ambiguous = second, first, 0.9, False
        elif first == second:
            day, month, confidence, ambiguous = first, second, 0.95, False
        else:
            day, month, confidence, ambiguous = first, second, AMBIGUOUS_CONFIDENCE, True
        return _build(
            text, year, month, day, confidence=confidence, method="numeric",
            ambiguous=ambiguous, is_birth_date=is_birth_date, today=today,
        )

    if not re.search(r"[A-Za-z]", text):
        return _reject(text, "unrecognised date format")

    try:
        first, second = (
            date_parser.parse(text, dayfirst=True, default=default)
            for default in SENTINEL_DEFAULTS
        )
    except (ValueError, OverflowError) as e:
        return _reject(text, f"unparseable date: {e}", "parsed")

    if first.year != second.year:
        return _reject(text, "no year in date", "parsed")
    if first.month != second.month:
        return _reject(text, "no month in date", "parsed")
    if first.day != second.day:
        # Month and year only: pin to the 1st
        return _build(
            text, first.year, first.month, 1, confidence=MONTH_ONLY_CONFIDENCE,
            method="parsed", ambiguous=True, is_birth_date=is_birth_date, today=today,
        )
    return _build(
        text, first.year, first.month, first.day, confidence=0.85, method="parsed",
        is_birth_date=is_birth_date, today=today,
    )


def select_best_date(
    candidates: Iterable[DateCandidate],
) -> tuple[Optional[DateCandidate], list[DateCandidate]]:
    """
    Pick the best date by quality ranking.

    Ranking: source tier (extracted > file metadata > upload date), then
    unambiguous over ambiguous, then confidence, then earliest chunk.

    Returns:
        (chosen candidate or None, rejected candidates)
    """
    valid, rejected = [], []
    for candidate in candidates:
        (valid if candidate.normalized.is_valid else rejected).append(candidate)
    if not valid:
        return None, rejected
    valid.sort(key=DateCandidate.rank_key)
    return valid[0], rejected


def describe_candidates(
    chosen: Optional[DateCandidate], candidates: Iterable[DateCandidate]
) -> dict:
    """Quality metadata entry for one merged date field."""
    return {
        "chosen": chosen.normalized.iso if chosen else None,
        "source": chosen.source.value if chosen else None,
        "ambiguous": chosen.normalized.ambiguous if chosen else None,
        "confidence": chosen.normalized.confidence if chosen else None,
        "candidates": [
            {
                "pending_id": c.pending_id,
                "source": c.source.value,
                **c.normalized.model_dump(),
            }
            for c in candidates
        ],
    }
