"""Coordinate Resolution - locate text markers on an OCR'd page.

Turns a model-reported text marker (e.g. "DISCHARGE SUMMARY") into a
pixel y-coordinate so an encounter boundary can be placed inside a page.

Search order:
1. Normalise the marker (strip quotes, collapse whitespace)
2. Restrict words to the region hint's vertical quartile
3. Exact case-insensitive sliding-window match
4. Fuzzy match (normalised edit similarity >= threshold), confidence penalised
5. Disambiguate repeated matches by nearby context words
6. Bounds-check the resulting box

A missing marker is an expected outcome for boundaries that fall between
pages, so failures are returned as ``MarkerNotFound`` rather than raised.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Union

from rapidfuzz import fuzz

from encounterscope.models import OCRPage, OCRWord, RegionHint

logger = logging.getLogger(__name__)

QUOTE_CHARS = "\"'`“”‘’"
TOKEN_STRIP = ".,:;!?()[]{}" + QUOTE_CHARS


@dataclass
class CoordinateResolverConfig:
    """Tunables for marker resolution."""

    fuzzy_threshold: float = 0.85
    fuzzy_confidence_penalty: float = 0.8
    max_page_height: float = 3300.0
    min_text_height: float = 8.0
    max_text_height: float = 500.0
    context_window_px: float = 100.0
    min_marker_length: int = 3


class NotFoundReason(str, Enum):
    NO_MARKER = "no_marker"
    NO_WORDS = "no_words"
    NOT_FOUND = "not_found"
    OUT_OF_BOUNDS = "out_of_bounds"


@dataclass
class MarkerMatch:
    """Resolved marker position in page pixels."""

    y_top: float
    height: float
    confidence: float
    matched_text: str
    fuzzy: bool = False
    candidates: int = 1
    warnings: list[str] = field(default_factory=list)

    @property
    def y_bottom(self) -> float:
        return self.y_top + self.height


@dataclass
class MarkerNotFound:
    reason: NotFoundReason
    detail: str = ""
    warnings: list[str] = field(default_factory=list)


ResolveResult = Union[MarkerMatch, MarkerNotFound]


@dataclass
class _Candidate:
    words: list[OCRWord]
    similarity: float

    @property
    def y_top(self) -> float:
        return min(w.bounding_poly.top for w in self.words)

    @property
    def y_bottom(self) -> float:
        return max(w.bounding_poly.bottom for w in self.words)

    @property
    def center_y(self) -> float:
        return (self.y_top + self.y_bottom) / 2

    @property
    def text(self) -> str:
        return " ".join(w.text for w in self.words)


def normalize_marker(marker: Optional[str]) -> str:
    """Strip surrounding quotes and collapse whitespace."""
    if not marker:
        return ""
    text = marker.strip().strip(QUOTE_CHARS).strip()
    return re.sub(r"\s+", " ", text)


def _token(text: str) -> str:
    return text.strip(TOKEN_STRIP).lower()


class CoordinateResolver:
    """
    Resolves text markers against word-level OCR boxes.

    Stateless apart from its configuration; safe to share across chunks.
    """

    def __init__(self, config: Optional[CoordinateResolverConfig] = None):
        self.config = config or CoordinateResolverConfig()

    def resolve(
        self,
        marker: Optional[str],
        context: Optional[str],
        region_hint: Optional[RegionHint],
        page: OCRPage,
    ) -> ResolveResult:
        """
        Find the marker on the page.

        Args:
            marker: Text the model quoted at the boundary
            context: Nearby text used to pick between repeated markers
            region_hint: Vertical quartile to search first
            page: OCR page with word boxes

        Returns:
            MarkerMatch, or MarkerNotFound with a typed reason
        """
        warnings: list[str] = []
        text = normalize_marker(marker)
        if len(text) < self.config.min_marker_length:
            return MarkerNotFound(NotFoundReason.NO_MARKER, f"marker too short: {marker!r}")

        words = [w for w in page.iter_words() if w.text.strip()]
        if not words:
            return MarkerNotFound(NotFoundReason.NO_WORDS, f"page {page.page_number} has no words")

        page_height = page.effective_height or self.config.max_page_height
        search_words = words
        if region_hint is not None:
            search_words = self._filter_region(words, region_hint, page_height)
            if not search_words:
                warnings.append(
                    f"no words in region {region_hint.value} on page {page.page_number}, "
                    "searching whole page"
                )
                search_words = words

        marker_tokens = [_token(t) for t in text.split(" ")]
        marker_tokens = [t for t in marker_tokens if t]
        if not marker_tokens:
            return MarkerNotFound(NotFoundReason.NO_MARKER, f"marker has no words: {marker!r}")

        fuzzy = False
        candidates = self._exact_matches(search_words, marker_tokens)
        if not candidates:
            candidates = self._fuzzy_matches(search_words, marker_tokens)
            fuzzy = bool(candidates)
        if not candidates:
            return MarkerNotFound(
                NotFoundReason.NOT_FOUND,
                f"{text!r} not found on page {page.page_number}",
                warnings,
            )

        chosen = candidates[0]
        if len(candidates) > 1:
            chosen, warning = self._disambiguate(candidates, context, words, marker_tokens)
            if warning:
                warnings.append(warning)

        y_top = chosen.y_top
        height = chosen.y_bottom - chosen.y_top
        limit = min(page_height, self.config.max_page_height) if page.height else self.config.max_page_height
        if y_top < 0 or chosen.y_bottom > limit:
            return MarkerNotFound(
                NotFoundReason.OUT_OF_BOUNDS,
                f"y={y_top:.0f}-{chosen.y_bottom:.0f} outside page height {limit:.0f}",
                warnings,
            )
        if not self.config.min_text_height <= height <= self.config.max_text_height:
            return MarkerNotFound(
                NotFoundReason.OUT_OF_BOUNDS,
                f"text height {height:.1f} outside "
                f"[{self.config.min_text_height}, {self.config.max_text_height}]",
                warnings,
            )

        confidence = sum(w.confidence for w in chosen.words) / len(chosen.words)
        if fuzzy:
            confidence *= self.config.fuzzy_confidence_penalty * chosen.similarity

        for warning in warnings:
            logger.warning("Page %d: %s", page.page_number, warning)

        return MarkerMatch(
            y_top=y_top,
            height=height,
            confidence=round(confidence, 4),
            matched_text=chosen.text,
            fuzzy=fuzzy,
            candidates=len(candidates),
            warnings=warnings,
        )

    def _filter_region(
        self, words: Sequence[OCRWord], region_hint: RegionHint, page_height: float
    ) -> list[OCRWord]:
        quarter = page_height / 4
        low = region_hint.quartile * quarter
        high = low + quarter
        if region_hint is RegionHint.BOTTOM:
            high = float("inf")
        return [w for w in words if low <= w.bounding_poly.top < high]

    def _windows(self, words: Sequence[OCRWord], size: int):
        for start in range(0, len(words) - size + 1):
            yield list(words[start:start + size])

    def _exact_matches(
        self, words: Sequence[OCRWord], marker_tokens: list[str]
    ) -> list[_Candidate]:
        matches = []
        for window in self._windows(words, len(marker_tokens)):
            if [_token(w.text) for w in window] == marker_tokens:
                matches.append(_Candidate(words=window, similarity=1.0))
        return matches

    def _fuzzy_matches(
        self, words: Sequence[OCRWord], marker_tokens: list[str]
    ) -> list[_Candidate]:
        target = " ".join(marker_tokens)
        matches = []
        for window in self._windows(words, len(marker_tokens)):
            text = " ".join(_token(w.text) for w in window)
            similarity = fuzz.ratio(text, target) / 100
            if similarity >= self.config.fuzzy_threshold:
                matches.append(_Candidate(words=window, similarity=similarity))
        # Keep only the best-scoring windows
        if matches:
            best = max(m.similarity for m in matches)
            matches = [m for m in matches if m.similarity == best]
        return matches

    def _disambiguate(
        self,
        candidates: list[_Candidate],
        context: Optional[str],
        all_words: Sequence[OCRWord],
        marker_tokens: list[str],
    ) -> tuple[_Candidate, Optional[str]]:
        """Pick the candidate with the most context words nearby."""
        first = candidates[0]
        context_tokens = {
            _token(t) for t in (context or "").split()
        } - set(marker_tokens) - {""}
        if not context_tokens:
            return first, (
                f"marker {first.text!r} matched {len(candidates)} times with no context, "
                "using first occurrence"
            )

        window = self.config.context_window_px
        scores = []
        for candidate in candidates:
            own = {id(w) for w in candidate.words}
            nearby = {
                _token(w.text)
                for w in all_words
                if id(w) not in own
                and abs(w.bounding_poly.center_y - candidate.center_y) <= window
            }
            scores.append(len(context_tokens & nearby))

        best = max(scores)
        if best == 0 or scores.count(best) > 1:
            return first, (
                f"context did not separate {len(candidates)} matches for {first.text!r}, "
                "using first occurrence"
            )
        return candidates[scores.index(best)], None
