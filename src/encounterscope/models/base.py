"""Base models and common types for EncounterScope."""

from datetime import datetime
from enum import Enum
from typing import Iterable
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator


class SessionStatus(str, Enum):
    """Lifecycle of a progressive session (one per document)."""

    INITIALIZED = "initialized"
    PROCESSING = "processing"
    RECONCILING = "reconciling"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkStatus(str, Enum):
    """Outcome recorded on a chunk result audit row."""

    COMPLETED = "completed"
    FAILED = "failed"


class PendingStatus(str, Enum):
    """Lifecycle of a pending encounter."""

    PENDING = "pending"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class EncounterStatus(str, Enum):
    """Status the model assigns to an encounter within one chunk."""

    COMPLETE = "complete"
    CONTINUING = "continuing"


class BoundaryType(str, Enum):
    """Whether an encounter boundary falls between pages or inside one."""

    INTER_PAGE = "inter_page"
    INTRA_PAGE = "intra_page"


class RegionHint(str, Enum):
    """Coarse vertical quartile of a page."""

    TOP = "top"
    UPPER_MIDDLE = "upper_middle"
    LOWER_MIDDLE = "lower_middle"
    BOTTOM = "bottom"

    @property
    def quartile(self) -> int:
        return list(RegionHint).index(self)


class DateSource(str, Enum):
    """Where an encounter date came from, best first."""

    AI_EXTRACTED = "ai_extracted"  # read from the document text
    FILE_METADATA = "file_metadata"
    UPLOAD_DATE = "upload_date"  # last-resort fallback

    @property
    def rank(self) -> int:
        return {
            DateSource.AI_EXTRACTED: 3,
            DateSource.FILE_METADATA: 2,
            DateSource.UPLOAD_DATE: 1,
        }[self]


class QualityTier(str, Enum):
    """Data quality classification for final encounters."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERIFIED = "verified"


class PageRange(BaseModel):
    """Inclusive, 1-indexed page range. Inverted input is corrected."""

    start: int = Field(..., ge=1)
    end: int = Field(..., ge=1)

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data):
        if isinstance(data, (list, tuple)):
            if len(data) == 1:
                data = {"start": data[0], "end": data[0]}
            elif len(data) == 2:
                data = {"start": data[0], "end": data[1]}
        elif isinstance(data, int):
            data = {"start": data, "end": data}
        if isinstance(data, dict) and "start" in data and "end" in data:
            try:
                start, end = int(data["start"]), int(data["end"])
            except (TypeError, ValueError):
                return data
            if start > end:
                data = {**data, "start": end, "end": start}
        return data

    @property
    def pages(self) -> range:
        return range(self.start, self.end + 1)

    def overlaps(self, other: "PageRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    def as_list(self) -> list[int]:
        return [self.start, self.end]


class BaseRecord(BaseModel):
    """Base class for persisted records with common fields."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True  # For SQLAlchemy compatibility


def merge_page_ranges(ranges: Iterable[PageRange]) -> list[PageRange]:
    """Sorted union of page ranges; adjacent and overlapping ranges are joined."""
    merged: list[PageRange] = []
    for current in sorted(ranges, key=lambda r: (r.start, r.end)):
        if merged and current.start <= merged[-1].end + 1:
            last = merged[-1]
            merged[-1] = PageRange(start=last.start, end=max(last.end, current.end))
        else:
            merged.append(PageRange(start=current.start, end=current.end))
    return merged
