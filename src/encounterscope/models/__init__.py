"""Data models for EncounterScope.

Pydantic models for everything that flows through a progressive session:
OCR input pages, per-chunk encounter candidates, pendings, cascade chains,
handoff packages, and reconciled final encounters. Records support
SQLAlchemy round trips via ``from_attributes = True``.

Model Hierarchy:
- ProgressiveSession -> ChunkResultRecord (one per chunk)
- ProgressiveSession -> PendingEncounter -> CascadeChain
- PendingEncounter group -> FinalEncounter
"""

from .base import (
    BaseRecord,
    BoundaryType,
    ChunkStatus,
    DateSource,
    EncounterStatus,
    PageRange,
    merge_page_ranges,
    PendingStatus,
    QualityTier,
    RegionHint,
    SessionStatus,
)
from .encounter import (
    ActiveContextHint,
    AdmissionContext,
    ChunkExtraction,
    CompleteEncounter,
    ContinuingEncounter,
    EncounterBoundary,
    EncounterCandidate,
    EncounterPayload,
    FinalEncounter,
    MedicalIdentifier,
    PendingEncounter,
)
from .handoff import (
    ActiveContext,
    HandoffPackage,
    OpenPendingSummary,
    RecentEncounterSummary,
)
from .ocr import (
    OCRBlock,
    OCRBoundingPoly,
    OCRPage,
    OCRParagraph,
    OCRVertex,
    OCRWord,
)
from .session import (
    CascadeChain,
    ChunkResultRecord,
    ProgressiveSession,
)

__all__ = [
    # Base types
    "BaseRecord",
    "BoundaryType",
    "ChunkStatus",
    "DateSource",
    "EncounterStatus",
    "PageRange",
    "merge_page_ranges",
    "PendingStatus",
    "QualityTier",
    "RegionHint",
    "SessionStatus",
    # OCR input
    "OCRBlock",
    "OCRBoundingPoly",
    "OCRPage",
    "OCRParagraph",
    "OCRVertex",
    "OCRWord",
    # Encounters
    "ActiveContextHint",
    "AdmissionContext",
    "ChunkExtraction",
    "CompleteEncounter",
    "ContinuingEncounter",
    "EncounterBoundary",
    "EncounterCandidate",
    "EncounterPayload",
    "FinalEncounter",
    "MedicalIdentifier",
    "PendingEncounter",
    # Handoff
    "ActiveContext",
    "HandoffPackage",
    "OpenPendingSummary",
    "RecentEncounterSummary",
    # Session
    "CascadeChain",
    "ChunkResultRecord",
    "ProgressiveSession",
]
