"""Progressive extraction pipeline.

Stages:
1. stage_chunk - one inference call per page chunk, pendings + handoff
2. stage_reconcile - merge pendings into final encounters

Supporting modules:
- session - sequential chunk loop, retries, finalisation
- cascade - deterministic ids and cascade chain bookkeeping
- coordinates - text marker to pixel position resolution
- dates - date normalisation and quality ranking
- handoff / prompts / response - the boundary with the inference model
"""

from .cascade import CascadeManager, derive_cascade_id, derive_pending_id, should_cascade
from .coordinates import (
    CoordinateResolver,
    CoordinateResolverConfig,
    MarkerMatch,
    MarkerNotFound,
    NotFoundReason,
)
from .dates import NormalizedDate, normalize_date
from .handoff import build_handoff
from .identifiers import extract_identifiers
from .prompts import build_chunk_prompt
from .response import parse_chunk_response
from .session import ProcessingResult, SessionManager, SessionManagerConfig, run_sessions
from .stage_chunk import ChunkProcessor, ChunkProcessorConfig, ChunkResult
from .stage_reconcile import PendingReconciler, ReconciliationReport

__all__ = [
    # Session
    "SessionManager",
    "SessionManagerConfig",
    "ProcessingResult",
    "run_sessions",
    # Chunk processing
    "ChunkProcessor",
    "ChunkProcessorConfig",
    "ChunkResult",
    "build_chunk_prompt",
    "build_handoff",
    "parse_chunk_response",
    # Cascades
    "CascadeManager",
    "derive_cascade_id",
    "derive_pending_id",
    "should_cascade",
    # Reconciliation
    "PendingReconciler",
    "ReconciliationReport",
    # Coordinates
    "CoordinateResolver",
    "CoordinateResolverConfig",
    "MarkerMatch",
    "MarkerNotFound",
    "NotFoundReason",
    # Dates and identifiers
    "NormalizedDate",
    "normalize_date",
    "extract_identifiers",
]
