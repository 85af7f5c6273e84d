"""Exception hierarchy for EncounterScope.

Inference errors carry a ``retryable`` flag that the session-level retry
policy inspects. Validation errors fail the chunk (and therefore the
session). Reconciliation group errors are caught per group and recorded
on the affected pendings.
"""

from typing import Optional


class EncounterScopeError(Exception):
    """Base class for all EncounterScope errors."""


# Inference gateway


class InferenceError(EncounterScopeError):
    """Inference call failed."""

    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class RateLimitedError(InferenceError):
    """Provider rejected the request because of rate limiting."""

    retryable = True


class UnauthorizedError(InferenceError):
    """Provider rejected the credentials."""

    retryable = False


class ContextTooLargeError(InferenceError):
    """Prompt exceeds the model context window."""

    retryable = False


class ProviderError(InferenceError):
    """Any other provider failure (5xx, transport, malformed request)."""

    retryable = True


# Chunk processing


class ChunkValidationError(EncounterScopeError):
    """Inference output for a chunk is malformed or violates page-range rules."""

    def __init__(self, message: str, chunk_number: Optional[int] = None):
        if chunk_number is not None:
            message = f"chunk {chunk_number}: {message}"
        super().__init__(message)
        self.chunk_number = chunk_number


# Cascades and reconciliation


class CascadeValidationError(EncounterScopeError):
    """Cascade chain bookkeeping is inconsistent."""


class ReconciliationGroupError(EncounterScopeError):
    """A single cascade group could not be reconciled."""

    def __init__(self, message: str, cascade_id: Optional[str] = None):
        super().__init__(message)
        self.cascade_id = cascade_id


# Session lifecycle


class IncompleteSessionError(EncounterScopeError):
    """Reconciliation requested before every chunk completed."""


class SessionAbortedError(EncounterScopeError):
    """Session was cancelled at a chunk boundary."""
