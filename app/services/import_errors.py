"""
Error taxonomy for the contact import engine.

Parse, mapping and session errors are raised synchronously to the
caller. Row faults are caught by the executor and counted; executor
faults end a commit run early.
"""

from enum import Enum


class ImportEngineError(Exception):
    """Base class. ``kind`` names the specific failure within a family."""

    # Set when the failure is tied to a session the caller can still address
    session_id = None

    def __init__(self, kind: Enum, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return self.message


# ─── Parsing ──────────────────────────────────────────────────

class ParseErrorKind(str, Enum):
    EMPTY = "empty"
    TOO_LARGE = "too_large"
    MALFORMED = "malformed"


class ParseError(ImportEngineError):
    kind: ParseErrorKind


# ─── Mapping ──────────────────────────────────────────────────

class MappingErrorKind(str, Enum):
    UNKNOWN_COLUMN = "unknown_column"
    MISSING_REQUIRED_FIELD = "missing_required_field"


class MappingError(ImportEngineError):
    kind: MappingErrorKind


# ─── Session lifecycle ────────────────────────────────────────

class SessionErrorKind(str, Enum):
    INVALID_TRANSITION = "invalid_transition"
    ALREADY_IMPORTING = "already_importing"
    NOT_FOUND = "not_found"


class SessionError(ImportEngineError):
    kind: SessionErrorKind


# ─── Commit ───────────────────────────────────────────────────

class RowFaultKind(str, Enum):
    VALIDATION_FAILED = "validation_failed"
    STORE_CONFLICT = "store_conflict"


class RowFault(ImportEngineError):
    """A single row could not be written. The run continues."""
    kind: RowFaultKind


class ExecutorFaultKind(str, Enum):
    STORE_UNAVAILABLE = "store_unavailable"
    CANCELLED = "cancelled"


class ExecutorFault(ImportEngineError):
    """The run cannot continue. Progress made so far is kept."""
    kind: ExecutorFaultKind
