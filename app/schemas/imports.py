"""Pydantic schemas for the contact import engine."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ─── Mapping & Options ────────────────────────────────────────

class MatchStrategy(str, Enum):
    """Which canonical field(s) join an incoming row to an existing student."""
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    EMAIL_OR_PHONE = "email_or_phone"


class ColumnMapping(BaseModel):
    """
    Source column for each canonical field.

    Only ``name`` is required for a commit; ``validate_mapping`` enforces
    that, so a partial suggestion can still be represented here.
    """
    model_config = ConfigDict(frozen=True)

    name: str | None = Field(None, description="Column holding the student name")
    email: str | None = Field(None, description="Column holding the email address")
    phone: str | None = Field(None, description="Column holding the phone number")

    def column_for(self, field: str) -> str | None:
        return getattr(self, field)


class ImportOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    match_strategy: MatchStrategy = Field(
        MatchStrategy.EMAIL_OR_PHONE,
        description="Strategy for matching existing students",
    )
    create_new_entities: bool = Field(
        True,
        description="Create new students when no match is found",
    )
    skip_duplicates: bool = Field(
        True,
        description="Skip rows that repeat an earlier row of the same file",
    )


# ─── Preview ──────────────────────────────────────────────────

class MatchingStats(BaseModel):
    """Dry-run classification counts for a whole table."""
    will_match: int = 0
    will_create: int = 0
    will_skip: int = 0
    duplicates: int = Field(
        0,
        description="Rows repeating an earlier row's key (skipped or processed)",
    )


# ─── Progress & Result ────────────────────────────────────────

Phase = Literal["validating", "matching", "creating", "attaching", "finalizing"]


class ProgressSnapshot(BaseModel):
    """A point-in-time summary of a commit in flight."""
    model_config = ConfigDict(frozen=True)

    phase: Phase
    total_rows: int
    processed_rows: int = 0
    matched: int = 0
    created: int = 0
    added: int = 0
    duplicates: int = 0
    errors: int = 0
    updated_at: datetime


class CommitStats(BaseModel):
    matched: int = 0
    created: int = 0
    added: int = 0
    duplicates: int = 0
    errors: int = 0


class CommitResult(BaseModel):
    """Terminal outcome of a commit run. Produced exactly once per session."""
    message: str
    status: Literal["completed", "cancelled", "failed"]
    stats: CommitStats
    errors: list[str] | None = None
    total_rows: int = 0
    processed_rows: int = 0
    skipped: int = Field(
        0,
        description="Rows skipped for non-duplicate reasons (no key, creation disabled)",
    )
    fatal_error: str | None = None


# ─── HTTP Requests / Responses ────────────────────────────────

class UploadResponse(BaseModel):
    session_id: uuid.UUID
    step: str
    headers: list[str]
    preview_rows: list[dict[str, str]]
    total_rows: int
    suggested_mapping: ColumnMapping
    matching_stats: MatchingStats
    warnings: list[str] = Field(default_factory=list)


class SessionUpdateRequest(BaseModel):
    """Replace the mapping and/or the options of a session being mapped."""
    mapping: ColumnMapping | None = None
    options: ImportOptions | None = None


class SessionUpdateResponse(BaseModel):
    session_id: uuid.UUID
    step: str
    mapping: ColumnMapping
    options: ImportOptions
    matching_stats: MatchingStats


class CommitRequest(BaseModel):
    chunk_size: int | None = Field(
        None,
        ge=1,
        le=250,
        description="Rows per batch; defaults to the configured batch size",
    )


class CommitAccepted(BaseModel):
    session_id: uuid.UUID
    step: str
    already_running: bool
    progress: ProgressSnapshot | None = None
    result: CommitResult | None = None


class SessionProgressResponse(BaseModel):
    session_id: uuid.UUID
    step: str
    progress: ProgressSnapshot | None = None
    result: CommitResult | None = None
    last_error: str | None = None


class DiscardResponse(BaseModel):
    session_id: uuid.UUID
    discarded: bool
    cancelling: bool = False


class ImportRunResponse(BaseModel):
    id: uuid.UUID
    call_list_id: uuid.UUID
    actor_id: str
    status: str
    total_rows: int
    stats: dict
    created_at: datetime
    finished_at: datetime | None

    model_config = {"from_attributes": True}
