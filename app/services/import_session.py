"""
Import session state machine.

    upload ──attach_table──▶ map ──begin_commit──▶ importing ──finish──▶ done
      ▲ └─ parse failure stays in upload          │ request_cancel (cooperative)
      map ◀─ update_mapping / update_options / record_preview

Invariants:
  - ``table`` is set in every step except a fresh ``upload``
  - ``progress`` is set exactly while ``importing``
  - ``result`` is set exactly in ``done``, and only once
  - mapping and options are frozen from ``importing`` on

A rejected operation leaves the session as it was, apart from
``last_error``.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import AsyncIterator, Literal

from app.schemas.imports import (
    ColumnMapping,
    CommitResult,
    ImportOptions,
    MatchingStats,
    ProgressSnapshot,
)
from app.services.column_mapper import validate_mapping
from app.services.entity_store import CallListRef
from app.services.import_errors import MappingError, SessionError, SessionErrorKind
from app.services.tabular_parser import UploadedTable

Step = Literal["upload", "map", "importing", "done"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImportSession:
    def __init__(
        self,
        *,
        actor_id: str,
        call_list_id: uuid.UUID,
        workspace_id: uuid.UUID,
        call_list_name: str = "",
        session_id: uuid.UUID | None = None,
    ):
        self.id = session_id or uuid.uuid4()
        self.actor_id = actor_id
        self.call_list_id = call_list_id
        self.workspace_id = workspace_id
        self.call_list_name = call_list_name

        self.step: Step = "upload"
        self.table: UploadedTable | None = None
        self.mapping = ColumnMapping()
        self.options = ImportOptions()
        self.matching_stats: MatchingStats | None = None
        self.progress: ProgressSnapshot | None = None
        self.result: CommitResult | None = None
        self.last_error: str | None = None

        self.created_at = _utcnow()
        self.touched_at = self.created_at

        self._cancel_requested = False
        self._discarded = False
        self._version = 0
        self._changed = asyncio.Condition()

    def __repr__(self) -> str:
        return f"<ImportSession {self.id} {self.step}>"

    # ─── Transitions ──────────────────────────────────────────

    def attach_table(self, table: UploadedTable, suggested: ColumnMapping) -> None:
        """upload → map."""
        self._require("upload", action="upload a file")
        self.table = table
        self.mapping = suggested
        self.last_error = None
        self.step = "map"
        self.touch()

    def record_error(self, message: str) -> None:
        self.last_error = message
        self.touch()

    def update_mapping(self, mapping: ColumnMapping) -> None:
        """map → map. The new mapping must apply to the table's headers."""
        self._require("map", action="change the mapping")
        try:
            validate_mapping(self.table.headers, mapping)
        except MappingError as exc:
            self.record_error(exc.message)
            raise
        self.mapping = mapping
        self.last_error = None
        self.touch()

    def update_options(self, options: ImportOptions) -> None:
        """map → map."""
        self._require("map", action="change the options")
        self.options = options
        self.touch()

    def record_preview(self, stats: MatchingStats) -> None:
        """map → map."""
        self._require("map", action="preview")
        self.matching_stats = stats
        self.touch()

    def begin_commit(self) -> None:
        """
        map → importing.

        Raises SessionError(ALREADY_IMPORTING) when a commit is running, and
        SessionError(INVALID_TRANSITION) from any other step or when the
        mapping does not apply to the headers.
        """
        if self.step == "importing":
            raise SessionError(
                SessionErrorKind.ALREADY_IMPORTING,
                "An import is already running for this session.",
            )
        self._require("map", action="start an import")
        try:
            validate_mapping(self.table.headers, self.mapping)
        except MappingError as exc:
            self.record_error(exc.message)
            raise SessionError(SessionErrorKind.INVALID_TRANSITION, exc.message) from exc

        self.step = "importing"
        self.last_error = None
        self._cancel_requested = False
        self.progress = ProgressSnapshot(
            phase="validating",
            total_rows=self.table.total_rows,
            updated_at=_utcnow(),
        )
        self._bump()

    async def publish_progress(self, snapshot: ProgressSnapshot) -> None:
        """Replace the latest snapshot and wake watchers."""
        self._require("importing", action="report progress")
        self.progress = snapshot
        self._bump()
        async with self._changed:
            self._changed.notify_all()

    async def finish(self, result: CommitResult) -> None:
        """importing → done. The result is final."""
        if self.result is not None:
            raise SessionError(
                SessionErrorKind.INVALID_TRANSITION,
                "This import already has a result.",
            )
        self._require("importing", action="finish an import")
        self.result = result
        self.progress = None
        self.step = "done"
        if result.fatal_error:
            self.last_error = result.fatal_error
        self._bump()
        async with self._changed:
            self._changed.notify_all()

    def request_cancel(self) -> None:
        """Ask a running commit to stop at its next batch boundary."""
        self._require("importing", action="cancel")
        self._cancel_requested = True
        self.touch()

    def discard(self) -> None:
        """Drop the session. Not allowed while importing; cancel first."""
        if self.step == "importing":
            raise SessionError(
                SessionErrorKind.INVALID_TRANSITION,
                "A running import must be cancelled, not discarded.",
            )
        self._discarded = True

    # ─── State ────────────────────────────────────────────────

    @property
    def target(self) -> CallListRef:
        """The call list this session imports into."""
        return CallListRef(
            id=self.call_list_id,
            workspace_id=self.workspace_id,
            name=self.call_list_name,
        )

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def discarded(self) -> bool:
        return self._discarded

    def touch(self) -> None:
        self.touched_at = _utcnow()

    def _bump(self) -> None:
        self._version += 1
        self.touch()

    def _require(self, step: Step, *, action: str) -> None:
        if self._discarded:
            raise SessionError(SessionErrorKind.NOT_FOUND, "Import session was discarded.")
        if self.step != step:
            raise SessionError(
                SessionErrorKind.INVALID_TRANSITION,
                f"Cannot {action} while the session is in step '{self.step}'.",
            )

    # ─── Observation ──────────────────────────────────────────

    async def watch(self) -> AsyncIterator[ProgressSnapshot | CommitResult]:
        """
        Follow a session until it has a result.

        The current snapshot (or result) is yielded immediately, so a late
        subscriber is never blind; after that, each new value once.
        Intermediate snapshots may be skipped if several arrive between
        two reads.
        """
        seen = -1
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: self._version != seen)
                seen = self._version
                current: ProgressSnapshot | CommitResult | None = self.result or self.progress
            if current is not None:
                yield current
            if self.result is not None or self.step not in ("importing", "done"):
                return
