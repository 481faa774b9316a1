"""
Contact import service.

Owns the in-memory import sessions and the background commit tasks.

Key flow:
  1. upload      parse the file, suggest a mapping, preview against the store
  2. update      replace mapping/options, preview again
  3. commit      start one asyncio task per session running the executor
  4. progress    read the latest snapshot, or the result once done
  5. discard     drop a session, or ask a running commit to stop

Sessions belong to the actor that uploaded them and are forgotten after
IMPORT_SESSION_TTL_SECONDS of inactivity, unless a commit is running.
Every commit leaves an ImportRun row behind.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.models.infrastructure import ImportRun
from app.schemas.imports import (
    ColumnMapping,
    CommitResult,
    ImportOptions,
    MatchingStats,
    ProgressSnapshot,
)
from app.services.column_mapper import infer_mapping
from app.services.entity_store import SqlEntityStore, TargetResolver
from app.services.import_errors import ParseError, SessionError, SessionErrorKind
from app.services.import_executor import ImportExecutor
from app.services.import_session import ImportSession
from app.services.matcher import build_index, preview
from app.services.tabular_parser import format_from_filename, parse

logger = logging.getLogger(__name__)


# ─── Session Registry ─────────────────────────────────────────

class SessionRegistry:
    """Import sessions by id, each visible only to the actor that owns it."""

    def __init__(self, ttl_seconds: int | None = None):
        self.ttl = timedelta(seconds=ttl_seconds or settings.IMPORT_SESSION_TTL_SECONDS)
        self._sessions: dict[uuid.UUID, ImportSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: ImportSession) -> None:
        self.purge_expired()
        self._sessions[session.id] = session

    def get(self, session_id: uuid.UUID, actor_id: str) -> ImportSession:
        self.purge_expired()
        session = self._sessions.get(session_id)
        if session is None or session.actor_id != actor_id or session.discarded:
            raise SessionError(
                SessionErrorKind.NOT_FOUND,
                f"Import session not found: {session_id}",
            )
        session.touch()
        return session

    def remove(self, session_id: uuid.UUID) -> None:
        self._sessions.pop(session_id, None)

    def purge_expired(self, now: datetime | None = None) -> int:
        """Drop idle sessions. A session that is importing never expires."""
        now = now or datetime.now(timezone.utc)
        expired = [
            sid for sid, s in self._sessions.items()
            if s.step != "importing" and now - s.touched_at > self.ttl
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.debug("Purged %d expired import session(s)", len(expired))
        return len(expired)


# ─── Service ──────────────────────────────────────────────────

class ImportService:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        registry: SessionRegistry | None = None,
    ):
        self._sessionmaker = sessionmaker
        self.registry = registry or SessionRegistry()
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}

    # ─── Upload / Mapping ─────────────────────────────────────

    async def upload(
        self,
        *,
        actor_id: str,
        call_list_id: uuid.UUID,
        data: bytes,
        filename: str | None = None,
    ) -> ImportSession:
        """
        Start a session for a call list and load a file into it.

        On a ParseError the session is kept in 'upload' with last_error
        set, and the error is re-raised with ``session_id`` attached.
        """
        target = await TargetResolver(self._sessionmaker).resolve(call_list_id)
        if target is None:
            raise SessionError(SessionErrorKind.NOT_FOUND, f"Call list not found: {call_list_id}")

        session = ImportSession(
            actor_id=actor_id,
            call_list_id=target.id,
            workspace_id=target.workspace_id,
            call_list_name=target.name,
        )
        self.registry.add(session)

        try:
            table = parse(data, format_from_filename(filename))
        except ParseError as exc:
            session.record_error(exc.message)
            exc.session_id = session.id
            logger.info("Import %s upload rejected: %s", session.id, exc.kind.value)
            raise

        session.attach_table(table, infer_mapping(table.headers))
        await self._preview(session)
        logger.info(
            "Import %s uploaded by %s: %d rows, %d columns (%s)",
            session.id, actor_id, table.total_rows, len(table.headers), table.source_format,
        )
        return session

    async def update(
        self,
        session_id: uuid.UUID,
        actor_id: str,
        *,
        mapping: ColumnMapping | None = None,
        options: ImportOptions | None = None,
    ) -> ImportSession:
        session = self.registry.get(session_id, actor_id)
        # Mapping first: it is the only part that can be rejected
        if mapping is not None:
            session.update_mapping(mapping)
        if options is not None:
            session.update_options(options)
        await self._preview(session)
        return session

    async def preview(self, session_id: uuid.UUID, actor_id: str) -> MatchingStats:
        session = self.registry.get(session_id, actor_id)
        return await self._preview(session)

    async def _preview(self, session: ImportSession) -> MatchingStats:
        store = self._store_for(session)
        rows = session.table.rows
        index = await build_index(store, rows, session.mapping, session.options.match_strategy)
        stats = preview(rows, session.mapping, session.options, index)
        session.record_preview(stats)
        return stats

    # ─── Commit ───────────────────────────────────────────────

    async def start_commit(
        self,
        session_id: uuid.UUID,
        actor_id: str,
        chunk_size: int | None = None,
    ) -> tuple[ImportSession, bool]:
        """
        Begin the commit of a session in the background.

        Returns ``(session, already_running)``. Asking again while the
        commit runs hands back the same run instead of starting another.
        """
        session = self.registry.get(session_id, actor_id)
        if session.step == "importing":
            return session, True

        session.begin_commit()
        task = asyncio.create_task(
            self._run_commit(session, chunk_size),
            name=f"import-commit-{session.id}",
        )
        self._tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._tasks.pop(sid, None))
        return session, False

    async def _run_commit(self, session: ImportSession, chunk_size: int | None) -> None:
        await self._record_run_started(session)
        executor = ImportExecutor(self._store_for(session), session.target)
        async for snapshot in executor.commit(session, chunk_size):
            logger.debug(
                "Import %s progress: %d/%d",
                session.id, snapshot.processed_rows, snapshot.total_rows,
            )
        await self._record_run_finished(session, session.result)

    async def wait(self, session_id: uuid.UUID) -> None:
        """Wait for a session's commit task, if one is running."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)

    # ─── Progress / Discard ───────────────────────────────────

    def get_session(self, session_id: uuid.UUID, actor_id: str) -> ImportSession:
        return self.registry.get(session_id, actor_id)

    def watch(
        self, session_id: uuid.UUID, actor_id: str
    ) -> AsyncIterator[ProgressSnapshot | CommitResult]:
        return self.registry.get(session_id, actor_id).watch()

    def discard(self, session_id: uuid.UUID, actor_id: str) -> tuple[bool, bool]:
        """
        Returns ``(discarded, cancelling)``.

        A running commit is asked to stop at its next batch boundary; it
        keeps the session until it reaches 'done'.
        """
        session = self.registry.get(session_id, actor_id)
        if session.step == "importing":
            session.request_cancel()
            logger.info("Import %s cancellation requested by %s", session.id, actor_id)
            return False, True

        session.discard()
        self.registry.remove(session.id)
        return True, False

    # ─── Internals ────────────────────────────────────────────

    def _store_for(self, session: ImportSession) -> SqlEntityStore:
        return SqlEntityStore(self._sessionmaker, session.workspace_id)

    async def _record_run_started(self, session: ImportSession) -> None:
        try:
            async with self._sessionmaker() as db, db.begin():
                db.add(ImportRun(
                    id=session.id,
                    workspace_id=session.workspace_id,
                    call_list_id=session.call_list_id,
                    actor_id=session.actor_id,
                    status="in_progress",
                    total_rows=session.table.total_rows,
                    stats={},
                    options={
                        "mapping": session.mapping.model_dump(mode="json"),
                        **session.options.model_dump(mode="json"),
                    },
                ))
        except (SQLAlchemyError, OSError):
            logger.exception("Import %s: could not record the run start", session.id)

    async def _record_run_finished(self, session: ImportSession, result: CommitResult) -> None:
        try:
            async with self._sessionmaker() as db, db.begin():
                run = await db.get(ImportRun, session.id)
                if run is None:
                    return
                run.status = result.status
                run.stats = {
                    **result.stats.model_dump(),
                    "skipped": result.skipped,
                    "processed_rows": result.processed_rows,
                }
                run.finished_at = datetime.now(timezone.utc)
        except (SQLAlchemyError, OSError):
            logger.exception("Import %s: could not record the run result", session.id)


async def list_import_runs(db: AsyncSession, call_list_id: uuid.UUID) -> list[ImportRun]:
    result = await db.execute(
        select(ImportRun)
        .where(ImportRun.call_list_id == call_list_id)
        .order_by(ImportRun.created_at.desc())
    )
    return list(result.scalars().all())
