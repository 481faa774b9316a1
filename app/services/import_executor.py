"""
Reconciliation executor: applies a session's table to the store.

Rows are handled in file order, in batches. Before each batch the
existing-student index is rebuilt from the live store, so a commit never
trusts the preview and a re-run converges instead of duplicating: a
student created by an earlier run now matches.

Per row:
  will_match   → attach              matched+1, then added+1 or duplicates+1
  will_create  → create, attach      created+1, added+1
  will_skip    → nothing             duplicates+1 for in-file duplicates,
                                     errors+1 for a row with no name to create

Row faults are counted and the run goes on. Executor faults (store
down, cancellation) stop the run at a batch boundary; the result keeps
everything counted so far.

Counts always balance:
    added + duplicates + errors + skipped == processed_rows
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Mapping

from app.core.config import settings
from app.schemas.imports import CommitResult, CommitStats, Phase, ProgressSnapshot
from app.services.entity_store import CallListRef, EntityRef, EntityStore
from app.services.import_errors import ExecutorFault, ExecutorFaultKind, RowFault, RowFaultKind
from app.services.import_session import ImportSession
from app.services.matcher import (
    Classification,
    RowClassifier,
    RowDecision,
    SkipReason,
    build_index,
    row_fields,
)

logger = logging.getLogger(__name__)

ROW_MESSAGE_MAX_LENGTH = 200
PHASE_ORDER: tuple[Phase, ...] = ("validating", "matching", "creating", "attaching", "finalizing")


@dataclass
class _RunCounters:
    total_rows: int
    processed_rows: int = 0
    matched: int = 0
    created: int = 0
    added: int = 0
    duplicates: int = 0
    errors: int = 0
    skipped: int = 0
    messages: list[str] = field(default_factory=list)

    def stats(self) -> CommitStats:
        return CommitStats(
            matched=self.matched,
            created=self.created,
            added=self.added,
            duplicates=self.duplicates,
            errors=self.errors,
        )


class ImportExecutor:
    def __init__(self, store: EntityStore, target: CallListRef):
        self.store = store
        self.target = target
        self._last_stamp: datetime | None = None
        self._phase: Phase = "validating"

    async def commit(
        self,
        session: ImportSession,
        batch_size: int | None = None,
    ) -> AsyncIterator[ProgressSnapshot]:
        """
        Run the commit for a session already in ``importing``.

        Yields a snapshot after every batch (each one is also published
        to the session) and finishes the session with its CommitResult
        before returning.
        """
        size = max(1, min(batch_size or settings.IMPORT_BATCH_SIZE, settings.IMPORT_MAX_BATCH_SIZE))
        table = session.table
        mapping, options = session.mapping, session.options
        counters = _RunCounters(total_rows=table.total_rows)
        classifier = RowClassifier(mapping, options)
        fatal: ExecutorFault | None = None
        if session.progress is not None:
            self._last_stamp = session.progress.updated_at

        logger.info(
            "Import %s started: %d rows into call list %s (strategy=%s, batch=%d)",
            session.id, table.total_rows, self.target.id, options.match_strategy.value, size,
        )

        try:
            for start in range(0, table.total_rows, size):
                _check_cancelled(session)

                rows = table.rows[start:start + size]
                row_numbers = table.row_numbers[start:start + size]

                index = await build_index(self.store, rows, mapping, options.match_strategy)

                for row, row_number in zip(rows, row_numbers):
                    decision = classifier.classify(row, index)
                    try:
                        await self._apply(row, decision, classifier, counters)
                    except RowFault as exc:
                        if decision.classification == Classification.WILL_CREATE:
                            classifier.resolve(decision, None)
                        counters.errors += 1
                        counters.messages.append(_row_message(row_number, exc.message))
                        logger.warning("Import %s row %d: %s", session.id, row_number, exc.kind.value)
                    counters.processed_rows += 1

                yield await self._publish(session, counters, _phase_after_batch(counters))
            _check_cancelled(session)
        except ExecutorFault as exc:
            fatal = exc
            if exc.kind == ExecutorFaultKind.CANCELLED:
                logger.info("Import %s cancelled after %d rows", session.id, counters.processed_rows)
            else:
                logger.error("Import %s stopped: %s", session.id, exc.message)
        except Exception:
            # The session must still reach 'done'
            logger.exception("Import %s failed", session.id)
            fatal = ExecutorFault(ExecutorFaultKind.STORE_UNAVAILABLE, "Import failed unexpectedly.")

        if fatal is None:
            yield await self._publish(session, counters, "finalizing")

        result = _build_result(counters, fatal)
        await session.finish(result)
        logger.info(
            "Import %s %s: matched=%d created=%d added=%d duplicates=%d errors=%d skipped=%d",
            session.id, result.status, counters.matched, counters.created, counters.added,
            counters.duplicates, counters.errors, counters.skipped,
        )

    async def _apply(
        self,
        row: Mapping[str, str],
        decision: RowDecision,
        classifier: RowClassifier,
        counters: _RunCounters,
    ) -> None:
        if decision.classification == Classification.WILL_SKIP:
            if decision.reason == SkipReason.MISSING_NAME:
                raise RowFault(RowFaultKind.VALIDATION_FAILED, "Name is required.")
            if decision.reason == SkipReason.DUPLICATE:
                counters.duplicates += 1
            else:
                counters.skipped += 1
            return

        if decision.classification == Classification.WILL_CREATE:
            entity = await self.store.create(row_fields(row, classifier.mapping))
            classifier.resolve(decision, entity)
            counters.created += 1
            await self._attach(entity, counters)
            return

        counters.matched += 1
        await self._attach(decision.entity, counters)

    async def _attach(self, entity: EntityRef, counters: _RunCounters) -> None:
        attached = await self.store.attach(entity.id, self.target.id)
        if attached.created:
            counters.added += 1
        else:
            counters.duplicates += 1

    async def _publish(
        self,
        session: ImportSession,
        counters: _RunCounters,
        phase: Phase,
    ) -> ProgressSnapshot:
        self._phase = max(self._phase, phase, key=PHASE_ORDER.index)
        snapshot = ProgressSnapshot(
            phase=self._phase,
            total_rows=counters.total_rows,
            processed_rows=counters.processed_rows,
            matched=counters.matched,
            created=counters.created,
            added=counters.added,
            duplicates=counters.duplicates,
            errors=counters.errors,
            updated_at=self._stamp(),
        )
        await session.publish_progress(snapshot)
        return snapshot

    def _stamp(self) -> datetime:
        """Strictly increasing timestamps, even within one clock tick."""
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now


def _check_cancelled(session: ImportSession) -> None:
    if session.cancel_requested:
        raise ExecutorFault(ExecutorFaultKind.CANCELLED, "Import was cancelled.")


def _phase_after_batch(counters: _RunCounters) -> Phase:
    if counters.processed_rows >= counters.total_rows:
        return "attaching"
    return "creating" if counters.created else "matching"


def _row_message(row_number: int, message: str) -> str:
    text = f"Row {row_number}: {message}"
    if len(text) > ROW_MESSAGE_MAX_LENGTH:
        text = text[: ROW_MESSAGE_MAX_LENGTH - 3] + "..."
    return text


def _capped(messages: list[str]) -> list[str] | None:
    if not messages:
        return None
    limit = settings.IMPORT_ERROR_MESSAGE_LIMIT
    if len(messages) <= limit:
        return list(messages)
    return messages[:limit] + [f"+{len(messages) - limit} more"]


def _build_result(counters: _RunCounters, fatal: ExecutorFault | None) -> CommitResult:
    if fatal is None:
        status = "completed"
        message = (
            f"Import completed: {counters.added} added, {counters.created} new students, "
            f"{counters.duplicates} duplicates, {counters.errors} errors."
        )
    elif fatal.kind == ExecutorFaultKind.CANCELLED:
        status = "cancelled"
        message = (
            f"Import cancelled after {counters.processed_rows} of "
            f"{counters.total_rows} rows."
        )
    else:
        status = "failed"
        message = (
            f"Import stopped after {counters.processed_rows} of "
            f"{counters.total_rows} rows: {fatal.message}"
        )

    return CommitResult(
        message=message,
        status=status,
        stats=counters.stats(),
        errors=_capped(counters.messages),
        total_rows=counters.total_rows,
        processed_rows=counters.processed_rows,
        skipped=counters.skipped,
        fatal_error=fatal.message if fatal is not None else None,
    )
