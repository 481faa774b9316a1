"""
Tests for the reconciliation executor.

Covers:
  - Counters for match / create / skip rows
  - Row faults counted without stopping the run
  - Error list capping
  - Idempotent re-runs
  - Monotonic progress and strictly increasing timestamps
  - Cancellation and store outages at batch boundaries
  - Counts always balancing
"""

import uuid
from datetime import timedelta

import pytest

from app.schemas.imports import ColumnMapping, ImportOptions, MatchStrategy
from app.services.entity_store import CallListRef
from app.services.import_executor import ImportExecutor
from app.services.import_session import ImportSession
from app.services.tabular_parser import parse
from tests.fixtures.excel_factory import make_contact_rows, make_contacts_csv
from tests.fixtures.memory_store import MemoryStore

MAPPING = ColumnMapping(name="Student Name", email="E-mail", phone="Mobile Number")
TARGET = CallListRef(id=uuid.uuid4(), workspace_id=uuid.uuid4(), name="Spring Admissions")


def session_for(rows: list[list[str]], **option_kw) -> ImportSession:
    session = ImportSession(actor_id="a", call_list_id=TARGET.id, workspace_id=TARGET.workspace_id)
    session.attach_table(parse(make_contacts_csv(rows)), MAPPING)
    if option_kw:
        session.update_options(ImportOptions(**option_kw))
    session.begin_commit()
    return session


async def run(store, session: ImportSession, batch_size: int | None = None) -> list:
    executor = ImportExecutor(store, TARGET)
    return [snapshot async for snapshot in executor.commit(session, batch_size)]


def assert_balanced(result):
    stats = result.stats
    assert stats.added + stats.duplicates + stats.errors + result.skipped == result.processed_rows


# ─── Basic Runs ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_creates_and_attaches_new_students():
    store = MemoryStore()
    session = session_for(make_contact_rows(3), match_strategy=MatchStrategy.EMAIL)
    await run(store, session)

    result = session.result
    assert session.step == "done"
    assert result.status == "completed"
    assert result.stats.model_dump() == {
        "matched": 0, "created": 3, "added": 3, "duplicates": 0, "errors": 0,
    }
    assert result.errors is None
    assert len(store.entities) == 3
    assert len(store.attachments) == 3


@pytest.mark.asyncio
async def test_in_file_duplicate_counted_once():
    rows = [
        ["Jane", "jane@example.com", ""],
        ["Jane Again", "JANE@example.com", ""],
    ]
    store = MemoryStore()
    session = session_for(rows, match_strategy=MatchStrategy.EMAIL)
    await run(store, session)
    assert session.result.stats.created == 1
    assert session.result.stats.duplicates == 1
    assert_balanced(session.result)


@pytest.mark.asyncio
async def test_duplicates_not_skipped_attach_once():
    rows = [
        ["Jane", "jane@example.com", ""],
        ["Jane", "jane@example.com", ""],
    ]
    store = MemoryStore()
    session = session_for(rows, skip_duplicates=False)
    await run(store, session, batch_size=1)
    stats = session.result.stats
    assert stats.created == 1
    assert stats.matched == 1
    assert stats.added == 1
    assert stats.duplicates == 1
    assert len(store.entities) == 1
    assert_balanced(session.result)


@pytest.mark.asyncio
async def test_existing_student_already_on_list_is_duplicate():
    store = MemoryStore()
    jane = store.add("Jane", "jane@example.com")
    store.attachments.add((jane.id, TARGET.id))
    session = session_for([["Jane", "jane@example.com", ""]])
    await run(store, session)
    stats = session.result.stats
    assert stats.matched == 1
    assert stats.added == 0
    assert stats.duplicates == 1


@pytest.mark.asyncio
async def test_skipped_rows_are_untouched():
    rows = [["No Contact", "", ""], ["New", "new@example.com", ""]]
    store = MemoryStore()
    session = session_for(rows, create_new_entities=False)
    await run(store, session)
    result = session.result
    assert result.skipped == 2
    assert result.stats.added == 0
    assert store.entities == []
    assert_balanced(result)


# ─── Row Faults ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_invalid_email_is_a_row_error():
    rows = [
        ["Good One", "one@example.com", ""],
        ["Bad", "not-an-email", ""],
        ["Good Two", "two@example.com", ""],
    ]
    store = MemoryStore()
    session = session_for(rows, match_strategy=MatchStrategy.EMAIL)
    await run(store, session)

    result = session.result
    assert result.status == "completed"
    assert result.stats.errors == 1
    assert result.stats.added == 2
    assert result.errors == ["Row 3: Invalid email address 'not-an-email'."]
    assert_balanced(result)


@pytest.mark.asyncio
async def test_store_rejection_is_a_row_error():
    store = MemoryStore()
    store.rejected_emails.add("blocked@example.com")
    session = session_for([["Blocked", "blocked@example.com", ""], ["Fine", "fine@example.com", ""]])
    await run(store, session)
    assert session.result.stats.errors == 1
    assert session.result.stats.added == 1


@pytest.mark.asyncio
async def test_error_list_is_capped():
    rows = [[f"Bad {i}", f"bad{i}", ""] for i in range(15)]
    store = MemoryStore()
    session = session_for(rows, match_strategy=MatchStrategy.EMAIL)
    await run(store, session)
    errors = session.result.errors
    assert session.result.stats.errors == 15
    assert len(errors) == 11
    assert errors[-1] == "+5 more"


@pytest.mark.asyncio
async def test_long_error_messages_are_truncated():
    email = "x" * 300
    store = MemoryStore()
    session = session_for([["Bad", email, ""]], match_strategy=MatchStrategy.EMAIL)
    await run(store, session)
    message = session.result.errors[0]
    assert len(message) == 200
    assert message.endswith("...")


@pytest.mark.asyncio
async def test_nameless_row_is_an_error_and_frees_its_key():
    rows = [
        ["", "jane@example.com", ""],
        ["Jane", "jane@example.com", ""],
    ]
    store = MemoryStore()
    session = session_for(rows, match_strategy=MatchStrategy.EMAIL, skip_duplicates=False)
    await run(store, session)
    stats = session.result.stats
    assert stats.errors == 1
    assert stats.created == 1
    assert stats.added == 1
    assert session.result.errors == ["Row 2: Name is required."]
    assert store.calls == 3  # one lookup, then create and attach for Jane only
    assert_balanced(session.result)


@pytest.mark.asyncio
async def test_failed_create_lets_duplicate_try_again():
    rows = [
        ["Blocked", "jane@example.com", "01712345678"],
        ["Jane", "other@example.com", "01712345678"],
    ]
    store = MemoryStore()
    store.rejected_emails.add("jane@example.com")
    session = session_for(rows, skip_duplicates=False)
    await run(store, session)
    stats = session.result.stats
    assert stats.errors == 1
    assert stats.created == 1
    assert stats.added == 1
    assert_balanced(session.result)


# ─── Idempotence ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rerun_creates_nothing():
    store = MemoryStore()
    rows = make_contact_rows(7) + [["No Contact", "", ""]]

    first = session_for(rows)
    await run(store, first, batch_size=3)
    assert first.result.stats.created == 7

    second = session_for(rows)
    await run(store, second, batch_size=3)
    stats = second.result.stats
    assert stats.created == 0
    assert stats.matched == 7
    assert stats.added == 0
    assert stats.duplicates == 7
    assert second.result.skipped == 1
    assert len(store.entities) == 7
    assert_balanced(second.result)


@pytest.mark.asyncio
async def test_index_rebuilt_every_batch():
    store = MemoryStore()
    session = session_for(make_contact_rows(10))
    await run(store, session, batch_size=4)
    # email + phone lookups for each of the 3 batches
    assert store.lookups == 6


@pytest.mark.asyncio
async def test_student_created_mid_run_elsewhere_is_matched():
    store = MemoryStore()
    rows = make_contact_rows(4)
    session = session_for(rows, match_strategy=MatchStrategy.EMAIL)
    executor = ImportExecutor(store, TARGET)

    snapshots = executor.commit(session, 2)
    await snapshots.__anext__()
    # Someone else adds row 4's student between batches
    store.add("Student 004", "student004@example.com")
    async for _ in snapshots:
        pass

    stats = session.result.stats
    assert stats.created == 3
    assert stats.matched == 1
    assert len(store.entities) == 4


# ─── Progress ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_progress_is_monotonic():
    store = MemoryStore()
    rows = make_contact_rows(9) + [["Bad", "bad", ""]]
    session = session_for(rows, match_strategy=MatchStrategy.EMAIL)
    snapshots = await run(store, session, batch_size=2)

    assert len(snapshots) >= 5
    fields = ("processed_rows", "matched", "created", "added", "duplicates", "errors")
    for before, after in zip(snapshots, snapshots[1:]):
        for name in fields:
            assert getattr(after, name) >= getattr(before, name)
        assert after.updated_at > before.updated_at
        assert after.processed_rows <= after.total_rows
    phases = ["validating", "matching", "creating", "attaching", "finalizing"]
    assert [phases.index(s.phase) for s in snapshots] == sorted(phases.index(s.phase) for s in snapshots)
    assert snapshots[-1].phase == "finalizing"
    assert snapshots[-1].processed_rows == 10


@pytest.mark.asyncio
async def test_first_snapshot_is_later_than_initial_progress():
    store = MemoryStore()
    session = session_for(make_contact_rows(2))
    # An initial stamp ahead of the clock must still be overtaken
    ahead = session.progress.updated_at + timedelta(seconds=5)
    session.progress = session.progress.model_copy(update={"updated_at": ahead})

    snapshots = await run(store, session)
    assert snapshots[0].updated_at > ahead
    for before, after in zip(snapshots, snapshots[1:]):
        assert after.updated_at > before.updated_at


# ─── Fatal Faults ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_stops_at_batch_boundary():
    store = MemoryStore()
    session = session_for(make_contact_rows(6))
    executor = ImportExecutor(store, TARGET)

    snapshots = executor.commit(session, 2)
    first = await snapshots.__anext__()
    assert first.processed_rows == 2
    session.request_cancel()
    async for _ in snapshots:
        pass

    result = session.result
    assert result.status == "cancelled"
    assert result.processed_rows == 2
    assert result.stats.added == 2
    assert result.fatal_error == "Import was cancelled."
    assert len(store.entities) == 2
    assert_balanced(result)


@pytest.mark.asyncio
async def test_cancel_during_last_batch_is_honoured():
    store = MemoryStore()
    session = session_for(make_contact_rows(2))
    executor = ImportExecutor(store, TARGET)

    snapshots = executor.commit(session, 2)
    only = await snapshots.__anext__()
    assert only.processed_rows == 2
    session.request_cancel()
    remaining = [s async for s in snapshots]

    assert all(s.phase != "finalizing" for s in remaining)
    result = session.result
    assert result.status == "cancelled"
    assert result.processed_rows == 2
    assert result.stats.added == 2
    assert_balanced(result)


@pytest.mark.asyncio
async def test_store_outage_ends_run_with_partial_result():
    store = MemoryStore()
    session = session_for(make_contact_rows(6), match_strategy=MatchStrategy.EMAIL)
    # Batch of 2 with email-only matching: 1 lookup + 2 × (create + attach) = 5 calls
    store.fail_after_calls = 5
    await run(store, session, batch_size=2)

    result = session.result
    assert session.step == "done"
    assert result.status == "failed"
    assert result.fatal_error == "The student store is unavailable."
    assert result.processed_rows == 2
    assert result.stats.added == 2
    assert session.last_error == result.fatal_error
    assert_balanced(result)
