"""Tests for Seed Data — Verifies seed_workspace() creates a usable demo workspace."""

import pytest
from sqlalchemy import func, select

from app.models.core import CallList, CallListItem, Student, StudentPhone
from app.services.entity_store import SqlEntityStore
from scripts.seed_data import QUEUED_COUNT, STUDENT_COUNT, make_student_fields, seed_workspace


# ─── Seed Execution ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_seed_workspace_returns_ids(db_session):
    ids = await seed_workspace(db_session)
    await db_session.commit()

    assert "workspace" in ids
    assert "admissions" in ids
    assert "alumni" in ids
    assert "deleted_student" in ids


@pytest.mark.asyncio
async def test_seed_creates_call_lists(db_session):
    ids = await seed_workspace(db_session)
    await db_session.commit()

    result = await db_session.execute(select(CallList).order_by(CallList.name))
    names = [c.name for c in result.scalars().all()]
    assert names == ["Alumni Outreach", "Spring Admissions"]
    for call_list in await db_session.scalars(select(CallList)):
        assert call_list.workspace_id == ids["workspace"]


@pytest.mark.asyncio
async def test_seed_creates_students_with_phones(db_session):
    await seed_workspace(db_session)
    await db_session.commit()

    students = (await db_session.execute(select(func.count()).select_from(Student))).scalar()
    phones = (await db_session.execute(select(func.count()).select_from(StudentPhone))).scalar()
    assert students == STUDENT_COUNT + 1
    assert phones == STUDENT_COUNT + 1

    without_email = (
        await db_session.execute(select(func.count()).select_from(Student).where(Student.email.is_(None)))
    ).scalar()
    assert without_email == STUDENT_COUNT // 4


@pytest.mark.asyncio
async def test_seed_queues_students(db_session):
    ids = await seed_workspace(db_session)
    await db_session.commit()

    result = await db_session.execute(
        select(CallListItem).where(CallListItem.call_list_id == ids["admissions"])
    )
    items = result.scalars().all()
    assert len(items) == QUEUED_COUNT
    assert sorted(i.priority for i in items) == list(range(QUEUED_COUNT))


# ─── Seed Data as Import Target ────────────────────────────────

@pytest.mark.asyncio
async def test_seeded_students_are_matchable(db_session, sessionmaker):
    ids = await seed_workspace(db_session)
    await db_session.commit()

    store = SqlEntityStore(sessionmaker, ids["workspace"])
    fields = make_student_fields(0)
    found = await store.find_by_normalized_key("email", fields["email"])
    assert found is not None
    assert found.name == fields["name"]

    # The soft-deleted student is never matched
    assert await store.find_by_normalized_key("email", "former@example.com") is None


def test_student_fields_are_reproducible():
    assert make_student_fields(7) == make_student_fields(7)
    assert make_student_fields(3)["email"] is None
