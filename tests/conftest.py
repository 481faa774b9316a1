"""
Shared test fixtures.

Uses a throwaway SQLite database file per test. The import engine opens
a short transaction per store call, and commits run as background tasks,
so tests need real separate connections rather than one shared
in-memory connection.
JSONB columns are compiled as JSON for SQLite compatibility.
For integration tests against PostgreSQL, use docker compose.
"""

import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from app.api.routes.imports import get_import_service
from app.core.database import Base, get_db, get_sessionmaker
from app.main import app
from app.models.core import CallList, CallListItem, Student, StudentPhone  # noqa: F401
from app.models.infrastructure import ImportRun  # noqa: F401
from app.services.import_service import ImportService
from app.services.normalization import phone_digits


# ─── SQLite compatibility: JSONB → JSON, UUID → CHAR(36) ──────

@compiles(JSONB, "sqlite")
def compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@compiles(UUID, "sqlite")
def compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(36)"


ACTOR = "counselor-1"
WORKSPACE_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")


@pytest_asyncio.fixture
async def sessionmaker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create all tables in a fresh database, drop the engine after."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Provide a test database session."""
    async with sessionmaker() as session:
        yield session


@pytest_asyncio.fixture
async def import_service(sessionmaker) -> AsyncGenerator[ImportService, None]:
    service = ImportService(sessionmaker)
    yield service
    # Let background commits settle before the engine goes away
    for session_id in list(service._tasks):
        await service.wait(session_id)


@pytest_asyncio.fixture
async def client(sessionmaker, import_service) -> AsyncGenerator[AsyncClient, None]:
    """Provide a test HTTP client with database and service overrides."""

    async def override_get_db():
        async with sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sessionmaker] = lambda: sessionmaker
    app.dependency_overrides[get_import_service] = lambda: import_service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Actor-Id": ACTOR},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Helper factories ─────────────────────────────────────────

@pytest_asyncio.fixture
async def make_call_list(sessionmaker):
    """Factory fixture for creating call lists (committed)."""
    async def _make(name: str = "Spring Admissions", workspace_id: uuid.UUID = WORKSPACE_ID) -> CallList:
        async with sessionmaker() as db, db.begin():
            call_list = CallList(id=uuid.uuid4(), workspace_id=workspace_id, name=name)
            db.add(call_list)
        return call_list
    return _make


@pytest_asyncio.fixture
async def make_student(sessionmaker):
    """Factory fixture for creating students with an optional primary phone (committed)."""
    async def _make(
        name: str = "Ayesha Rahman",
        email: str | None = None,
        phone: str | None = None,
        *,
        workspace_id: uuid.UUID = WORKSPACE_ID,
        is_deleted: bool = False,
    ) -> Student:
        async with sessionmaker() as db, db.begin():
            student = Student(
                id=uuid.uuid4(),
                workspace_id=workspace_id,
                name=name,
                email=email.lower() if email else None,
                is_deleted=is_deleted,
            )
            db.add(student)
            if phone:
                db.add(StudentPhone(
                    id=uuid.uuid4(),
                    student_id=student.id,
                    workspace_id=workspace_id,
                    phone=phone,
                    phone_digits=phone_digits(phone),
                    is_primary=True,
                ))
        return student
    return _make


@pytest_asyncio.fixture
async def enqueue(sessionmaker):
    """Factory fixture putting a student on a call list (committed)."""
    async def _make(call_list: CallList, student: Student) -> None:
        async with sessionmaker() as db, db.begin():
            db.add(CallListItem(id=uuid.uuid4(), call_list_id=call_list.id, student_id=student.id))
    return _make


@pytest.fixture
def actor() -> str:
    return ACTOR


@pytest.fixture
def workspace_id() -> uuid.UUID:
    return WORKSPACE_ID
