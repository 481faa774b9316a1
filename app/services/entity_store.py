"""
Entity store: the import engine's only window onto persisted students.

Every call is atomic on its own (one short transaction each); nothing
spans a whole commit. Concurrent writers are tolerated, not locked out:
the executor re-reads before each batch.

Database failures are translated here so callers only ever see the
import error taxonomy:
  - IntegrityError / DataError           → RowFault(STORE_CONFLICT)
  - OperationalError / InterfaceError /  → ExecutorFault(STORE_UNAVAILABLE)
    connection-level OSError
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, Literal, Protocol

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import DataError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.core import CallList, CallListItem, Student, StudentPhone
from app.services.import_errors import (
    ExecutorFault,
    ExecutorFaultKind,
    RowFault,
    RowFaultKind,
)
from app.services.normalization import (
    is_valid_email,
    normalize_email,
    normalize_whitespace,
    phone_digits,
    phone_match_key,
)

KeyField = Literal["email", "phone", "name"]

NAME_MAX_LENGTH = 200
EMAIL_MAX_LENGTH = 320
PHONE_MAX_LENGTH = 50
# Bound on bind parameters per lookup statement
LOOKUP_CHUNK = 200


@dataclass(frozen=True)
class EntityRef:
    """A student as the matcher sees it."""
    id: uuid.UUID
    name: str
    email: str | None = None


@dataclass(frozen=True)
class AttachResult:
    created: bool


@dataclass(frozen=True)
class CallListRef:
    id: uuid.UUID
    workspace_id: uuid.UUID
    name: str


class EntityStore(Protocol):
    async def find_by_normalized_key(self, field: KeyField, key: str) -> EntityRef | None:
        ...

    async def find_by_normalized_keys(
        self, field: KeyField, keys: Iterable[str]
    ) -> dict[str, EntityRef]:
        ...

    async def create(self, fields: dict[str, str | None]) -> EntityRef:
        ...

    async def attach(self, entity_id: uuid.UUID, target_id: uuid.UUID) -> AttachResult:
        ...


# ─── Error Translation ────────────────────────────────────────

@asynccontextmanager
async def _translated_errors() -> AsyncIterator[None]:
    try:
        yield
    except (OperationalError, InterfaceError, OSError) as exc:
        raise ExecutorFault(
            ExecutorFaultKind.STORE_UNAVAILABLE,
            "The student store is unavailable.",
        ) from exc


# ─── SQL Implementation ───────────────────────────────────────

class SqlEntityStore:
    """
    EntityStore over the students tables of one workspace.

    Soft-deleted students are invisible to every lookup. When several
    students share a key, the earliest created one is returned.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], workspace_id: uuid.UUID):
        self._sessionmaker = sessionmaker
        self.workspace_id = workspace_id

    async def find_by_normalized_key(self, field: KeyField, key: str) -> EntityRef | None:
        found = await self.find_by_normalized_keys(field, [key])
        return found.get(key)

    async def find_by_normalized_keys(
        self, field: KeyField, keys: Iterable[str]
    ) -> dict[str, EntityRef]:
        """Resolve many keys of one field. Keys with no live student are absent."""
        wanted = sorted({k for k in keys if k})
        found: dict[str, EntityRef] = {}
        async with _translated_errors():
            async with self._sessionmaker() as db:
                for start in range(0, len(wanted), LOOKUP_CHUNK):
                    chunk = wanted[start:start + LOOKUP_CHUNK]
                    if field == "phone":
                        pairs = await self._lookup_phones(db, chunk)
                    else:
                        pairs = await self._lookup_students(db, field, chunk)
                    for key, entity in pairs:
                        # Rows arrive oldest first; keep the first hit
                        found.setdefault(key, entity)
        return found

    async def _lookup_students(
        self, db: AsyncSession, field: KeyField, keys: list[str]
    ) -> list[tuple[str, EntityRef]]:
        if field == "email":
            column = Student.email
        else:
            # Inner whitespace is already collapsed on write
            column = func.lower(func.trim(Student.name))

        result = await db.execute(
            select(Student, column)
            .where(
                and_(
                    Student.workspace_id == self.workspace_id,
                    Student.is_deleted.is_(False),
                    column.in_(keys),
                )
            )
            .order_by(Student.created_at, Student.id)
        )
        return [(key, _ref(student)) for student, key in result.all()]

    async def _lookup_phones(
        self, db: AsyncSession, keys: list[str]
    ) -> list[tuple[str, EntityRef]]:
        width = len(keys[0])
        result = await db.execute(
            select(Student, StudentPhone.phone_digits)
            .join(StudentPhone, StudentPhone.student_id == Student.id)
            .where(
                and_(
                    Student.workspace_id == self.workspace_id,
                    Student.is_deleted.is_(False),
                    or_(*(StudentPhone.phone_digits.endswith(k) for k in keys)),
                )
            )
            .order_by(Student.created_at, Student.id)
        )
        pairs = []
        for student, digits in result.all():
            key = phone_match_key(digits, width)
            if key is not None:
                pairs.append((key, _ref(student)))
        return pairs

    async def create(self, fields: dict[str, str | None]) -> EntityRef:
        """
        Create a student (and its primary phone, if one is given).

        Raises RowFault(VALIDATION_FAILED) when the name is missing or too
        long, or the email is not a plausible address.
        """
        name = normalize_whitespace(fields.get("name") or "")
        if not name:
            raise RowFault(RowFaultKind.VALIDATION_FAILED, "Name is required.")
        if len(name) > NAME_MAX_LENGTH:
            raise RowFault(
                RowFaultKind.VALIDATION_FAILED,
                f"Name is longer than {NAME_MAX_LENGTH} characters.",
            )

        email = normalize_email(fields.get("email"))
        if email is not None and (len(email) > EMAIL_MAX_LENGTH or not is_valid_email(email)):
            raise RowFault(RowFaultKind.VALIDATION_FAILED, f"Invalid email address '{email}'.")

        raw_phone = (fields.get("phone") or "").strip()
        if len(raw_phone) > PHONE_MAX_LENGTH:
            raise RowFault(
                RowFaultKind.VALIDATION_FAILED,
                f"Phone number is longer than {PHONE_MAX_LENGTH} characters.",
            )
        digits = phone_digits(raw_phone)

        try:
            async with _translated_errors():
                async with self._sessionmaker() as db, db.begin():
                    student = Student(
                        id=uuid.uuid4(),
                        workspace_id=self.workspace_id,
                        name=name,
                        email=email,
                    )
                    db.add(student)
                    if digits:
                        db.add(StudentPhone(
                            id=uuid.uuid4(),
                            student_id=student.id,
                            workspace_id=self.workspace_id,
                            phone=raw_phone,
                            phone_digits=digits,
                            is_primary=True,
                        ))
                    await db.flush()
        except (IntegrityError, DataError) as exc:
            raise RowFault(RowFaultKind.STORE_CONFLICT, "Student could not be saved.") from exc

        return _ref(student)

    async def attach(self, entity_id: uuid.UUID, target_id: uuid.UUID) -> AttachResult:
        """
        Put a student on a call list as a QUEUED item.

        Attaching an already-attached student is a no-op reported as
        ``created=False``, including when a concurrent writer wins the race.
        """
        try:
            async with _translated_errors():
                async with self._sessionmaker() as db, db.begin():
                    if await _item_exists(db, entity_id, target_id):
                        return AttachResult(created=False)
                    db.add(CallListItem(
                        id=uuid.uuid4(),
                        call_list_id=target_id,
                        student_id=entity_id,
                        state="QUEUED",
                        priority=0,
                    ))
                    await db.flush()
        except IntegrityError as exc:
            async with _translated_errors():
                async with self._sessionmaker() as db:
                    if await _item_exists(db, entity_id, target_id):
                        return AttachResult(created=False)
            raise RowFault(
                RowFaultKind.STORE_CONFLICT,
                "Student could not be added to the call list.",
            ) from exc

        return AttachResult(created=True)


async def _item_exists(db: AsyncSession, entity_id: uuid.UUID, target_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(CallListItem.id).where(
            and_(
                CallListItem.call_list_id == target_id,
                CallListItem.student_id == entity_id,
            )
        )
    )
    return result.scalar_one_or_none() is not None


def _ref(student: Student) -> EntityRef:
    return EntityRef(id=student.id, name=student.name, email=student.email)


# ─── Target Resolution ────────────────────────────────────────

class TargetResolver:
    """Looks up the call list an import writes into."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def resolve(self, call_list_id: uuid.UUID) -> CallListRef | None:
        async with _translated_errors():
            async with self._sessionmaker() as db:
                call_list = await db.get(CallList, call_list_id)
        if call_list is None:
            return None
        return CallListRef(
            id=call_list.id,
            workspace_id=call_list.workspace_id,
            name=call_list.name,
        )
