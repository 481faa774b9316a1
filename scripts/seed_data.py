"""
Seed data script — creates a demo workspace to import into.

Creates:
  - 1 workspace (id only; workspaces are managed elsewhere)
  - 2 call lists ("Spring Admissions", "Alumni Outreach")
  - 20 students, each with a primary phone, most with an email
  - 1 soft-deleted student (invisible to import matching)
  - 5 students already queued on "Spring Admissions"

Usage:
  python -m scripts.seed_data

  Or import and call seed_workspace() with a database session.
"""

import asyncio
import random
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

# Ensure models are imported so Base.metadata is populated
from app.models.core import CallList, CallListItem, Student, StudentPhone
from app.core.config import settings
from app.services.normalization import phone_digits


# ─── Student generators ────────────────────────────────────────

FIRST_NAMES = [
    "Ayesha", "Rahim", "Nusrat", "Tanvir", "Farhana", "Imran", "Sadia",
    "Kamal", "Mitu", "Jahid", "Priya", "Arjun", "Leila", "Omar",
]
LAST_NAMES = ["Rahman", "Hossain", "Akter", "Islam", "Chowdhury", "Das", "Khan", "Ahmed"]
EMAIL_DOMAINS = ["example.com", "mail.test", "school.example.org"]

STUDENT_COUNT = 20
QUEUED_COUNT = 5


def make_student_fields(idx: int) -> dict:
    """Generate reproducible contact fields for the idx-th student."""
    random.seed(idx)
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    # Every fourth student has no email, to exercise phone matching
    email = None if idx % 4 == 3 else f"{first}.{last}{idx}@{random.choice(EMAIL_DOMAINS)}".lower()
    phone = f"+880 17{random.randint(10, 99)}-{100000 + idx:06d}"
    return {"name": f"{first} {last}", "email": email, "phone": phone}


# ─── Seed function ─────────────────────────────────────────────

async def seed_workspace(db: AsyncSession) -> dict[str, uuid.UUID]:
    """
    Create the demo workspace contents.
    Returns a dict of key names → UUIDs for reference.
    """
    ids: dict[str, uuid.UUID] = {}
    workspace_id = uuid.uuid4()
    ids["workspace"] = workspace_id

    def make_student(fields: dict, *, is_deleted: bool = False) -> Student:
        student = Student(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            name=fields["name"],
            email=fields["email"],
            is_deleted=is_deleted,
        )
        db.add(student)
        db.add(StudentPhone(
            student_id=student.id,
            workspace_id=workspace_id,
            phone=fields["phone"],
            phone_digits=phone_digits(fields["phone"]),
            is_primary=True,
        ))
        return student

    # ── Call lists ─────────────────────────────────────────
    admissions = CallList(id=uuid.uuid4(), workspace_id=workspace_id, name="Spring Admissions")
    alumni = CallList(id=uuid.uuid4(), workspace_id=workspace_id, name="Alumni Outreach")
    db.add_all([admissions, alumni])
    ids["admissions"] = admissions.id
    ids["alumni"] = alumni.id

    # ── Students ───────────────────────────────────────────
    students = [make_student(make_student_fields(i)) for i in range(STUDENT_COUNT)]
    deleted = make_student(
        {"name": "Former Student", "email": "former@example.com", "phone": "+880 1799-000000"},
        is_deleted=True,
    )
    ids["deleted_student"] = deleted.id
    await db.flush()

    # ── Queue the first few on the admissions list ─────────
    for priority, student in enumerate(students[:QUEUED_COUNT]):
        db.add(CallListItem(
            call_list_id=admissions.id,
            student_id=student.id,
            state="QUEUED",
            priority=priority,
        ))

    await db.flush()

    print("Seeded workspace:")
    print(f"  Workspace:   {workspace_id}")
    print(f"  Call lists:  Spring Admissions ({admissions.id}), Alumni Outreach ({alumni.id})")
    print(f"  Students:    {len(students)} (+1 deleted)")
    print(f"  Queued:      {QUEUED_COUNT} on Spring Admissions")

    return ids


# ─── CLI entry point ───────────────────────────────────────────

async def main():
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        async with session.begin():
            await seed_workspace(session)

    await engine.dispose()
    print("\nSeed complete.")


if __name__ == "__main__":
    asyncio.run(main())
