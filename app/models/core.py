"""
Core data models: Students, their phones, Call Lists and Call List Items.

A student belongs to exactly one workspace. Students are never hard
deleted; ``is_deleted`` hides them from matching.

A call list is the target collection of an import. Attaching a student
to a call list means creating a call list item for the pair; the pair
is unique, so attaching twice is a no-op.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.core.database import Base
from app.services.normalization import normalize_whitespace


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Student(Base):
    """
    A contact that can be called.

    ``email`` is stored lowercased so that matching by email is a plain
    equality lookup. ``name`` is stored trimmed with inner whitespace
    collapsed, which the name lookup relies on.
    """

    __tablename__ = "students"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(
        String(320),
        nullable=True,
        comment="Lowercased, trimmed email.",
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    phones: Mapped[list["StudentPhone"]] = relationship(
        "StudentPhone",
        back_populates="student",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_students_workspace_email", "workspace_id", "email"),
    )

    def __repr__(self) -> str:
        return f"<Student {self.name} {self.email or ''}>"

    @validates("name")
    def _collapse_name(self, _key: str, value: str) -> str:
        return normalize_whitespace(value) if value else value


class StudentPhone(Base):
    """
    A phone number of a student.

    ``phone`` keeps the value as it was entered; ``phone_digits`` holds
    the digits only and is what phone matching compares against.
    """

    __tablename__ = "student_phones"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    phone_digits: Mapped[str] = mapped_column(String(50), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    student: Mapped["Student"] = relationship("Student", back_populates="phones")

    __table_args__ = (
        Index("idx_student_phones_workspace_digits", "workspace_id", "phone_digits"),
    )


class CallList(Base):
    """A list of students to call, owned by a workspace."""

    __tablename__ = "call_lists"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CallList {self.name}>"


class CallListItem(Base):
    """Membership of a student in a call list."""

    __tablename__ = "call_list_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    call_list_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("call_lists.id", ondelete="CASCADE"),
        nullable=False,
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
    )
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="QUEUED")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("call_list_id", "student_id", name="uq_call_list_items_pair"),
    )
