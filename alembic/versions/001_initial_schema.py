"""Initial schema: students, call lists, import runs.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── Extensions ──────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── Students ────────────────────────────────────────────
    op.create_table(
        "students",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(320), nullable=True,
                  comment="Lowercased, trimmed email."),
        sa.Column("is_deleted", sa.Boolean, nullable=False,
                  server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_students_workspace_id", "students", ["workspace_id"])
    op.create_index("idx_students_workspace_email", "students", ["workspace_id", "email"])

    # ── Student phones ──────────────────────────────────────
    op.create_table(
        "student_phones",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("student_id", UUID(as_uuid=True),
                  sa.ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False),
        sa.Column("phone", sa.String(50), nullable=False),
        sa.Column("phone_digits", sa.String(50), nullable=False),
        sa.Column("is_primary", sa.Boolean, nullable=False,
                  server_default=sa.false()),
    )
    op.create_index("ix_student_phones_student_id", "student_phones", ["student_id"])
    op.create_index(
        "idx_student_phones_workspace_digits",
        "student_phones",
        ["workspace_id", "phone_digits"],
    )

    # ── Call lists ──────────────────────────────────────────
    op.create_table(
        "call_lists",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_call_lists_workspace_id", "call_lists", ["workspace_id"])

    op.create_table(
        "call_list_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text("uuid_generate_v4()")),
        sa.Column("call_list_id", UUID(as_uuid=True),
                  sa.ForeignKey("call_lists.id", ondelete="CASCADE"), nullable=False),
        sa.Column("student_id", UUID(as_uuid=True),
                  sa.ForeignKey("students.id", ondelete="CASCADE"), nullable=False),
        sa.Column("state", sa.String(20), nullable=False,
                  server_default="QUEUED"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("call_list_id", "student_id",
                            name="uq_call_list_items_pair"),
    )

    # ── Import runs ─────────────────────────────────────────
    op.create_table(
        "import_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True,
                  comment="Same value as the import session id."),
        sa.Column("workspace_id", UUID(as_uuid=True), nullable=False),
        sa.Column("call_list_id", UUID(as_uuid=True),
                  sa.ForeignKey("call_lists.id", ondelete="CASCADE"), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False,
                  server_default="in_progress"),
        sa.Column("total_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stats", JSONB, nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column("options", JSONB, nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True),
                  nullable=False, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_import_runs_call_list_id", "import_runs", ["call_list_id"])


def downgrade() -> None:
    op.drop_table("import_runs")
    op.drop_table("call_list_items")
    op.drop_table("call_lists")
    op.drop_table("student_phones")
    op.drop_table("students")
