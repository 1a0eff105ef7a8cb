"""Chorus schema - users, anonymous sessions, credit reservations, projects,
chats, messages, documents

Revision ID: 0001
Revises:
Create Date: 2026-10-16
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # Enable pgcrypto extension for gen_random_uuid()
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # ==========================================================================
    # users table
    # ==========================================================================
    op.create_table(
        "users",
        sa.Column(
            "id",
            sa.UUID(),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("credits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("reserved_credits", sa.Integer(), server_default="0", nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        sa.CheckConstraint("reserved_credits >= 0", name="ck_users_reserved_non_negative"),
    )

    # ==========================================================================
    # anonymous_sessions table
    # ==========================================================================
    op.create_table(
        "anonymous_sessions",
        sa.Column(
            "id",
            sa.UUID(),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("remaining_credits", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    # ==========================================================================
    # credit_reservations table
    # ==========================================================================
    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("chat_id", sa.UUID(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("budget", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), server_default="active", nullable=False),
        sa.Column("actual_amount", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("settled_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint("amount >= 0", name="ck_credit_reservations_amount"),
        sa.CheckConstraint(
            "status IN ('active', 'finalized', 'released')",
            name="ck_credit_reservations_status",
        ),
    )
    # Sweeper scans active reservations by age
    op.create_index(
        "ix_credit_reservations_status_created",
        "credit_reservations",
        ["status", "created_at"],
    )

    # ==========================================================================
    # projects table
    # ==========================================================================
    op.create_table(
        "projects",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("instructions", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    # ==========================================================================
    # chats table
    # ==========================================================================
    op.create_table(
        "chats",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("visibility", sa.Text(), server_default="private", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
        sa.CheckConstraint("visibility IN ('private', 'public')", name="ck_chats_visibility"),
    )

    # ==========================================================================
    # messages table
    # ==========================================================================
    op.create_table(
        "messages",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("chat_id", sa.UUID(), nullable=False),
        # Not a foreign key: dangling parents are reported by the thread resolver
        sa.Column("parent_message_id", sa.UUID(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column(
            "parts",
            postgresql.JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("selected_model", sa.Text(), nullable=True),
        sa.Column("is_partial", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("usage", postgresql.JSONB(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "role IN ('user', 'assistant', 'system', 'tool')",
            name="ck_messages_role",
        ),
        sa.CheckConstraint(
            "(is_partial = false OR role = 'assistant')",
            name="ck_messages_partial_only_assistant",
        ),
    )
    op.create_index("ix_messages_chat_created", "messages", ["chat_id", "created_at"])
    # Sweeper: partial assistant placeholders by age
    op.execute("""
        CREATE INDEX ix_messages_partial_created
        ON messages (created_at)
        WHERE is_partial = true
    """)

    # ==========================================================================
    # documents table (one row per version)
    # ==========================================================================
    op.create_table(
        "documents",
        sa.Column("id", sa.UUID(), nullable=False),
        _timestamp("created_at"),
        sa.Column("user_id", sa.UUID(), nullable=True),
        sa.Column("message_id", sa.UUID(), nullable=True),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", "created_at", name="pk_documents"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.CheckConstraint("kind IN ('text', 'code', 'sheet')", name="ck_documents_kind"),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_table("documents")
    op.execute("DROP INDEX IF EXISTS ix_messages_partial_created")
    op.drop_index("ix_messages_chat_created", table_name="messages")
    op.drop_table("messages")
    op.drop_table("chats")
    op.drop_table("projects")
    op.drop_index("ix_credit_reservations_status_created", table_name="credit_reservations")
    op.drop_table("credit_reservations")
    op.drop_table("anonymous_sessions")
    op.drop_table("users")
