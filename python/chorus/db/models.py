"""SQLAlchemy ORM models for Chorus.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Column types are portable (Uuid, timezone-aware DateTime, JSON) so the
schema runs on PostgreSQL in production and SQLite in tests.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite drops tzinfo on round trip; PostgreSQL keeps it.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class ReservationStatus(str, PyEnum):
    """Credit reservation lifecycle.

    active → finalized (actual cost debited) or active → released (nothing
    debited). Both terminal states are final.
    """

    active = "active"
    finalized = "finalized"
    released = "released"


class ChatVisibility(str, PyEnum):
    private = "private"
    public = "public"


class DocumentKind(str, PyEnum):
    text = "text"
    code = "code"
    sheet = "sheet"


# =============================================================================
# Accounts
# =============================================================================


class User(Base):
    """User account with a spendable credit balance.

    available credits = credits - reserved_credits
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint("reserved_credits >= 0", name="ck_users_reserved_non_negative"),
    )


class AnonymousSession(Base):
    """Anonymous caller allowance; a plain counter with no reservations."""

    __tablename__ = "anonymous_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    remaining_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class CreditReservation(Base):
    """Credits withheld from a user for the duration of one chat turn.

    Attributes:
        amount: Credits held while the turn runs.
        budget: The user's spendable balance when the hold was taken.
        actual_amount: Debited cost, set only when finalized.
    """

    __tablename__ = "credit_reservations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    chat_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    budget: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=ReservationStatus.active.value
    )
    actual_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_credit_reservations_amount"),
        CheckConstraint(
            "status IN ('active', 'finalized', 'released')",
            name="ck_credit_reservations_status",
        ),
        Index("ix_credit_reservations_status_created", "status", "created_at"),
    )


# =============================================================================
# Chats
# =============================================================================


class Project(Base):
    """A grouping of chats that share custom instructions."""

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Chat(Base):
    __tablename__ = "chats"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    visibility: Mapped[str] = mapped_column(
        Text, nullable=False, default=ChatVisibility.private.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("visibility IN ('private', 'public')", name="ck_chats_visibility"),
    )


class Message(Base):
    """A node in a chat's message tree.

    parent_message_id is not a foreign key; dangling links are reported by
    the thread resolver.
    """

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    chat_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    parent_message_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    parts: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    selected_model: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    usage: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'assistant', 'system', 'tool')",
            name="ck_messages_role",
        ),
        CheckConstraint(
            "(is_partial = false OR role = 'assistant')",
            name="ck_messages_partial_only_assistant",
        ),
        Index("ix_messages_chat_created", "chat_id", "created_at"),
    )


class Document(Base):
    """One version of an artifact; (id, created_at) identifies the version."""

    __tablename__ = "documents"

    id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    user_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    message_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint("id", "created_at", name="pk_documents"),
        CheckConstraint("kind IN ('text', 'code', 'sheet')", name="ck_documents_kind"),
    )
