"""Chat, message and document persistence.

Repository functions used by the turn pipeline. All writers are safe to call
with an id that already exists (retries return the stored row), and every
function runs on a sync Session; async callers go through
run_in_threadpool.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chorus.db.models import Chat, ChatVisibility, Document, Message, Project, User, utcnow
from chorus.db.session import transaction
from chorus.logging import get_logger
from chorus.services.thread import resolve_thread

logger = get_logger(__name__)


# =============================================================================
# Users and projects
# =============================================================================


def get_user(db: Session, user_id: UUID) -> User | None:
    return db.get(User, user_id)


def get_project_instructions(db: Session, project_id: UUID, user_id: UUID) -> str | None:
    """Instructions of a project owned by user_id; None if absent or not owned."""
    project = db.get(Project, project_id)
    if project is None or project.user_id != user_id:
        return None
    return project.instructions or None


# =============================================================================
# Chats
# =============================================================================


def get_chat(db: Session, chat_id: UUID) -> Chat | None:
    return db.get(Chat, chat_id)


def save_chat(
    db: Session,
    *,
    chat_id: UUID,
    user_id: UUID,
    title: str,
    visibility: str = ChatVisibility.private.value,
    project_id: UUID | None = None,
) -> Chat:
    """Create a chat; returns the stored chat if the id already exists."""
    existing = db.get(Chat, chat_id)
    if existing is not None:
        return existing

    chat = Chat(
        id=chat_id,
        user_id=user_id,
        title=title,
        visibility=visibility,
        project_id=project_id,
    )
    try:
        with transaction(db):
            db.add(chat)
    except IntegrityError:
        stored = db.get(Chat, chat_id)
        if stored is None:
            raise
        return stored

    logger.info("chat_created", chat_id=str(chat_id), visibility=visibility)
    return chat


# =============================================================================
# Messages
# =============================================================================


def get_message_by_id(db: Session, message_id: UUID) -> Message | None:
    return db.get(Message, message_id)


def save_message(
    db: Session,
    *,
    message_id: UUID,
    chat_id: UUID,
    role: str,
    parts: list[dict],
    parent_message_id: UUID | None = None,
    selected_model: str | None = None,
    is_partial: bool = False,
    created_at: datetime | None = None,
) -> Message:
    """Insert a message; an existing id is returned unchanged (retry safe)."""
    existing = db.get(Message, message_id)
    if existing is not None:
        return existing

    now = created_at or utcnow()
    message = Message(
        id=message_id,
        chat_id=chat_id,
        role=role,
        parts=parts,
        parent_message_id=parent_message_id,
        selected_model=selected_model,
        is_partial=is_partial,
        created_at=now,
        updated_at=now,
    )
    try:
        with transaction(db):
            db.add(message)
    except IntegrityError:
        stored = db.get(Message, message_id)
        if stored is None:
            raise
        return stored
    return message


def update_message(
    db: Session,
    message_id: UUID,
    *,
    parts: list[dict],
    usage: dict | None = None,
) -> bool:
    """Overwrite a partial assistant placeholder with its final content.

    Only a message still marked partial is updated, so the final write
    happens at most once.

    Returns:
        True if the placeholder was updated.
    """
    with transaction(db):
        result = db.execute(
            update(Message)
            .where(Message.id == message_id, Message.is_partial.is_(True))
            .values(parts=parts, usage=usage, is_partial=False, updated_at=utcnow())
        )
    updated = result.rowcount == 1
    if not updated:
        logger.warning("message_update_skipped", message_id=str(message_id))
    return updated


def finalize_stale_partial_messages(db: Session, older_than: datetime) -> int:
    """Mark assistant placeholders abandoned before `older_than` as complete.

    Content already written stays as it is. Conditional on is_partial, so a
    turn that finalizes concurrently wins or loses cleanly.

    Returns:
        Number of messages flipped by this call.
    """
    with transaction(db):
        result = db.execute(
            update(Message)
            .where(
                Message.role == "assistant",
                Message.is_partial.is_(True),
                Message.created_at < older_than,
            )
            .values(is_partial=False, updated_at=utcnow())
        )
    return result.rowcount


def get_latest_message(db: Session, chat_id: UUID) -> Message | None:
    return db.scalars(
        select(Message)
        .where(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    ).first()


def get_thread_up_to_message_id(db: Session, chat_id: UUID, message_id: UUID) -> list[Message]:
    """Root-to-message path of a chat's message tree.

    Raises:
        NotFoundError(E_MESSAGE_NOT_FOUND): Broken parent link or cycle.
    """
    messages = db.scalars(select(Message).where(Message.chat_id == chat_id)).all()
    return resolve_thread(messages, message_id)


# =============================================================================
# Documents
# =============================================================================


def save_document(
    db: Session,
    *,
    document_id: UUID,
    kind: str,
    title: str,
    content: str,
    user_id: UUID | None,
    message_id: UUID | None,
) -> Document:
    """Store a new version of a document."""
    document = Document(
        id=document_id,
        created_at=utcnow(),
        kind=kind,
        title=title,
        content=content,
        user_id=user_id,
        message_id=message_id,
    )
    with transaction(db):
        db.add(document)

    logger.info(
        "document_version_saved",
        document_id=str(document_id),
        kind=kind,
        document_chars=len(content),
    )
    return document


def get_document_by_id(db: Session, document_id: UUID) -> Document | None:
    """Latest version of a document."""
    return db.scalars(
        select(Document)
        .where(Document.id == document_id)
        .order_by(Document.created_at.desc())
        .limit(1)
    ).first()
