"""Database module for Chorus.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from chorus.db.engine import create_db_engine, get_engine
from chorus.db.models import (
    AnonymousSession,
    Base,
    Chat,
    ChatVisibility,
    CreditReservation,
    Document,
    DocumentKind,
    Message,
    Project,
    ReservationStatus,
    User,
)
from chorus.db.session import get_db, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Base
    "Base",
    # Enums
    "ChatVisibility",
    "DocumentKind",
    "ReservationStatus",
    # Models
    "User",
    "AnonymousSession",
    "CreditReservation",
    "Project",
    "Chat",
    "Message",
    "Document",
]
