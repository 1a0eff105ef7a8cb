"""Anonymous caller allowance.

Anonymous callers have no reservation split: credits are decremented when a
turn is admitted and incremented back if the turn fails. The decrement is
a single conditional update, so two concurrent turns cannot overdraw the
counter.
"""

from uuid import UUID, uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from chorus.db.models import AnonymousSession, utcnow
from chorus.db.session import transaction
from chorus.errors import ApiError, ApiErrorCode
from chorus.logging import get_logger

logger = get_logger(__name__)


def get_or_create_session(
    db: Session, session_id: UUID | None, initial_credits: int
) -> AnonymousSession:
    """Load the caller's session, creating a fresh allowance when absent."""
    if session_id is not None:
        existing = db.get(AnonymousSession, session_id)
        if existing is not None:
            return existing

    session = AnonymousSession(id=session_id or uuid4(), remaining_credits=initial_credits)
    with transaction(db):
        db.add(session)
    logger.info("anonymous_session_created", anonymous_session_id=str(session.id))
    return session


def consume_credits(db: Session, session_id: UUID, cost: int) -> None:
    """Take `cost` credits from the allowance.

    Raises:
        ApiError(E_ANONYMOUS_LIMIT_EXCEEDED): Remaining credits below cost.
    """
    with transaction(db):
        result = db.execute(
            update(AnonymousSession)
            .where(
                AnonymousSession.id == session_id,
                AnonymousSession.remaining_credits >= cost,
            )
            .values(
                remaining_credits=AnonymousSession.remaining_credits - cost,
                updated_at=utcnow(),
            )
        )
    if result.rowcount != 1:
        logger.info("anonymous_limit_exceeded", cost=cost)
        raise ApiError(
            ApiErrorCode.E_ANONYMOUS_LIMIT_EXCEEDED,
            "You've used all your free credits. Sign in to keep chatting.",
        )


def refund_credits(db: Session, session_id: UUID, amount: int) -> None:
    """Give back credits taken by a turn that failed."""
    if amount <= 0:
        return
    with transaction(db):
        db.execute(
            update(AnonymousSession)
            .where(AnonymousSession.id == session_id)
            .values(
                remaining_credits=AnonymousSession.remaining_credits + amount,
                updated_at=utcnow(),
            )
        )
    logger.info("anonymous_credits_refunded", amount=amount)
