"""Credit ledger for authenticated users.

A turn holds credits with a reservation before any model call and settles
it exactly once when the turn ends:

    reserve  : credits - reserved_credits >= amount  →  reserved_credits += amount
    finalize : active → finalized, credits -= actual (never below zero),
               reserved_credits -= amount
    release  : active → released, reserved_credits -= amount

Terminal transitions are conditional updates on status='active' checked by
rowcount, so repeats and races between finalize, release and the sweeper
are no-ops on the balance.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from chorus.db.models import CreditReservation, ReservationStatus, User, utcnow
from chorus.db.session import transaction
from chorus.errors import ApiErrorCode, InsufficientBudgetError, NotFoundError
from chorus.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Reservation:
    """A held amount and the spendable balance observed when it was taken."""

    id: UUID
    user_id: UUID
    amount: int
    budget: int


def reserve_credits(
    db: Session, user_id: UUID, amount: int, chat_id: UUID | None = None
) -> Reservation:
    """Hold `amount` credits for one turn.

    Raises:
        NotFoundError(E_USER_NOT_FOUND): Unknown user.
        InsufficientBudgetError: Spendable balance below amount.
    """
    if amount < 0:
        raise ValueError("reservation amount must be non-negative")

    reservation_id = uuid4()
    with transaction(db):
        result = db.execute(
            update(User)
            .where(User.id == user_id, User.credits - User.reserved_credits >= amount)
            .values(reserved_credits=User.reserved_credits + amount)
        )
        if result.rowcount != 1:
            if db.get(User, user_id) is None:
                raise NotFoundError(ApiErrorCode.E_USER_NOT_FOUND, "User not found")
            logger.info("ledger.reserve_refused", amount=amount)
            raise InsufficientBudgetError()

        credits, reserved = db.execute(
            select(User.credits, User.reserved_credits).where(User.id == user_id)
        ).one()
        budget = credits - (reserved - amount)

        db.add(
            CreditReservation(
                id=reservation_id,
                user_id=user_id,
                chat_id=chat_id,
                amount=amount,
                budget=budget,
                status=ReservationStatus.active.value,
            )
        )

    logger.info(
        "ledger.reserved",
        reservation_id=str(reservation_id),
        amount=amount,
        budget=budget,
    )
    return Reservation(id=reservation_id, user_id=user_id, amount=amount, budget=budget)


def _close_reservation(
    db: Session,
    reservation_id: UUID,
    status: ReservationStatus,
    actual_amount: int | None,
) -> CreditReservation | None:
    """Move an active reservation to a terminal status; None if it was not active."""
    result = db.execute(
        update(CreditReservation)
        .where(
            CreditReservation.id == reservation_id,
            CreditReservation.status == ReservationStatus.active.value,
        )
        .values(status=status.value, actual_amount=actual_amount, settled_at=utcnow())
    )
    if result.rowcount != 1:
        return None
    return db.execute(
        select(CreditReservation).where(CreditReservation.id == reservation_id)
    ).scalar_one()


def finalize_reservation(db: Session, reservation: Reservation, actual_amount: int) -> bool:
    """Debit the actual cost and free the hold.

    Returns:
        True if this call settled the reservation.
    """
    actual_amount = max(0, actual_amount)
    with transaction(db):
        row = _close_reservation(
            db, reservation.id, ReservationStatus.finalized, actual_amount
        )
        if row is None:
            logger.info("ledger.settle_noop", reservation_id=str(reservation.id))
            return False
        db.execute(
            update(User)
            .where(User.id == row.user_id)
            .values(
                credits=case(
                    (User.credits >= actual_amount, User.credits - actual_amount),
                    else_=0,
                ),
                reserved_credits=User.reserved_credits - row.amount,
            )
        )

    logger.info(
        "ledger.finalized",
        reservation_id=str(reservation.id),
        amount=reservation.amount,
        actual_amount=actual_amount,
    )
    return True


def release_reservation(db: Session, reservation: Reservation | UUID) -> bool:
    """Free the hold without debiting.

    Returns:
        True if this call settled the reservation.
    """
    reservation_id = reservation.id if isinstance(reservation, Reservation) else reservation
    with transaction(db):
        row = _close_reservation(db, reservation_id, ReservationStatus.released, None)
        if row is None:
            logger.info("ledger.settle_noop", reservation_id=str(reservation_id))
            return False
        db.execute(
            update(User)
            .where(User.id == row.user_id)
            .values(reserved_credits=User.reserved_credits - row.amount)
        )

    logger.info("ledger.released", reservation_id=str(reservation_id), amount=row.amount)
    return True


def settle_reservation(
    db: Session, reservation: Reservation, actual_amount: int | None
) -> bool:
    """Single exit point for a turn's reservation.

    actual_amount=None releases (error, timeout, cancellation); otherwise the
    amount is debited.
    """
    if actual_amount is None:
        return release_reservation(db, reservation)
    return finalize_reservation(db, reservation, actual_amount)


def release_stale_reservations(db: Session, older_than: datetime) -> int:
    """Release active reservations created before `older_than`.

    Returns:
        Number of reservations released by this call.
    """
    stale_ids = db.scalars(
        select(CreditReservation.id).where(
            CreditReservation.status == ReservationStatus.active.value,
            CreditReservation.created_at < older_than,
        )
    ).all()

    released = 0
    for reservation_id in stale_ids:
        if release_reservation(db, reservation_id):
            released += 1
    return released


def stale_cutoff(max_age_s: int, now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(seconds=max_age_s)
