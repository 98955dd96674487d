"""
Reservation queue and copy hand-off.

Reservations for a book form a FIFO queue ordered by ``priority`` (lower is
served first, ``reservation_date`` breaks ties). When a copy comes back the
next holder who has not been told yet receives a ``book_available``
notification and a hold window. The copy itself is not set aside: the holder
still has to borrow it through the normal borrow path.
"""
import math
from datetime import datetime, timedelta
from typing import Optional, List, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from circulation.core.config import settings
from circulation.core.exceptions import InvalidStateError, NotFoundError
from circulation.core.logging import get_logger
from circulation.core.timeutils import utcnow
from circulation.db.models import (
    Book,
    NotificationType,
    Reservation,
    ReservationStatus,
    User,
    UserRole,
)
from circulation.services.notification import create_notification

logger = get_logger("services.reservation")


async def list_pending_reservations(db: AsyncSession, book_id: str) -> List[Reservation]:
    """Pending reservations for a book in the order they will be served."""
    result = await db.execute(
        select(Reservation)
        .where(
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.PENDING,
        )
        .order_by(Reservation.priority.asc(), Reservation.reservation_date.asc())
    )
    return list(result.scalars().all())


async def next_priority(db: AsyncSession, book_id: str) -> int:
    """Priority for a new reservation: one past the last pending one.

    Using the max instead of the pending count keeps priorities unique after
    a reservation in the middle of the queue was cancelled.
    """
    result = await db.execute(
        select(func.max(Reservation.priority)).where(
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.PENDING,
        )
    )
    return (result.scalar() or 0) + 1


async def create_reservation(db: AsyncSession, user_id: str, book_id: str) -> Reservation:
    """Queue a patron for a book that currently has no available copy."""
    user_result = await db.execute(select(User).where(User.id == user_id))
    user = user_result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    if user.is_blocked:
        raise InvalidStateError(f"Account is blocked: {user.block_reason}")

    book_result = await db.execute(select(Book).where(Book.id == book_id))
    book = book_result.scalar_one_or_none()
    if not book:
        raise NotFoundError("Book not found")
    if book.available_quantity > 0:
        raise InvalidStateError("Book has available copies; borrow it instead")

    existing = await db.execute(
        select(Reservation).where(
            Reservation.book_id == book_id,
            Reservation.user_id == user_id,
            Reservation.status == ReservationStatus.PENDING,
        )
    )
    if existing.scalar_one_or_none():
        raise InvalidStateError("You already have a pending reservation for this book")

    reservation = Reservation(
        book_id=book_id,
        user_id=user_id,
        reservation_date=utcnow(),
        priority=await next_priority(db, book_id),
        status=ReservationStatus.PENDING,
        notification_sent=False,
    )
    db.add(reservation)
    await db.flush()
    await db.refresh(reservation)

    logger.info(
        f"Reservation created: id={reservation.id} user={user_id} book={book_id} "
        f"priority={reservation.priority}"
    )
    return reservation


async def fulfill_next_reservation(
    db: AsyncSession, book_id: str, now: Optional[datetime] = None
) -> Optional[Reservation]:
    """Offer a freed copy to the first pending holder not yet notified.

    The reservation stays pending until the holder borrows the book or the
    hold expires. Returns None when nobody is waiting, in which case the copy
    simply stays available for ordinary borrowing.
    """
    now = now or utcnow()
    pending = await list_pending_reservations(db, book_id)
    candidates = [r for r in pending if not r.notification_sent]
    if not candidates:
        return None

    reservation = candidates[0]
    book_result = await db.execute(select(Book.title).where(Book.id == book_id))
    title = book_result.scalar_one_or_none() or book_id

    await create_notification(
        db,
        user_id=reservation.user_id,
        title="Reserved book available",
        message=(
            f"'{title}' is available for you. Please borrow it within "
            f"{settings.RESERVATION_HOLD_DAYS} days."
        ),
        notification_type=NotificationType.BOOK_AVAILABLE,
    )
    reservation.notification_sent = True
    reservation.due_date = now + timedelta(days=settings.RESERVATION_HOLD_DAYS)
    await db.flush()

    logger.info(
        f"Reservation handed off: id={reservation.id} user={reservation.user_id} "
        f"book={book_id} priority={reservation.priority}"
    )
    return reservation


async def complete_reservation_for_borrow(
    db: AsyncSession, user_id: str, book_id: str
) -> Optional[Reservation]:
    """Mark the borrower's pending reservation for this book fulfilled, if any."""
    result = await db.execute(
        select(Reservation).where(
            Reservation.book_id == book_id,
            Reservation.user_id == user_id,
            Reservation.status == ReservationStatus.PENDING,
        )
    )
    reservation = result.scalar_one_or_none()
    if reservation:
        reservation.status = ReservationStatus.FULFILLED
        await db.flush()
        logger.info(f"Reservation fulfilled: id={reservation.id} user={user_id} book={book_id}")
    return reservation


async def cancel_reservation(
    db: AsyncSession, reservation_id: str, actor: User
) -> Reservation:
    """Cancel a pending reservation. A holder who gives up a hold passes it to the next in line."""
    reservation = await get_reservation_by_id(db, reservation_id)
    if not reservation:
        raise NotFoundError("Reservation not found")

    if actor.role == UserRole.MEMBER and reservation.user_id != actor.id:
        raise PermissionError("You can only cancel your own reservations")
    if reservation.status != ReservationStatus.PENDING:
        raise InvalidStateError(
            f"Cannot cancel a reservation in '{reservation.status.value}' status"
        )

    reservation.status = ReservationStatus.CANCELLED
    await db.flush()
    logger.info(f"Reservation cancelled: id={reservation_id} by actor={actor.id}")

    if reservation.notification_sent and await has_unclaimed_copy(db, reservation.book_id):
        await fulfill_next_reservation(db, reservation.book_id)
    return reservation


async def expire_reservations(db: AsyncSession, as_of: datetime) -> List[Reservation]:
    """Expire notified holds whose window has passed and hand their copy to the next holder."""
    result = await db.execute(
        select(Reservation).where(
            Reservation.status == ReservationStatus.PENDING,
            Reservation.notification_sent.is_(True),
            Reservation.due_date.is_not(None),
            Reservation.due_date < as_of,
        )
    )
    expired = list(result.scalars().all())

    for reservation in expired:
        reservation.status = ReservationStatus.EXPIRED
        logger.info(
            f"Reservation hold expired: id={reservation.id} user={reservation.user_id} "
            f"book={reservation.book_id}"
        )
    await db.flush()

    for reservation in expired:
        if await has_unclaimed_copy(db, reservation.book_id):
            await fulfill_next_reservation(db, reservation.book_id, now=as_of)
    return expired


async def has_unclaimed_copy(db: AsyncSession, book_id: str) -> bool:
    """True if an available copy is not already promised to a notified holder."""
    available = await db.execute(select(Book.available_quantity).where(Book.id == book_id))
    notified = await db.execute(
        select(func.count())
        .select_from(Reservation)
        .where(
            Reservation.book_id == book_id,
            Reservation.status == ReservationStatus.PENDING,
            Reservation.notification_sent.is_(True),
        )
    )
    return (available.scalar() or 0) > notified.scalar()


async def get_reservation_by_id(db: AsyncSession, reservation_id: str) -> Optional[Reservation]:
    result = await db.execute(select(Reservation).where(Reservation.id == reservation_id))
    return result.scalar_one_or_none()


async def get_reservations(
    db: AsyncSession,
    page: int = 1,
    size: int = 20,
    user_id: Optional[str] = None,
    book_id: Optional[str] = None,
    status: Optional[ReservationStatus] = None,
) -> Tuple[List[Reservation], int]:
    query = select(Reservation)
    count_query = select(func.count()).select_from(Reservation)

    if user_id:
        query = query.where(Reservation.user_id == user_id)
        count_query = count_query.where(Reservation.user_id == user_id)
    if book_id:
        query = query.where(Reservation.book_id == book_id)
        count_query = count_query.where(Reservation.book_id == book_id)
    if status:
        query = query.where(Reservation.status == status)
        count_query = count_query.where(Reservation.status == status)

    query = query.order_by(
        Reservation.reservation_date.desc()
    ).offset((page - 1) * size).limit(size)

    result = await db.execute(query)
    reservations = list(result.scalars().all())

    total_result = await db.execute(count_query)
    total = total_result.scalar()

    return reservations, total


def calculate_pages(total: int, size: int) -> int:
    return math.ceil(total / size) if size > 0 else 0
