from typing import Dict

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from circulation.core.logging import get_logger
from circulation.db.models import (
    Book,
    Loan,
    LoanStatus,
    Notification,
    Reservation,
    ReservationStatus,
    User,
)

logger = get_logger("services.report")


async def _scalar(db: AsyncSession, query) -> int:
    result = await db.execute(query)
    return result.scalar() or 0


async def get_circulation_summary(db: AsyncSession) -> Dict[str, int]:
    """Headline counts for the librarian dashboard."""
    summary = {
        "total_titles": await _scalar(db, select(func.count()).select_from(Book)),
        "total_copies": await _scalar(db, select(func.sum(Book.quantity))),
        "available_copies": await _scalar(db, select(func.sum(Book.available_quantity))),
        "active_loans": await _scalar(
            db,
            select(func.count()).select_from(Loan).where(
                Loan.status.in_((LoanStatus.BORROWED, LoanStatus.OVERDUE))
            ),
        ),
        "overdue_loans": await _scalar(
            db, select(func.count()).select_from(Loan).where(Loan.status == LoanStatus.OVERDUE)
        ),
        "returned_loans": await _scalar(
            db, select(func.count()).select_from(Loan).where(Loan.status == LoanStatus.RETURNED)
        ),
        "blocked_accounts": await _scalar(
            db, select(func.count()).select_from(User).where(User.is_blocked.is_(True))
        ),
        "pending_reservations": await _scalar(
            db,
            select(func.count()).select_from(Reservation).where(
                Reservation.status == ReservationStatus.PENDING
            ),
        ),
        "unread_notifications": await _scalar(
            db, select(func.count()).select_from(Notification).where(Notification.read.is_(False))
        ),
    }
    logger.debug(f"Circulation summary computed: {summary}")
    return summary
