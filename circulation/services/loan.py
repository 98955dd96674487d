import math
from datetime import datetime, timedelta
from typing import Optional, List, Tuple, Dict

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from circulation.core.config import settings
from circulation.core.exceptions import InvalidStateError, NotFoundError
from circulation.core.logging import get_logger
from circulation.core.timeutils import as_utc, utcnow
from circulation.db.models import Loan, LoanStatus, LoanStatusHistory, Book, User
from circulation.db.session import supports_row_locks
from circulation.services.reservation import (
    complete_reservation_for_borrow,
    fulfill_next_reservation,
)

logger = get_logger("services.loan")

ACTIVE_STATUSES = (LoanStatus.BORROWED, LoanStatus.OVERDUE)

VALID_TRANSITIONS: Dict[LoanStatus, List[LoanStatus]] = {
    LoanStatus.BORROWED: [LoanStatus.OVERDUE, LoanStatus.RETURNED],
    LoanStatus.OVERDUE: [LoanStatus.RETURNED],
}


def _record_status_change(
    db: AsyncSession,
    loan: Loan,
    previous: Optional[LoanStatus],
    actor_id: Optional[str],
    notes: Optional[str] = None,
) -> None:
    db.add(
        LoanStatusHistory(
            loan_id=loan.id,
            previous_status=previous,
            new_status=loan.status,
            changed_by=actor_id,
            notes=notes,
        )
    )


async def borrow_book(
    db: AsyncSession,
    user_id: str,
    book_id: str,
    actor_id: Optional[str] = None,
    due_date: Optional[datetime] = None,
) -> Loan:
    """Check a copy out to a patron.

    Blocked accounts cannot borrow. If the patron was waiting in the
    reservation queue for this book, their reservation is fulfilled.
    """
    user_result = await db.execute(select(User).where(User.id == user_id))
    user = user_result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    if not user.is_active:
        raise InvalidStateError("User account is inactive")
    if user.is_blocked:
        raise InvalidStateError(f"Account is blocked: {user.block_reason}")

    count_result = await db.execute(
        select(func.count())
        .select_from(Loan)
        .where(Loan.user_id == user_id, Loan.status.in_(ACTIVE_STATUSES))
    )
    if count_result.scalar() >= settings.MAX_ACTIVE_LOANS:
        raise InvalidStateError(f"Maximum of {settings.MAX_ACTIVE_LOANS} active loans reached")

    book_result = await db.execute(select(Book).where(Book.id == book_id))
    book = book_result.scalar_one_or_none()
    if not book:
        raise NotFoundError("Book not found")
    if book.available_quantity <= 0:
        raise InvalidStateError("No available copies of this book; place a reservation instead")

    now = utcnow()
    if due_date is not None:
        due_date = as_utc(due_date)
        if due_date <= now:
            raise InvalidStateError("Due date must be in the future")

    book.available_quantity -= 1

    loan = Loan(
        book_id=book_id,
        user_id=user_id,
        borrow_date=now,
        due_date=due_date or now + timedelta(days=settings.DEFAULT_LOAN_DAYS),
        status=LoanStatus.BORROWED,
    )
    db.add(loan)
    await db.flush()

    _record_status_change(db, loan, None, actor_id or user_id, "Book borrowed")
    await complete_reservation_for_borrow(db, user_id, book_id)
    await db.flush()
    await db.refresh(loan)

    logger.info(f"Loan created: id={loan.id} user={user_id} book={book_id}")
    return loan


async def return_loan(
    db: AsyncSession,
    loan_id: str,
    return_date: Optional[datetime] = None,
    actor_id: Optional[str] = None,
) -> Loan:
    """Process a returned copy and offer it to the next reservation holder.

    Runs inside the caller's transaction; nothing is committed here.
    """
    result = await db.execute(select(Loan).where(Loan.id == loan_id))
    loan = result.scalar_one_or_none()
    if not loan:
        raise NotFoundError("Loan not found")
    if LoanStatus.RETURNED not in VALID_TRANSITIONS.get(loan.status, []):
        raise InvalidStateError(f"Cannot return a loan in '{loan.status.value}' status")

    previous = loan.status
    loan.status = LoanStatus.RETURNED
    loan.return_date = as_utc(return_date) if return_date else utcnow()

    book_result = await db.execute(select(Book).where(Book.id == loan.book_id))
    book = book_result.scalar_one_or_none()
    if not book:
        raise NotFoundError("Book not found")
    copy_restored = book.available_quantity < book.quantity
    if copy_restored:
        book.available_quantity += 1
    else:
        logger.warning(
            f"Return would exceed quantity; availability left unchanged: book={book.id}"
        )

    late = as_utc(loan.return_date) > as_utc(loan.due_date)
    _record_status_change(
        db, loan, previous, actor_id, "Returned late" if late else "Returned"
    )
    await db.flush()

    if copy_restored:
        await fulfill_next_reservation(db, loan.book_id)
    await db.refresh(loan)

    logger.info(
        f"Loan returned: id={loan_id} {previous.value} -> returned by actor={actor_id}"
    )
    return loan


async def find_overdue_loans(
    db: AsyncSession, as_of: datetime, lock: bool = False
) -> List[Loan]:
    """Borrowed, unreturned loans whose due date has passed."""
    query = select(Loan).where(
        Loan.status == LoanStatus.BORROWED,
        Loan.due_date < as_of,
        Loan.return_date.is_(None),
    )
    if lock and supports_row_locks(db):
        query = query.with_for_update(of=Loan)
    result = await db.execute(query)
    return list(result.scalars().all())


async def find_reengageable_overdue_loans(
    db: AsyncSession, lock: bool = False
) -> List[Loan]:
    """Overdue, unreturned loans whose owner is currently not blocked.

    Catches accounts that were unblocked without the loan being resolved.
    """
    query = (
        select(Loan)
        .join(User, Loan.user_id == User.id)
        .where(
            Loan.status == LoanStatus.OVERDUE,
            Loan.return_date.is_(None),
            User.is_blocked.is_(False),
        )
    )
    if lock and supports_row_locks(db):
        query = query.with_for_update(of=Loan)
    result = await db.execute(query)
    return list(result.scalars().all())


async def find_loans_due_soon(
    db: AsyncSession, as_of: datetime, within: timedelta
) -> List[Loan]:
    result = await db.execute(
        select(Loan).where(
            Loan.status == LoanStatus.BORROWED,
            Loan.return_date.is_(None),
            Loan.due_date >= as_of,
            Loan.due_date < as_of + within,
        )
    )
    return list(result.scalars().all())


async def mark_loan_overdue(
    db: AsyncSession, loan_id: str, as_of: Optional[datetime] = None
) -> bool:
    """Move a borrowed loan to overdue. Returns False if it already was overdue."""
    loan = await get_loan_by_id(db, loan_id)
    if not loan:
        raise NotFoundError("Loan not found")
    if loan.status == LoanStatus.OVERDUE:
        return False
    if LoanStatus.OVERDUE not in VALID_TRANSITIONS.get(loan.status, []):
        raise InvalidStateError(f"Cannot mark a '{loan.status.value}' loan overdue")

    as_of = as_of or utcnow()
    days = max((as_of - as_utc(loan.due_date)).days, 0)
    loan.status = LoanStatus.OVERDUE
    _record_status_change(
        db,
        loan,
        LoanStatus.BORROWED,
        None,
        f"Automatically marked overdue ({days} days past due)",
    )
    await db.flush()

    logger.info(f"Loan marked overdue: id={loan.id} user={loan.user_id} days_overdue={days}")
    return True


async def get_loans(
    db: AsyncSession,
    page: int = 1,
    size: int = 20,
    user_id: Optional[str] = None,
    book_id: Optional[str] = None,
    status: Optional[LoanStatus] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> Tuple[List[Loan], int]:
    """List loans with filtering, sorting, and pagination."""
    query = select(Loan)
    count_query = select(func.count()).select_from(Loan)

    if user_id:
        query = query.where(Loan.user_id == user_id)
        count_query = count_query.where(Loan.user_id == user_id)
    if book_id:
        query = query.where(Loan.book_id == book_id)
        count_query = count_query.where(Loan.book_id == book_id)
    if status:
        query = query.where(Loan.status == status)
        count_query = count_query.where(Loan.status == status)

    sort_column = getattr(Loan, sort_by, Loan.created_at)
    if sort_order == "asc":
        query = query.order_by(sort_column.asc())
    else:
        query = query.order_by(sort_column.desc())

    query = query.offset((page - 1) * size).limit(size)

    result = await db.execute(query)
    loans = list(result.scalars().unique().all())

    total_result = await db.execute(count_query)
    total = total_result.scalar()

    return loans, total


async def get_loan_by_id(db: AsyncSession, loan_id: str) -> Optional[Loan]:
    result = await db.execute(select(Loan).where(Loan.id == loan_id))
    return result.scalar_one_or_none()


async def get_borrowed_books(db: AsyncSession, user_id: str) -> List[Book]:
    """Books a user currently holds, derived from their unreturned loans."""
    result = await db.execute(
        select(Book)
        .join(Loan, Loan.book_id == Book.id)
        .where(Loan.user_id == user_id, Loan.status.in_(ACTIVE_STATUSES))
        .order_by(Loan.borrow_date.asc())
    )
    return list(result.scalars().unique().all())


def calculate_pages(total: int, size: int) -> int:
    return math.ceil(total / size) if size > 0 else 0
