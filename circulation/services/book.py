import math
from typing import Optional, List, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from circulation.core.exceptions import InvalidStateError
from circulation.core.logging import get_logger
from circulation.db.models import Book, Loan, LoanStatus, Reservation
from circulation.services.reservation import fulfill_next_reservation, has_unclaimed_copy

logger = get_logger("services.book")

ACTIVE_LOAN_STATUSES = (LoanStatus.BORROWED, LoanStatus.OVERDUE)


async def create_book(db: AsyncSession, data: dict, actor_id: str) -> Book:
    """Add a catalog entry. Every copy starts out available."""
    data["available_quantity"] = data.get("quantity", 1)

    book = Book(**data)
    db.add(book)
    await db.flush()
    await db.refresh(book)

    logger.info(f"Book created: id={book.id} title='{book.title}' by actor={actor_id}")
    return book


async def get_books(
    db: AsyncSession,
    page: int = 1,
    size: int = 20,
    category: Optional[str] = None,
    author: Optional[str] = None,
    available: Optional[bool] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> Tuple[List[Book], int]:
    query = select(Book)
    count_query = select(func.count()).select_from(Book)

    if category:
        query = query.where(Book.category.ilike(f"%{category}%"))
        count_query = count_query.where(Book.category.ilike(f"%{category}%"))
    if author:
        query = query.where(Book.author.ilike(f"%{author}%"))
        count_query = count_query.where(Book.author.ilike(f"%{author}%"))
    if available is True:
        query = query.where(Book.available_quantity > 0)
        count_query = count_query.where(Book.available_quantity > 0)
    elif available is False:
        query = query.where(Book.available_quantity == 0)
        count_query = count_query.where(Book.available_quantity == 0)
    if search:
        search_filter = (
            Book.title.ilike(f"%{search}%")
            | Book.author.ilike(f"%{search}%")
            | Book.isbn.ilike(f"%{search}%")
        )
        query = query.where(search_filter)
        count_query = count_query.where(search_filter)

    sort_column = getattr(Book, sort_by, Book.created_at)
    if sort_order == "asc":
        query = query.order_by(sort_column.asc())
    else:
        query = query.order_by(sort_column.desc())

    query = query.offset((page - 1) * size).limit(size)

    result = await db.execute(query)
    books = list(result.scalars().all())

    total_result = await db.execute(count_query)
    total = total_result.scalar()

    return books, total


async def get_book_by_id(db: AsyncSession, book_id: str) -> Optional[Book]:
    result = await db.execute(select(Book).where(Book.id == book_id))
    return result.scalar_one_or_none()


async def update_book(
    db: AsyncSession, book_id: str, data: dict, actor_id: str
) -> Optional[Book]:
    """Update a book. Changing quantity shifts available_quantity by the same amount.

    Added copies are offered to the reservation queue first.
    """
    book = await get_book_by_id(db, book_id)
    if not book:
        return None

    diff = 0
    if data.get("quantity") is not None:
        diff = data["quantity"] - book.quantity
        new_available = book.available_quantity + diff
        if new_available < 0:
            raise InvalidStateError("Cannot reduce quantity below the number of copies on loan")
        data["available_quantity"] = new_available

    for key, value in data.items():
        if value is not None:
            setattr(book, key, value)

    await db.flush()

    for _ in range(max(diff, 0)):
        if not await has_unclaimed_copy(db, book_id):
            break
        if await fulfill_next_reservation(db, book_id) is None:
            break

    await db.refresh(book)

    logger.info(f"Book updated: id={book_id} by actor={actor_id}")
    return book


async def delete_book(db: AsyncSession, book_id: str, actor_id: str) -> bool:
    book = await get_book_by_id(db, book_id)
    if not book:
        return False

    if await _has_circulation_history(db, book_id):
        raise InvalidStateError("Cannot delete a book with loan or reservation history")

    await db.delete(book)
    await db.flush()

    logger.info(f"Book deleted: id={book_id} by actor={actor_id}")
    return True


async def is_book_borrowed(db: AsyncSession, book_id: str) -> bool:
    """True while any copy of the book is out on an unreturned loan."""
    result = await db.execute(
        select(func.count())
        .select_from(Loan)
        .where(Loan.book_id == book_id, Loan.status.in_(ACTIVE_LOAN_STATUSES))
    )
    return result.scalar() > 0


async def _has_circulation_history(db: AsyncSession, book_id: str) -> bool:
    loans = await db.execute(
        select(func.count()).select_from(Loan).where(Loan.book_id == book_id)
    )
    if loans.scalar() > 0:
        return True
    reservations = await db.execute(
        select(func.count()).select_from(Reservation).where(Reservation.book_id == book_id)
    )
    return reservations.scalar() > 0


def calculate_pages(total: int, size: int) -> int:
    return math.ceil(total / size) if size > 0 else 0
