from typing import List

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError

from circulation.api.v1.dependencies import CurrentUser, DbSession, StaffUser
from circulation.core.exceptions import InvalidStateError
from circulation.schemas.book import (
    BookCreate,
    BookUpdate,
    BookResponse,
    BookListResponse,
    BorrowCheckResponse,
)
from circulation.schemas.reservation import ReservationResponse
from circulation.services.book import (
    create_book,
    get_books,
    get_book_by_id,
    update_book,
    delete_book,
    is_book_borrowed,
    calculate_pages,
)
from circulation.services.reservation import list_pending_reservations

router = APIRouter(prefix="/books", tags=["Books"])


@router.get(
    "",
    response_model=BookListResponse,
    summary="List books",
    description="Paginated catalog with filters for category, author, availability, and free-text search.",
)
async def list_books(
    current_user: CurrentUser,
    db: DbSession,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    category: str | None = None,
    author: str | None = None,
    available: bool | None = None,
    search: str | None = None,
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    books, total = await get_books(
        db, page=page, size=size, category=category, author=author,
        available=available, search=search, sort_by=sort_by, sort_order=sort_order,
    )
    return BookListResponse(
        items=books, total=total, page=page, size=size, pages=calculate_pages(total, size)
    )


@router.post(
    "",
    response_model=BookResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a book",
    description="Add a catalog entry. All copies start out available. Requires Librarian or Admin role.",
    responses={400: {"description": "Duplicate ISBN"}},
)
async def create_book_endpoint(data: BookCreate, current_user: StaffUser, db: DbSession):
    try:
        return await create_book(db, data.model_dump(), current_user.id)
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A book with this ISBN already exists",
        )


@router.get("/{book_id}", response_model=BookResponse, summary="Get book details")
async def get_book_endpoint(book_id: str, current_user: CurrentUser, db: DbSession):
    book = await get_book_by_id(db, book_id)
    if not book:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Book not found")
    return book


@router.get(
    "/{book_id}/borrowed",
    response_model=BorrowCheckResponse,
    summary="Is any copy on loan",
)
async def borrow_check_endpoint(book_id: str, current_user: CurrentUser, db: DbSession):
    if not await get_book_by_id(db, book_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Book not found")
    return BorrowCheckResponse(book_id=book_id, is_borrowed=await is_book_borrowed(db, book_id))


@router.get(
    "/{book_id}/reservations",
    response_model=List[ReservationResponse],
    summary="Reservation queue",
    description="Pending reservations in the order they will be served. Requires Librarian or Admin role.",
)
async def reservation_queue_endpoint(book_id: str, current_user: StaffUser, db: DbSession):
    if not await get_book_by_id(db, book_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Book not found")
    return await list_pending_reservations(db, book_id)


@router.put(
    "/{book_id}",
    response_model=BookResponse,
    summary="Update a book",
    description="Changing `quantity` shifts `available_quantity` by the same amount.",
)
async def update_book_endpoint(
    book_id: str, data: BookUpdate, current_user: StaffUser, db: DbSession
):
    try:
        book = await update_book(db, book_id, data.model_dump(exclude_unset=True), current_user.id)
    except InvalidStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not book:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Book not found")
    return book


@router.delete(
    "/{book_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a book",
    description="Only books that never circulated can be deleted.",
)
async def delete_book_endpoint(book_id: str, current_user: StaffUser, db: DbSession):
    try:
        deleted = await delete_book(db, book_id, current_user.id)
    except InvalidStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Book not found")
