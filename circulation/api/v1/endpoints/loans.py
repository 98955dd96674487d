from fastapi import APIRouter, HTTPException, Query, status

from circulation.api.v1.dependencies import CurrentUser, DbSession, StaffUser
from circulation.core.exceptions import NotFoundError
from circulation.db.models import UserRole, LoanStatus
from circulation.schemas.loan import LoanCreate, LoanReturn, LoanResponse, LoanListResponse
from circulation.services.loan import (
    borrow_book,
    return_loan,
    get_loans,
    get_loan_by_id,
    calculate_pages,
)

router = APIRouter(prefix="/loans", tags=["Loans"])


@router.post(
    "",
    response_model=LoanResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Borrow a book",
    description=(
        "Check out one copy. Members borrow for themselves; staff may pass `user_id` "
        "to check a book out to a patron. Blocked accounts cannot borrow."
    ),
    responses={
        400: {"description": "No copies available, account blocked, or loan limit reached"},
        404: {"description": "Book or user not found"},
    },
)
async def borrow_endpoint(data: LoanCreate, current_user: CurrentUser, db: DbSession):
    user_id = current_user.id
    if data.user_id and data.user_id != current_user.id:
        if current_user.role == UserRole.MEMBER:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Members can only borrow for themselves",
            )
        user_id = data.user_id

    try:
        return await borrow_book(
            db, user_id=user_id, book_id=data.book_id,
            actor_id=current_user.id, due_date=data.due_date,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/my-history", response_model=LoanListResponse, summary="My loan history")
async def my_loan_history(
    current_user: CurrentUser,
    db: DbSession,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    loan_status: LoanStatus | None = Query(None, alias="status"),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    loans, total = await get_loans(
        db, page=page, size=size, user_id=current_user.id,
        status=loan_status, sort_by=sort_by, sort_order=sort_order,
    )
    return LoanListResponse(
        items=loans, total=total, page=page, size=size, pages=calculate_pages(total, size)
    )


@router.get(
    "",
    response_model=LoanListResponse,
    summary="List loans",
    description="Members see only their own loans; staff see all loans with optional filters.",
)
async def list_loans(
    current_user: CurrentUser,
    db: DbSession,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    user_id: str | None = None,
    book_id: str | None = None,
    loan_status: LoanStatus | None = Query(None, alias="status"),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    if current_user.role == UserRole.MEMBER:
        user_id = current_user.id

    loans, total = await get_loans(
        db, page=page, size=size, user_id=user_id, book_id=book_id,
        status=loan_status, sort_by=sort_by, sort_order=sort_order,
    )
    return LoanListResponse(
        items=loans, total=total, page=page, size=size, pages=calculate_pages(total, size)
    )


@router.get("/{loan_id}", response_model=LoanResponse, summary="Get loan details")
async def get_loan_endpoint(loan_id: str, current_user: CurrentUser, db: DbSession):
    loan = await get_loan_by_id(db, loan_id)
    if not loan:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loan not found")

    if current_user.role == UserRole.MEMBER and loan.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return loan


@router.post(
    "/{loan_id}/return",
    response_model=LoanResponse,
    summary="Return a book",
    description=(
        "Mark the loan returned, put the copy back into circulation and notify the "
        "next patron in the reservation queue. Requires Librarian or Admin role."
    ),
    responses={
        400: {"description": "Loan already returned"},
        404: {"description": "Loan not found"},
    },
)
async def return_endpoint(
    loan_id: str,
    current_user: StaffUser,
    db: DbSession,
    data: LoanReturn | None = None,
):
    try:
        return await return_loan(
            db, loan_id,
            return_date=data.return_date if data else None,
            actor_id=current_user.id,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
