from fastapi import APIRouter, HTTPException, Query, status

from circulation.api.v1.dependencies import CurrentUser, DbSession, StaffUser
from circulation.core.exceptions import NotFoundError
from circulation.db.models import ReservationStatus, UserRole
from circulation.schemas.reservation import (
    ReservationCreate,
    ReservationResponse,
    ReservationListResponse,
)
from circulation.services.reservation import (
    create_reservation,
    cancel_reservation,
    get_reservations,
    calculate_pages,
)

router = APIRouter(prefix="/reservations", tags=["Reservations"])


@router.post(
    "",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reserve a book",
    description=(
        "Join the waiting list for a book with no available copy. When a copy is "
        "returned the first patron in line receives a `book_available` notification."
    ),
    responses={
        400: {"description": "Copies available, duplicate reservation, or account blocked"},
        404: {"description": "Book or user not found"},
    },
)
async def create_reservation_endpoint(
    data: ReservationCreate, current_user: CurrentUser, db: DbSession
):
    user_id = current_user.id
    if data.user_id and data.user_id != current_user.id:
        if current_user.role == UserRole.MEMBER:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Members can only reserve for themselves",
            )
        user_id = data.user_id

    try:
        return await create_reservation(db, user_id=user_id, book_id=data.book_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/mine", response_model=ReservationListResponse, summary="My reservations")
async def my_reservations(
    current_user: CurrentUser,
    db: DbSession,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    reservation_status: ReservationStatus | None = Query(None, alias="status"),
):
    items, total = await get_reservations(
        db, page=page, size=size, user_id=current_user.id, status=reservation_status
    )
    return ReservationListResponse(
        items=items, total=total, page=page, size=size, pages=calculate_pages(total, size)
    )


@router.get("", response_model=ReservationListResponse, summary="List reservations")
async def list_reservations(
    current_user: StaffUser,
    db: DbSession,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    user_id: str | None = None,
    book_id: str | None = None,
    reservation_status: ReservationStatus | None = Query(None, alias="status"),
):
    items, total = await get_reservations(
        db, page=page, size=size, user_id=user_id, book_id=book_id, status=reservation_status
    )
    return ReservationListResponse(
        items=items, total=total, page=page, size=size, pages=calculate_pages(total, size)
    )


@router.post(
    "/{reservation_id}/cancel",
    response_model=ReservationResponse,
    summary="Cancel a reservation",
    description="Members may cancel their own pending reservations; staff may cancel any.",
)
async def cancel_reservation_endpoint(
    reservation_id: str, current_user: CurrentUser, db: DbSession
):
    try:
        return await cancel_reservation(db, reservation_id, current_user)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
