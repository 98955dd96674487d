from typing import List

from fastapi import APIRouter, HTTPException, Query, status

from circulation.api.v1.dependencies import AdminUser, CurrentUser, DbSession, StaffUser
from circulation.core.exceptions import InvalidStateError, NotFoundError
from circulation.db.models import UserRole
from circulation.schemas.book import BookResponse
from circulation.schemas.user import (
    BlockStateUpdate,
    PasswordChange,
    UserResponse,
    UserUpdate,
    UserListResponse,
)
from circulation.services.loan import get_borrowed_books
from circulation.services.user import (
    get_users,
    get_user_by_id,
    update_user,
    delete_user,
    change_password,
    set_block_state,
    calculate_pages,
)

router = APIRouter(prefix="/users", tags=["Users"])


@router.get(
    "",
    response_model=UserListResponse,
    summary="List accounts",
    description="Paginated list of accounts with optional filters. Requires Librarian or Admin role.",
)
async def list_users(
    current_user: StaffUser,
    db: DbSession,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    role: UserRole | None = None,
    is_active: bool | None = None,
    is_blocked: bool | None = None,
    search: str | None = None,
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    users, total = await get_users(
        db, page=page, size=size, role=role, is_active=is_active,
        is_blocked=is_blocked, search=search, sort_by=sort_by, sort_order=sort_order,
    )
    return UserListResponse(
        items=users, total=total, page=page, size=size, pages=calculate_pages(total, size)
    )


@router.get("/{user_id}", response_model=UserResponse, summary="Get account details")
async def get_user(user_id: str, current_user: StaffUser, db: DbSession):
    user = await get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.get(
    "/{user_id}/borrowed-books",
    response_model=List[BookResponse],
    summary="Books currently held by a patron",
    description="Computed from the patron's unreturned loans.",
)
async def borrowed_books(user_id: str, current_user: StaffUser, db: DbSession):
    if not await get_user_by_id(db, user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return await get_borrowed_books(db, user_id)


@router.put(
    "/{user_id}/block",
    response_model=UserResponse,
    summary="Block or unblock an account",
    description=(
        "Librarian action. Blocking requires a reason. Unblocking an account whose "
        "overdue loan is still out only lasts until the next overdue sweep."
    ),
    responses={
        404: {"description": "User not found"},
        422: {"description": "Missing block reason"},
    },
)
async def update_block_state(
    user_id: str,
    data: BlockStateUpdate,
    current_user: StaffUser,
    db: DbSession,
):
    try:
        return await set_block_state(
            db, user_id, data.is_blocked, data.block_reason, current_user.id
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.put(
    "/{user_id}/change-password",
    response_model=UserResponse,
    summary="Change own password",
    description="Patrons and staff change their own password by supplying the current one.",
    responses={
        400: {"description": "Current password is incorrect"},
        403: {"description": "Not your account"},
    },
)
async def change_password_endpoint(
    user_id: str,
    data: PasswordChange,
    current_user: CurrentUser,
    db: DbSession,
):
    if user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only change your own password",
        )
    try:
        return await change_password(db, user_id, data.current_password, data.new_password)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.put(
    "/{user_id}",
    response_model=UserResponse,
    summary="Update an account",
    description="Update profile, role, active flag or password. Requires Admin role.",
)
async def update_user_endpoint(
    user_id: str,
    data: UserUpdate,
    current_user: AdminUser,
    db: DbSession,
):
    update_data = data.model_dump(exclude_unset=True)
    try:
        user = await update_user(db, user_id, update_data, current_user.id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.delete(
    "/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an account",
    description="Cannot delete the built-in admin. Requires Admin role.",
)
async def delete_user_endpoint(user_id: str, current_user: AdminUser, db: DbSession):
    try:
        deleted = await delete_user(db, user_id, current_user.id)
    except InvalidStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
