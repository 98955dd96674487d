import math
from typing import Optional, List, Tuple

from sqlalchemy import delete, select, func
from sqlalchemy.ext.asyncio import AsyncSession

from circulation.core.exceptions import InvalidStateError, NotFoundError
from circulation.core.logging import get_logger
from circulation.core.security import hash_password, verify_password
from circulation.db.models import (
    Loan,
    LoanStatusHistory,
    Notification,
    Reservation,
    User,
    UserRole,
)

logger = get_logger("services.user")


async def get_users(
    db: AsyncSession,
    page: int = 1,
    size: int = 20,
    role: Optional[UserRole] = None,
    is_active: Optional[bool] = None,
    is_blocked: Optional[bool] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> Tuple[List[User], int]:
    """List accounts with filtering, sorting, and pagination."""
    query = select(User)
    count_query = select(func.count()).select_from(User)

    if role is not None:
        query = query.where(User.role == role)
        count_query = count_query.where(User.role == role)
    if is_active is not None:
        query = query.where(User.is_active == is_active)
        count_query = count_query.where(User.is_active == is_active)
    if is_blocked is not None:
        query = query.where(User.is_blocked == is_blocked)
        count_query = count_query.where(User.is_blocked == is_blocked)
    if search:
        search_filter = User.full_name.ilike(f"%{search}%") | User.email.ilike(f"%{search}%")
        query = query.where(search_filter)
        count_query = count_query.where(search_filter)

    sort_column = getattr(User, sort_by, User.created_at)
    if sort_order == "asc":
        query = query.order_by(sort_column.asc())
    else:
        query = query.order_by(sort_column.desc())

    query = query.offset((page - 1) * size).limit(size)

    result = await db.execute(query)
    users = list(result.scalars().all())

    total_result = await db.execute(count_query)
    total = total_result.scalar()

    return users, total


async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def update_user(
    db: AsyncSession, user_id: str, update_data: dict, actor_id: str
) -> Optional[User]:
    """Update profile fields. Block state is changed through set_block_state only."""
    user = await get_user_by_id(db, user_id)
    if not user:
        return None

    if update_data.get("password"):
        update_data["hashed_password"] = hash_password(update_data.pop("password"))
    else:
        update_data.pop("password", None)

    for key, value in update_data.items():
        if value is not None:
            setattr(user, key, value)

    await db.flush()
    await db.refresh(user)

    logger.info(f"User updated: id={user_id} by actor={actor_id}")
    return user


async def change_password(
    db: AsyncSession, user_id: str, current_password: str, new_password: str
) -> User:
    """Self-service password change. The current password must be supplied."""
    user = await get_user_by_id(db, user_id)
    if not user:
        raise NotFoundError("User not found")
    if not verify_password(current_password, user.hashed_password):
        logger.warning(f"Password change refused: wrong current password for user={user_id}")
        raise InvalidStateError("Current password is incorrect")

    user.hashed_password = hash_password(new_password)
    await db.flush()

    logger.info(f"Password changed: user={user_id}")
    return user


async def delete_user(db: AsyncSession, user_id: str, actor_id: str) -> bool:
    """Delete an account. The built-in admin cannot be deleted."""
    user = await get_user_by_id(db, user_id)
    if not user:
        return False

    if user.is_built_in:
        raise ValueError("Cannot delete the built-in admin account")
    for model, column in (
        (Loan, Loan.user_id),
        (Reservation, Reservation.user_id),
        (LoanStatusHistory, LoanStatusHistory.changed_by),
    ):
        count = await db.execute(select(func.count()).select_from(model).where(column == user_id))
        if count.scalar() > 0:
            raise InvalidStateError("Cannot delete an account with circulation history")

    await db.execute(delete(Notification).where(Notification.user_id == user_id))
    await db.delete(user)
    await db.flush()

    logger.info(f"User deleted: id={user_id} by actor={actor_id}")
    return True


async def lock_account(db: AsyncSession, user_id: str, reason: str) -> User:
    """Block an account. Safe to call on an already blocked account: the reason is overwritten."""
    if not reason or not reason.strip():
        raise InvalidStateError("A block reason is required")

    user = await get_user_by_id(db, user_id)
    if not user:
        raise NotFoundError("User not found")

    was_blocked = user.is_blocked
    user.is_blocked = True
    user.block_reason = reason
    await db.flush()

    if not was_blocked:
        logger.info(f"Account locked: user={user_id} reason='{reason}'")
    return user


async def unlock_account(db: AsyncSession, user_id: str, actor_id: Optional[str] = None) -> User:
    user = await get_user_by_id(db, user_id)
    if not user:
        raise NotFoundError("User not found")

    user.is_blocked = False
    user.block_reason = None
    await db.flush()

    logger.info(f"Account unlocked: user={user_id} by actor={actor_id}")
    return user


async def set_block_state(
    db: AsyncSession,
    user_id: str,
    is_blocked: bool,
    block_reason: Optional[str],
    actor_id: str,
) -> User:
    """Librarian block/unblock action."""
    if is_blocked:
        user = await lock_account(db, user_id, block_reason or "")
        logger.info(f"Account blocked manually: user={user_id} by actor={actor_id}")
        return user
    return await unlock_account(db, user_id, actor_id)


def calculate_pages(total: int, size: int) -> int:
    return math.ceil(total / size) if size > 0 else 0
