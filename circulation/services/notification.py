import math
from typing import Optional, List, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from circulation.core.exceptions import NotFoundError
from circulation.core.logging import get_logger
from circulation.db.models import Notification, NotificationType

logger = get_logger("services.notification")


async def has_unread_notification(
    db: AsyncSession, user_id: str, notification_type: NotificationType
) -> bool:
    """True if the user already has an unread notification of this type."""
    result = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.type == notification_type,
            Notification.read.is_(False),
        )
    )
    return result.scalar() > 0


async def create_notification(
    db: AsyncSession,
    user_id: str,
    title: str,
    message: str,
    notification_type: NotificationType,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=notification_type,
    )
    db.add(notification)
    await db.flush()

    logger.info(
        f"Notification created: id={notification.id} user={user_id} type={notification_type.value}"
    )
    return notification


async def notify_once(
    db: AsyncSession,
    user_id: str,
    title: str,
    message: str,
    notification_type: NotificationType,
) -> Optional[Notification]:
    """Create a notification unless an unread one of the same type is already waiting.

    Returns None when the notification was suppressed as a duplicate. The
    guard is scoped to (user, type, unread), not to the entity that caused it.
    """
    if await has_unread_notification(db, user_id, notification_type):
        logger.debug(
            f"Duplicate notification suppressed: user={user_id} type={notification_type.value}"
        )
        return None
    return await create_notification(db, user_id, title, message, notification_type)


async def get_notifications(
    db: AsyncSession,
    user_id: str,
    page: int = 1,
    size: int = 20,
    unread_only: bool = False,
    notification_type: Optional[NotificationType] = None,
) -> Tuple[List[Notification], int]:
    """List a user's notifications, newest first."""
    query = select(Notification).where(Notification.user_id == user_id)
    count_query = select(func.count()).select_from(Notification).where(
        Notification.user_id == user_id
    )

    if unread_only:
        query = query.where(Notification.read.is_(False))
        count_query = count_query.where(Notification.read.is_(False))
    if notification_type is not None:
        query = query.where(Notification.type == notification_type)
        count_query = count_query.where(Notification.type == notification_type)

    query = query.order_by(Notification.date.desc()).offset((page - 1) * size).limit(size)

    result = await db.execute(query)
    notifications = list(result.scalars().all())

    total_result = await db.execute(count_query)
    total = total_result.scalar()

    return notifications, total


async def mark_notification_read(
    db: AsyncSession, notification_id: str, user_id: str
) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotFoundError("Notification not found")

    notification.read = True
    await db.flush()
    return notification


async def mark_all_read(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    count = result.rowcount
    if count:
        logger.info(f"Marked {count} notifications read for user={user_id}")
    return count


def calculate_pages(total: int, size: int) -> int:
    return math.ceil(total / size) if size > 0 else 0
