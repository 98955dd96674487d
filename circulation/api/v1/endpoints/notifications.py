from fastapi import APIRouter, HTTPException, Query, status

from circulation.api.v1.dependencies import CurrentUser, DbSession
from circulation.core.exceptions import NotFoundError
from circulation.db.models import NotificationType
from circulation.schemas.notification import (
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationResponse,
)
from circulation.services.notification import (
    get_notifications,
    mark_notification_read,
    mark_all_read,
    calculate_pages,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationListResponse, summary="My notifications")
async def list_my_notifications(
    current_user: CurrentUser,
    db: DbSession,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    notification_type: NotificationType | None = Query(None, alias="type"),
):
    items, total = await get_notifications(
        db, current_user.id, page=page, size=size,
        unread_only=unread_only, notification_type=notification_type,
    )
    return NotificationListResponse(
        items=items, total=total, page=page, size=size, pages=calculate_pages(total, size)
    )


@router.post(
    "/{notification_id}/read",
    response_model=NotificationResponse,
    summary="Mark a notification read",
)
async def mark_read_endpoint(notification_id: str, current_user: CurrentUser, db: DbSession):
    try:
        return await mark_notification_read(db, notification_id, current_user.id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/read-all", response_model=MarkAllReadResponse, summary="Mark all read")
async def mark_all_read_endpoint(current_user: CurrentUser, db: DbSession):
    return MarkAllReadResponse(updated=await mark_all_read(db, current_user.id))
