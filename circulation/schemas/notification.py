from datetime import datetime
from typing import List
from pydantic import BaseModel

from circulation.db.models import NotificationType


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    date: datetime
    read: bool
    type: NotificationType

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    items: List[NotificationResponse]
    total: int
    page: int
    size: int
    pages: int


class MarkAllReadResponse(BaseModel):
    updated: int
