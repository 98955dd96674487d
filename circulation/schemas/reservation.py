from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel

from circulation.db.models import ReservationStatus


class ReservationCreate(BaseModel):
    book_id: str
    # Staff may queue a patron; members always reserve for themselves
    user_id: Optional[str] = None


class ReservationResponse(BaseModel):
    id: str
    book_id: str
    user_id: str
    reservation_date: datetime
    due_date: Optional[datetime]
    priority: int
    status: ReservationStatus
    notification_sent: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ReservationListResponse(BaseModel):
    items: List[ReservationResponse]
    total: int
    page: int
    size: int
    pages: int
