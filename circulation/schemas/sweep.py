from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class SweepResponse(BaseModel):
    processed: int
    newly_overdue: int
    accounts_locked: int
    notifications_created: int
    reservations_expired: int
    reminders_sent: int
    ok: bool
    skipped: bool
    error: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime]

    model_config = {"from_attributes": True}
