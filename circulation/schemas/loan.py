from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel

from circulation.db.models import LoanStatus


class LoanCreate(BaseModel):
    book_id: str
    # Staff may check a book out on behalf of a patron
    user_id: Optional[str] = None
    due_date: Optional[datetime] = None


class LoanReturn(BaseModel):
    return_date: Optional[datetime] = None


class LoanStatusHistoryResponse(BaseModel):
    id: str
    previous_status: Optional[LoanStatus]
    new_status: LoanStatus
    changed_by: Optional[str]
    notes: Optional[str]
    changed_at: datetime

    model_config = {"from_attributes": True}


class LoanResponse(BaseModel):
    id: str
    book_id: str
    user_id: str
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime]
    status: LoanStatus
    created_at: datetime
    updated_at: datetime
    status_history: List[LoanStatusHistoryResponse] = []

    model_config = {"from_attributes": True}


class LoanListResponse(BaseModel):
    items: List[LoanResponse]
    total: int
    page: int
    size: int
    pages: int
