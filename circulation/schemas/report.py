from pydantic import BaseModel


class CirculationSummary(BaseModel):
    total_titles: int
    total_copies: int
    available_copies: int
    active_loans: int
    overdue_loans: int
    returned_loans: int
    blocked_accounts: int
    pending_reservations: int
    unread_notifications: int
