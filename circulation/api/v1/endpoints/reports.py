from fastapi import APIRouter

from circulation.api.v1.dependencies import DbSession, StaffUser
from circulation.schemas.report import CirculationSummary
from circulation.services.report import get_circulation_summary

router = APIRouter(prefix="/reports", tags=["Reports"])


@router.get("/summary", response_model=CirculationSummary, summary="Circulation summary")
async def summary_endpoint(current_user: StaffUser, db: DbSession):
    return await get_circulation_summary(db)
