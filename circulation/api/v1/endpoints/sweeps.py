from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from circulation.api.v1.dependencies import StaffUser, get_sweep_engine
from circulation.core.logging import get_logger
from circulation.schemas.sweep import SweepResponse
from circulation.services.overdue import SweepEngine

logger = get_logger("api.sweeps")

router = APIRouter(prefix="/sweeps", tags=["Overdue Sweep"])

Engine = Annotated[SweepEngine, Depends(get_sweep_engine)]


@router.post(
    "",
    response_model=SweepResponse,
    summary="Run the overdue sweep now",
    description=(
        "Operator-initiated reconciliation outside the hourly timer. A sweep that "
        "fails is rolled back and reported with `ok=false`; a call made while a "
        "sweep is already running returns `skipped=true`."
    ),
)
async def run_sweep_endpoint(current_user: StaffUser, engine: Engine):
    logger.info(f"Manual sweep requested by user={current_user.id}")
    return await engine.run_sweep()


@router.get(
    "/last",
    response_model=SweepResponse,
    summary="Result of the most recent sweep",
    responses={404: {"description": "No sweep has run since startup"}},
)
async def last_sweep_endpoint(current_user: StaffUser, engine: Engine):
    if engine.last_result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sweep has run yet")
    return engine.last_result
