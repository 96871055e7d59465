from __future__ import annotations

from fastapi import APIRouter, Depends

from assessment_session.routers.deps import get_runtime
from assessment_session.schemas.session import SessionResult
from assessment_session.services.dashboard import DashboardRuntime

router = APIRouter(prefix="/applications", tags=["applications"])


@router.get("/{application_id}/results", response_model=SessionResult)
async def results(application_id: int, runtime: DashboardRuntime = Depends(get_runtime)):
    return await runtime.results(application_id)
