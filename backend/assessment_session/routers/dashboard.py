from __future__ import annotations

from fastapi import APIRouter, Depends

from assessment_session.routers.deps import get_runtime
from assessment_session.schemas.application import DashboardOverview, DashboardResponse
from assessment_session.services.dashboard import DashboardRuntime

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("", response_model=DashboardResponse)
async def dashboard(refresh: bool = False, runtime: DashboardRuntime = Depends(get_runtime)):
    return await runtime.dashboard(refresh=refresh)


@router.get("/overview", response_model=DashboardOverview)
async def overview(runtime: DashboardRuntime = Depends(get_runtime)):
    return await runtime.overview()
