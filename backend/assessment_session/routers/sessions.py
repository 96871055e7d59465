from __future__ import annotations

from fastapi import APIRouter, Depends

from assessment_session.routers.deps import get_runtime
from assessment_session.schemas.quiz import AnswerRequest, NavigateRequest
from assessment_session.schemas.session import SessionView
from assessment_session.services.dashboard import DashboardRuntime

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("/{application_id}", response_model=SessionView)
async def open_session(application_id: int, runtime: DashboardRuntime = Depends(get_runtime)):
    return await runtime.open_session(application_id)


@router.get("/{application_id}", response_model=SessionView)
async def get_session(application_id: int, runtime: DashboardRuntime = Depends(get_runtime)):
    return runtime.session_view(application_id)


@router.put("/{application_id}/answers/{question_id}", response_model=SessionView)
async def answer(
    application_id: int,
    question_id: int,
    payload: AnswerRequest,
    runtime: DashboardRuntime = Depends(get_runtime),
):
    return runtime.answer(application_id, question_id, payload.option_index)


@router.post("/{application_id}/navigate", response_model=SessionView)
async def navigate(application_id: int, payload: NavigateRequest, runtime: DashboardRuntime = Depends(get_runtime)):
    return runtime.navigate(application_id, payload.direction)


@router.post("/{application_id}/submit", response_model=SessionView)
async def submit(application_id: int, runtime: DashboardRuntime = Depends(get_runtime)):
    return await runtime.submit(application_id)


@router.delete("/{application_id}")
async def leave(application_id: int, runtime: DashboardRuntime = Depends(get_runtime)):
    runtime.leave_session(application_id)
    return {"ok": True}
