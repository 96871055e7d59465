from __future__ import annotations

from fastapi import Depends, Request

from assessment_session.core.security import get_candidate_token
from assessment_session.services.dashboard import DashboardRuntime
from assessment_session.services.registry import RuntimeRegistry


def get_registry(request: Request) -> RuntimeRegistry:
    return request.app.state.registry


async def get_runtime(
    registry: RuntimeRegistry = Depends(get_registry),
    token: str = Depends(get_candidate_token),
) -> DashboardRuntime:
    return await registry.get(token)
