"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from marketplace_service.core.state import get_app_state
from marketplace_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return request statistics."""
    state = get_app_state()
    total_requests = 0
    requests_by_status: dict[str, int] = {}
    if state.lifecycle is not None:
        stats = state.lifecycle.get_stats()
        total_requests = stats["total_requests"]
        requests_by_status = stats["requests_by_status"]
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_requests=total_requests,
        requests_by_status=requests_by_status,
    )
