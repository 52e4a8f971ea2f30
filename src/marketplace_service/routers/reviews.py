"""Review and profile endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import authenticate, read_json_body
from marketplace_service.services.reviews import ReviewAggregator

router = APIRouter()


def _reviews() -> ReviewAggregator:
    state = get_app_state()
    if state.reviews is None:
        msg = "ReviewAggregator not initialized"
        raise RuntimeError(msg)
    return state.reviews


@router.post("/reviews", status_code=201)
async def submit_review(request: Request) -> JSONResponse:
    """Review the other party of a completed service request."""
    principal = await authenticate(request)
    data = await read_json_body(request)

    result = _reviews().submit_review(principal, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/profiles/{user_id}")
async def get_profile(user_id: str, request: Request) -> dict[str, Any]:
    """Rating and response-time aggregate of a user."""
    await authenticate(request)
    return _reviews().get_profile(user_id)


@router.get("/profiles/{user_id}/reviews")
async def list_reviews(user_id: str, request: Request) -> dict[str, Any]:
    """Reviews received by a user, newest first."""
    await authenticate(request)
    return {"user_id": user_id, "reviews": _reviews().list_reviews(user_id)}
