"""Notification endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import authenticate
from marketplace_service.services.notifications import NotificationCenter

router = APIRouter()


def _notifications() -> NotificationCenter:
    state = get_app_state()
    if state.notifications is None:
        msg = "NotificationCenter not initialized"
        raise RuntimeError(msg)
    return state.notifications


@router.get("/notifications")
async def list_notifications(request: Request) -> dict[str, Any]:
    """All notifications of the caller, newest first."""
    principal = await authenticate(request)
    return {"notifications": _notifications().list_notifications(principal.user_id)}


# MUST be before PATCH /notifications/{notification_id}/read
@router.get("/notifications/unread-count")
async def unread_count(request: Request) -> dict[str, Any]:
    """Number of unread notifications of the caller."""
    principal = await authenticate(request)
    return {"count": _notifications().unread_count(principal.user_id)}


@router.patch("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, request: Request) -> dict[str, Any]:
    """Flag one of the caller's notifications as read."""
    principal = await authenticate(request)

    result = _notifications().mark_read(notification_id, principal.user_id)
    if result is None:
        raise ServiceError("NOTIFICATION_NOT_FOUND", "Notification not found", 404, {})
    return result
