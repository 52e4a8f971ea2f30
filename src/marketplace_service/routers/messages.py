"""Messaging and conversation endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import authenticate, read_json_body
from marketplace_service.services.messaging import MessagingEngine

router = APIRouter()


def _messaging() -> MessagingEngine:
    state = get_app_state()
    if state.messaging is None:
        msg = "MessagingEngine not initialized"
        raise RuntimeError(msg)
    return state.messaging


@router.post("/messages", status_code=201)
async def send_message(request: Request) -> JSONResponse:
    """Send a message to the other party of a service request."""
    principal = await authenticate(request)
    data = await read_json_body(request)

    result = _messaging().send_message(principal, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/service-requests/{request_id}/messages")
async def get_thread(request_id: str, request: Request) -> dict[str, Any]:
    """Messages of one request, oldest first."""
    principal = await authenticate(request)
    return _messaging().get_thread(principal, request_id)


@router.get("/conversations")
async def list_conversations(request: Request) -> dict[str, Any]:
    """Every thread of the caller with unread counts."""
    principal = await authenticate(request)
    return _messaging().list_conversations(principal)


@router.post("/conversations/{request_id}/mark-read")
async def mark_conversation_read(request_id: str, request: Request) -> dict[str, Any]:
    """Mark messages addressed to the caller on a thread as read."""
    principal = await authenticate(request)
    return _messaging().mark_read(principal, request_id)
