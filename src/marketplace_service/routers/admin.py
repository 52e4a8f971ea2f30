"""Administrative endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import authenticate

router = APIRouter()


def _int_param(request: Request, name: str) -> int | None:
    raw = request.query_params.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be an integer", 400, {}) from exc


@router.get("/admin/request-logs")
async def list_request_logs(request: Request) -> dict[str, Any]:
    """Paginated audit trail, optionally for one request."""
    principal = await authenticate(request)

    request_id = request.query_params.get("request_id") or None
    page = _int_param(request, "page")
    limit = _int_param(request, "limit")

    state = get_app_state()
    if state.audit_trail is None:
        msg = "AuditTrail not initialized"
        raise RuntimeError(msg)

    return state.audit_trail.list_logs(principal, request_id, page, limit)
