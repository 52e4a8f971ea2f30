"""Service request lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import authenticate, read_json_body
from marketplace_service.services.request_lifecycle import RequestLifecycle

router = APIRouter()


def _lifecycle() -> RequestLifecycle:
    state = get_app_state()
    if state.lifecycle is None:
        msg = "RequestLifecycle not initialized"
        raise RuntimeError(msg)
    return state.lifecycle


# ---------------------------------------------------------------------------
# POST /service-requests: create (MUST be before GET /service-requests/{id})
# ---------------------------------------------------------------------------


@router.post("/service-requests", status_code=201)
async def create_service_request(request: Request) -> JSONResponse:
    """Create a service request at status pending."""
    principal = await authenticate(request)
    data = await read_json_body(request)

    result = _lifecycle().create_request(principal, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/service-requests")
async def list_service_requests(request: Request) -> dict[str, Any]:
    """List the caller's service requests, newest first."""
    principal = await authenticate(request)
    return {"service_requests": _lifecycle().list_requests(principal)}


@router.get("/service-requests/{request_id}")
async def get_service_request(request_id: str, request: Request) -> dict[str, Any]:
    """Fetch one request with its messages, deliveries and reviews."""
    principal = await authenticate(request)
    return _lifecycle().get_request(principal, request_id)


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


@router.patch("/service-requests/{request_id}/status")
async def update_service_request_status(request_id: str, request: Request) -> dict[str, Any]:
    """Move a request along the lifecycle."""
    principal = await authenticate(request)
    data = await read_json_body(request)

    return _lifecycle().update_status(principal, request_id, data.get("status"))


@router.post("/service-requests/{request_id}/assign")
async def assign_vendor(request_id: str, request: Request) -> dict[str, Any]:
    """Assign the vendor of a request (contractor only)."""
    principal = await authenticate(request)
    data = await read_json_body(request)

    return _lifecycle().assign_vendor(principal, request_id, data)


@router.post("/service-requests/{request_id}/deliver", status_code=201)
async def deliver_service_request(request_id: str, request: Request) -> JSONResponse:
    """Record a delivery from the assigned vendor."""
    principal = await authenticate(request)
    data = await read_json_body(request)

    result = _lifecycle().deliver(principal, request_id, data)
    return JSONResponse(status_code=201, content=result)


@router.post("/service-requests/{request_id}/extend")
async def extend_delivery(request_id: str, request: Request) -> dict[str, Any]:
    """Announce a later delivery date (advisory)."""
    principal = await authenticate(request)
    data = await read_json_body(request)

    return _lifecycle().extend_delivery(principal, request_id, data)
