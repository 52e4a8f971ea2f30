"""Shared request validation helpers for marketplace routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.core.state import get_app_state
from marketplace_service.services.ids import now_iso

if TYPE_CHECKING:
    from fastapi import Request

    from marketplace_service.services.token_validator import Principal


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the bearer token from an Authorization header."""
    if authorization is None:
        raise ServiceError(
            "UNAUTHORIZED",
            "Missing Authorization header",
            401,
            {},
        )

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError(
            "UNAUTHORIZED",
            "Bearer token must not be empty",
            401,
            {},
        )

    return token


async def authenticate(request: Request) -> Principal:
    """
    Resolve the caller of a request and refresh the local user directory.

    Raises:
        ServiceError: UNAUTHORIZED, FORBIDDEN, IDENTITY_SERVICE_UNAVAILABLE
    """
    token = extract_bearer_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.token_validator is None or state.store is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)

    principal = await state.token_validator.authenticate(token)
    state.store.upsert_user(
        principal.user_id,
        principal.role,
        principal.display_name,
        now_iso(),
    )
    return principal


async def read_json_body(request: Request) -> dict[str, Any]:
    """Read and parse the JSON body; an empty body reads as {}."""
    body = await request.body()
    return {} if body == b"" else parse_json_body(body)
