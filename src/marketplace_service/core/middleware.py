"""ASGI middleware for request validation."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


_JSON_VALIDATION_ENDPOINTS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("POST", re.compile(r"^/service-requests$")),
    ("PATCH", re.compile(r"^/service-requests/[^/]+/status$")),
    ("POST", re.compile(r"^/service-requests/[^/]+/assign$")),
    ("POST", re.compile(r"^/service-requests/[^/]+/deliver$")),
    ("POST", re.compile(r"^/service-requests/[^/]+/extend$")),
    ("POST", re.compile(r"^/messages$")),
    ("POST", re.compile(r"^/reviews$")),
)
_MULTIPART_VALIDATION_ENDPOINT = ("POST", re.compile(r"^/upload$"))


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": {}},
    )


class RequestValidationMiddleware:
    """
    ASGI middleware that validates Content-Type and body size.

    Runs before FastAPI routes. Returns 415 for wrong content-type
    and 413 for oversized JSON bodies.

    Two content types are supported:
    - application/json for every body-carrying endpoint listed above
    - multipart/form-data for POST /upload

    Multipart bodies are not size-checked here; the upload manager
    enforces the per-file limit once the file is read.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = cast("str", scope.get("method", "GET"))

        if method not in ("POST", "PUT", "PATCH"):
            await self.app(scope, receive, send)
            return

        path = cast("str", scope.get("path", ""))
        raw_headers = cast("list[tuple[bytes, bytes]]", scope.get("headers", []))
        headers: dict[bytes, bytes] = dict(raw_headers)
        content_type = headers.get(b"content-type", b"").decode().lower()

        expects_multipart = (
            method == _MULTIPART_VALIDATION_ENDPOINT[0]
            and _MULTIPART_VALIDATION_ENDPOINT[1].match(path) is not None
        )
        expects_json = any(
            candidate_method == method and pattern.match(path) is not None
            for candidate_method, pattern in _JSON_VALIDATION_ENDPOINTS
        )

        # Unknown endpoint/method combos are left to the router (404/405).
        if not expects_multipart and not expects_json:
            await self.app(scope, receive, send)
            return

        if expects_multipart:
            # Without a Content-Type the router answers with NO_FILE.
            if content_type != "" and not content_type.startswith("multipart/form-data"):
                response = _error_response(
                    415,
                    "UNSUPPORTED_MEDIA_TYPE",
                    "Content-Type must be multipart/form-data",
                )
                await response(scope, receive, send)
                return

            await self.app(scope, receive, send)
            return

        if not content_type.startswith("application/json"):
            response = _error_response(
                415,
                "UNSUPPORTED_MEDIA_TYPE",
                "Content-Type must be application/json",
            )
            await response(scope, receive, send)
            return

        # Buffer the body while counting bytes
        body_parts: list[bytes] = []
        body_size = 0

        while True:
            message = cast("dict[str, Any]", await receive())
            chunk = cast("bytes", message.get("body", b""))
            body_parts.append(chunk)
            body_size += len(chunk)

            if body_size > self.max_body_size:
                response = _error_response(
                    413,
                    "PAYLOAD_TOO_LARGE",
                    "Request body exceeds maximum allowed size",
                )
                await response(scope, receive, send)
                return

            if not message.get("more_body", False):
                break

        full_body = b"".join(body_parts)
        body_sent = False

        async def buffered_receive() -> dict[str, Any]:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": full_body, "more_body": False}
            return {"type": "http.disconnect"}

        await self.app(scope, buffered_receive, send)
