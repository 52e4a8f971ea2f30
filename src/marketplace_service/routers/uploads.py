"""Attachment upload and download endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile as StarletteUploadFile

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.core.state import get_app_state
from marketplace_service.routers.validation import authenticate
from marketplace_service.services.upload_manager import UploadManager, content_disposition

router = APIRouter()


def _uploads() -> UploadManager:
    state = get_app_state()
    if state.uploads is None:
        msg = "UploadManager not initialized"
        raise RuntimeError(msg)
    return state.uploads


@router.post("/upload", status_code=201)
async def upload_file(request: Request) -> JSONResponse:
    """Store one file (multipart/form-data, field "file")."""
    principal = await authenticate(request)

    form = await request.form()
    upload_file = form.get("file")

    if upload_file is None:
        raise ServiceError(
            "NO_FILE",
            "No file part in the multipart request",
            400,
            {},
        )
    if not isinstance(upload_file, StarletteUploadFile):
        raise ServiceError(
            "NO_FILE",
            "File field must be an uploaded file",
            400,
            {},
        )

    content = await upload_file.read()
    result = _uploads().save(content, upload_file.filename, principal.user_id)
    return JSONResponse(status_code=201, content=result)


@router.get("/uploads/{upload_id}/{filename}")
async def download_file(upload_id: str, filename: str) -> Response:
    """Download a stored file."""
    content, content_type, name = _uploads().load(upload_id, filename)
    return Response(
        content=content,
        media_type=content_type,
        headers={
            "Content-Disposition": content_disposition(name),
        },
    )
