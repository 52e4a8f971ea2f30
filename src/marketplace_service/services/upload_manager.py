"""File storage for delivery attachments."""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Any
from urllib.parse import quote

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.services.ids import new_id

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def safe_filename(filename: str | None) -> str:
    """Strip any directory part from a client-supplied file name."""
    name = Path(filename or "").name
    if name in ("", ".", ".."):
        return "unnamed"
    return name


def content_disposition(filename: str) -> str:
    """Build an attachment header with an ASCII fallback and an RFC 5987 UTF-8 name."""
    fallback = "".join(
        char if 32 <= ord(char) < 127 and char not in '"\\' else "_" for char in filename
    )
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


class UploadManager:
    """
    Stores uploaded files under ``{storage_path}/{upload_id}/{filename}``.

    The returned descriptor is what the deliver endpoint expects as an
    attachment entry.
    """

    def __init__(self, storage_path: str, max_file_size: int, public_prefix: str) -> None:
        self._storage_path = storage_path
        self._max_file_size = max_file_size
        self._public_prefix = public_prefix.rstrip("/")
        self._logger = get_logger(__name__)

        Path(self._storage_path).mkdir(parents=True, exist_ok=True)

    def save(self, file_content: bytes, filename: str | None, uploaded_by: str) -> dict[str, Any]:
        """
        Persist one uploaded file.

        Raises:
            ServiceError: FILE_TOO_LARGE
        """
        if len(file_content) > self._max_file_size:
            raise ServiceError(
                "FILE_TOO_LARGE",
                f"File exceeds maximum size of {self._max_file_size} bytes",
                413,
                {},
            )

        name = safe_filename(filename)
        upload_id = new_id("upl")
        upload_dir = Path(self._storage_path) / upload_id
        upload_dir.mkdir(parents=True, exist_ok=True)
        (upload_dir / name).write_bytes(file_content)

        self._logger.info(
            "File uploaded",
            extra={"upload_id": upload_id, "uploaded_by": uploaded_by, "size": len(file_content)},
        )
        return {
            "file_path": f"{self._public_prefix}/{upload_id}/{quote(name, safe='')}",
            "file_name": name,
            "file_size": len(file_content),
        }

    def load(self, upload_id: str, filename: str) -> tuple[bytes, str, str]:
        """
        Read an uploaded file back.

        Returns (file_content, content_type, filename).

        Raises:
            ServiceError: UPLOAD_NOT_FOUND
        """
        file_path = (Path(self._storage_path) / upload_id / filename).resolve()

        # Resolved path must stay inside the storage root
        storage_root = Path(self._storage_path).resolve()
        if storage_root not in file_path.parents:
            raise ServiceError("UPLOAD_NOT_FOUND", "Upload not found", 404, {})
        if not file_path.is_file():
            raise ServiceError("UPLOAD_NOT_FOUND", "Upload not found", 404, {})

        content_type = mimetypes.guess_type(file_path.name)[0] or DEFAULT_CONTENT_TYPE
        return (file_path.read_bytes(), content_type, file_path.name)
