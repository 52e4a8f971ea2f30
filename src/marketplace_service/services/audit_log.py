"""Append-only audit trail of request lifecycle events."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.services.ids import new_id, now_iso

if TYPE_CHECKING:
    from marketplace_service.services.marketplace_store import MarketplaceStore
    from marketplace_service.services.token_validator import Principal

ACTION_CREATED = "SERVICE REQUEST CREATED"
ACTION_VENDOR_ASSIGNED = "VENDOR_ASSIGNED"
ACTION_STATUS_UPDATED = "STATUS_UPDATED"
ACTION_DELIVERED = "DELIVERED"
ACTION_DELIVERY_EXTENDED = "DELIVERY_EXTENDED"


def compose_entry(
    request_id: str,
    action: str,
    performed_by: str,
    previous_status: str | None,
    new_status: str | None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build an audit entry without persisting it."""
    return {
        "log_id": new_id("log"),
        "request_id": request_id,
        "action": action,
        "performed_by": performed_by,
        "previous_status": previous_status,
        "new_status": new_status,
        "metadata": metadata,
        "created_at": now_iso(),
    }


class AuditTrail:
    """Read side of the audit log, restricted to administrators."""

    def __init__(self, store: MarketplaceStore, default_page_size: int, max_page_size: int) -> None:
        self._store = store
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def list_logs(
        self,
        principal: Principal,
        request_id: str | None,
        page: int | None,
        limit: int | None,
    ) -> dict[str, Any]:
        """
        Page through audit entries, newest first.

        Raises:
            ServiceError: FORBIDDEN, INVALID_PAYLOAD
        """
        if principal.role != "admin":
            raise ServiceError("FORBIDDEN", "Admin access required", 403, {})

        page_number = 1 if page is None else page
        page_size = self._default_page_size if limit is None else limit
        if page_number < 1:
            raise ServiceError("INVALID_PAYLOAD", "page must be >= 1", 400, {})
        if page_size < 1 or page_size > self._max_page_size:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"limit must be between 1 and {self._max_page_size}",
                400,
                {},
            )

        total = self._store.count_logs(request_id)
        logs = self._store.get_logs(
            request_id=request_id,
            limit=page_size,
            offset=(page_number - 1) * page_size,
        )
        return {
            "logs": logs,
            "pagination": {
                "page": page_number,
                "limit": page_size,
                "total": total,
                "total_pages": math.ceil(total / page_size) if total else 0,
            },
        }
