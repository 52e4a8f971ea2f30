"""Service request lifecycle: the status machine and its side effects."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.services.audit_log import (
    ACTION_CREATED,
    ACTION_DELIVERED,
    ACTION_DELIVERY_EXTENDED,
    ACTION_STATUS_UPDATED,
    ACTION_VENDOR_ASSIGNED,
    compose_entry,
)
from marketplace_service.services.ids import new_id, now_iso
from marketplace_service.services.marketplace_store import StatusConflictError
from marketplace_service.services.notifications import NotificationCenter

if TYPE_CHECKING:
    from marketplace_service.services.marketplace_store import MarketplaceStore
    from marketplace_service.services.token_validator import Principal

REQUEST_STATUSES: tuple[str, ...] = (
    "pending",
    "matched",
    "in_progress",
    "delivered",
    "completed",
    "cancelled",
)

# Values accepted by the generic status update. "delivered" is only
# reachable through deliver().
UPDATABLE_STATUSES: frozenset[str] = frozenset(
    {"pending", "matched", "in_progress", "completed", "cancelled"}
)

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "cancelled"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    # pending -> in_progress is the vendor approval shortcut for requests
    # created with a vendor already chosen.
    "pending": frozenset({"matched", "in_progress", "cancelled"}),
    "matched": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "delivered": frozenset({"completed"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

DELIVERABLE_STATUSES: tuple[str, ...] = ("in_progress", "delivered")
ASSIGNABLE_STATUSES: tuple[str, ...] = ("pending", "matched")

SERVICE_CATEGORIES: frozenset[str] = frozenset(
    {"legal", "hr", "finance", "cybersecurity", "marketing", "business_tools"}
)

DEFAULT_PRIORITY = "medium"
MAX_TITLE_LENGTH = 200
DERIVED_TITLE_LENGTH = 80


def _optional_str(body: dict[str, Any], field_name: str) -> str | None:
    """Read an optional non-empty string field."""
    value = body.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a string",
            400,
            {"field": field_name},
        )
    value = value.strip()
    return value or None


def _required_str(body: dict[str, Any], field_name: str, message: str) -> str:
    value = _optional_str(body, field_name)
    if value is None:
        raise ServiceError("INVALID_PAYLOAD", message, 400, {"field": field_name})
    return value


def _parse_amount(value: object, field_name: str) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a number",
            400,
            {"field": field_name},
        )
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a number",
            400,
            {"field": field_name},
        ) from exc
    if not amount.is_finite() or amount < 0:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a non-negative number",
            400,
            {"field": field_name},
        )
    return amount


def _format_budget(body: dict[str, Any]) -> str | None:
    """Render the budget as decimal text: a single amount or 'min-max'."""
    budget = body.get("budget")
    if budget is not None:
        amount = _parse_amount(budget, "budget")
        return None if amount is None else str(amount)

    budget_min = _parse_amount(body.get("budget_min"), "budget_min")
    budget_max = _parse_amount(body.get("budget_max"), "budget_max")
    if budget_min is not None and budget_max is not None:
        if budget_min > budget_max:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "budget_min must not exceed budget_max",
                400,
                {},
            )
        return f"{budget_min}-{budget_max}"
    if budget_min is not None:
        return f"{budget_min}-"
    if budget_max is not None:
        return f"0-{budget_max}"
    return None


def _validate_attachments(raw: object) -> list[dict[str, Any]]:
    """Validate delivery attachments as returned by the upload endpoint."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ServiceError("INVALID_PAYLOAD", "attachments must be a list", 400, {})

    attachments: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Each attachment must be an object",
                400,
                {"index": index},
            )
        file_path = item.get("file_path")
        file_name = item.get("file_name")
        file_size = item.get("file_size")
        if not isinstance(file_path, str) or not file_path:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Attachment file_path must be a non-empty string",
                400,
                {"index": index},
            )
        if not isinstance(file_name, str) or not file_name:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Attachment file_name must be a non-empty string",
                400,
                {"index": index},
            )
        if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Attachment file_size must be a non-negative integer",
                400,
                {"index": index},
            )
        attachments.append(
            {
                "attachment_id": new_id("att"),
                "file_path": file_path,
                "file_name": file_name,
                "file_size": file_size,
            }
        )
    return attachments


def _parse_delivery_date(value: str) -> str:
    """Accept an ISO date or datetime and return it normalized."""
    try:
        if "T" in value:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).isoformat()
        return date.fromisoformat(value).isoformat()
    except ValueError as exc:
        raise ServiceError(
            "INVALID_PAYLOAD",
            "new_delivery_date must be an ISO 8601 date",
            400,
            {"field": "new_delivery_date"},
        ) from exc


def is_party(request: dict[str, Any], user_id: str) -> bool:
    """True when user_id is the contractor or the assigned vendor of a request."""
    return user_id in (request["contractor_id"], request["vendor_id"])


def other_party(request: dict[str, Any], user_id: str) -> str | None:
    """The counterpart of user_id on a request (None while no vendor is assigned)."""
    if request["vendor_id"] == user_id:
        return str(request["contractor_id"])
    return request["vendor_id"]


class RequestLifecycle:
    """
    Governs legal status transitions of service requests.

    Checks who may trigger each transition, then writes the new status
    together with its audit entry (and notification where one applies)
    as a single unit of work through the store.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        role_transitions: dict[str, dict[str, list[str]]] | None = None,
    ) -> None:
        self._store = store
        self._role_transitions = role_transitions or {}
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _load(self, request_id: str) -> dict[str, Any]:
        request = self._store.get_request(request_id)
        if request is None:
            raise ServiceError("REQUEST_NOT_FOUND", "Service request not found", 404, {})
        return request

    def _load_as_party(self, request_id: str, principal: Principal) -> dict[str, Any]:
        request = self._load(request_id)
        if not is_party(request, principal.user_id):
            raise ServiceError("FORBIDDEN", "Not a party to this service request", 403, {})
        return request

    def allowed_next(self, current_status: str, role: str) -> frozenset[str]:
        """Statuses the generic update may move to from current_status for role."""
        allowed = ALLOWED_TRANSITIONS.get(current_status, frozenset())
        role_table = self._role_transitions.get(role)
        if role_table is None:
            return allowed
        return allowed & frozenset(role_table.get(current_status, []))

    def _check_vendor_role(self, vendor_id: str) -> None:
        # Ids the user directory has not seen yet are accepted
        user = self._store.get_user(vendor_id)
        if user is not None and user["role"] != "vendor":
            raise ServiceError(
                "INVALID_PAYLOAD",
                "vendor_id must refer to a vendor",
                400,
                {"field": "vendor_id", "role": user["role"]},
            )

    def _display(self, user_id: str | None) -> dict[str, Any] | None:
        if user_id is None:
            return None
        user = self._store.get_user(user_id)
        return {
            "user_id": user_id,
            "display_name": user["display_name"] if user is not None else None,
        }

    @staticmethod
    def _to_response(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "request_id": row["request_id"],
            "contractor_id": row["contractor_id"],
            "vendor_id": row["vendor_id"],
            "service_id": row["service_id"],
            "title": row["title"],
            "description": row["description"],
            "category": row["category"],
            "priority": row["priority"],
            "budget": row["budget"],
            "status": row["status"],
            "estimated_cost": row["estimated_cost"],
            "actual_cost": row["actual_cost"],
            "estimated_duration": row["estimated_duration"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _to_summary(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "request_id": row["request_id"],
            "contractor_id": row["contractor_id"],
            "vendor_id": row["vendor_id"],
            "service_id": row["service_id"],
            "title": row["title"],
            "category": row["category"],
            "priority": row["priority"],
            "budget": row["budget"],
            "status": row["status"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    # ------------------------------------------------------------------
    # Public methods: called by routers
    # ------------------------------------------------------------------

    def create_request(self, principal: Principal, body: dict[str, Any]) -> dict[str, Any]:
        """
        Create a request at status=pending.

        Raises:
            ServiceError: FORBIDDEN (not a contractor), INVALID_PAYLOAD
        """
        if principal.role != "contractor":
            raise ServiceError(
                "FORBIDDEN",
                "Only contractors can create service requests",
                403,
                {},
            )

        description = _required_str(body, "description", "Description is required")

        title = _optional_str(body, "title")
        if title is None:
            title = description[:DERIVED_TITLE_LENGTH]
        if len(title) > MAX_TITLE_LENGTH:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Title must not exceed {MAX_TITLE_LENGTH} characters",
                400,
                {"field": "title"},
            )

        category = _optional_str(body, "category")
        if category is not None and category not in SERVICE_CATEGORIES:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Category must be one of: {', '.join(sorted(SERVICE_CATEGORIES))}",
                400,
                {"field": "category"},
            )

        priority = _optional_str(body, "priority") or DEFAULT_PRIORITY
        budget = _format_budget(body)
        service_id = _optional_str(body, "service_id")
        vendor_id = _optional_str(body, "vendor_id")
        if vendor_id == principal.user_id:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "A contractor cannot request service from themselves",
                400,
                {"field": "vendor_id"},
            )
        if vendor_id is not None:
            self._check_vendor_role(vendor_id)

        request_id = new_id("sr")
        created_at = now_iso()
        row = {
            "request_id": request_id,
            "contractor_id": principal.user_id,
            "vendor_id": vendor_id,
            "service_id": service_id,
            "title": title,
            "description": description,
            "category": category,
            "priority": priority,
            "budget": budget,
            "status": "pending",
            "estimated_cost": None,
            "actual_cost": None,
            "estimated_duration": None,
            "created_at": created_at,
            "updated_at": created_at,
        }
        self._store.insert_request(
            row,
            compose_entry(
                request_id,
                ACTION_CREATED,
                principal.user_id,
                None,
                "pending",
                {"title": title, "service_id": service_id, "vendor_id": vendor_id},
            ),
        )
        self._logger.info(
            "Service request created",
            extra={"request_id": request_id, "contractor_id": principal.user_id},
        )
        return self._to_response(row)

    def list_requests(self, principal: Principal) -> list[dict[str, Any]]:
        """Requests visible to the caller: own for contractors, assigned for vendors, all for admins."""
        if principal.role == "contractor":
            rows = self._store.list_requests(contractor_id=principal.user_id, vendor_id=None)
        elif principal.role == "vendor":
            rows = self._store.list_requests(contractor_id=None, vendor_id=principal.user_id)
        else:
            rows = self._store.list_requests(contractor_id=None, vendor_id=None)
        return [self._to_summary(row) for row in rows]

    def get_request(self, principal: Principal, request_id: str) -> dict[str, Any]:
        """
        Fetch a request with its parties, messages, deliveries and reviews.

        Raises:
            ServiceError: REQUEST_NOT_FOUND, FORBIDDEN
        """
        request = self._load(request_id)
        if principal.role != "admin" and not is_party(request, principal.user_id):
            raise ServiceError("FORBIDDEN", "Not a party to this service request", 403, {})

        reviews = self._store.get_reviews_for_request(request_id)
        response = self._to_response(request)
        response["contractor"] = self._display(request["contractor_id"])
        response["vendor"] = self._display(request["vendor_id"])
        response["messages"] = self._store.get_messages(request_id)
        response["deliveries"] = self._store.get_deliveries_for_request(request_id)
        response["reviews"] = reviews
        response["already_reviewed"] = any(
            review["reviewer_id"] == principal.user_id for review in reviews
        )
        return response

    def assign_vendor(
        self,
        principal: Principal,
        request_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Assign (or re-assign) the vendor of a request and mark it matched.

        Raises:
            ServiceError: INVALID_PAYLOAD, REQUEST_NOT_FOUND, FORBIDDEN,
                          INVALID_TRANSITION, CONCURRENT_UPDATE
        """
        vendor_id = _required_str(body, "vendor_id", "vendor_id is required")

        request = self._load(request_id)
        if request["contractor_id"] != principal.user_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the contractor can assign a vendor",
                403,
                {},
            )
        if vendor_id == request["contractor_id"]:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "A contractor cannot request service from themselves",
                400,
                {"field": "vendor_id"},
            )
        self._check_vendor_role(vendor_id)

        current_status = str(request["status"])
        if current_status not in ASSIGNABLE_STATUSES:
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot assign a vendor to a request in '{current_status}' status",
                409,
                {"status": current_status},
            )

        updated_at = now_iso()
        try:
            self._store.transition_request(
                request_id,
                {"vendor_id": vendor_id, "status": "matched", "updated_at": updated_at},
                expected_statuses=(current_status,),
                log_entry=compose_entry(
                    request_id,
                    ACTION_VENDOR_ASSIGNED,
                    principal.user_id,
                    current_status,
                    "matched",
                    {"vendor_id": vendor_id, "previous_vendor_id": request["vendor_id"]},
                ),
                notification=NotificationCenter.compose(
                    vendor_id,
                    principal.user_id,
                    "new_request",
                    "New Service Request",
                    f"You have been matched to \"{request['title']}\".",
                    request_id,
                ),
            )
        except StatusConflictError as exc:
            raise ServiceError(
                "CONCURRENT_UPDATE",
                "Service request changed while assigning the vendor, reload and retry",
                409,
                {},
            ) from exc

        return self._to_response(self._load(request_id))

    def update_status(
        self,
        principal: Principal,
        request_id: str,
        new_status: object,
    ) -> dict[str, Any]:
        """
        Move a request to new_status through the generic update.

        Error precedence:
        1. INVALID_STATUS: missing or unrecognized status value
        2. REQUEST_NOT_FOUND
        3. FORBIDDEN: caller is neither the contractor nor the vendor
        4. (no-op): new_status equals the current status
        5. INVALID_TRANSITION: not allowed from the current status
        6. VENDOR_NOT_ASSIGNED: in_progress without a vendor
        7. CONCURRENT_UPDATE: status changed underneath us
        """
        if not isinstance(new_status, str) or new_status not in UPDATABLE_STATUSES:
            raise ServiceError(
                "INVALID_STATUS",
                "Invalid status",
                400,
                {"allowed": sorted(UPDATABLE_STATUSES)},
            )

        request = self._load_as_party(request_id, principal)
        current_status = str(request["status"])
        if new_status == current_status:
            return self._to_response(request)

        if new_status not in self.allowed_next(current_status, principal.role):
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot move a request from '{current_status}' to '{new_status}'",
                409,
                {"status": current_status, "requested": new_status},
            )

        if new_status == "in_progress" and request["vendor_id"] is None:
            raise ServiceError(
                "VENDOR_NOT_ASSIGNED",
                "A vendor must be assigned before work can start",
                409,
                {},
            )

        try:
            self._store.transition_request(
                request_id,
                {"status": new_status, "updated_at": now_iso()},
                expected_statuses=(current_status,),
                log_entry=compose_entry(
                    request_id,
                    ACTION_STATUS_UPDATED,
                    principal.user_id,
                    current_status,
                    new_status,
                ),
            )
        except StatusConflictError as exc:
            raise ServiceError(
                "CONCURRENT_UPDATE",
                "Service request status changed concurrently, reload and retry",
                409,
                {},
            ) from exc

        self._logger.info(
            "Service request status updated",
            extra={
                "request_id": request_id,
                "performed_by": principal.user_id,
                "previous_status": current_status,
                "new_status": new_status,
            },
        )
        return self._to_response(self._load(request_id))

    def deliver(
        self,
        principal: Principal,
        request_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Record a vendor delivery and move the request to delivered.

        Re-invoking while already delivered appends the next numbered
        delivery.

        Error precedence:
        1. INVALID_PAYLOAD: missing message or malformed attachments
        2. REQUEST_NOT_FOUND
        3. FORBIDDEN: caller is not the assigned vendor
        4. INVALID_STATUS: not in_progress or delivered
        5. CONCURRENT_UPDATE
        """
        message = _required_str(body, "message", "Message is required")
        attachments = _validate_attachments(body.get("attachments"))

        request = self._load(request_id)
        if request["vendor_id"] is None or request["vendor_id"] != principal.user_id:
            raise ServiceError("FORBIDDEN", "Only the assigned vendor can deliver", 403, {})

        current_status = str(request["status"])
        if current_status not in DELIVERABLE_STATUSES:
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot deliver a request in '{current_status}' status",
                409,
                {"status": current_status},
            )

        delivery_id = new_id("dlv")
        delivered_at = now_iso()
        redelivery = current_status == "delivered"
        try:
            sequence = self._store.insert_delivery(
                {
                    "delivery_id": delivery_id,
                    "request_id": request_id,
                    "delivered_by": principal.user_id,
                    "message": message,
                    "created_at": delivered_at,
                },
                attachments,
                expected_statuses=(current_status,),
                request_updates={"status": "delivered", "updated_at": delivered_at},
                log_entry=compose_entry(
                    request_id,
                    ACTION_DELIVERED,
                    principal.user_id,
                    current_status,
                    "delivered",
                    {"delivery_id": delivery_id, "attachment_count": len(attachments)},
                ),
                notification=NotificationCenter.compose(
                    str(request["contractor_id"]),
                    principal.user_id,
                    "delivery",
                    "Updated Delivery Received" if redelivery else "New Delivery Received",
                    "Your service request has been delivered.",
                    request_id,
                ),
            )
        except StatusConflictError as exc:
            raise ServiceError(
                "CONCURRENT_UPDATE",
                "Service request status changed concurrently, reload and retry",
                409,
                {},
            ) from exc

        self._logger.info(
            "Service request delivered",
            extra={
                "request_id": request_id,
                "delivery_id": delivery_id,
                "sequence": sequence,
                "attachment_count": len(attachments),
            },
        )
        return {
            "delivery_id": delivery_id,
            "request_id": request_id,
            "sequence": sequence,
            "delivered_by": principal.user_id,
            "message": message,
            "created_at": delivered_at,
            "attachments": [
                {
                    "attachment_id": attachment["attachment_id"],
                    "file_path": attachment["file_path"],
                    "file_name": attachment["file_name"],
                    "file_size": attachment["file_size"],
                }
                for attachment in attachments
            ],
            "status": "delivered",
        }

    def extend_delivery(
        self,
        principal: Principal,
        request_id: str,
        body: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Record the vendor's intent to deliver later. Advisory only: the
        status is unchanged and no deadline is enforced.

        Raises:
            ServiceError: INVALID_PAYLOAD, REQUEST_NOT_FOUND, FORBIDDEN, INVALID_STATUS
        """
        raw_date = _required_str(body, "new_delivery_date", "new_delivery_date is required")
        new_delivery_date = _parse_delivery_date(raw_date)
        reason = _required_str(body, "reason", "reason is required")

        request = self._load(request_id)
        if request["vendor_id"] is None or request["vendor_id"] != principal.user_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the assigned vendor can extend the delivery date",
                403,
                {},
            )
        if request["status"] != "in_progress":
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot extend delivery of a request in '{request['status']}' status",
                409,
                {"status": request["status"]},
            )

        self._store.append_log(
            compose_entry(
                request_id,
                ACTION_DELIVERY_EXTENDED,
                principal.user_id,
                "in_progress",
                "in_progress",
                {"new_delivery_date": new_delivery_date, "reason": reason},
            ),
            NotificationCenter.compose(
                str(request["contractor_id"]),
                principal.user_id,
                "delivery_extended",
                "Delivery Date Extended",
                f"The vendor expects to deliver by {new_delivery_date}: {reason}",
                request_id,
            ),
        )
        return {
            "request_id": request_id,
            "status": "in_progress",
            "new_delivery_date": new_delivery_date,
            "reason": reason,
        }

    def get_stats(self) -> dict[str, Any]:
        """Request counts for the health endpoint."""
        counts = self._store.count_requests_by_status()
        return {
            "total_requests": self._store.count_requests(),
            "requests_by_status": {status: counts.get(status, 0) for status in REQUEST_STATUSES},
        }
