"""Per-request message threads, unread tracking and vendor response time."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.services.ids import new_id, now_iso, parse_iso
from marketplace_service.services.notifications import NotificationCenter
from marketplace_service.services.request_lifecycle import TERMINAL_STATUSES, is_party

if TYPE_CHECKING:
    from marketplace_service.services.marketplace_store import MarketplaceStore
    from marketplace_service.services.token_validator import Principal

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440
MAX_MESSAGE_LENGTH = 10000


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_response_time(minutes: int) -> str:
    """Render a response time as "N min", "N hr" or "N day"."""
    if minutes < MINUTES_PER_HOUR:
        return f"{minutes} min"
    if minutes < MINUTES_PER_DAY:
        return f"{_round_half_up(minutes / MINUTES_PER_HOUR)} hr"
    return f"{_round_half_up(minutes / MINUTES_PER_DAY)} day"


def fold_response_time(existing_minutes: int, new_minutes: int) -> int:
    """Fold one first-reply latency into the running per-vendor average."""
    if existing_minutes == 0:
        return new_minutes
    return (existing_minutes + new_minutes) // 2


def preview(content: str, length: int) -> str:
    """Truncate message content for a notification body."""
    if len(content) <= length:
        return content
    return content[:length] + "..."


class MessagingEngine:
    """
    Threads of messages scoped to one service request.

    Only the contractor and the assigned vendor take part in a thread;
    the receiver is always derived server-side as the other party.
    """

    def __init__(self, store: MarketplaceStore, preview_length: int) -> None:
        self._store = store
        self._preview_length = preview_length
        self._logger = get_logger(__name__)

    def _load_as_party(self, request_id: str, principal: Principal) -> dict[str, Any]:
        request = self._store.get_request(request_id)
        if request is None:
            raise ServiceError("REQUEST_NOT_FOUND", "Service request not found", 404, {})
        if not is_party(request, principal.user_id):
            raise ServiceError("FORBIDDEN", "Not a party to this service request", 403, {})
        return request

    def _response_time_update(
        self,
        request: dict[str, Any],
        sender_id: str,
        sent_at: str,
    ) -> tuple[str, dict[str, Any]] | None:
        """
        Compute the vendor profile fold for a first vendor reply.

        Returns None unless the sender is the vendor, has not written on
        this thread before, and the contractor already wrote first.
        """
        if sender_id != request["vendor_id"]:
            return None
        request_id = str(request["request_id"])
        if self._store.count_messages_from(request_id, sender_id) != 0:
            return None
        contractor_first = self._store.get_first_message_at(
            request_id, str(request["contractor_id"])
        )
        if contractor_first is None:
            return None

        elapsed = parse_iso(sent_at) - parse_iso(contractor_first)
        elapsed_minutes = max(0, math.floor(elapsed.total_seconds() / 60))

        profile = self._store.get_profile(sender_id)
        existing = profile["response_time_minutes"] if profile is not None else 0
        folded = fold_response_time(existing, elapsed_minutes)
        return (
            sender_id,
            {
                "response_time_minutes": folded,
                "response_time": format_response_time(folded),
                "updated_at": sent_at,
            },
        )

    def send_message(self, principal: Principal, body: dict[str, Any]) -> dict[str, Any]:
        """
        Post a message on a request thread and notify the other party.

        Error precedence:
        1. INVALID_PAYLOAD: missing service_request_id or content
        2. REQUEST_NOT_FOUND
        3. FORBIDDEN: sender is not a party
        4. VENDOR_NOT_ASSIGNED: no counterpart yet
        5. REQUEST_CLOSED: request is completed or cancelled
        """
        request_id = body.get("service_request_id")
        if not isinstance(request_id, str) or not request_id.strip():
            raise ServiceError(
                "INVALID_PAYLOAD",
                "service_request_id is required",
                400,
                {"field": "service_request_id"},
            )
        content = body.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Message content is required",
                400,
                {"field": "content"},
            )
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Message content must not exceed {MAX_MESSAGE_LENGTH} characters",
                400,
                {"field": "content"},
            )

        request = self._load_as_party(request_id.strip(), principal)
        if request["vendor_id"] is None:
            raise ServiceError(
                "VENDOR_NOT_ASSIGNED",
                "No vendor is assigned to this service request yet",
                409,
                {},
            )
        if request["status"] in TERMINAL_STATUSES:
            raise ServiceError(
                "REQUEST_CLOSED",
                f"Service request is {request['status']}",
                409,
                {"status": request["status"]},
            )

        sender_id = principal.user_id
        receiver_id = (
            str(request["vendor_id"])
            if sender_id == request["contractor_id"]
            else str(request["contractor_id"])
        )
        sent_at = now_iso()
        message = {
            "message_id": new_id("msg"),
            "request_id": request["request_id"],
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "is_read": False,
            "created_at": sent_at,
        }
        profile_update = self._response_time_update(request, sender_id, sent_at)
        self._store.insert_message(
            message,
            NotificationCenter.compose(
                receiver_id,
                sender_id,
                "new_message",
                "New Message",
                preview(content, self._preview_length),
                str(request["request_id"]),
            ),
            profile_update,
        )

        if profile_update is not None:
            self._logger.info(
                "Vendor response time updated",
                extra={
                    "vendor_id": sender_id,
                    "request_id": request["request_id"],
                    "response_time": profile_update[1]["response_time"],
                },
            )
        return message

    def get_thread(self, principal: Principal, request_id: str) -> dict[str, Any]:
        """Messages of a request, oldest first, with participant display names."""
        request = self._load_as_party(request_id, principal)

        def display_name(user_id: str | None) -> str | None:
            if user_id is None:
                return None
            user = self._store.get_user(user_id)
            return user["display_name"] if user is not None else None

        return {
            "request_id": request["request_id"],
            "title": request["title"],
            "status": request["status"],
            "service_id": request["service_id"],
            "contractor": {
                "user_id": request["contractor_id"],
                "display_name": display_name(request["contractor_id"]),
            },
            "vendor": None
            if request["vendor_id"] is None
            else {
                "user_id": request["vendor_id"],
                "display_name": display_name(request["vendor_id"]),
            },
            "messages": self._store.get_messages(request_id),
        }

    def mark_read(self, principal: Principal, request_id: str) -> dict[str, Any]:
        """
        Flag every message addressed to the caller on a thread as read.

        Idempotent: a second call reports updated=0.
        """
        self._load_as_party(request_id, principal)
        updated = self._store.mark_thread_read(request_id, principal.user_id)
        return {"success": True, "updated": updated}

    def list_conversations(self, principal: Principal) -> dict[str, Any]:
        """
        Every thread of the caller with the latest message and unread count.

        Sorted by the latest message, newest first; threads without any
        message go last.
        """
        summaries = self._store.get_thread_summaries(principal.user_id)
        with_messages = [s for s in summaries if s["last_message_at"] is not None]
        without_messages = [s for s in summaries if s["last_message_at"] is None]
        with_messages.sort(key=lambda s: str(s["last_message_at"]), reverse=True)
        conversations = with_messages + without_messages
        return {
            "conversations": conversations,
            "total_unread": sum(int(s["unread_count"]) for s in conversations),
        }
