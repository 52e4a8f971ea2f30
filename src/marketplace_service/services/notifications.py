"""Notification fan-out and read/unread queries."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from marketplace_service.services.ids import new_id, now_iso

if TYPE_CHECKING:
    from marketplace_service.services.marketplace_store import MarketplaceStore

NOTIFICATION_TYPES: frozenset[str] = frozenset(
    {"new_message", "delivery", "delivery_extended", "new_review", "new_request"}
)


class NotificationCenter:
    """
    Creates notification records and answers the badge-counter queries.

    Other engines call compose() and hand the record to the store so the
    notification commits together with the event that triggered it.
    """

    def __init__(self, store: MarketplaceStore) -> None:
        self._store = store

    @staticmethod
    def compose(
        recipient_id: str,
        triggered_by: str | None,
        notification_type: str,
        title: str,
        message: str,
        related_request_id: str | None = None,
    ) -> dict[str, Any]:
        """Build a notification record without persisting it."""
        if notification_type not in NOTIFICATION_TYPES:
            msg = f"Unknown notification type: {notification_type}"
            raise ValueError(msg)
        return {
            "notification_id": new_id("ntf"),
            "user_id": recipient_id,
            "triggered_by": triggered_by,
            "type": notification_type,
            "title": title,
            "message": message,
            "related_request_id": related_request_id,
            "is_read": False,
            "created_at": now_iso(),
        }

    def notify(
        self,
        recipient_id: str,
        triggered_by: str | None,
        notification_type: str,
        title: str,
        message: str,
        related_request_id: str | None = None,
    ) -> dict[str, Any]:
        """Create a notification. No deduplication, no batching."""
        notification = self.compose(
            recipient_id,
            triggered_by,
            notification_type,
            title,
            message,
            related_request_id,
        )
        self._store.insert_notification(notification)
        return notification

    def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        """All notifications of a user, newest first."""
        return self._store.list_notifications(user_id)

    def mark_read(self, notification_id: str, user_id: str) -> dict[str, Any] | None:
        """
        Flag a notification as read.

        Returns None when the notification does not exist or belongs to
        someone else.
        """
        if self._store.mark_notification_read(notification_id, user_id) == 0:
            return None
        return {"notification_id": notification_id, "is_read": True}

    def unread_count(self, user_id: str) -> int:
        """Number of unread notifications of a user."""
        return self._store.count_unread_notifications(user_id)
