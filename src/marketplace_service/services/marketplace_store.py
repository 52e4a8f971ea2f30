"""SQLite-backed storage for service requests and their child records."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class DuplicateReviewError(Exception):
    """Raised when a reviewer already reviewed the same service request."""


class StatusConflictError(Exception):
    """Raised when a compare-and-set on the request status matched no row."""


class MarketplaceStore:
    """
    SQLite-backed storage for service requests, messages, notifications,
    deliveries, audit entries, reviews and profile aggregates.

    Every multi-row write runs inside one BEGIN IMMEDIATE transaction so
    that a status change never lands without its audit entry, and a
    message never lands without its notification.
    """

    _REQUEST_COLUMNS: tuple[str, ...] = (
        "request_id",
        "contractor_id",
        "vendor_id",
        "service_id",
        "title",
        "description",
        "category",
        "priority",
        "budget",
        "status",
        "estimated_cost",
        "actual_cost",
        "estimated_duration",
        "created_at",
        "updated_at",
    )
    _REQUEST_COLUMNS_SQL = ", ".join(_REQUEST_COLUMNS)
    _MESSAGE_COLUMNS: tuple[str, ...] = (
        "message_id",
        "request_id",
        "sender_id",
        "receiver_id",
        "content",
        "is_read",
        "created_at",
    )
    _LOG_COLUMNS: tuple[str, ...] = (
        "log_id",
        "request_id",
        "action",
        "performed_by",
        "previous_status",
        "new_status",
        "metadata",
        "created_at",
    )
    _REVIEW_COLUMNS: tuple[str, ...] = (
        "review_id",
        "request_id",
        "reviewer_id",
        "reviewee_id",
        "rating",
        "comment",
        "created_at",
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    display_name TEXT,
                    last_seen_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS profiles (
                    user_id TEXT PRIMARY KEY,
                    rating REAL NOT NULL DEFAULT 0,
                    review_count INTEGER NOT NULL DEFAULT 0,
                    response_time_minutes INTEGER NOT NULL DEFAULT 0,
                    response_time TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS service_requests (
                    request_id TEXT PRIMARY KEY,
                    contractor_id TEXT NOT NULL,
                    vendor_id TEXT,
                    service_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    category TEXT,
                    priority TEXT NOT NULL,
                    budget TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    estimated_cost TEXT,
                    actual_cost TEXT,
                    estimated_duration TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_requests_contractor
                    ON service_requests (contractor_id);

                CREATE INDEX IF NOT EXISTS ix_requests_vendor
                    ON service_requests (vendor_id);

                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES service_requests (request_id),
                    sender_id TEXT NOT NULL,
                    receiver_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    CHECK (sender_id <> receiver_id)
                );

                CREATE INDEX IF NOT EXISTS ix_messages_thread
                    ON messages (request_id, created_at);

                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    triggered_by TEXT,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    related_request_id TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_notifications_user
                    ON notifications (user_id, is_read);

                CREATE TABLE IF NOT EXISTS deliveries (
                    delivery_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES service_requests (request_id),
                    sequence INTEGER NOT NULL,
                    delivered_by TEXT NOT NULL,
                    message TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (request_id, sequence)
                );

                CREATE TABLE IF NOT EXISTS delivery_attachments (
                    attachment_id TEXT PRIMARY KEY,
                    delivery_id TEXT NOT NULL REFERENCES deliveries (delivery_id),
                    file_path TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_size INTEGER NOT NULL CHECK (file_size >= 0)
                );

                CREATE TABLE IF NOT EXISTS request_logs (
                    log_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES service_requests (request_id),
                    action TEXT NOT NULL,
                    performed_by TEXT NOT NULL,
                    previous_status TEXT,
                    new_status TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_request_logs_request
                    ON request_logs (request_id);

                CREATE TABLE IF NOT EXISTS reviews (
                    review_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES service_requests (request_id),
                    reviewer_id TEXT NOT NULL,
                    reviewee_id TEXT NOT NULL,
                    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
                    comment TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_reviews_reviewer
                    ON reviews (request_id, reviewer_id);

                CREATE INDEX IF NOT EXISTS ix_reviews_reviewee
                    ON reviews (reviewee_id);
                """
            )
            self._db.commit()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements as one atomic unit of work."""
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._db.commit()

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_dict(row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
        return {column: row[column] for column in columns}

    def _row_to_log(self, row: sqlite3.Row) -> dict[str, Any]:
        entry = self._row_to_dict(row, self._LOG_COLUMNS)
        entry["metadata"] = json.loads(row["metadata"]) if row["metadata"] else None
        return entry

    @staticmethod
    def _insert_log(db: sqlite3.Connection, entry: dict[str, Any]) -> None:
        db.execute(
            """
            INSERT INTO request_logs (
                log_id, request_id, action, performed_by,
                previous_status, new_status, metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry["log_id"],
                entry["request_id"],
                entry["action"],
                entry["performed_by"],
                entry["previous_status"],
                entry["new_status"],
                json.dumps(entry["metadata"]) if entry.get("metadata") is not None else None,
                entry["created_at"],
            ),
        )

    @staticmethod
    def _insert_notification(db: sqlite3.Connection, notification: dict[str, Any]) -> None:
        db.execute(
            """
            INSERT INTO notifications (
                notification_id, user_id, triggered_by, type, title,
                message, related_request_id, is_read, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                notification["notification_id"],
                notification["user_id"],
                notification["triggered_by"],
                notification["type"],
                notification["title"],
                notification["message"],
                notification["related_request_id"],
                notification["created_at"],
            ),
        )

    @staticmethod
    def _upsert_profile(db: sqlite3.Connection, user_id: str, values: dict[str, Any]) -> None:
        db.execute(
            "INSERT INTO profiles (user_id, updated_at) VALUES (?, ?) "
            "ON CONFLICT (user_id) DO NOTHING",
            (user_id, values["updated_at"]),
        )
        set_clause = ", ".join(f"{column} = ?" for column in values)
        db.execute(
            "UPDATE profiles SET " + set_clause + " WHERE user_id = ?",  # nosec B608
            (*values.values(), user_id),
        )

    # ------------------------------------------------------------------
    # Users and profiles
    # ------------------------------------------------------------------

    def upsert_user(self, user_id: str, role: str, display_name: str | None, seen_at: str) -> None:
        """Remember the latest known role and display name of a principal."""
        with self._lock:
            self._db.execute(
                """
                INSERT INTO users (user_id, role, display_name, last_seen_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    role = excluded.role,
                    display_name = COALESCE(excluded.display_name, users.display_name),
                    last_seen_at = excluded.last_seen_at
                """,
                (user_id, role, display_name, seen_at),
            )
            self._db.commit()

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a cached principal by ID."""
        with self._lock:
            row = self._db.execute(
                "SELECT user_id, role, display_name FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {"user_id": row["user_id"], "role": row["role"], "display_name": row["display_name"]}

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        """Fetch the rating and response-time aggregate of a user."""
        with self._lock:
            row = self._db.execute(
                "SELECT user_id, rating, review_count, response_time_minutes, response_time, "
                "updated_at FROM profiles WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "user_id": row["user_id"],
            "rating": float(row["rating"]),
            "review_count": int(row["review_count"]),
            "response_time_minutes": int(row["response_time_minutes"]),
            "response_time": row["response_time"],
            "updated_at": row["updated_at"],
        }

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------

    def insert_request(self, request_data: dict[str, Any], log_entry: dict[str, Any]) -> None:
        """Insert a new request together with its creation audit entry."""
        values = tuple(request_data[column] for column in self._REQUEST_COLUMNS)
        placeholders = ", ".join("?" for _ in self._REQUEST_COLUMNS)
        with self._transaction() as db:
            db.execute(
                f"INSERT INTO service_requests ({self._REQUEST_COLUMNS_SQL}) "  # nosec B608
                f"VALUES ({placeholders})",
                values,
            )
            self._insert_log(db, log_entry)

    def get_request(self, request_id: str) -> dict[str, Any] | None:
        """Fetch a request by ID."""
        with self._lock:
            row = self._db.execute(
                f"SELECT {self._REQUEST_COLUMNS_SQL} FROM service_requests "  # nosec B608
                "WHERE request_id = ?",
                (request_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_dict(row, self._REQUEST_COLUMNS)

    def list_requests(
        self,
        contractor_id: str | None,
        vendor_id: str | None,
    ) -> list[dict[str, Any]]:
        """List requests, optionally filtered by contractor or vendor, newest first."""
        query = f"SELECT {self._REQUEST_COLUMNS_SQL} FROM service_requests"  # nosec B608
        clauses: list[str] = []
        params: list[object] = []
        if contractor_id is not None:
            clauses.append("contractor_id = ?")
            params.append(contractor_id)
        if vendor_id is not None:
            clauses.append("vendor_id = ?")
            params.append(vendor_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_dict(row, self._REQUEST_COLUMNS) for row in rows]

    def count_requests(self) -> int:
        """Count total requests."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM service_requests").fetchone()
        return int(row[0]) if row is not None else 0

    def count_requests_by_status(self) -> dict[str, int]:
        """Count requests grouped by status."""
        with self._lock:
            rows = self._db.execute(
                "SELECT status, COUNT(*) FROM service_requests GROUP BY status"
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def transition_request(
        self,
        request_id: str,
        updates: dict[str, Any],
        *,
        expected_statuses: tuple[str, ...],
        log_entry: dict[str, Any],
        notification: dict[str, Any] | None = None,
    ) -> None:
        """
        Apply a compare-and-set update to a request plus its audit entry.

        Raises:
            StatusConflictError: If the request is no longer in one of
                expected_statuses. Nothing is written in that case.
        """
        if any(column not in self._REQUEST_COLUMNS for column in updates):
            msg = "Attempted to update unknown request column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        status_placeholders = ", ".join("?" for _ in expected_statuses)
        query = (
            "UPDATE service_requests SET "  # nosec B608
            + set_clause
            + f" WHERE request_id = ? AND status IN ({status_placeholders})"
        )
        params = [*updates.values(), request_id, *expected_statuses]

        with self._transaction() as db:
            cursor = db.execute(query, params)
            if cursor.rowcount == 0:
                raise StatusConflictError(
                    f"Request {request_id} is not in any of {list(expected_statuses)}"
                )
            self._insert_log(db, log_entry)
            if notification is not None:
                self._insert_notification(db, notification)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_log(
        self,
        log_entry: dict[str, Any],
        notification: dict[str, Any] | None = None,
    ) -> None:
        """Append an audit entry that does not change the request row."""
        with self._transaction() as db:
            self._insert_log(db, log_entry)
            if notification is not None:
                self._insert_notification(db, notification)

    def get_logs(
        self,
        request_id: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """List audit entries newest first, optionally for one request."""
        query = "SELECT " + ", ".join(self._LOG_COLUMNS) + " FROM request_logs"  # nosec B608
        params: list[object] = []
        if request_id is not None:
            query += " WHERE request_id = ?"
            params.append(request_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_log(row) for row in rows]

    def get_logs_for_request(self, request_id: str) -> list[dict[str, Any]]:
        """List every audit entry of a request in the order it was written."""
        with self._lock:
            rows = self._db.execute(
                "SELECT " + ", ".join(self._LOG_COLUMNS) + " FROM request_logs "  # nosec B608
                "WHERE request_id = ? ORDER BY created_at, rowid",
                (request_id,),
            ).fetchall()
        return [self._row_to_log(row) for row in rows]

    def count_logs(self, request_id: str | None) -> int:
        """Count audit entries, optionally for one request."""
        with self._lock:
            if request_id is None:
                row = self._db.execute("SELECT COUNT(*) FROM request_logs").fetchone()
            else:
                row = self._db.execute(
                    "SELECT COUNT(*) FROM request_logs WHERE request_id = ?",
                    (request_id,),
                ).fetchone()
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    def insert_delivery(
        self,
        delivery: dict[str, Any],
        attachments: list[dict[str, Any]],
        *,
        expected_statuses: tuple[str, ...],
        request_updates: dict[str, Any],
        log_entry: dict[str, Any],
        notification: dict[str, Any],
    ) -> int:
        """
        Record a delivery and move the request to delivered, atomically.

        Returns the sequence number assigned to the delivery (1 for the
        first delivery of a request, 2 for the first re-delivery, ...).

        Raises:
            StatusConflictError: If the request left expected_statuses.
            sqlite3.IntegrityError: If an attachment row is rejected; the
                delivery, its attachments and the status change roll back.
        """
        set_clause = ", ".join(f"{column} = ?" for column in request_updates)
        status_placeholders = ", ".join("?" for _ in expected_statuses)

        with self._transaction() as db:
            row = db.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM deliveries WHERE request_id = ?",
                (delivery["request_id"],),
            ).fetchone()
            sequence = int(row[0]) + 1

            db.execute(
                """
                INSERT INTO deliveries (
                    delivery_id, request_id, sequence, delivered_by, message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    delivery["delivery_id"],
                    delivery["request_id"],
                    sequence,
                    delivery["delivered_by"],
                    delivery["message"],
                    delivery["created_at"],
                ),
            )
            for attachment in attachments:
                db.execute(
                    """
                    INSERT INTO delivery_attachments (
                        attachment_id, delivery_id, file_path, file_name, file_size
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        attachment["attachment_id"],
                        delivery["delivery_id"],
                        attachment["file_path"],
                        attachment["file_name"],
                        attachment["file_size"],
                    ),
                )

            cursor = db.execute(
                "UPDATE service_requests SET "  # nosec B608
                + set_clause
                + f" WHERE request_id = ? AND status IN ({status_placeholders})",
                [*request_updates.values(), delivery["request_id"], *expected_statuses],
            )
            if cursor.rowcount == 0:
                raise StatusConflictError(
                    f"Request {delivery['request_id']} is not in any of {list(expected_statuses)}"
                )
            self._insert_log(db, log_entry)
            self._insert_notification(db, notification)
        return sequence

    def get_deliveries_for_request(self, request_id: str) -> list[dict[str, Any]]:
        """List deliveries of a request by sequence, each with its attachments."""
        with self._lock:
            delivery_rows = self._db.execute(
                "SELECT delivery_id, request_id, sequence, delivered_by, message, created_at "
                "FROM deliveries WHERE request_id = ? ORDER BY sequence",
                (request_id,),
            ).fetchall()
            attachment_rows = self._db.execute(
                "SELECT a.attachment_id, a.delivery_id, a.file_path, a.file_name, a.file_size "
                "FROM delivery_attachments a JOIN deliveries d ON d.delivery_id = a.delivery_id "
                "WHERE d.request_id = ? ORDER BY a.rowid",
                (request_id,),
            ).fetchall()

        attachments_by_delivery: dict[str, list[dict[str, Any]]] = {}
        for row in attachment_rows:
            attachments_by_delivery.setdefault(str(row["delivery_id"]), []).append(
                {
                    "attachment_id": row["attachment_id"],
                    "file_path": row["file_path"],
                    "file_name": row["file_name"],
                    "file_size": int(row["file_size"]),
                }
            )

        return [
            {
                "delivery_id": row["delivery_id"],
                "request_id": row["request_id"],
                "sequence": int(row["sequence"]),
                "delivered_by": row["delivered_by"],
                "message": row["message"],
                "created_at": row["created_at"],
                "attachments": attachments_by_delivery.get(str(row["delivery_id"]), []),
            }
            for row in delivery_rows
        ]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_message(
        self,
        message: dict[str, Any],
        notification: dict[str, Any],
        profile_update: tuple[str, dict[str, Any]] | None = None,
    ) -> None:
        """Insert a message with its receiver notification and optional profile fold."""
        with self._transaction() as db:
            db.execute(
                """
                INSERT INTO messages (
                    message_id, request_id, sender_id, receiver_id, content, is_read, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    message["message_id"],
                    message["request_id"],
                    message["sender_id"],
                    message["receiver_id"],
                    message["content"],
                    message["created_at"],
                ),
            )
            self._insert_notification(db, notification)
            if profile_update is not None:
                user_id, values = profile_update
                self._upsert_profile(db, user_id, values)

    def get_messages(self, request_id: str) -> list[dict[str, Any]]:
        """List the messages of a thread, oldest first."""
        with self._lock:
            rows = self._db.execute(
                "SELECT " + ", ".join(self._MESSAGE_COLUMNS) + " FROM messages "  # nosec B608
                "WHERE request_id = ? ORDER BY created_at, rowid",
                (request_id,),
            ).fetchall()
        messages = [self._row_to_dict(row, self._MESSAGE_COLUMNS) for row in rows]
        for message in messages:
            message["is_read"] = bool(message["is_read"])
        return messages

    def count_messages_from(self, request_id: str, sender_id: str) -> int:
        """Count messages a sender has written on a thread."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM messages WHERE request_id = ? AND sender_id = ?",
                (request_id, sender_id),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def get_first_message_at(self, request_id: str, sender_id: str) -> str | None:
        """Return the timestamp of a sender's first message on a thread."""
        with self._lock:
            row = self._db.execute(
                "SELECT created_at FROM messages WHERE request_id = ? AND sender_id = ? "
                "ORDER BY created_at, rowid LIMIT 1",
                (request_id, sender_id),
            ).fetchone()
        return str(row["created_at"]) if row is not None else None

    def mark_thread_read(self, request_id: str, reader_id: str) -> int:
        """Flag every unread message addressed to reader_id on a thread as read."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE messages SET is_read = 1 "
                "WHERE request_id = ? AND receiver_id = ? AND is_read = 0",
                (request_id, reader_id),
            )
            self._db.commit()
        return int(cursor.rowcount)

    def get_thread_summaries(self, user_id: str) -> list[dict[str, Any]]:
        """
        Summarize every thread the user is a party to.

        Each summary carries the counterpart's cached display name, the
        latest message and the number of messages still unread by user_id.
        """
        with self._lock:
            rows = self._db.execute(
                """
                SELECT
                    r.request_id,
                    r.title,
                    r.status,
                    r.service_id,
                    CASE WHEN r.contractor_id = :user_id THEN r.vendor_id
                         ELSE r.contractor_id END AS other_party_id,
                    u.display_name AS other_party_name,
                    (SELECT m.content FROM messages m WHERE m.request_id = r.request_id
                        ORDER BY m.created_at DESC, m.rowid DESC LIMIT 1) AS last_message,
                    (SELECT m.created_at FROM messages m WHERE m.request_id = r.request_id
                        ORDER BY m.created_at DESC, m.rowid DESC LIMIT 1) AS last_message_at,
                    (SELECT COUNT(*) FROM messages m WHERE m.request_id = r.request_id
                        AND m.receiver_id = :user_id AND m.is_read = 0) AS unread_count
                FROM service_requests r
                LEFT JOIN users u ON u.user_id = (
                    CASE WHEN r.contractor_id = :user_id THEN r.vendor_id
                         ELSE r.contractor_id END
                )
                WHERE r.contractor_id = :user_id OR r.vendor_id = :user_id
                """,
                {"user_id": user_id},
            ).fetchall()
        return [
            {
                "request_id": row["request_id"],
                "title": row["title"],
                "status": row["status"],
                "service_id": row["service_id"],
                "other_party_id": row["other_party_id"],
                "other_party_name": row["other_party_name"],
                "last_message": row["last_message"],
                "last_message_at": row["last_message_at"],
                "unread_count": int(row["unread_count"]),
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def insert_notification(self, notification: dict[str, Any]) -> None:
        """Insert a standalone notification."""
        with self._transaction() as db:
            self._insert_notification(db, notification)

    def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        """List a user's notifications newest first, joined with the sender identity."""
        with self._lock:
            rows = self._db.execute(
                """
                SELECT
                    n.notification_id, n.user_id, n.triggered_by, n.type, n.title,
                    n.message, n.related_request_id, n.is_read, n.created_at,
                    u.display_name AS sender_name, u.role AS sender_role
                FROM notifications n
                LEFT JOIN users u ON u.user_id = n.triggered_by
                WHERE n.user_id = ?
                ORDER BY n.created_at DESC, n.rowid DESC
                """,
                (user_id,),
            ).fetchall()
        return [
            {
                "notification_id": row["notification_id"],
                "user_id": row["user_id"],
                "type": row["type"],
                "title": row["title"],
                "message": row["message"],
                "related_request_id": row["related_request_id"],
                "is_read": bool(row["is_read"]),
                "created_at": row["created_at"],
                "triggered_by": row["triggered_by"],
                "sender": None
                if row["triggered_by"] is None
                else {
                    "user_id": row["triggered_by"],
                    "display_name": row["sender_name"],
                    "role": row["sender_role"],
                },
            }
            for row in rows
        ]

    def mark_notification_read(self, notification_id: str, user_id: str) -> int:
        """Flag a notification as read if it belongs to user_id."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE notifications SET is_read = 1 WHERE notification_id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            self._db.commit()
        return int(cursor.rowcount)

    def count_unread_notifications(self, user_id: str) -> int:
        """Count unread notifications of a user."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0",
                (user_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def insert_review(
        self,
        review: dict[str, Any],
        notification: dict[str, Any] | None,
        updated_at: str,
    ) -> dict[str, Any]:
        """
        Insert a review and recompute the reviewee aggregate atomically.

        Returns the reviewee's new {"rating", "review_count"}.

        Raises:
            DuplicateReviewError: If the reviewer already reviewed the request.
        """
        try:
            with self._transaction() as db:
                db.execute(
                    """
                    INSERT INTO reviews (
                        review_id, request_id, reviewer_id, reviewee_id, rating, comment, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        review["review_id"],
                        review["request_id"],
                        review["reviewer_id"],
                        review["reviewee_id"],
                        review["rating"],
                        review["comment"],
                        review["created_at"],
                    ),
                )
                row = db.execute(
                    "SELECT AVG(rating), COUNT(*) FROM reviews WHERE reviewee_id = ?",
                    (review["reviewee_id"],),
                ).fetchone()
                aggregate = {"rating": float(row[0]), "review_count": int(row[1])}
                self._upsert_profile(
                    db,
                    review["reviewee_id"],
                    {**aggregate, "updated_at": updated_at},
                )
                if notification is not None:
                    self._insert_notification(db, notification)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateReviewError(
                    f"Reviewer {review['reviewer_id']} already reviewed {review['request_id']}"
                ) from exc
            raise
        return aggregate

    def get_reviews_for_request(self, request_id: str) -> list[dict[str, Any]]:
        """List reviews written on a request, newest first."""
        with self._lock:
            rows = self._db.execute(
                "SELECT " + ", ".join(self._REVIEW_COLUMNS) + " FROM reviews "  # nosec B608
                "WHERE request_id = ? ORDER BY created_at DESC, rowid DESC",
                (request_id,),
            ).fetchall()
        return [self._row_to_dict(row, self._REVIEW_COLUMNS) for row in rows]

    def get_reviews_for_user(self, user_id: str) -> list[dict[str, Any]]:
        """List reviews received by a user, newest first, with reviewer name."""
        with self._lock:
            rows = self._db.execute(
                """
                SELECT r.review_id, r.request_id, r.reviewer_id, r.reviewee_id, r.rating,
                       r.comment, r.created_at, u.display_name AS reviewer_name
                FROM reviews r
                LEFT JOIN users u ON u.user_id = r.reviewer_id
                WHERE r.reviewee_id = ?
                ORDER BY r.created_at DESC, r.rowid DESC
                """,
                (user_id,),
            ).fetchall()
        reviews: list[dict[str, Any]] = []
        for row in rows:
            review = self._row_to_dict(row, self._REVIEW_COLUMNS)
            review["reviewer_name"] = row["reviewer_name"]
            reviews.append(review)
        return reviews

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
