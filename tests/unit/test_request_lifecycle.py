"""Unit tests for RequestLifecycle."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.services.ids import now_iso
from marketplace_service.services.marketplace_store import MarketplaceStore, StatusConflictError
from marketplace_service.services.request_lifecycle import (
    ALLOWED_TRANSITIONS,
    REQUEST_STATUSES,
    TERMINAL_STATUSES,
    RequestLifecycle,
)
from marketplace_service.services.token_validator import Principal

CONTRACTOR = Principal(user_id="u-contractor", role="contractor", display_name="Ada")
VENDOR = Principal(user_id="u-vendor", role="vendor", display_name="Bob")
OTHER_VENDOR = Principal(user_id="u-vendor-2", role="vendor", display_name="Carol")
ADMIN = Principal(user_id="u-admin", role="admin", display_name="Root")


@pytest.fixture
def store(tmp_path) -> MarketplaceStore:
    db = MarketplaceStore(db_path=str(tmp_path / "marketplace.db"))
    yield db
    db.close()


@pytest.fixture
def lifecycle(store: MarketplaceStore) -> RequestLifecycle:
    return RequestLifecycle(store)


def _create(lifecycle: RequestLifecycle, **extra) -> str:
    body = {"description": "Review our teaming agreement", **extra}
    return lifecycle.create_request(CONTRACTOR, body)["request_id"]


def _in_progress(lifecycle: RequestLifecycle) -> str:
    request_id = _create(lifecycle, vendor_id=VENDOR.user_id)
    lifecycle.update_status(VENDOR, request_id, "in_progress")
    return request_id


def _error(exc_info: pytest.ExceptionInfo[ServiceError]) -> tuple[str, int]:
    return exc_info.value.error, exc_info.value.status_code


class TestTransitionTable:
    """The static transition table."""

    @pytest.mark.unit
    def test_every_status_has_an_entry(self) -> None:
        assert set(ALLOWED_TRANSITIONS) == set(REQUEST_STATUSES)

    @pytest.mark.unit
    def test_terminal_statuses_have_no_exits(self) -> None:
        for status in TERMINAL_STATUSES:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    @pytest.mark.unit
    def test_delivered_only_reachable_through_deliver(self) -> None:
        for targets in ALLOWED_TRANSITIONS.values():
            assert "delivered" not in targets

    @pytest.mark.unit
    def test_role_table_narrows_transitions(self, store: MarketplaceStore) -> None:
        narrowed = RequestLifecycle(
            store,
            role_transitions={"vendor": {"pending": ["in_progress", "completed"]}},
        )
        assert narrowed.allowed_next("pending", "vendor") == frozenset({"in_progress"})
        assert narrowed.allowed_next("matched", "vendor") == frozenset()
        assert narrowed.allowed_next("pending", "contractor") == ALLOWED_TRANSITIONS["pending"]


class TestCreate:
    """Tests for create_request."""

    @pytest.mark.unit
    def test_defaults(self, lifecycle: RequestLifecycle, store: MarketplaceStore) -> None:
        description = "x" * 120
        created = lifecycle.create_request(CONTRACTOR, {"description": description})

        assert created["status"] == "pending"
        assert created["priority"] == "medium"
        assert created["title"] == "x" * 80
        assert created["vendor_id"] is None
        assert created["budget"] is None

        logs = store.get_logs_for_request(created["request_id"])
        assert [(log["action"], log["previous_status"], log["new_status"]) for log in logs] == [
            ("SERVICE REQUEST CREATED", None, "pending")
        ]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("budget_fields", "expected"),
        [
            ({"budget": 1500}, "1500"),
            ({"budget": "250.50"}, "250.50"),
            ({"budget_min": 100, "budget_max": 500}, "100-500"),
            ({"budget_min": 100}, "100-"),
            ({"budget_max": 500}, "0-500"),
        ],
    )
    def test_budget_rendering(
        self,
        lifecycle: RequestLifecycle,
        budget_fields: dict,
        expected: str,
    ) -> None:
        created = lifecycle.create_request(CONTRACTOR, {"description": "d", **budget_fields})
        assert created["budget"] == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"description": "   "},
            {"description": 42},
            {"description": "d", "budget": -1},
            {"description": "d", "budget": "lots"},
            {"description": "d", "budget_min": 500, "budget_max": 100},
            {"description": "d", "category": "plumbing"},
            {"description": "d", "title": "t" * 201},
            {"description": "d", "vendor_id": "u-contractor"},
        ],
    )
    def test_invalid_payload(self, lifecycle: RequestLifecycle, body: dict) -> None:
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.create_request(CONTRACTOR, body)
        assert _error(exc_info) == ("INVALID_PAYLOAD", 400)

    @pytest.mark.unit
    def test_only_contractors_create(self, lifecycle: RequestLifecycle) -> None:
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.create_request(VENDOR, {"description": "d"})
        assert _error(exc_info) == ("FORBIDDEN", 403)


class TestUpdateStatus:
    """Tests for update_status."""

    @pytest.mark.unit
    def test_invalid_status_checked_first(self, lifecycle: RequestLifecycle) -> None:
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.update_status(CONTRACTOR, "sr-missing", "delivered")
        assert _error(exc_info) == ("INVALID_STATUS", 400)

    @pytest.mark.unit
    def test_missing_request(self, lifecycle: RequestLifecycle) -> None:
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.update_status(CONTRACTOR, "sr-missing", "cancelled")
        assert _error(exc_info) == ("REQUEST_NOT_FOUND", 404)

    @pytest.mark.unit
    def test_non_party_forbidden(self, lifecycle: RequestLifecycle) -> None:
        request_id = _create(lifecycle, vendor_id=VENDOR.user_id)
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.update_status(OTHER_VENDOR, request_id, "cancelled")
        assert _error(exc_info) == ("FORBIDDEN", 403)

    @pytest.mark.unit
    def test_same_status_is_a_no_op(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        request_id = _create(lifecycle)
        result = lifecycle.update_status(CONTRACTOR, request_id, "pending")
        assert result["status"] == "pending"
        assert store.count_logs(request_id) == 1

    @pytest.mark.unit
    def test_terminal_status_is_final(self, lifecycle: RequestLifecycle) -> None:
        request_id = _create(lifecycle)
        lifecycle.update_status(CONTRACTOR, request_id, "cancelled")
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.update_status(CONTRACTOR, request_id, "pending")
        assert _error(exc_info) == ("INVALID_TRANSITION", 409)

    @pytest.mark.unit
    def test_in_progress_needs_a_vendor(self, lifecycle: RequestLifecycle) -> None:
        request_id = _create(lifecycle)
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.update_status(CONTRACTOR, request_id, "in_progress")
        assert _error(exc_info) == ("VENDOR_NOT_ASSIGNED", 409)

    @pytest.mark.unit
    def test_transition_writes_audit_entry(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        request_id = _in_progress(lifecycle)
        logs = store.get_logs_for_request(request_id)
        assert logs[-1]["action"] == "STATUS_UPDATED"
        assert logs[-1]["performed_by"] == VENDOR.user_id
        assert (logs[-1]["previous_status"], logs[-1]["new_status"]) == ("pending", "in_progress")

    @pytest.mark.unit
    def test_lost_race_reports_concurrent_update(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        request_id = _create(lifecycle, vendor_id=VENDOR.user_id)
        with (
            patch.object(store, "transition_request", side_effect=StatusConflictError("lost")),
            pytest.raises(ServiceError) as exc_info,
        ):
            lifecycle.update_status(CONTRACTOR, request_id, "cancelled")
        assert _error(exc_info) == ("CONCURRENT_UPDATE", 409)

    @pytest.mark.unit
    def test_role_table_rejects_disallowed_move(self, store: MarketplaceStore) -> None:
        narrowed = RequestLifecycle(store, role_transitions={"vendor": {"pending": []}})
        request_id = narrowed.create_request(
            CONTRACTOR, {"description": "d", "vendor_id": VENDOR.user_id}
        )["request_id"]
        with pytest.raises(ServiceError) as exc_info:
            narrowed.update_status(VENDOR, request_id, "cancelled")
        assert _error(exc_info) == ("INVALID_TRANSITION", 409)


class TestAssignVendor:
    """Tests for assign_vendor."""

    @pytest.mark.unit
    def test_assign_moves_to_matched_and_notifies(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        request_id = _create(lifecycle)
        result = lifecycle.assign_vendor(CONTRACTOR, request_id, {"vendor_id": VENDOR.user_id})

        assert result["status"] == "matched"
        assert result["vendor_id"] == VENDOR.user_id
        notifications = store.list_notifications(VENDOR.user_id)
        assert [n["type"] for n in notifications] == ["new_request"]

    @pytest.mark.unit
    def test_reassign_while_matched(self, lifecycle: RequestLifecycle) -> None:
        request_id = _create(lifecycle)
        lifecycle.assign_vendor(CONTRACTOR, request_id, {"vendor_id": VENDOR.user_id})
        result = lifecycle.assign_vendor(
            CONTRACTOR, request_id, {"vendor_id": OTHER_VENDOR.user_id}
        )
        assert result["vendor_id"] == OTHER_VENDOR.user_id

    @pytest.mark.unit
    def test_only_contractor_assigns(self, lifecycle: RequestLifecycle) -> None:
        request_id = _create(lifecycle, vendor_id=VENDOR.user_id)
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.assign_vendor(VENDOR, request_id, {"vendor_id": OTHER_VENDOR.user_id})
        assert _error(exc_info) == ("FORBIDDEN", 403)

    @pytest.mark.unit
    def test_cannot_assign_after_work_started(self, lifecycle: RequestLifecycle) -> None:
        request_id = _in_progress(lifecycle)
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.assign_vendor(CONTRACTOR, request_id, {"vendor_id": OTHER_VENDOR.user_id})
        assert _error(exc_info) == ("INVALID_TRANSITION", 409)

    @pytest.mark.unit
    @pytest.mark.parametrize("role", ["contractor", "admin"])
    def test_known_non_vendor_rejected(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
        role: str,
    ) -> None:
        store.upsert_user("u-known", role, "Known", now_iso())
        request_id = _create(lifecycle)

        with pytest.raises(ServiceError) as exc_info:
            lifecycle.assign_vendor(CONTRACTOR, request_id, {"vendor_id": "u-known"})
        assert _error(exc_info) == ("INVALID_PAYLOAD", 400)

        with pytest.raises(ServiceError) as exc_info:
            _create(lifecycle, vendor_id="u-known")
        assert _error(exc_info) == ("INVALID_PAYLOAD", 400)

        assert store.get_request(request_id)["vendor_id"] is None
        assert store.count_requests() == 1

    @pytest.mark.unit
    def test_known_vendor_accepted(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        store.upsert_user(VENDOR.user_id, "vendor", VENDOR.display_name, now_iso())
        request_id = _create(lifecycle, vendor_id=VENDOR.user_id)
        assert store.get_request(request_id)["vendor_id"] == VENDOR.user_id


class TestDeliver:
    """Tests for deliver and extend_delivery."""

    @pytest.mark.unit
    def test_deliver_then_redeliver(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        request_id = _in_progress(lifecycle)
        first = lifecycle.deliver(VENDOR, request_id, {"message": "Draft attached"})
        second = lifecycle.deliver(VENDOR, request_id, {"message": "Revised"})

        assert (first["sequence"], second["sequence"]) == (1, 2)
        assert store.get_request(request_id)["status"] == "delivered"
        titles = [n["title"] for n in store.list_notifications(CONTRACTOR.user_id)]
        assert titles == ["Updated Delivery Received", "New Delivery Received"]

    @pytest.mark.unit
    def test_message_required_before_lookup(self, lifecycle: RequestLifecycle) -> None:
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.deliver(VENDOR, "sr-missing", {"message": ""})
        assert _error(exc_info) == ("INVALID_PAYLOAD", 400)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "attachments",
        [
            "not-a-list",
            ["not-an-object"],
            [{"file_name": "a.pdf", "file_size": 1}],
            [{"file_path": "/uploads/x/a.pdf", "file_size": 1}],
            [{"file_path": "/uploads/x/a.pdf", "file_name": "a.pdf", "file_size": -1}],
            [{"file_path": "/uploads/x/a.pdf", "file_name": "a.pdf", "file_size": True}],
        ],
    )
    def test_malformed_attachments(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
        attachments: object,
    ) -> None:
        request_id = _in_progress(lifecycle)
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.deliver(VENDOR, request_id, {"message": "m", "attachments": attachments})
        assert _error(exc_info) == ("INVALID_PAYLOAD", 400)
        assert store.get_request(request_id)["status"] == "in_progress"

    @pytest.mark.unit
    def test_only_assigned_vendor_delivers(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        request_id = _in_progress(lifecycle)
        logs_before = store.count_logs(request_id)
        unread_before = {
            user_id: store.count_unread_notifications(user_id)
            for user_id in (CONTRACTOR.user_id, VENDOR.user_id, OTHER_VENDOR.user_id)
        }
        attachment = {"file_path": "/uploads/upl-1/a.pdf", "file_name": "a.pdf", "file_size": 1}

        for principal in (CONTRACTOR, OTHER_VENDOR):
            with pytest.raises(ServiceError) as exc_info:
                lifecycle.deliver(
                    principal, request_id, {"message": "m", "attachments": [attachment]}
                )
            assert _error(exc_info) == ("FORBIDDEN", 403)

        assert store.get_request(request_id)["status"] == "in_progress"
        assert store.get_deliveries_for_request(request_id) == []
        assert store.count_logs(request_id) == logs_before
        for user_id, unread in unread_before.items():
            assert store.count_unread_notifications(user_id) == unread

    @pytest.mark.unit
    def test_cannot_deliver_before_work_starts(self, lifecycle: RequestLifecycle) -> None:
        request_id = _create(lifecycle, vendor_id=VENDOR.user_id)
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.deliver(VENDOR, request_id, {"message": "m"})
        assert _error(exc_info) == ("INVALID_STATUS", 409)

    @pytest.mark.unit
    def test_extend_keeps_status(
        self,
        lifecycle: RequestLifecycle,
        store: MarketplaceStore,
    ) -> None:
        request_id = _in_progress(lifecycle)
        result = lifecycle.extend_delivery(
            VENDOR,
            request_id,
            {"new_delivery_date": "2026-12-01", "reason": "Awaiting agency feedback"},
        )

        assert result["status"] == "in_progress"
        assert result["new_delivery_date"] == "2026-12-01"
        assert store.get_request(request_id)["status"] == "in_progress"
        last = store.get_logs_for_request(request_id)[-1]
        assert last["action"] == "DELIVERY_EXTENDED"
        assert last["metadata"]["reason"] == "Awaiting agency feedback"

    @pytest.mark.unit
    def test_extend_rejects_bad_date(self, lifecycle: RequestLifecycle) -> None:
        request_id = _in_progress(lifecycle)
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.extend_delivery(
                VENDOR, request_id, {"new_delivery_date": "next week", "reason": "r"}
            )
        assert _error(exc_info) == ("INVALID_PAYLOAD", 400)

    @pytest.mark.unit
    def test_extend_only_while_in_progress(self, lifecycle: RequestLifecycle) -> None:
        request_id = _in_progress(lifecycle)
        lifecycle.deliver(VENDOR, request_id, {"message": "m"})
        with pytest.raises(ServiceError) as exc_info:
            lifecycle.extend_delivery(
                VENDOR, request_id, {"new_delivery_date": "2026-12-01", "reason": "r"}
            )
        assert _error(exc_info) == ("INVALID_STATUS", 409)


class TestQueries:
    """Tests for list_requests, get_request and get_stats."""

    @pytest.mark.unit
    def test_list_by_role(self, lifecycle: RequestLifecycle) -> None:
        mine = _create(lifecycle, vendor_id=VENDOR.user_id)
        _create(lifecycle, vendor_id=OTHER_VENDOR.user_id)

        assert len(lifecycle.list_requests(CONTRACTOR)) == 2
        assert [r["request_id"] for r in lifecycle.list_requests(VENDOR)] == [mine]
        assert len(lifecycle.list_requests(ADMIN)) == 2

    @pytest.mark.unit
    def test_get_request_visibility(self, lifecycle: RequestLifecycle) -> None:
        request_id = _create(lifecycle, vendor_id=VENDOR.user_id)

        detail = lifecycle.get_request(ADMIN, request_id)
        assert detail["already_reviewed"] is False
        assert detail["deliveries"] == []

        with pytest.raises(ServiceError) as exc_info:
            lifecycle.get_request(OTHER_VENDOR, request_id)
        assert _error(exc_info) == ("FORBIDDEN", 403)

    @pytest.mark.unit
    def test_stats_are_zero_filled(self, lifecycle: RequestLifecycle) -> None:
        _create(lifecycle)
        stats = lifecycle.get_stats()
        assert stats["total_requests"] == 1
        assert stats["requests_by_status"] == {
            "pending": 1,
            "matched": 0,
            "in_progress": 0,
            "delivered": 0,
            "completed": 0,
            "cancelled": 0,
        }
