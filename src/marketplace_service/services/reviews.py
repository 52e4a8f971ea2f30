"""Reviews and the per-user rating aggregate."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError
from marketplace_service.logging import get_logger
from marketplace_service.services.ids import new_id, now_iso
from marketplace_service.services.marketplace_store import DuplicateReviewError
from marketplace_service.services.notifications import NotificationCenter
from marketplace_service.services.request_lifecycle import is_party, other_party

if TYPE_CHECKING:
    from marketplace_service.services.marketplace_store import MarketplaceStore
    from marketplace_service.services.token_validator import Principal

MIN_RATING = 1
MAX_RATING = 5
MAX_COMMENT_LENGTH = 2000


class ReviewAggregator:
    """
    Accepts one review per party per completed request and keeps the
    reviewee's mean rating and review count current.
    """

    def __init__(self, store: MarketplaceStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    def submit_review(self, principal: Principal, body: dict[str, Any]) -> dict[str, Any]:
        """
        Review the other party of a completed request.

        Error precedence:
        1. INVALID_PAYLOAD / INVALID_RATING: malformed body
        2. REQUEST_NOT_FOUND
        3. FORBIDDEN: reviewer is not a party
        4. INVALID_STATUS: request is not completed
        5. REVIEW_EXISTS: reviewer already reviewed this request
        """
        request_id = body.get("service_request_id")
        if not isinstance(request_id, str) or not request_id.strip():
            raise ServiceError(
                "INVALID_PAYLOAD",
                "service_request_id is required",
                400,
                {"field": "service_request_id"},
            )

        rating = body.get("rating")
        if (
            isinstance(rating, bool)
            or not isinstance(rating, int)
            or not MIN_RATING <= rating <= MAX_RATING
        ):
            raise ServiceError(
                "INVALID_RATING",
                f"Rating must be an integer between {MIN_RATING} and {MAX_RATING}",
                400,
                {"rating": rating},
            )

        comment = body.get("comment")
        if comment is not None:
            if not isinstance(comment, str):
                raise ServiceError(
                    "INVALID_PAYLOAD",
                    "Comment must be a string",
                    400,
                    {"field": "comment"},
                )
            if len(comment) > MAX_COMMENT_LENGTH:
                raise ServiceError(
                    "INVALID_PAYLOAD",
                    f"Comment must not exceed {MAX_COMMENT_LENGTH} characters",
                    400,
                    {"field": "comment"},
                )
            comment = comment.strip() or None

        request = self._store.get_request(request_id.strip())
        if request is None:
            raise ServiceError("REQUEST_NOT_FOUND", "Service request not found", 404, {})
        if not is_party(request, principal.user_id):
            raise ServiceError("FORBIDDEN", "Not a party to this service request", 403, {})
        if request["status"] != "completed":
            raise ServiceError(
                "INVALID_STATUS",
                "Reviews can only be submitted for completed service requests",
                409,
                {"status": request["status"]},
            )

        reviewee_id = other_party(request, principal.user_id)
        if reviewee_id is None:
            raise ServiceError(
                "VENDOR_NOT_ASSIGNED",
                "No vendor is assigned to this service request",
                409,
                {},
            )

        created_at = now_iso()
        review = {
            "review_id": new_id("rev"),
            "request_id": request["request_id"],
            "reviewer_id": principal.user_id,
            "reviewee_id": reviewee_id,
            "rating": rating,
            "comment": comment,
            "created_at": created_at,
        }
        try:
            aggregate = self._store.insert_review(
                review,
                NotificationCenter.compose(
                    reviewee_id,
                    principal.user_id,
                    "new_review",
                    "New Review",
                    f"You received a {rating}-star review for \"{request['title']}\".",
                    str(request["request_id"]),
                ),
                created_at,
            )
        except DuplicateReviewError as exc:
            raise ServiceError(
                "REVIEW_EXISTS",
                "You have already reviewed this service request",
                409,
                {},
            ) from exc

        self._logger.info(
            "Review submitted",
            extra={
                "request_id": request["request_id"],
                "reviewee_id": reviewee_id,
                "rating": rating,
                "review_count": aggregate["review_count"],
            },
        )
        return {
            **review,
            "reviewee_rating": aggregate["rating"],
            "reviewee_review_count": aggregate["review_count"],
        }

    def list_reviews(self, user_id: str) -> list[dict[str, Any]]:
        """Reviews received by a user, newest first."""
        return self._store.get_reviews_for_user(user_id)

    def get_profile(self, user_id: str) -> dict[str, Any]:
        """Rating and response-time aggregate; zeroed for users without one."""
        profile = self._store.get_profile(user_id)
        if profile is None:
            return {
                "user_id": user_id,
                "rating": 0.0,
                "review_count": 0,
                "response_time_minutes": 0,
                "response_time": None,
                "updated_at": None,
            }
        return profile
