"""API routers."""

from marketplace_service.routers import (
    admin,
    health,
    messages,
    notifications,
    reviews,
    service_requests,
    uploads,
)

__all__ = [
    "admin",
    "health",
    "messages",
    "notifications",
    "reviews",
    "service_requests",
    "uploads",
]
