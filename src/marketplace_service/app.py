"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from marketplace_service.config import get_settings
from marketplace_service.core.exceptions import register_exception_handlers
from marketplace_service.core.lifespan import lifespan
from marketplace_service.core.middleware import RequestValidationMiddleware
from marketplace_service.routers import (
    admin,
    health,
    messages,
    notifications,
    reviews,
    service_requests,
    uploads,
)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(service_requests.router, tags=["Service Requests"])
    app.include_router(messages.router, tags=["Messages"])
    app.include_router(notifications.router, tags=["Notifications"])
    app.include_router(reviews.router, tags=["Reviews"])
    app.include_router(uploads.router, tags=["Uploads"])
    app.include_router(admin.router, tags=["Admin"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
