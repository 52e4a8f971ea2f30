"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from marketplace_service.clients.identity_client import IdentityClient
from marketplace_service.config import get_settings
from marketplace_service.core.state import init_app_state
from marketplace_service.logging import get_logger, setup_logging
from marketplace_service.services.audit_log import AuditTrail
from marketplace_service.services.marketplace_store import MarketplaceStore
from marketplace_service.services.messaging import MessagingEngine
from marketplace_service.services.notifications import NotificationCenter
from marketplace_service.services.request_lifecycle import RequestLifecycle
from marketplace_service.services.reviews import ReviewAggregator
from marketplace_service.services.token_validator import TokenValidator
from marketplace_service.services.upload_manager import UploadManager

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    # One store backs every engine
    store = MarketplaceStore(db_path=settings.database.path)
    state.store = store

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_token_path=settings.identity.verify_token_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client
    state.token_validator = TokenValidator(identity_client=identity_client)

    role_transitions = (
        settings.lifecycle.role_transitions if settings.lifecycle is not None else None
    )
    state.lifecycle = RequestLifecycle(store=store, role_transitions=role_transitions)
    state.messaging = MessagingEngine(
        store=store,
        preview_length=settings.messaging.preview_length,
    )
    state.notifications = NotificationCenter(store=store)
    state.reviews = ReviewAggregator(store=store)
    state.audit_trail = AuditTrail(
        store=store,
        default_page_size=settings.audit.default_page_size,
        max_page_size=settings.audit.max_page_size,
    )
    state.uploads = UploadManager(
        storage_path=settings.uploads.storage_path,
        max_file_size=settings.uploads.max_file_size,
        public_prefix=settings.uploads.public_prefix,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "upload_storage_path": settings.uploads.storage_path,
            "identity_base_url": settings.identity.base_url,
            "role_transitions": role_transitions is not None,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    store.close()
    await identity_client.close()
