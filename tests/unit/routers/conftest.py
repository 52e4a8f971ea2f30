"""Router test fixtures with a mocked Identity service."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from marketplace_service.app import create_app
from marketplace_service.config import clear_settings_cache
from marketplace_service.core.lifespan import lifespan
from marketplace_service.core.state import get_app_state, reset_app_state
from tests.helpers import extract_kid, extract_payload, generate_keypair, make_session_token

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed principals
# ---------------------------------------------------------------------------
CONTRACTOR_ID = "u-contractor-ada"
VENDOR_ID = "u-vendor-bob"
OTHER_VENDOR_ID = "u-vendor-carol"
STRANGER_ID = "u-contractor-eve"
ADMIN_ID = "u-admin-root"

_SIGNING_KEY = generate_keypair()

_PRINCIPALS: dict[str, tuple[str, str]] = {
    CONTRACTOR_ID: ("contractor", "Ada Contracting LLC"),
    VENDOR_ID: ("vendor", "Bob Legal Services"),
    OTHER_VENDOR_ID: ("vendor", "Carol Cyber"),
    STRANGER_ID: ("contractor", "Eve Outsider"),
    ADMIN_ID: ("admin", "Platform Admin"),
}


def auth(user_id: str) -> dict[str, str]:
    """Authorization header for one of the fixed principals."""
    role, display_name = _PRINCIPALS[user_id]
    token = make_session_token(_SIGNING_KEY, user_id, role, display_name)
    return {"Authorization": f"Bearer {token}"}


def _verify(token: str) -> dict[str, Any]:
    payload = extract_payload(token)
    return {
        "valid": True,
        "user_id": extract_kid(token),
        "role": payload.get("role"),
        "display_name": payload.get("display_name"),
    }


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and a mocked Identity service."""
    db_path = tmp_path / "test.db"
    config_content = f"""\
service:
  name: "marketplace"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  verify_token_path: "/sessions/verify"
  timeout_seconds: 10
request:
  max_body_size: 4096
uploads:
  storage_path: "{tmp_path / "uploads"}"
  max_file_size: 1024
  public_prefix: "/uploads"
messaging:
  preview_length: 100
audit:
  default_page_size: 20
  max_page_size: 100
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Identity mock resolves the kid header and role claim of test tokens
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_token = AsyncMock(side_effect=_verify)
        state.identity_client = mock_identity

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def identity_unavailable(_app: Any) -> None:
    """Make every token verification fail as if Identity were down."""
    from marketplace_service.core.exceptions import ServiceError

    state = get_app_state()
    state.identity_client.verify_token = AsyncMock(
        side_effect=ServiceError(
            "IDENTITY_SERVICE_UNAVAILABLE",
            "Cannot connect to Identity service",
            502,
            {},
        )
    )


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------
async def create_request(
    client: AsyncClient,
    *,
    contractor_id: str = CONTRACTOR_ID,
    vendor_id: str | None = VENDOR_ID,
    description: str = "Review our subcontracting agreement for FAR compliance",
    **extra: Any,
) -> dict[str, Any]:
    """Create a request via POST /service-requests and return its body."""
    body: dict[str, Any] = {"description": description, "priority": "high", **extra}
    if vendor_id is not None:
        body["vendor_id"] = vendor_id
    resp = await client.post("/service-requests", json=body, headers=auth(contractor_id))
    assert resp.status_code == 201, resp.text
    data: dict[str, Any] = resp.json()
    return data


async def set_status(client: AsyncClient, request_id: str, status: str, user_id: str) -> Any:
    """PATCH /service-requests/{id}/status."""
    return await client.patch(
        f"/service-requests/{request_id}/status",
        json={"status": status},
        headers=auth(user_id),
    )


async def setup_in_progress(client: AsyncClient) -> str:
    """Create a request with a vendor and let the vendor approve it."""
    created = await create_request(client)
    resp = await set_status(client, created["request_id"], "in_progress", VENDOR_ID)
    assert resp.status_code == 200, resp.text
    return str(created["request_id"])


async def deliver(
    client: AsyncClient,
    request_id: str,
    *,
    message: str = "Redlined agreement attached",
    attachments: list[dict[str, Any]] | None = None,
    user_id: str = VENDOR_ID,
) -> Any:
    """POST /service-requests/{id}/deliver."""
    return await client.post(
        f"/service-requests/{request_id}/deliver",
        json={"message": message, "attachments": attachments or []},
        headers=auth(user_id),
    )


async def setup_completed(client: AsyncClient) -> str:
    """Walk a request through delivery to completion."""
    request_id = await setup_in_progress(client)
    resp = await deliver(client, request_id)
    assert resp.status_code == 201, resp.text
    resp = await set_status(client, request_id, "completed", CONTRACTOR_ID)
    assert resp.status_code == 200, resp.text
    return request_id


async def send_message(
    client: AsyncClient,
    request_id: str,
    content: str,
    user_id: str,
) -> Any:
    """POST /messages."""
    return await client.post(
        "/messages",
        json={"service_request_id": request_id, "content": content},
        headers=auth(user_id),
    )
