"""Bearer token authentication against the Identity service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from marketplace_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from marketplace_service.clients.identity_client import IdentityClient

VALID_ROLES: frozenset[str] = frozenset({"contractor", "vendor", "admin"})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as resolved by the Identity service."""

    user_id: str
    role: str
    display_name: str | None = None


class TokenValidator:
    """Resolves bearer tokens to principals."""

    def __init__(self, identity_client: IdentityClient) -> None:
        self._identity_client = identity_client

    async def authenticate(self, token: str) -> Principal:
        """
        Verify a bearer token via the Identity service.

        Error precedence:
        1. UNAUTHORIZED: token is not three-part compact JWS
        2. IDENTITY_SERVICE_UNAVAILABLE: Identity unreachable
        3. UNAUTHORIZED: Identity rejected the token or returned no user
        4. FORBIDDEN: role outside contractor/vendor/admin
        """
        if not token or len(token.split(".")) != 3:
            raise ServiceError(
                "UNAUTHORIZED",
                "Token must be in JWS compact serialization format (header.payload.signature)",
                401,
                {},
            )

        # IdentityClient.verify_token raises:
        #   ServiceError("IDENTITY_SERVICE_UNAVAILABLE", ..., 502) on connection/timeout
        #   ServiceError("UNAUTHORIZED", ..., 401) when valid=false
        result: Any
        try:
            result = await self._identity_client.verify_token(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
                502,
                {},
            ) from exc

        if not isinstance(result, dict):
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service returned an unexpected response",
                502,
                {},
            )

        user_id = result.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise ServiceError("UNAUTHORIZED", "Token does not identify a user", 401, {})

        role = result.get("role")
        if role not in VALID_ROLES:
            raise ServiceError(
                "FORBIDDEN",
                f"Role must be one of: {', '.join(sorted(VALID_ROLES))}",
                403,
                {"role": role},
            )

        display_name = result.get("display_name")
        return Principal(
            user_id=user_id,
            role=str(role),
            display_name=display_name if isinstance(display_name, str) else None,
        )
