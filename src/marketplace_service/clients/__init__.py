"""Outbound HTTP clients."""

from marketplace_service.clients.identity_client import IdentityClient

__all__ = ["IdentityClient"]
