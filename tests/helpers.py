"""Shared test helpers for bearer tokens."""

from __future__ import annotations

import base64
import json
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from joserfc import jws
from joserfc.jwk import OKPKey


def generate_keypair() -> Ed25519PrivateKey:
    """Generate an Ed25519 signing key for test sessions."""
    return Ed25519PrivateKey.generate()


def make_jws_token(
    private_key: Ed25519PrivateKey,
    user_id: str,
    payload: dict[str, Any],
) -> str:
    """Create a real JWS compact token signed by the given key, kid=user_id."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA", "kid": user_id}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def make_session_token(
    private_key: Ed25519PrivateKey,
    user_id: str,
    role: str,
    display_name: str | None = None,
) -> str:
    """Session token whose payload carries the role and display name."""
    payload: dict[str, Any] = {"role": role}
    if display_name is not None:
        payload["display_name"] = display_name
    return make_jws_token(private_key, user_id, payload)


def _b64decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def extract_kid(token: str) -> str:
    """Read the kid header of a compact JWS without verifying it."""
    header = json.loads(_b64decode(token.split(".")[0]))
    return str(header["kid"])


def extract_payload(token: str) -> dict[str, Any]:
    """Read the payload of a compact JWS without verifying it."""
    payload: dict[str, Any] = json.loads(_b64decode(token.split(".")[1]))
    return payload
