"""Token inspection helpers.

Decodes JWTs without verifying them, for display and for binding the
ID token's ``nonce`` claim to the session. Signature verification is
the relying party's job, not the probe's.
"""

from __future__ import annotations

from typing import Any

import jwt

from .errors import NonceMismatchError

_MASKED_KEYS = ("access_token", "refresh_token", "id_token")


def decode_unverified(token: str) -> dict[str, Any]:
    """Decode a JWT's header and claims without verifying its signature.

    Returns:
        ``{"header": ..., "claims": ...}``

    Raises:
        jwt.DecodeError: If the token is not a decodable JWT.
    """
    return {
        "header": jwt.get_unverified_header(token),
        "claims": jwt.decode(token, options={"verify_signature": False}),
    }


def mask_token(value: str, visible: int = 12) -> str:
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}...({len(value)} chars)"


def mask_token_response(body: dict[str, Any]) -> dict[str, Any]:
    """Copy of a token response with token values masked for display."""
    masked = dict(body)
    for key in _MASKED_KEYS:
        value = masked.get(key)
        if isinstance(value, str) and value:
            masked[key] = mask_token(value)
    if masked.get("client_secret"):
        masked["client_secret"] = "***hidden***"
    return masked


def check_id_token_nonce(id_token: str, expected_nonce: str) -> None:
    """Check that the ID token's ``nonce`` claim is the session's nonce.

    Raises:
        NonceMismatchError: If the token cannot be decoded, has no nonce,
            or carries a different one.
    """
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.DecodeError as e:
        raise NonceMismatchError("id_token is not a decodable JWT") from e

    nonce = claims.get("nonce")
    if nonce is None:
        raise NonceMismatchError("id_token has no nonce claim")
    if nonce != expected_nonce:
        raise NonceMismatchError("nonce claim does not match the login attempt")
