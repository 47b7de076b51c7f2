"""PKCE (Proof Key for Code Exchange) implementation.

Implements RFC 7636 with the S256 and plain challenge methods, plus the
random state and nonce values bound into each authorization request.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

from .errors import PKCEError
from .models import PKCEChallenge
from .telemetry import get_logger

S256 = "S256"
PLAIN = "plain"


def _b64url(data: bytes) -> str:
    """Base64url-encode without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def normalize_challenge_method(method: str | None) -> str:
    """Normalize a challenge method name to ``S256`` or ``plain``.

    Raises:
        PKCEError: If the method is not supported.
    """
    value = (method or S256).strip()
    if value.upper() == S256:
        return S256
    if value.lower() == PLAIN:
        return PLAIN
    msg = f"Unsupported code_challenge_method: {method}. Supported: S256, plain"
    raise PKCEError(msg)


def generate_code_verifier() -> str:
    """Generate a cryptographically random code verifier.

    Returns:
        32 random bytes, base64url-encoded without padding (43 characters).
    """
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(code_verifier: str, method: str = S256) -> str:
    """Derive the code challenge for a verifier.

    Args:
        code_verifier: The code verifier string.
        method: ``S256`` (default) or ``plain``.

    Returns:
        Base64url-encoded SHA-256 of the verifier, or the verifier itself
        for ``plain``.
    """
    if normalize_challenge_method(method) == PLAIN:
        return code_verifier

    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return _b64url(digest)


def create_pkce_challenge(method: str = S256) -> PKCEChallenge:
    """Create a complete PKCE challenge with verifier.

    Args:
        method: Challenge method; ``plain`` is only for IdPs lacking S256.

    Returns:
        PKCEChallenge containing verifier, challenge, and method.
    """
    method = normalize_challenge_method(method)
    if method == PLAIN:
        get_logger().warning(
            "PKCE plain method in use; prefer S256 when the IdP supports it",
        )

    code_verifier = generate_code_verifier()
    return PKCEChallenge(
        code_verifier=code_verifier,
        code_challenge=generate_code_challenge(code_verifier, method),
        code_challenge_method=method,
    )


def verify_code_challenge(
    code_verifier: str,
    code_challenge: str,
    method: str = S256,
) -> bool:
    """Verify that a code verifier matches a code challenge.

    Returns:
        True if the verifier produces the challenge, False otherwise.
    """
    expected_challenge = generate_code_challenge(code_verifier, method)
    return secrets.compare_digest(expected_challenge, code_challenge)


def generate_state() -> str:
    """Opaque anti-forgery value: 16 random bytes, base64url."""
    return _b64url(secrets.token_bytes(16))


def generate_nonce() -> str:
    """OpenID Connect replay-binding value: 16 random bytes, base64url."""
    return _b64url(secrets.token_bytes(16))
