"""Unit tests for PKCE and random value generation."""

import base64
import hashlib

import pytest

from oidc_probe.errors import PKCEError
from oidc_probe.pkce import (
    create_pkce_challenge,
    generate_code_challenge,
    generate_code_verifier,
    generate_nonce,
    generate_state,
    normalize_challenge_method,
    verify_code_challenge,
)


class TestCodeVerifier:
    """Tests for code verifier generation."""

    def test_length(self) -> None:
        """32 random bytes encode to 43 characters."""
        assert len(generate_code_verifier()) == 43

    def test_url_safe(self) -> None:
        """Verifier should only use the base64url alphabet without padding."""
        verifier = generate_code_verifier()
        assert "=" not in verifier
        assert "+" not in verifier
        assert "/" not in verifier

    def test_unique(self) -> None:
        """Verifiers should not repeat."""
        assert len({generate_code_verifier() for _ in range(100)}) == 100


class TestCodeChallenge:
    """Tests for code challenge derivation."""

    def test_rfc7636_vector(self) -> None:
        """Should match the RFC 7636 appendix B example."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_matches_manual_hash(self) -> None:
        """S256 challenge is base64url(SHA-256(verifier)) without padding."""
        verifier = generate_code_verifier()
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        expected = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

        assert generate_code_challenge(verifier, "S256") == expected

    def test_plain(self) -> None:
        """Plain challenge equals the verifier."""
        verifier = generate_code_verifier()
        assert generate_code_challenge(verifier, "plain") == verifier

    def test_unsupported_method(self) -> None:
        """Should reject unknown methods."""
        with pytest.raises(PKCEError):
            generate_code_challenge(generate_code_verifier(), "S512")

    def test_method_normalization(self) -> None:
        """Method names are case-insensitive."""
        assert normalize_challenge_method("s256") == "S256"
        assert normalize_challenge_method("PLAIN") == "plain"
        assert normalize_challenge_method(None) == "S256"


class TestCreatePKCEChallenge:
    """Tests for complete challenge creation."""

    def test_s256(self) -> None:
        """Challenge should verify against its verifier."""
        pkce = create_pkce_challenge()

        assert pkce.code_challenge_method == "S256"
        assert verify_code_challenge(pkce.code_verifier, pkce.code_challenge)

    def test_plain(self) -> None:
        """Plain challenge should carry the plain method."""
        pkce = create_pkce_challenge("plain")

        assert pkce.code_challenge_method == "plain"
        assert pkce.code_challenge == pkce.code_verifier

    def test_wrong_verifier(self) -> None:
        """Another verifier should not verify."""
        pkce = create_pkce_challenge()
        assert not verify_code_challenge(generate_code_verifier(), pkce.code_challenge)


class TestStateAndNonce:
    """Tests for state and nonce generation."""

    def test_state_length(self) -> None:
        """16 random bytes encode to 22 characters."""
        assert len(generate_state()) == 22

    def test_nonce_length(self) -> None:
        assert len(generate_nonce()) == 22

    def test_unique(self) -> None:
        """States should not repeat."""
        assert len({generate_state() for _ in range(200)}) == 200
