"""Unit tests for token request building and response mapping."""

from unittest.mock import MagicMock

import pytest

from oidc_probe.core.token_ops import TokenOperations
from oidc_probe.errors import (
    ErrorKind,
    InvalidEndpointError,
    MissingRequiredFieldError,
)
from oidc_probe.models import AuthSession, ExchangeMode, TokenOutcome


@pytest.fixture
def ops() -> TokenOperations:
    """Provide token operations."""
    return TokenOperations()


@pytest.fixture
def session() -> AuthSession:
    """Provide a code-flow session with PKCE and a client secret."""
    return AuthSession(
        state="state-1",
        nonce="nonce-1",
        code_verifier="v" * 43,
        code_challenge="c",
        challenge_method="S256",
        client_id="abc",
        client_secret="s3cr3t",
        redirect_uri="http://127.0.0.1:8765/oidc/callback",
        scope="openid",
        token_endpoint="https://idp.example.com/token",
    )


def mock_response(status: int, body=None, text: str | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    if body is None:
        response.json.side_effect = ValueError("not json")
        response.text = text or ""
    else:
        response.json.return_value = body
        response.text = text or str(body)
    return response


class TestBuildForm:
    """Tests for token request body construction."""

    def test_field_order(self, ops, session) -> None:
        """Required fields come first, then secret, verifier and extensions."""
        form = ops.build_authorization_code_request(
            session.model_copy(update={"token_params": {"resource": "api://x"}}), "xyz"
        )

        assert list(form.items()) == [
            ("grant_type", "authorization_code"),
            ("code", "xyz"),
            ("redirect_uri", "http://127.0.0.1:8765/oidc/callback"),
            ("client_id", "abc"),
            ("client_secret", "s3cr3t"),
            ("code_verifier", "v" * 43),
            ("resource", "api://x"),
        ]

    def test_public_client(self, ops) -> None:
        """Should omit absent secret and verifier."""
        form = ops.build_form(code="xyz", redirect_uri="https://app/cb", client_id="abc")

        assert "client_secret" not in form
        assert "code_verifier" not in form

    def test_grant_type_override(self, ops) -> None:
        """A grant_type extension replaces the default grant."""
        form = ops.build_form(
            code="xyz",
            redirect_uri="https://app/cb",
            client_id="abc",
            extra_params={"grant_type": "urn:custom"},
        )

        assert form["grant_type"] == "urn:custom"
        assert next(iter(form)) == "grant_type"

    def test_protected_fields(self, ops) -> None:
        """Extensions cannot replace the code or client binding."""
        form = ops.build_form(
            code="xyz",
            redirect_uri="https://app/cb",
            client_id="abc",
            extra_params={"code": "forged", "client_id": "other", "audience": "api"},
        )

        assert form["code"] == "xyz"
        assert form["client_id"] == "abc"
        assert form["audience"] == "api"

    @pytest.mark.parametrize("field", ["code", "redirect_uri", "client_id"])
    def test_missing_field(self, ops, field) -> None:
        """Should name the missing field."""
        values = {"code": "xyz", "redirect_uri": "https://app/cb", "client_id": "abc"}
        values[field] = " "

        with pytest.raises(MissingRequiredFieldError) as exc_info:
            ops.build_form(**values)

        assert exc_info.value.field == field

    def test_headers(self) -> None:
        """Form requests carry the form content type and optional Origin."""
        headers = TokenOperations.build_token_request_headers("http://127.0.0.1:8765")

        assert headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert headers["Origin"] == "http://127.0.0.1:8765"
        assert "Origin" not in TokenOperations.build_token_request_headers()


class TestRequireTokenEndpoint:
    """Tests for token endpoint validation."""

    def test_blank(self) -> None:
        with pytest.raises(MissingRequiredFieldError):
            TokenOperations.require_token_endpoint(None)

    def test_relative(self) -> None:
        with pytest.raises(InvalidEndpointError):
            TokenOperations.require_token_endpoint("/token")

    def test_strips(self) -> None:
        assert (
            TokenOperations.require_token_endpoint(" https://idp.example.com/token ")
            == "https://idp.example.com/token"
        )


class TestParseTokenResponse:
    """Tests for response mapping."""

    def test_success(self, ops) -> None:
        """Should map a token body to a successful result."""
        result = ops.parse_token_response(
            mock_response(200, {"access_token": "at", "token_type": "Bearer", "expires_in": "3600"}),
            exchange_mode=ExchangeMode.SERVER,
        )

        assert result.outcome is TokenOutcome.SUCCEEDED
        assert result.access_token == "at"
        assert result.expires_in == 3600
        assert result.exchange_mode is ExchangeMode.SERVER

    def test_provider_error_on_400(self, ops) -> None:
        """Should surface the OAuth error fields."""
        result = ops.parse_token_response(
            mock_response(400, {"error": "invalid_grant", "error_description": "Code expired"})
        )

        assert result.outcome is TokenOutcome.FAILED
        assert result.error_kind == ErrorKind.PROVIDER_ERROR
        assert result.error == "invalid_grant"
        assert result.error_description == "Code expired"
        assert result.http_status == 400

    def test_provider_error_on_200(self, ops) -> None:
        """An error body is a provider error even with a 2xx status."""
        result = ops.parse_token_response(mock_response(200, {"error": "access_denied"}))

        assert result.error_kind == ErrorKind.PROVIDER_ERROR

    def test_http_error(self, ops) -> None:
        """Non-2xx without an error body is an HttpError."""
        result = ops.parse_token_response(mock_response(500, text="<h1>Oops</h1>"))

        assert result.error_kind == ErrorKind.HTTP_ERROR
        assert result.http_status == 500
        assert result.details["body_preview"] == "<h1>Oops</h1>"

    def test_non_json(self, ops) -> None:
        """A 2xx body that is not JSON is a NonJsonResponse."""
        result = ops.parse_token_response(mock_response(200, text="<html>login</html>"))

        assert result.error_kind == ErrorKind.NON_JSON_RESPONSE

    def test_no_tokens(self, ops) -> None:
        """A 2xx object without tokens is an invalid token response."""
        result = ops.parse_token_response(mock_response(200, {"token_type": "Bearer"}))

        assert result.error_kind == ErrorKind.PROVIDER_ERROR
        assert result.error == "invalid_token_response"

    def test_id_token_only(self, ops) -> None:
        """An ID token alone is a usable response."""
        result = ops.result_from_body({"id_token": "a.b.c"})

        assert result.succeeded
        assert result.id_token == "a.b.c"


class TestResultFromRelay:
    """Tests for relay envelope mapping."""

    def test_success(self, ops) -> None:
        result = ops.result_from_relay(
            {
                "ok": True,
                "status": 200,
                "tokenEndpoint": "https://idp.example.com/token",
                "body": {"access_token": "at"},
            }
        )

        assert result.succeeded
        assert result.http_status == 200

    def test_raw_body(self, ops) -> None:
        """A raw (non-JSON) body is reported as NonJsonResponse."""
        result = ops.result_from_relay({"ok": True, "status": 200, "body": {"raw": "hello"}})

        assert result.error_kind == ErrorKind.NON_JSON_RESPONSE
        assert result.details["body_preview"] == "hello"

    def test_relay_failure(self, ops) -> None:
        """A failure before reaching the IdP keeps its kind and hint."""
        result = ops.result_from_relay(
            {"ok": False, "status": None, "error": "refused", "kind": "NetworkError", "hint": "h"}
        )

        assert result.error_kind == ErrorKind.NETWORK_ERROR
        assert result.message == "refused"
        assert result.hint == "h"

    def test_malformed(self, ops) -> None:
        result = ops.result_from_relay("nope")

        assert result.error_kind == ErrorKind.INVALID_MESSAGE
