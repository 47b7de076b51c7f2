"""Unit tests for error classes and the error factory.

Tests error kinds, serialization, and mapping of HTTP responses and
transport exceptions.
"""

import socket
import ssl

import httpx
import pytest

from oidc_probe.core.errors import ErrorFactory
from oidc_probe.errors import (
    DiscoveryParseError,
    ErrorKind,
    HttpError,
    NetworkError,
    NonJsonResponseError,
    ProbeError,
    ProviderError,
    RequestTimeoutError,
    StateMismatchError,
)
from oidc_probe.http import body_preview, describe_network_error

TOKEN_URL = "https://idp.example.com/token"


def response(status: int, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", TOKEN_URL), **kwargs)


class TestErrorKind:
    """Tests for ErrorKind enum."""

    def test_kinds_are_strings(self) -> None:
        assert ErrorKind.STATE_MISMATCH == "StateMismatch"
        assert ErrorKind.DISCOVERY_PARSE_ERROR == "DiscoveryParseError"
        assert ErrorKind.OPAQUE_RESPONSE == "OpaqueResponse"


class TestProbeError:
    """Tests for the base error."""

    def test_to_dict(self) -> None:
        """Should serialize every structured field."""
        error = ProbeError("boom", ErrorKind.NETWORK_ERROR, status_code=502, hint="retry")

        assert error.to_dict() == {
            "error": "boom",
            "kind": "NetworkError",
            "status_code": 502,
            "hint": "retry",
            "details": {},
        }

    def test_repr(self) -> None:
        error = StateMismatchError("abc")
        assert "StateMismatch" in repr(error)
        assert error.details == {"received_state": "abc"}

    def test_discovery_parse_message_has_preview(self) -> None:
        error = DiscoveryParseError("https://idp/.well-known/openid-configuration", 200, "not json")
        assert '"not json"' in error.message


class TestFromTokenBody:
    """Tests for ErrorFactory.from_token_body."""

    def test_provider_error(self) -> None:
        error = ErrorFactory.from_token_body(
            400, {"error": "invalid_grant", "error_description": "bad code"}
        )

        assert isinstance(error, ProviderError)
        assert error.error == "invalid_grant"
        assert error.error_description == "bad code"
        assert error.status_code == 400
        assert error.hint

    def test_http_error(self) -> None:
        error = ErrorFactory.from_token_body(503, None, "Service Unavailable")

        assert isinstance(error, HttpError)
        assert error.status == 503

    def test_non_json(self) -> None:
        error = ErrorFactory.from_token_body(200, None, "<html/>")

        assert isinstance(error, NonJsonResponseError)
        assert error.body_preview == "<html/>"

    def test_usable_body(self) -> None:
        assert ErrorFactory.from_token_body(200, {"access_token": "at"}) is None


class TestFromHttpResponse:
    """Tests for ErrorFactory.from_http_response."""

    def test_json_error(self) -> None:
        error = ErrorFactory.from_http_response(response(401, json={"error": "invalid_client"}))

        assert isinstance(error, ProviderError)
        assert error.status_code == 401

    def test_text_error(self) -> None:
        error = ErrorFactory.from_http_response(response(502, text="Bad Gateway"))

        assert isinstance(error, HttpError)
        assert error.details["body_preview"] == "Bad Gateway"


class TestFromException:
    """Tests for ErrorFactory.from_exception."""

    def test_passes_probe_errors_through(self) -> None:
        original = StateMismatchError("x")
        assert ErrorFactory.from_exception(original) is original

    def test_timeout(self) -> None:
        exc = httpx.ReadTimeout("timed out", request=httpx.Request("POST", TOKEN_URL))

        error = ErrorFactory.from_exception(exc, timeout_seconds=3)

        assert isinstance(error, RequestTimeoutError)
        assert error.kind == ErrorKind.TIMEOUT
        assert error.details["timeout_seconds"] == 3

    def test_status_error(self) -> None:
        resp = response(400, json={"error": "invalid_request"})
        exc = httpx.HTTPStatusError("bad", request=resp.request, response=resp)

        error = ErrorFactory.from_exception(exc)

        assert isinstance(error, ProviderError)

    def test_connect_error(self) -> None:
        exc = httpx.ConnectError("[Errno 111] Connection refused")

        error = ErrorFactory.from_exception(exc)

        assert isinstance(error, NetworkError)
        assert error.code == "ECONNREFUSED"
        assert error.__cause__ is exc


class TestDescribeNetworkError:
    """Tests for transport failure classification."""

    def test_certificate(self) -> None:
        exc = httpx.ConnectError("handshake")
        exc.__cause__ = ssl.SSLCertVerificationError("certificate verify failed")

        code, hint = describe_network_error(exc)

        assert code == "CERT_ERROR"
        assert "self-signed" in hint

    def test_dns(self) -> None:
        exc = httpx.ConnectError("lookup")
        exc.__cause__ = socket.gaierror(-2, "Name or service not known")

        assert describe_network_error(exc)[0] == "ENOTFOUND"

    def test_unknown(self) -> None:
        code, hint = describe_network_error(RuntimeError("weird"))

        assert code is None
        assert hint


class TestBodyPreview:
    """Tests for response body previews."""

    def test_collapses_whitespace(self) -> None:
        assert body_preview("a\n\n  b\tc") == "a b c"

    def test_truncates(self) -> None:
        preview = body_preview("x" * 300)

        assert preview == "x" * 250 + "..."

    @pytest.mark.parametrize("text", ["", "short"])
    def test_short_text_unchanged(self, text) -> None:
        assert body_preview(text) == text
