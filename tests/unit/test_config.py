"""Unit tests for configuration and models."""

import pytest
from pydantic import ValidationError

from oidc_probe.config import ClientRegistration, ProbeConfig
from oidc_probe.errors import ProviderError, RequestTimeoutError
from oidc_probe.models import (
    DiscoveryDocument,
    ExchangeMode,
    FlowState,
    ResponseType,
    TokenOutcome,
    TokenResult,
    is_oidc_request,
)
from oidc_probe.telemetry import redact, redact_processor, trace_operation


class TestProbeConfig:
    """Tests for ProbeConfig."""

    def test_defaults(self) -> None:
        config = ProbeConfig()

        assert config.origin == "http://127.0.0.1:8765"
        assert config.callback_url == "http://127.0.0.1:8765/oidc/callback"
        assert config.bridge_url == "http://127.0.0.1:8765/sso/token-bridge"

    def test_origin_trailing_slash(self) -> None:
        assert ProbeConfig(origin="https://probe.example.com/").origin == "https://probe.example.com"

    def test_invalid_origin(self) -> None:
        with pytest.raises(ValidationError):
            ProbeConfig(origin="probe.example.com")

    def test_timeout_bounds(self) -> None:
        with pytest.raises(ValidationError):
            ProbeConfig(timeout=0)

    def test_frozen(self) -> None:
        config = ProbeConfig()
        with pytest.raises(ValidationError):
            config.timeout = 1

    def test_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("OIDC_PROBE_ORIGIN", "https://probe.example.com")
        monkeypatch.setenv("OIDC_PROBE_TIMEOUT", "3")
        monkeypatch.setenv("OIDC_PROBE_LOG_LEVEL", "DEBUG")

        config = ProbeConfig.from_env()

        assert config.origin == "https://probe.example.com"
        assert config.timeout == 3.0
        assert config.telemetry.log_level == "DEBUG"


class TestClientRegistration:
    """Tests for ClientRegistration."""

    def test_defaults(self, client) -> None:
        assert client.scope == "openid profile email"
        assert client.response_type is ResponseType.CODE
        assert client.exchange_mode is ExchangeMode.SERVER
        assert client.use_pkce
        assert not client.insecure_skip_tls_verify

    def test_secret_hidden(self, client) -> None:
        assert "s3cr3t" not in repr(client)
        assert client.client_secret.get_secret_value() == "s3cr3t"

    def test_blank_client_id(self) -> None:
        with pytest.raises(ValidationError):
            ClientRegistration(client_id="  ", redirect_uri="https://app/cb")

    def test_challenge_method_normalized(self) -> None:
        registration = ClientRegistration(
            client_id="abc", redirect_uri="https://app/cb", code_challenge_method="s256"
        )
        assert registration.code_challenge_method == "S256"

    def test_unsupported_challenge_method(self) -> None:
        with pytest.raises(ValidationError):
            ClientRegistration(
                client_id="abc", redirect_uri="https://app/cb", code_challenge_method="S512"
            )

    def test_with_overrides(self, client) -> None:
        changed = client.with_overrides(exchange_mode="popup-auto")

        assert changed.exchange_mode is ExchangeMode.POPUP_AUTO
        assert client.exchange_mode is ExchangeMode.SERVER


class TestModels:
    """Tests for shared models."""

    def test_implicit_response_types(self) -> None:
        assert not ResponseType.CODE.is_implicit
        assert ResponseType.ID_TOKEN_TOKEN.is_implicit

    def test_terminal_states(self) -> None:
        assert {s for s in FlowState if s.is_terminal} == {FlowState.SUCCEEDED, FlowState.FAILED}

    def test_is_oidc_request(self) -> None:
        assert is_oidc_request("openid email", "code")
        assert is_oidc_request("email", "id_token token")
        assert not is_oidc_request("email", "code")

    def test_discovery_document_from_json(self) -> None:
        document = DiscoveryDocument.from_json(
            {
                "issuer": "https://idp",
                "authorization_endpoint": "  ",
                "code_challenge_methods_supported": ["plain"],
                "end_session_endpoint": "https://idp/logout",
            },
            discovery_url="https://idp/.well-known/openid-configuration",
        )

        assert document.authorization_endpoint is None
        assert not document.supports_s256()
        assert document.claims["end_session_endpoint"] == "https://idp/logout"

    def test_token_result_failure_from_provider_error(self) -> None:
        result = TokenResult.failure(
            ProviderError("invalid_grant", "expired", status_code=400),
            exchange_mode=ExchangeMode.SERVER,
        )

        assert result.outcome is TokenOutcome.FAILED
        assert result.error == "invalid_grant"
        assert result.error_description == "expired"
        assert result.http_status == 400

    def test_token_result_failure_from_other_error(self) -> None:
        result = TokenResult.failure(RequestTimeoutError(timeout_seconds=5))

        assert result.error is None
        assert result.error_kind == "Timeout"
        assert result.http_status == 408


class TestRedact:
    """Tests for log redaction."""

    def test_hides_secrets(self) -> None:
        safe = redact({"client_secret": "s", "code_verifier": "v", "client_id": "abc"})

        assert safe == {
            "client_secret": "***hidden***",
            "code_verifier": "***hidden***",
            "client_id": "abc",
        }

    def test_truncates_long_codes(self) -> None:
        assert redact({"code": "c" * 40})["code"] == "c" * 20 + "..."

    def test_processor_scrubs_events(self) -> None:
        event = redact_processor(None, "info", {"event": "Token request built", "access_token": "t"})

        assert event == {"event": "Token request built", "access_token": "***hidden***"}


class TestTraceOperation:
    """Tests for span helpers."""

    def test_reraises_errors(self) -> None:
        with pytest.raises(RequestTimeoutError):
            with trace_operation("oidc.test", attributes={"http.url": None}):
                raise RequestTimeoutError("Token request timed out", timeout_seconds=1.0)
