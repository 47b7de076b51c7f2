"""Pydantic models for the OIDC probe.

Uses Pydantic v2 with frozen models for snapshots that must not change
(discovery documents, PKCE pairs) and mutable models for in-flight state.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
)
from pydantic.alias_generators import to_camel

from .errors import ProbeError, ProviderError


class ResponseType(StrEnum):
    """Supported authorization response types."""

    CODE = "code"
    TOKEN = "token"
    ID_TOKEN = "id_token"
    ID_TOKEN_TOKEN = "id_token token"

    @property
    def is_implicit(self) -> bool:
        """Tokens arrive in the redirect fragment instead of via exchange."""
        return self is not ResponseType.CODE


class ExchangeMode(StrEnum):
    """Token exchange transport strategies."""

    SERVER = "server"
    CLIENT = "client"
    NO_CORS = "no-cors"
    FORM = "form"
    FORM_POPUP = "form-popup"
    POPUP_AUTO = "popup-auto"


class FlowState(StrEnum):
    """Flow orchestrator states."""

    IDLE = "idle"
    DISCOVERING_ENDPOINTS = "discovering_endpoints"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_TOKEN = "exchanging_token"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states are final."""
        return self in (FlowState.SUCCEEDED, FlowState.FAILED)


class TokenOutcome(StrEnum):
    """Outcome of a token exchange."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


class DiscoveryDocument(BaseModel):
    """Immutable snapshot of an IdP discovery document."""

    model_config = ConfigDict(frozen=True)

    issuer: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    jwks_uri: str | None = None
    userinfo_endpoint: str | None = None
    code_challenge_methods_supported: list[str] = Field(default_factory=list)
    response_types_supported: list[str] = Field(default_factory=list)
    discovery_url: str | None = None
    claims: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_json(cls, body: dict[str, Any], *, discovery_url: str | None = None) -> Self:
        """Create document from a parsed discovery response."""

        def text(key: str) -> str | None:
            value = body.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        def text_list(key: str) -> list[str]:
            value = body.get(key)
            if not isinstance(value, list):
                return []
            return [str(v) for v in value]

        return cls(
            issuer=text("issuer"),
            authorization_endpoint=text("authorization_endpoint"),
            token_endpoint=text("token_endpoint"),
            jwks_uri=text("jwks_uri"),
            userinfo_endpoint=text("userinfo_endpoint"),
            code_challenge_methods_supported=text_list("code_challenge_methods_supported"),
            response_types_supported=text_list("response_types_supported"),
            discovery_url=discovery_url,
            claims=dict(body),
        )

    def supports_s256(self) -> bool:
        """Whether the IdP advertises S256 (absent metadata counts as yes)."""
        methods = self.code_challenge_methods_supported
        return not methods or "S256" in methods


class PKCEChallenge(BaseModel):
    """PKCE code verifier and challenge pair."""

    model_config = ConfigDict(frozen=True)

    code_verifier: str = Field(..., min_length=43, max_length=128)
    code_challenge: str
    code_challenge_method: str = Field(default="S256", pattern=r"^(S256|plain)$")


class AuthorizationRequest(BaseModel):
    """Output of the authorization request builder."""

    model_config = ConfigDict(frozen=True)

    url: str
    authorization_endpoint: str
    state: str
    nonce: str | None = None
    pkce: PKCEChallenge | None = None


class AuthSession(BaseModel):
    """Mutable record of one in-flight login attempt."""

    model_config = ConfigDict(validate_assignment=True)

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    state: str = Field(..., min_length=1)
    nonce: str | None = None

    code_verifier: str | None = None
    code_challenge: str | None = None
    challenge_method: str | None = None

    client_id: str
    client_secret: SecretStr | None = None
    redirect_uri: str
    scope: str
    response_type: ResponseType = ResponseType.CODE
    exchange_mode: ExchangeMode = ExchangeMode.SERVER

    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    token_params: dict[str, str] = Field(default_factory=dict)
    insecure_skip_tls_verify: bool = False

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    consumed: bool = False

    @property
    def is_oidc(self) -> bool:
        """OIDC-style flows carry a nonce."""
        return is_oidc_request(self.scope, self.response_type)


class CallbackPayload(BaseModel):
    """Authorization response extracted from the IdP redirect."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    state: str | None = None
    code: str | None = None
    access_token: str | None = None
    id_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    error: str | None = None
    error_description: str | None = None
    iss: str | None = None
    source: str = "query"

    @property
    def is_error(self) -> bool:
        return bool(self.error)

    @property
    def carries_tokens(self) -> bool:
        return bool(self.access_token or self.id_token)

    def to_message(self) -> dict[str, Any]:
        """Serialize as an ``auth_callback`` cross-context message."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        data["type"] = "auth_callback"
        return data


class TokenResult(BaseModel):
    """Outcome of a token exchange."""

    model_config = ConfigDict(frozen=True)

    outcome: TokenOutcome
    exchange_mode: ExchangeMode | None = None

    access_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None

    error_kind: str | None = None
    error: str | None = None
    error_description: str | None = None
    http_status: int | None = None
    message: str | None = None
    hint: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    raw: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is TokenOutcome.SUCCEEDED

    @classmethod
    def success(
        cls,
        body: dict[str, Any],
        *,
        exchange_mode: ExchangeMode | None = None,
        http_status: int | None = None,
    ) -> Self:
        """Create a successful result from a token response body."""
        expires_in = body.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None

        return cls(
            outcome=TokenOutcome.SUCCEEDED,
            exchange_mode=exchange_mode,
            access_token=body.get("access_token") or None,
            token_type=body.get("token_type") or "Bearer",
            expires_in=expires_in,
            refresh_token=body.get("refresh_token") or None,
            id_token=body.get("id_token") or None,
            scope=body.get("scope") or None,
            http_status=http_status,
            raw=body,
        )

    @classmethod
    def failure(
        cls,
        error: ProbeError,
        *,
        exchange_mode: ExchangeMode | None = None,
    ) -> Self:
        """Create a failed result from a typed error."""
        provider_error = error if isinstance(error, ProviderError) else None
        return cls(
            outcome=TokenOutcome.FAILED,
            exchange_mode=exchange_mode,
            error_kind=error.kind,
            error=provider_error.error if provider_error else None,
            error_description=provider_error.error_description if provider_error else None,
            http_status=error.status_code,
            message=error.message,
            hint=error.hint,
            details=error.details,
        )

    @classmethod
    def awaiting_confirmation(
        cls,
        message: str,
        *,
        exchange_mode: ExchangeMode,
        details: dict[str, Any] | None = None,
    ) -> Self:
        """Create a result that needs out-of-band confirmation."""
        return cls(
            outcome=TokenOutcome.AWAITING_CONFIRMATION,
            exchange_mode=exchange_mode,
            message=message,
            details=details or {},
        )


class FlowResult(BaseModel):
    """Final (or parked) outcome of a login attempt."""

    model_config = ConfigDict(frozen=True)

    session_id: str | None = None
    state: FlowState
    token: TokenResult | None = None
    error_kind: str | None = None
    message: str | None = None
    hint: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    history: list[FlowState] = Field(default_factory=list)
    elapsed_ms: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is FlowState.SUCCEEDED


def is_oidc_request(scope: str | None, response_type: str | None) -> bool:
    """OIDC-style flows request ``openid`` or an ID token."""
    scopes = (scope or "").split()
    return "openid" in scopes or "id_token" in (response_type or "").split()


