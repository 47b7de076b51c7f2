"""Configuration for the OIDC probe.

Uses Pydantic v2 for validation with sensible defaults. Credentials are
carried per client registration and passed explicitly into each flow.
"""

from __future__ import annotations

from typing import Annotated, Any, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
)

from .models import ExchangeMode, ResponseType


class TelemetryConfig(BaseModel):
    """OpenTelemetry and logging configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    service_name: str = "oidc-probe"
    log_level: str = "INFO"


class ProbeConfig(BaseModel):
    """Runtime configuration for the flow orchestrator."""

    model_config = ConfigDict(frozen=True, validate_default=True)

    # Origin of the initiating context; cross-context messages must match it
    origin: str = "http://127.0.0.1:8765"

    # Network calls (discovery, token exchange)
    timeout: Annotated[float, Field(gt=0, le=300)] = 10.0

    # Whole login attempt, waiting on the user at the IdP included
    flow_timeout: Annotated[float, Field(gt=0, le=3600)] = 300.0

    # Delay before a secondary window closes itself after relaying
    popup_close_grace: Annotated[float, Field(ge=0, le=10)] = 0.3

    callback_path: str = "/oidc/callback"
    bridge_path: str = "/sso/token-bridge"
    popup_name: str = "oidc_probe_popup"

    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @field_validator("origin")
    @classmethod
    def validate_origin(cls, v: str) -> str:
        """Origin is scheme://host[:port] without a trailing slash."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            msg = f"origin must start with http:// or https://, got {v!r}"
            raise ValueError(msg)
        return v

    @property
    def callback_url(self) -> str:
        """Default redirect URI served by the relay backend."""
        return f"{self.origin}{self.callback_path}"

    @property
    def bridge_url(self) -> str:
        """Same-origin bridge page used by popup auto-relay."""
        return f"{self.origin}{self.bridge_path}"

    @classmethod
    def from_env(cls, prefix: str = "OIDC_PROBE_") -> Self:
        """Create config from environment variables."""
        import os

        def get_env(key: str, default: Any = None) -> Any:
            return os.environ.get(f"{prefix}{key}", default)

        data: dict[str, Any] = {}
        if origin := get_env("ORIGIN"):
            data["origin"] = origin
        if timeout := get_env("TIMEOUT"):
            data["timeout"] = float(timeout)
        if flow_timeout := get_env("FLOW_TIMEOUT"):
            data["flow_timeout"] = float(flow_timeout)
        if log_level := get_env("LOG_LEVEL"):
            data["telemetry"] = TelemetryConfig(log_level=log_level)

        return cls(**data)


class ClientRegistration(BaseModel):
    """Client parameters for one IdP under test."""

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(..., min_length=1)
    redirect_uri: str = Field(..., min_length=1)
    client_secret: SecretStr | None = None
    scope: str = "openid profile email"
    response_type: ResponseType = ResponseType.CODE

    use_pkce: bool = True
    code_challenge_method: str = "S256"

    exchange_mode: ExchangeMode = ExchangeMode.SERVER

    # Extension parameters for the authorization and token requests
    authorization_params: dict[str, str] = Field(default_factory=dict)
    token_params: dict[str, str] = Field(default_factory=dict)

    # Only for IdPs with self-signed certificates; never implied
    insecure_skip_tls_verify: bool = False

    @field_validator("client_id", "redirect_uri")
    @classmethod
    def strip_required(cls, v: str) -> str:
        """Reject whitespace-only values."""
        v = v.strip()
        if not v:
            msg = "value must not be blank"
            raise ValueError(msg)
        return v

    @field_validator("code_challenge_method")
    @classmethod
    def validate_challenge_method(cls, v: str) -> str:
        """Validate PKCE challenge method is supported."""
        normalized = "plain" if v.strip().lower() == "plain" else v.strip().upper()
        if normalized not in {"S256", "plain"}:
            msg = f"Unsupported code_challenge_method: {v}. Supported: S256, plain"
            raise ValueError(msg)
        return normalized

    def with_overrides(self, **kwargs: Any) -> Self:
        """Create new registration with overridden values."""
        data = self.model_dump()
        data.update(kwargs)
        return self.__class__(**data)
