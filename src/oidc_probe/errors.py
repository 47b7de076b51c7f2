"""Error classes for the OIDC probe.

Implements a structured error hierarchy where every error carries a
machine-readable kind, so callers can decide whether to retry a flow
with a different exchange mode.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Machine-readable failure kinds."""

    # Input validation
    MISSING_REQUIRED_FIELD = "MissingRequiredField"
    INVALID_ENDPOINT = "InvalidEndpoint"
    INVALID_PARAMETER = "InvalidParameter"

    # Discovery
    DISCOVERY_TIMEOUT = "DiscoveryTimeout"
    DISCOVERY_HTTP_ERROR = "DiscoveryHttpError"
    DISCOVERY_PARSE_ERROR = "DiscoveryParseError"
    DISCOVERY_INCOMPLETE = "DiscoveryIncomplete"

    # Cross-context
    STATE_MISMATCH = "StateMismatch"
    ORIGIN_MISMATCH = "OriginMismatch"
    POPUP_BLOCKED = "PopupBlocked"
    NO_OPENER = "NoOpener"
    INVALID_MESSAGE = "InvalidMessage"

    # Exchange
    NON_JSON_RESPONSE = "NonJsonResponse"
    PROVIDER_ERROR = "ProviderError"
    HTTP_ERROR = "HttpError"
    NETWORK_ERROR = "NetworkError"
    OPAQUE_RESPONSE = "OpaqueResponse"
    NONCE_MISMATCH = "NonceMismatch"

    # Flow
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    INVALID_TRANSITION = "InvalidTransition"


class ProbeError(Exception):
    """Base error with structured information."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind | str,
        *,
        status_code: int | None = None,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind if isinstance(kind, str) else kind.value
        self.status_code = status_code
        self.hint = hint
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error": self.message,
            "kind": self.kind,
            "status_code": self.status_code,
            "hint": self.hint,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind!r}, message={self.message!r})"


class MissingRequiredFieldError(ProbeError):
    """A required input was absent or blank."""

    def __init__(self, field: str, message: str | None = None) -> None:
        super().__init__(
            message or f"{field} is required",
            ErrorKind.MISSING_REQUIRED_FIELD,
            status_code=400,
            details={"field": field},
        )
        self.field = field


class InvalidEndpointError(ProbeError):
    """An endpoint is not a parseable absolute URL."""

    def __init__(self, url: str, *, field: str = "endpoint") -> None:
        super().__init__(
            f"Invalid {field} URL: {url!r}",
            ErrorKind.INVALID_ENDPOINT,
            status_code=400,
            details={"url": url, "field": field},
        )
        self.url = url


class InvalidParameterError(ProbeError):
    """A parameter has an unsupported value."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(
            message,
            ErrorKind.INVALID_PARAMETER,
            status_code=400,
            details={"field": field} if field else None,
        )


class PKCEError(InvalidParameterError):
    """PKCE-related error."""

    def __init__(self, message: str) -> None:
        super().__init__(message, field="code_challenge_method")


class DiscoveryTimeoutError(ProbeError):
    """Discovery document fetch timed out."""

    def __init__(self, discovery_url: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Discovery request timed out after {timeout_seconds:g}s",
            ErrorKind.DISCOVERY_TIMEOUT,
            status_code=504,
            details={"discovery_url": discovery_url, "timeout_seconds": timeout_seconds},
        )


class DiscoveryHttpError(ProbeError):
    """Discovery endpoint answered with a non-2xx status."""

    def __init__(self, discovery_url: str, status: int, body_preview: str) -> None:
        super().__init__(
            f"Discovery failed (HTTP {status})",
            ErrorKind.DISCOVERY_HTTP_ERROR,
            status_code=502,
            details={
                "discovery_url": discovery_url,
                "status": status,
                "body_preview": body_preview,
            },
        )
        self.status = status
        self.body_preview = body_preview


class DiscoveryParseError(ProbeError):
    """Discovery response body is not a JSON object."""

    def __init__(self, discovery_url: str, status: int, body_preview: str) -> None:
        super().__init__(
            f'Non-JSON discovery response (HTTP {status}): "{body_preview}"',
            ErrorKind.DISCOVERY_PARSE_ERROR,
            status_code=502,
            details={
                "discovery_url": discovery_url,
                "status": status,
                "body_preview": body_preview,
            },
        )
        self.body_preview = body_preview


class DiscoveryIncompleteError(ProbeError):
    """Discovery document lacks a field the caller requires."""

    def __init__(self, discovery_url: str, missing_field: str) -> None:
        super().__init__(
            f"Discovery did not return {missing_field}",
            ErrorKind.DISCOVERY_INCOMPLETE,
            status_code=502,
            details={"discovery_url": discovery_url, "missing_field": missing_field},
        )
        self.missing_field = missing_field


class StateMismatchError(ProbeError):
    """Callback state does not match any open session."""

    def __init__(self, received_state: str | None) -> None:
        super().__init__(
            "State mismatch: callback state does not match any open login attempt",
            ErrorKind.STATE_MISMATCH,
            status_code=400,
            details={"received_state": received_state},
        )
        self.received_state = received_state


class OriginMismatchError(ProbeError):
    """Cross-context message came from an untrusted origin."""

    def __init__(self, expected: str, received: str) -> None:
        super().__init__(
            f"Message origin {received!r} does not match {expected!r}",
            ErrorKind.ORIGIN_MISMATCH,
            status_code=403,
            details={"expected_origin": expected, "received_origin": received},
        )


class InvalidMessageError(ProbeError):
    """Cross-context message has an unknown type or shape."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.INVALID_MESSAGE, status_code=400)


class PopupBlockedError(ProbeError):
    """A popup window could not be opened."""

    def __init__(self, url: str | None = None) -> None:
        super().__init__(
            "Failed to open popup. Please allow popups for this site.",
            ErrorKind.POPUP_BLOCKED,
            details={"url": url} if url else None,
        )


class NoOpenerError(ProbeError):
    """A secondary context has no opener to report back to."""

    def __init__(self) -> None:
        super().__init__(
            "No opener window found. Copy the values manually.",
            ErrorKind.NO_OPENER,
        )


class NonJsonResponseError(ProbeError):
    """Token endpoint answered with a body that is not JSON."""

    def __init__(self, status: int, body_preview: str) -> None:
        super().__init__(
            f"Non-JSON token response (HTTP {status})",
            ErrorKind.NON_JSON_RESPONSE,
            status_code=status,
            details={"body_preview": body_preview},
        )
        self.body_preview = body_preview


class ProviderError(ProbeError):
    """IdP returned a structured OAuth error."""

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        *,
        status_code: int | None = None,
        body: dict[str, Any] | None = None,
    ) -> None:
        message = f"Provider error: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(
            message,
            ErrorKind.PROVIDER_ERROR,
            status_code=status_code,
            hint="Check the provider error fields, and verify redirect URI, client id and PKCE settings.",
            details={"body": body} if body else None,
        )
        self.error = error
        self.error_description = error_description


class HttpError(ProbeError):
    """Endpoint answered with a non-2xx status and no OAuth error body."""

    def __init__(self, status: int, body_preview: str = "") -> None:
        super().__init__(
            f"Request failed with status {status}",
            ErrorKind.HTTP_ERROR,
            status_code=status,
            details={"body_preview": body_preview} if body_preview else None,
        )
        self.status = status


class NetworkError(ProbeError):
    """Network request failed (DNS, TLS, connection refused, CORS)."""

    def __init__(
        self,
        message: str = "Network request failed",
        *,
        code: str | None = None,
        hint: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if code:
            details["code"] = code
        if cause:
            details["cause"] = str(cause)
        super().__init__(
            message,
            ErrorKind.NETWORK_ERROR,
            hint=hint,
            details=details,
        )
        self.code = code
        self.__cause__ = cause


class OpaqueResponseError(ProbeError):
    """A no-cors probe reached the endpoint but its response is unreadable."""

    def __init__(self, url: str) -> None:
        super().__init__(
            "no-cors mode: request was sent but the response is opaque (unreadable)",
            ErrorKind.OPAQUE_RESPONSE,
            hint=(
                "This proves the request reached the endpoint. To get the token, "
                "enable CORS on the IdP or use the server relay."
            ),
            details={"url": url, "reachable": True},
        )


class NonceMismatchError(ProbeError):
    """ID token nonce does not match the session nonce."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            f"ID token nonce check failed: {reason}",
            ErrorKind.NONCE_MISMATCH,
        )


class RequestTimeoutError(ProbeError):
    """A request or flow stage timed out."""

    def __init__(
        self,
        message: str = "Request timed out",
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(
            message,
            ErrorKind.TIMEOUT,
            status_code=408,
            details={"timeout_seconds": timeout_seconds} if timeout_seconds else None,
        )


class FlowCancelledError(ProbeError):
    """Flow was cancelled by the caller."""

    def __init__(self, reason: str = "Cancelled") -> None:
        super().__init__(reason, ErrorKind.CANCELLED)


class InvalidTransitionError(ProbeError):
    """Flow state machine transition is not allowed."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot transition from {current} to {requested}",
            ErrorKind.INVALID_TRANSITION,
            details={"current": current, "requested": requested},
        )
