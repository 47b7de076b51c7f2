"""Centralized error factory for the OIDC probe.

Provides consistent error creation from HTTP responses and transport
exceptions across discovery and every exchange strategy.
"""

from __future__ import annotations

from typing import Any

import httpx

from ..errors import (
    HttpError,
    NetworkError,
    NonJsonResponseError,
    ProbeError,
    ProviderError,
    RequestTimeoutError,
)
from ..http import body_preview, describe_network_error


class ErrorFactory:
    """Centralized error creation with consistent structure.

    All errors created through this factory include:
    - A machine-readable kind
    - The HTTP status where one exists
    - A truncated body preview or underlying error code for diagnostics
    """

    @staticmethod
    def parse_body(response: httpx.Response) -> Any:
        """Parse a response body as JSON, returning None when it is not JSON."""
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def from_http_response(response: httpx.Response) -> ProbeError | None:
        """Create an error from a token endpoint response.

        Args:
            response: HTTP response object.

        Returns:
            The error the response represents, or None for a usable body.
        """
        return ErrorFactory.from_token_body(
            response.status_code,
            ErrorFactory.parse_body(response),
            response.text,
        )

    @staticmethod
    def from_token_body(status: int, body: Any, text: str = "") -> ProbeError | None:
        """Create an error from an already-decoded token endpoint body.

        Args:
            status: HTTP status of the response.
            body: Decoded JSON body, or None when the body was not JSON.
            text: Raw body text, for previews.

        Returns:
            ProviderError when the body carries an OAuth ``error``,
            HttpError for other non-2xx statuses, NonJsonResponseError for a
            2xx body that is not a JSON object, or None for a usable body.
        """
        if isinstance(body, dict) and body.get("error"):
            return ProviderError(
                str(body["error"]),
                str(body["error_description"]) if body.get("error_description") else None,
                status_code=status,
                body=body,
            )

        if not 200 <= status < 300:
            return HttpError(status, body_preview(text))

        if not isinstance(body, dict):
            return NonJsonResponseError(status, body_preview(text))

        return None

    @staticmethod
    def from_exception(
        exc: Exception,
        *,
        timeout_seconds: float | None = None,
    ) -> ProbeError:
        """Create a typed error from a transport exception.

        Args:
            exc: Original exception.
            timeout_seconds: Timeout in effect, for diagnostics.

        Returns:
            Appropriate ProbeError subclass.
        """
        if isinstance(exc, ProbeError):
            return exc

        if isinstance(exc, httpx.TimeoutException):
            return RequestTimeoutError(
                f"Request timed out: {exc}",
                timeout_seconds=timeout_seconds,
            )

        if isinstance(exc, httpx.HTTPStatusError):
            return ErrorFactory.from_http_response(exc.response) or HttpError(
                exc.response.status_code
            )

        code, hint = describe_network_error(exc)
        return NetworkError(
            f"Network error: {exc}",
            code=code,
            hint=hint,
            cause=exc,
        )
