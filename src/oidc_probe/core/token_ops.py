"""Centralized token operations for the OIDC probe.

Provides token request building and response mapping shared by every
exchange strategy, the token bridge and the relay backend.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from ..errors import (
    InvalidEndpointError,
    InvalidMessageError,
    MissingRequiredFieldError,
    ProbeError,
    ProviderError,
)
from ..http import body_preview, is_absolute_url
from ..models import ExchangeMode, TokenResult
from ..telemetry import get_logger, redact
from .errors import ErrorFactory

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from ..models import AuthSession

AUTHORIZATION_CODE_GRANT = "authorization_code"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# Extension parameters may never replace these
PROTECTED_TOKEN_PARAMS = frozenset(
    {"code", "client_id", "redirect_uri", "client_secret", "code_verifier"}
)


class TokenOperations:
    """Token request building and response mapping.

    The request body always starts with ``grant_type``, ``code``,
    ``redirect_uri`` and ``client_id``, followed by the optional client
    secret, PKCE verifier and extension parameters.
    """

    def __init__(self) -> None:
        """Initialize token operations."""
        self._logger = get_logger()

    @staticmethod
    def require_token_endpoint(token_endpoint: str | None) -> str:
        """Validate a token endpoint URL.

        Raises:
            MissingRequiredFieldError: If the endpoint is blank.
            InvalidEndpointError: If the endpoint is not an absolute URL.
        """
        endpoint = (token_endpoint or "").strip()
        if not endpoint:
            raise MissingRequiredFieldError("token_endpoint")
        if not is_absolute_url(endpoint):
            raise InvalidEndpointError(endpoint, field="token_endpoint")
        return endpoint

    def build_form(
        self,
        *,
        code: str | None,
        redirect_uri: str | None,
        client_id: str | None,
        client_secret: str | None = None,
        code_verifier: str | None = None,
        extra_params: Mapping[str, Any] | None = None,
    ) -> dict[str, str]:
        """Build an authorization code exchange form body.

        Args:
            code: Authorization code.
            redirect_uri: Redirect URI used in authorization.
            client_id: OAuth client identifier.
            client_secret: Client secret for confidential clients.
            code_verifier: PKCE code verifier.
            extra_params: Extension parameters; ``grant_type`` overrides the
                default grant.

        Returns:
            Ordered form fields.

        Raises:
            MissingRequiredFieldError: If code, redirect_uri or client_id is blank.
        """
        for field, value in (
            ("code", code),
            ("redirect_uri", redirect_uri),
            ("client_id", client_id),
        ):
            if not (value or "").strip():
                raise MissingRequiredFieldError(field)

        extras = {
            str(k): str(v) for k, v in (extra_params or {}).items() if v is not None and str(v) != ""
        }

        data: dict[str, str] = {
            "grant_type": extras.pop("grant_type", AUTHORIZATION_CODE_GRANT),
            "code": str(code),
            "redirect_uri": str(redirect_uri),
            "client_id": str(client_id),
        }
        if client_secret:
            data["client_secret"] = client_secret
        if code_verifier:
            data["code_verifier"] = code_verifier

        for key, value in extras.items():
            if key in PROTECTED_TOKEN_PARAMS:
                self._logger.warning(
                    "Ignoring extension parameter that would replace a token request field",
                    param=key,
                )
                continue
            data[key] = value

        return data

    def build_authorization_code_request(
        self,
        session: AuthSession,
        code: str | None,
    ) -> dict[str, str]:
        """Build the token request body for a session.

        Args:
            session: The login attempt being completed.
            code: Authorization code from the callback.

        Returns:
            Ordered form fields.
        """
        data = self.build_form(
            code=code,
            redirect_uri=session.redirect_uri,
            client_id=session.client_id,
            client_secret=(
                session.client_secret.get_secret_value() if session.client_secret else None
            ),
            code_verifier=session.code_verifier,
            extra_params=session.token_params,
        )
        self._logger.debug("Token request built", **redact(data))
        return data

    @staticmethod
    def build_token_request_headers(origin: str | None = None) -> dict[str, str]:
        """Build headers for a token request.

        Args:
            origin: Origin of the requesting browser context, if any.

        Returns:
            Headers dictionary.
        """
        headers = {
            "Content-Type": FORM_CONTENT_TYPE,
            "Accept": "application/json",
        }
        if origin:
            headers["Origin"] = origin
        return headers

    def parse_token_response(
        self,
        response: httpx.Response,
        *,
        exchange_mode: ExchangeMode | None = None,
    ) -> TokenResult:
        """Map a token endpoint response to a TokenResult."""
        return self.result_from_body(
            ErrorFactory.parse_body(response),
            status=response.status_code,
            text=response.text,
            exchange_mode=exchange_mode,
        )

    def result_from_body(
        self,
        body: Any,
        *,
        status: int = 200,
        text: str | None = None,
        exchange_mode: ExchangeMode | None = None,
    ) -> TokenResult:
        """Map a decoded token endpoint body to a TokenResult.

        A JSON object with ``error`` is a ProviderError at any status; a
        non-2xx status is an HttpError; a 2xx body that is not a JSON object
        is a NonJsonResponse; a 2xx object without ``access_token`` or
        ``id_token`` is a ProviderError (``invalid_token_response``).
        """
        if text is None:
            text = body if isinstance(body, str) else json.dumps(body)

        error = ErrorFactory.from_token_body(status, body, text)
        if error is None and not (body.get("access_token") or body.get("id_token")):
            error = ProviderError(
                "invalid_token_response",
                "Token response contained neither access_token nor id_token",
                status_code=status,
                body=body,
            )

        if error is not None:
            self._logger.info(
                "Token exchange failed",
                kind=error.kind,
                status=status,
                exchange_mode=exchange_mode,
            )
            return TokenResult.failure(error, exchange_mode=exchange_mode)

        self._logger.info(
            "Token exchange succeeded",
            status=status,
            exchange_mode=exchange_mode,
            has_refresh_token=bool(body.get("refresh_token")),
            has_id_token=bool(body.get("id_token")),
        )
        return TokenResult.success(body, exchange_mode=exchange_mode, http_status=status)

    def result_from_relay(
        self,
        payload: Any,
        *,
        exchange_mode: ExchangeMode | None = None,
    ) -> TokenResult:
        """Map a relay envelope (``{ok, status, tokenEndpoint, body}``) to a TokenResult.

        Relay envelopes that report a failure before reaching the IdP carry
        ``{ok: false, error, kind, hint}`` instead of a body.
        """
        if not isinstance(payload, dict):
            error = InvalidMessageError(
                f"Malformed relay payload: {body_preview(str(payload))}"
            )
            return TokenResult.failure(error, exchange_mode=exchange_mode)

        if "body" not in payload and payload.get("kind"):
            error = ProbeError(
                str(payload.get("error") or "Token relay failed"),
                str(payload["kind"]),
                status_code=payload.get("status"),
                hint=payload.get("hint"),
            )
            return TokenResult.failure(error, exchange_mode=exchange_mode)

        body = payload.get("body")
        if isinstance(body, dict) and set(body) == {"raw"}:
            body, text = None, str(body["raw"])
        else:
            text = None
        return self.result_from_body(
            body,
            status=int(payload.get("status") or 0),
            text=text,
            exchange_mode=exchange_mode,
        )
