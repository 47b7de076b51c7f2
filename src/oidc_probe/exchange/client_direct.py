"""Client-direct exchange: the browser context calls the token endpoint.

Requests carry the initiating context's ``Origin``; responses are only
readable when the IdP's CORS policy allows that origin.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import NetworkError, OpaqueResponseError
from ..models import ExchangeMode
from ..telemetry import trace_operation
from .base import ExchangeStrategy, post_token_form

if TYPE_CHECKING:
    import httpx

    from ..core.token_ops import TokenOperations
    from ..models import AuthSession, TokenResult

CORS_HINT = (
    "CORS: the IdP did not allow cross-origin requests from {origin}. "
    "Use the server relay, or allow this origin on the IdP."
)


def cors_allows(response: httpx.Response, origin: str) -> bool:
    """Whether the response's CORS headers let ``origin`` read it."""
    allowed = response.headers.get("Access-Control-Allow-Origin", "").strip()
    return allowed == "*" or allowed.rstrip("/") == origin.rstrip("/")


class ClientDirectStrategy(ExchangeStrategy):
    """Token request made from the browser context itself."""

    mode = ExchangeMode.CLIENT

    def __init__(
        self,
        origin: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        token_ops: TokenOperations | None = None,
    ) -> None:
        super().__init__(token_ops)
        self.origin = origin
        self.timeout = timeout
        self._transport = transport

    async def exchange(self, session: AuthSession, code: str) -> TokenResult:
        endpoint = self.token_ops.require_token_endpoint(session.token_endpoint)
        form = self.token_ops.build_authorization_code_request(session, code)
        if "client_secret" in form:
            self._logger.warning(
                "Client secret sent from a browser context",
                session_id=session.session_id,
            )

        with trace_operation(
            "oidc.token.client_direct",
            attributes={"http.url": endpoint, "session.id": session.session_id},
        ):
            response = await post_token_form(
                endpoint,
                form,
                timeout=self.timeout,
                insecure_skip_tls_verify=session.insecure_skip_tls_verify,
                origin=self.origin,
                transport=self._transport,
            )

        if not cors_allows(response, self.origin):
            raise NetworkError(
                "Token response blocked by CORS policy",
                code="CORS",
                hint=CORS_HINT.format(origin=self.origin),
            )

        return self.token_ops.parse_token_response(response, exchange_mode=self.mode)


class NoCorsProbeStrategy(ExchangeStrategy):
    """Fire-and-forget reachability probe.

    The response of a no-cors request is opaque, so this never reports
    tokens: reaching the endpoint yields OpaqueResponse whatever the status.
    """

    mode = ExchangeMode.NO_CORS

    def __init__(
        self,
        origin: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        token_ops: TokenOperations | None = None,
    ) -> None:
        super().__init__(token_ops)
        self.origin = origin
        self.timeout = timeout
        self._transport = transport

    async def exchange(self, session: AuthSession, code: str) -> TokenResult:
        endpoint = self.token_ops.require_token_endpoint(session.token_endpoint)
        form = self.token_ops.build_authorization_code_request(session, code)

        with trace_operation("oidc.token.no_cors", attributes={"http.url": endpoint}):
            response = await post_token_form(
                endpoint,
                form,
                timeout=self.timeout,
                insecure_skip_tls_verify=session.insecure_skip_tls_verify,
                origin=self.origin,
                transport=self._transport,
            )

        self._logger.info(
            "no-cors probe reached token endpoint",
            token_endpoint=endpoint,
            status=response.status_code,
        )
        raise OpaqueResponseError(endpoint)
