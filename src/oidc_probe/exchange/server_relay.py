"""Server relay: the trusted backend performs the token request."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..models import ExchangeMode
from ..telemetry import trace_operation
from .base import ExchangeStrategy, post_token_form

if TYPE_CHECKING:
    import httpx

    from ..core.token_ops import TokenOperations
    from ..models import AuthSession, TokenResult


class ServerRelayStrategy(ExchangeStrategy):
    """POSTs the token request from the backend.

    The only mode in which the client secret never leaves the trusted
    process.
    """

    mode = ExchangeMode.SERVER

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        token_ops: TokenOperations | None = None,
    ) -> None:
        super().__init__(token_ops)
        self.timeout = timeout
        self._transport = transport

    async def exchange(self, session: AuthSession, code: str) -> TokenResult:
        endpoint = self.token_ops.require_token_endpoint(session.token_endpoint)
        form = self.token_ops.build_authorization_code_request(session, code)

        with trace_operation(
            "oidc.token.server_relay",
            attributes={"http.url": endpoint, "session.id": session.session_id},
        ):
            response = await post_token_form(
                endpoint,
                form,
                timeout=self.timeout,
                insecure_skip_tls_verify=session.insecure_skip_tls_verify,
                transport=self._transport,
            )

        return self.token_ops.parse_token_response(response, exchange_mode=self.mode)
