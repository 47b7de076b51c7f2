"""Popup auto-relay.

Opens a popup on a same-origin bridge page that performs the server
relay and posts the result back to the opener as a ``token_response``
message. The popup URL carries only a single-use ticket and the code;
the session (client secret, PKCE verifier) stays in the ticket store.
"""

from __future__ import annotations

import secrets
import threading
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from ..core.token_ops import TokenOperations
from ..errors import InvalidParameterError, PopupBlockedError, ProbeError
from ..models import ExchangeMode
from ..telemetry import get_logger, trace_operation
from .base import ExchangeStrategy, post_token_form

if TYPE_CHECKING:
    import httpx

    from ..browser import BrowserContext
    from ..channel import MessagePort
    from ..correlator import CrossContextCorrelator
    from ..models import AuthSession, TokenResult


class RelayTicketStore:
    """Single-use tickets standing in for sessions in bridge URLs."""

    def __init__(self, ttl: float = 120.0) -> None:
        self.ttl = ttl
        self._lock = threading.Lock()
        self._tickets: dict[str, tuple[AuthSession, float]] = {}

    def issue(self, session: AuthSession) -> str:
        ticket = secrets.token_urlsafe(24)
        with self._lock:
            self._purge()
            self._tickets[ticket] = (session, time.monotonic() + self.ttl)
        return ticket

    def redeem(self, ticket: str) -> AuthSession:
        """Return the ticket's session, invalidating the ticket.

        Raises:
            InvalidParameterError: If the ticket is unknown, used or expired.
        """
        with self._lock:
            self._purge()
            entry = self._tickets.pop(ticket, None)
        if entry is None:
            raise InvalidParameterError("Unknown or expired relay ticket", field="ticket")
        return entry[0]

    def revoke(self, ticket: str) -> None:
        with self._lock:
            self._tickets.pop(ticket, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._tickets)

    def _purge(self) -> None:
        now = time.monotonic()
        for ticket in [t for t, (_, expires) in self._tickets.items() if expires <= now]:
            del self._tickets[ticket]


async def relay_token_request(
    token_endpoint: str,
    form: dict[str, str],
    *,
    timeout: float,
    insecure_skip_tls_verify: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Perform a token request and describe the raw outcome.

    Returns:
        ``{ok, status, tokenEndpoint, body}``; ``body`` is the decoded JSON,
        or ``{"raw": text}`` when the IdP did not answer with JSON.

    Raises:
        RequestTimeoutError: On timeout.
        NetworkError: On connection, DNS or TLS failures.
    """
    response = await post_token_form(
        token_endpoint,
        form,
        timeout=timeout,
        insecure_skip_tls_verify=insecure_skip_tls_verify,
        transport=transport,
    )
    try:
        body: Any = response.json()
    except ValueError:
        body = {"raw": response.text[:10000]}
    return {
        "ok": response.is_success,
        "status": response.status_code,
        "tokenEndpoint": token_endpoint,
        "body": body,
    }


class TokenBridge:
    """Logic of the bridge page: redeem a ticket, relay, post the result back."""

    def __init__(
        self,
        tickets: RelayTicketStore,
        *,
        opener_origin: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        token_ops: TokenOperations | None = None,
    ) -> None:
        self.tickets = tickets
        self.opener_origin = opener_origin
        self.timeout = timeout
        self._transport = transport
        self.token_ops = token_ops or TokenOperations()
        self._logger = get_logger()

    async def relay(
        self,
        ticket: str,
        code: str,
        opener: MessagePort | None = None,
    ) -> dict[str, Any]:
        """Exchange ``code`` for the ticket's session.

        Args:
            ticket: Relay ticket from the bridge URL.
            code: Authorization code from the bridge URL.
            opener: Port to the opener; the message is posted there if given.

        Returns:
            The ``token_response`` message.

        Raises:
            InvalidParameterError: If the ticket is unknown or expired.
        """
        session = self.tickets.redeem(ticket)
        endpoint = session.token_endpoint or ""

        try:
            endpoint = self.token_ops.require_token_endpoint(session.token_endpoint)
            form = self.token_ops.build_authorization_code_request(session, code)
            payload = await relay_token_request(
                endpoint,
                form,
                timeout=self.timeout,
                insecure_skip_tls_verify=session.insecure_skip_tls_verify,
                transport=self._transport,
            )
        except ProbeError as e:
            payload = {
                "ok": False,
                "status": e.status_code,
                "tokenEndpoint": endpoint,
                "error": e.message,
                "kind": e.kind,
                "hint": e.hint,
            }

        message = {"type": "token_response", "state": session.state, "payload": payload}
        self._logger.info(
            "Token bridge relayed exchange",
            session_id=session.session_id,
            ok=payload["ok"],
            status=payload.get("status"),
        )
        if opener is not None:
            opener.post_message(message, self.opener_origin)
        return message


class PopupRelayStrategy(ExchangeStrategy):
    """Opens the bridge page in a popup and waits for its token_response."""

    mode = ExchangeMode.POPUP_AUTO

    def __init__(
        self,
        browser: BrowserContext,
        correlator: CrossContextCorrelator,
        tickets: RelayTicketStore,
        *,
        bridge_url: str,
        popup_name: str = "oidc_probe_popup",
        timeout: float = 300.0,
        token_ops: TokenOperations | None = None,
    ) -> None:
        super().__init__(token_ops)
        self.browser = browser
        self.correlator = correlator
        self.tickets = tickets
        self.bridge_url = bridge_url
        self.popup_name = popup_name
        self.timeout = timeout

    async def exchange(self, session: AuthSession, code: str) -> TokenResult:
        self.token_ops.require_token_endpoint(session.token_endpoint)
        # Fail on missing fields here rather than inside the popup
        self.token_ops.build_authorization_code_request(session, code)

        ticket = self.tickets.issue(session)
        url = f"{self.bridge_url}?{urlencode({'ticket': ticket, 'code': code})}"
        self.correlator.expect_token(session.state)

        with trace_operation("oidc.token.popup_relay", attributes={"session.id": session.session_id}):
            window = self.browser.open_window(url, self.popup_name)
            if window is None:
                self.tickets.revoke(ticket)
                raise PopupBlockedError(self.bridge_url)
            try:
                payload = await self.correlator.wait_for_token(session.state, self.timeout)
            finally:
                self.tickets.revoke(ticket)
                if not window.closed:
                    window.close()

        return self.token_ops.result_from_relay(payload, exchange_mode=self.mode)
