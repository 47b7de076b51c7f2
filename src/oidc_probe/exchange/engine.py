"""Token exchange engine: selects a strategy per session and never raises
for protocol or network failures."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import httpx

from ..config import ProbeConfig
from ..core.errors import ErrorFactory
from ..core.token_ops import TokenOperations
from ..errors import InvalidEndpointError, InvalidParameterError, ProbeError
from ..models import ExchangeMode, TokenResult
from ..telemetry import get_logger, trace_operation
from .client_direct import ClientDirectStrategy, NoCorsProbeStrategy
from .form_post import FormPostStrategy
from .popup_relay import PopupRelayStrategy, RelayTicketStore
from .server_relay import ServerRelayStrategy

if TYPE_CHECKING:
    from ..browser import BrowserContext
    from ..correlator import CrossContextCorrelator
    from ..models import AuthSession
    from .base import ExchangeStrategy


class TokenExchangeEngine:
    """Runs ``exchange(session, code)`` through the session's exchange mode.

    Strategies are built lazily and cached per mode. Modes that drive the
    browser (form, form-popup, popup-auto) need a BrowserContext; popup-auto
    also needs the correlator that receives the bridge's message.
    """

    def __init__(
        self,
        config: ProbeConfig | None = None,
        *,
        browser: BrowserContext | None = None,
        correlator: CrossContextCorrelator | None = None,
        tickets: RelayTicketStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token_ops: TokenOperations | None = None,
    ) -> None:
        """Initialize exchange engine.

        Args:
            config: Probe configuration.
            browser: Browser context for form and popup modes.
            correlator: Correlator receiving ``token_response`` messages.
            tickets: Ticket store shared with the bridge page.
            transport: Optional httpx transport override.
            token_ops: Token operations (shared across strategies).
        """
        self.config = config or ProbeConfig()
        self.browser = browser
        self.correlator = correlator
        self.tickets = tickets or RelayTicketStore()
        self._transport = transport
        self.token_ops = token_ops or TokenOperations()
        self._strategies: dict[ExchangeMode, ExchangeStrategy] = {}
        self._logger = get_logger()

    def strategy_for(self, mode: ExchangeMode | str) -> ExchangeStrategy:
        """Return the strategy implementing ``mode``.

        Raises:
            InvalidParameterError: If the mode is unknown or its
                collaborators are not available.
        """
        try:
            mode = ExchangeMode(mode)
        except ValueError:
            msg = f"Unknown exchange mode: {mode!r}"
            raise InvalidParameterError(msg, field="exchange_mode") from None

        strategy = self._strategies.get(mode)
        if strategy is None:
            strategy = self._build(mode)
            self._strategies[mode] = strategy
        return strategy

    def _build(self, mode: ExchangeMode) -> ExchangeStrategy:
        cfg = self.config
        if mode is ExchangeMode.SERVER:
            return ServerRelayStrategy(
                timeout=cfg.timeout, transport=self._transport, token_ops=self.token_ops
            )
        if mode is ExchangeMode.CLIENT:
            return ClientDirectStrategy(
                cfg.origin, timeout=cfg.timeout, transport=self._transport, token_ops=self.token_ops
            )
        if mode is ExchangeMode.NO_CORS:
            return NoCorsProbeStrategy(
                cfg.origin, timeout=cfg.timeout, transport=self._transport, token_ops=self.token_ops
            )

        if self.browser is None:
            msg = f"Exchange mode {mode} needs a browser context"
            raise InvalidParameterError(msg, field="exchange_mode")

        if mode in (ExchangeMode.FORM, ExchangeMode.FORM_POPUP):
            return FormPostStrategy(
                self.browser, mode=mode, popup_name=cfg.popup_name, token_ops=self.token_ops
            )

        if self.correlator is None:
            msg = f"Exchange mode {mode} needs a correlator"
            raise InvalidParameterError(msg, field="exchange_mode")
        return PopupRelayStrategy(
            self.browser,
            self.correlator,
            self.tickets,
            bridge_url=cfg.bridge_url,
            popup_name=cfg.popup_name,
            timeout=cfg.flow_timeout,
            token_ops=self.token_ops,
        )

    async def exchange(self, session: AuthSession, code: str) -> TokenResult:
        """Exchange an authorization code for tokens.

        Args:
            session: The login attempt being completed.
            code: Authorization code from the callback.

        Returns:
            TokenResult; failures are reported in it, never raised.
        """
        mode = session.exchange_mode
        start = time.perf_counter()

        try:
            if session.response_type.is_implicit:
                msg = "Implicit and hybrid flows do not exchange codes"
                raise InvalidParameterError(msg, field="response_type")

            strategy = self.strategy_for(mode)
            with trace_operation(
                "oidc.token.exchange",
                attributes={"exchange.mode": str(mode), "session.id": session.session_id},
            ):
                result = await strategy.exchange(session, code)
        except ProbeError as e:
            result = TokenResult.failure(e, exchange_mode=mode)
        except httpx.InvalidURL:
            result = TokenResult.failure(
                InvalidEndpointError(session.token_endpoint or "", field="token_endpoint"),
                exchange_mode=mode,
            )
        except httpx.HTTPError as e:
            result = TokenResult.failure(
                ErrorFactory.from_exception(e, timeout_seconds=self.config.timeout),
                exchange_mode=mode,
            )

        self._logger.info(
            "Token exchange finished",
            session_id=session.session_id,
            exchange_mode=str(mode),
            outcome=str(result.outcome),
            error_kind=result.error_kind,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result
