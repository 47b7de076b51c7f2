"""Flow orchestrator: the login state machine.

Sequences discovery, authorization, callback correlation and token
exchange for one login attempt, and maps every failure into a
FlowResult. Credentials are passed in per flow through a
ClientRegistration; nothing is read from ambient state.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any

from .channel import MessageChannel
from .config import ProbeConfig
from .core.auth_builder import AuthorizationBuilder
from .core.token_ops import TokenOperations
from .correlator import (
    CrossContextCorrelator,
    has_fragment,
    parse_fragment_callback,
    parse_query_callback,
    strip_fragment,
)
from .discovery import DiscoveryResolver
from .errors import (
    FlowCancelledError,
    InvalidMessageError,
    InvalidTransitionError,
    MissingRequiredFieldError,
    PopupBlockedError,
    ProbeError,
    ProviderError,
    StateMismatchError,
)
from .exchange.engine import TokenExchangeEngine
from .inspection import check_id_token_nonce
from .models import (
    AuthSession,
    FlowResult,
    FlowState,
    TokenOutcome,
    TokenResult,
    is_oidc_request,
)
from .pkce import create_pkce_challenge, generate_nonce, generate_state
from .telemetry import flow_logger, get_logger, trace_operation

if TYPE_CHECKING:
    import httpx

    from .browser import BrowserContext, WindowHandle
    from .config import ClientRegistration
    from .models import AuthorizationRequest, CallbackPayload, DiscoveryDocument

# Allowed transitions; any non-terminal state may also fail
TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.IDLE: frozenset(
        {FlowState.DISCOVERING_ENDPOINTS, FlowState.AWAITING_AUTHORIZATION}
    ),
    FlowState.DISCOVERING_ENDPOINTS: frozenset({FlowState.AWAITING_AUTHORIZATION}),
    FlowState.AWAITING_AUTHORIZATION: frozenset({FlowState.AWAITING_CALLBACK}),
    FlowState.AWAITING_CALLBACK: frozenset(
        {FlowState.EXCHANGING_TOKEN, FlowState.SUCCEEDED}
    ),
    FlowState.EXCHANGING_TOKEN: frozenset(
        {FlowState.SUCCEEDED, FlowState.AWAITING_CONFIRMATION}
    ),
    FlowState.AWAITING_CONFIRMATION: frozenset({FlowState.SUCCEEDED}),
    FlowState.SUCCEEDED: frozenset(),
    FlowState.FAILED: frozenset(),
}


def can_transition(current: FlowState, requested: FlowState) -> bool:
    """Whether the state machine allows ``current -> requested``."""
    if current.is_terminal:
        return False
    return requested is FlowState.FAILED or requested in TRANSITIONS[current]


class AuthFlow:
    """One login attempt moving through the state machine."""

    def __init__(self, client: ClientRegistration) -> None:
        self.client = client
        self.state = FlowState.IDLE
        self.history: list[FlowState] = [FlowState.IDLE]
        self.session: AuthSession | None = None
        self.request: AuthorizationRequest | None = None
        self.window: WindowHandle | None = None
        self.token: TokenResult | None = None
        self.error: ProbeError | None = None
        self._started = time.monotonic()

    @property
    def session_state(self) -> str | None:
        """The ``state`` value sent to the IdP."""
        return self.session.state if self.session else None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    @property
    def is_finished(self) -> bool:
        """Terminal, or parked until an external confirmation."""
        return self.state.is_terminal or self.state is FlowState.AWAITING_CONFIRMATION

    def transition(self, requested: FlowState) -> None:
        """Move to ``requested``.

        Raises:
            InvalidTransitionError: If the move is not allowed.
        """
        if not can_transition(self.state, requested):
            raise InvalidTransitionError(self.state.value, requested.value)
        self.state = requested
        self.history.append(requested)

    def close_window(self) -> None:
        if self.window is not None and not self.window.closed:
            self.window.close()
        self.window = None

    def result(self) -> FlowResult:
        """Snapshot of the flow as a FlowResult."""
        error = self.error
        return FlowResult(
            session_id=self.session.session_id if self.session else None,
            state=self.state,
            token=self.token,
            error_kind=error.kind if error else None,
            message=error.message if error else (self.token.message if self.token else None),
            hint=error.hint if error else None,
            details=error.details if error else (self.token.details if self.token else {}),
            history=list(self.history),
            elapsed_ms=int(self.elapsed * 1000),
        )


class FlowOrchestrator:
    """Coordinates discovery, authorization, correlation and exchange.

    Example:
        >>> orchestrator = FlowOrchestrator(config, browser=SystemBrowser(config.origin))
        >>> result = await orchestrator.login(client, issuer="https://idp.example.com")
        >>> result.succeeded
    """

    def __init__(
        self,
        config: ProbeConfig | None = None,
        *,
        browser: BrowserContext,
        channel: MessageChannel | None = None,
        resolver: DiscoveryResolver | None = None,
        correlator: CrossContextCorrelator | None = None,
        engine: TokenExchangeEngine | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize flow orchestrator.

        Args:
            config: Probe configuration.
            browser: The initiating browser context.
            channel: Channel responder contexts post to.
            resolver: Discovery resolver.
            correlator: Cross-context correlator.
            engine: Token exchange engine.
            transport: Optional httpx transport override for the defaults.
        """
        self.config = config or ProbeConfig()
        self.browser = browser
        self.channel = channel or MessageChannel(self.config.origin)
        self.resolver = resolver or DiscoveryResolver(
            timeout=self.config.timeout, transport=transport
        )
        self.correlator = correlator or CrossContextCorrelator(self.config.origin, self.channel)
        self.engine = engine or TokenExchangeEngine(
            self.config,
            browser=browser,
            correlator=self.correlator,
            transport=transport,
        )
        self.builder = AuthorizationBuilder()
        self.token_ops = TokenOperations()
        self._flows: dict[str, AuthFlow] = {}
        self._logger = get_logger()

    def flow(self, state: str) -> AuthFlow | None:
        """Look up an unfinished flow by the ``state`` it sent to the IdP."""
        return self._flows.get(state)

    async def login(
        self,
        client: ClientRegistration,
        *,
        issuer: str | None = None,
        endpoints: DiscoveryDocument | None = None,
        use_popup: bool = True,
    ) -> FlowResult:
        """Run a whole login attempt.

        Args:
            client: Client registration under test.
            issuer: Issuer (or discovery URL) to discover endpoints from.
            endpoints: Known endpoints; skips discovery.
            use_popup: Authorize in a popup instead of navigating this context.

        Returns:
            The FlowResult; failures are reported in it, never raised.
        """
        flow = await self.begin(client, issuer=issuer, endpoints=endpoints, use_popup=use_popup)
        if flow.is_finished:
            return flow.result()
        return await self.await_callback(flow)

    async def begin(
        self,
        client: ClientRegistration,
        *,
        issuer: str | None = None,
        endpoints: DiscoveryDocument | None = None,
        use_popup: bool = True,
    ) -> AuthFlow:
        """Start a login attempt up to the point of waiting for the IdP.

        Returns:
            The flow, in ``awaiting_callback`` or already ``failed``.
        """
        flow = AuthFlow(client)
        try:
            document = await self._endpoints(flow, issuer, endpoints)
            self._authorize(flow, document, use_popup=use_popup)
        except ProbeError as e:
            self._fail(flow, e)
        return flow

    async def await_callback(self, flow: AuthFlow, timeout: float | None = None) -> FlowResult:
        """Wait for the flow's callback and complete it.

        Args:
            flow: A flow returned by ``begin``.
            timeout: Seconds to wait (defaults to what is left of the flow timeout).
        """
        if flow.state is not FlowState.AWAITING_CALLBACK or flow.session is None:
            return flow.result()

        remaining = timeout if timeout is not None else self.config.flow_timeout - flow.elapsed
        try:
            payload = await self.correlator.wait_for_callback(
                flow.session.state, max(remaining, 0.0)
            )
        except ProbeError as e:
            self._fail(flow, e)
            return flow.result()
        finally:
            flow.close_window()

        return await self._complete(flow, payload)

    async def complete_redirect(self, url: str) -> FlowResult:
        """Complete a flow whose IdP redirect landed in this context.

        Query responses go on to the code exchange; fragment responses are
        implicit-flow results and the fragment is stripped from the visible
        URL straight away.
        """
        fragment = has_fragment(url)
        if fragment:
            self.browser.replace_url(strip_fragment(url))

        try:
            payload = parse_fragment_callback(url) if fragment else parse_query_callback(url)
            session = self.correlator.match(payload)
        except ProbeError as e:
            self._logger.warning("Redirect rejected", kind=e.kind, error=e.message)
            return FlowResult(
                state=FlowState.FAILED,
                error_kind=e.kind,
                message=e.message,
                hint=e.hint,
                details=e.details,
                history=[FlowState.FAILED],
            )

        flow = self._flows[session.state]
        flow.close_window()
        return await self._complete(flow, payload)

    async def confirm_external(self, state: str, body: dict[str, Any] | str) -> FlowResult:
        """Finish a form-mode flow with the IdP's token response.

        Args:
            state: The flow's ``state``.
            body: The token endpoint's JSON, decoded or as text.

        Raises:
            StateMismatchError: If no flow has that state.
            InvalidTransitionError: If the flow is not awaiting confirmation.
        """
        flow = self._flows.get(state)
        if flow is None or flow.session is None:
            raise StateMismatchError(state)
        if flow.state is not FlowState.AWAITING_CONFIRMATION:
            raise InvalidTransitionError(flow.state.value, FlowState.SUCCEEDED.value)

        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError:
                flow_logger(state).info("Confirmation body is not JSON")
        token = self.token_ops.result_from_body(
            body, status=200, exchange_mode=flow.session.exchange_mode
        )
        self.correlator.release(state)
        return self._finish_with_token(flow, token)

    async def await_confirmation(self, flow: AuthFlow, timeout: float | None = None) -> FlowResult:
        """Wait for the bookmarklet's ``token_response`` and confirm with it."""
        if flow.state is not FlowState.AWAITING_CONFIRMATION or flow.session is None:
            return flow.result()

        remaining = timeout if timeout is not None else self.config.flow_timeout - flow.elapsed
        try:
            body = await self.correlator.wait_for_token(flow.session.state, max(remaining, 0.0))
        except ProbeError as e:
            self._fail(flow, e)
            return flow.result()
        return await self.confirm_external(flow.session.state, body)

    def cancel(self, flow: AuthFlow, reason: str = "Cancelled") -> FlowResult:
        """Abandon a flow; a finished flow is returned unchanged."""
        if flow.state.is_terminal:
            return flow.result()
        flow.close_window()
        self._fail(flow, FlowCancelledError(reason))
        return flow.result()

    async def _endpoints(
        self,
        flow: AuthFlow,
        issuer: str | None,
        endpoints: DiscoveryDocument | None,
    ) -> DiscoveryDocument:
        code_flow = not flow.client.response_type.is_implicit
        if endpoints is not None:
            flow.transition(FlowState.AWAITING_AUTHORIZATION)
            if not endpoints.authorization_endpoint:
                raise MissingRequiredFieldError("authorization_endpoint")
            if code_flow and not endpoints.token_endpoint:
                raise MissingRequiredFieldError("token_endpoint")
            return endpoints

        if not issuer or not issuer.strip():
            raise MissingRequiredFieldError(
                "issuer", "issuer (or discovery URL) is required when endpoints are not given"
            )

        flow.transition(FlowState.DISCOVERING_ENDPOINTS)
        require = ("authorization_endpoint", "token_endpoint") if code_flow else (
            "authorization_endpoint",
        )
        document = await self.resolver.resolve(
            issuer,
            require=require,
            timeout=self.config.timeout,
            insecure_skip_tls_verify=flow.client.insecure_skip_tls_verify,
        )
        flow.transition(FlowState.AWAITING_AUTHORIZATION)
        return document

    def _authorize(self, flow: AuthFlow, document: DiscoveryDocument, *, use_popup: bool) -> None:
        client = flow.client
        pkce = None
        if client.use_pkce and not client.response_type.is_implicit:
            if client.code_challenge_method == "S256" and not document.supports_s256():
                self._logger.warning(
                    "IdP does not advertise S256 PKCE support",
                    methods=document.code_challenge_methods_supported,
                )
            pkce = create_pkce_challenge(client.code_challenge_method)

        session = AuthSession(
            state=generate_state(),
            nonce=generate_nonce() if is_oidc_request(client.scope, client.response_type) else None,
            code_verifier=pkce.code_verifier if pkce else None,
            code_challenge=pkce.code_challenge if pkce else None,
            challenge_method=pkce.code_challenge_method if pkce else None,
            client_id=client.client_id,
            client_secret=client.client_secret,
            redirect_uri=client.redirect_uri,
            scope=client.scope,
            response_type=client.response_type,
            exchange_mode=client.exchange_mode,
            authorization_endpoint=document.authorization_endpoint,
            token_endpoint=document.token_endpoint,
            token_params=dict(client.token_params),
            insecure_skip_tls_verify=client.insecure_skip_tls_verify,
        )
        request = self.builder.build_for_session(session, client.authorization_params)

        flow.session = session
        flow.request = request
        self._flows[session.state] = flow
        self.correlator.register(session)

        with trace_operation(
            "oidc.authorize",
            attributes={"session.id": session.session_id, "authorize.popup": use_popup},
        ):
            if use_popup:
                window = self.browser.open_window(request.url, self.config.popup_name)
                if window is None:
                    raise PopupBlockedError(request.authorization_endpoint)
                flow.window = window
            else:
                self.browser.navigate(request.url)

        flow.transition(FlowState.AWAITING_CALLBACK)
        flow_logger(session.state, session_id=session.session_id).info(
            "Awaiting authorization response",
            exchange_mode=str(session.exchange_mode),
            response_type=str(session.response_type),
            popup=use_popup,
        )

    async def _complete(self, flow: AuthFlow, payload: CallbackPayload) -> FlowResult:
        session = flow.session
        if session is None:
            raise InvalidTransitionError(flow.state.value, FlowState.EXCHANGING_TOKEN.value)

        if payload.is_error:
            self._fail(flow, ProviderError(payload.error or "", payload.error_description))
            return flow.result()

        # Implicit and hybrid results come from the fragment and never reach the token endpoint
        if session.response_type.is_implicit:
            if payload.source != "fragment" or not payload.carries_tokens:
                error = InvalidMessageError(
                    "Implicit flow response must carry tokens in the URL fragment"
                )
                self._fail(flow, error)
                return flow.result()
            token = TokenResult.success(
                payload.model_dump(exclude_none=True, exclude={"source", "state", "iss"}),
                exchange_mode=None,
            )
            return self._finish_with_token(flow, token)

        if not payload.code:
            error = MissingRequiredFieldError("code", "Callback carried no authorization code")
            self._fail(flow, error)
            return flow.result()

        flow.transition(FlowState.EXCHANGING_TOKEN)
        token = await self.engine.exchange(session, payload.code)

        if token.outcome is TokenOutcome.AWAITING_CONFIRMATION:
            flow.token = token
            flow.transition(FlowState.AWAITING_CONFIRMATION)
            self.correlator.expect_token(session.state)
            return flow.result()

        return self._finish_with_token(flow, token)

    def _finish_with_token(self, flow: AuthFlow, token: TokenResult) -> FlowResult:
        session = flow.session
        if not token.succeeded:
            flow.token = token
            self._fail(flow, _error_from_token(token))
            return flow.result()

        if token.id_token and session is not None and session.nonce:
            try:
                check_id_token_nonce(token.id_token, session.nonce)
            except ProbeError as e:
                self._fail(flow, e)
                return flow.result()

        flow.token = token
        flow.transition(FlowState.SUCCEEDED)
        if session is not None:
            self.correlator.release(session.state)
        self._forget(flow)
        self._logger.info(
            "Login succeeded",
            session_id=session.session_id if session else None,
            elapsed_ms=int(flow.elapsed * 1000),
        )
        return flow.result()

    def _forget(self, flow: AuthFlow) -> None:
        if flow.session is not None:
            self._flows.pop(flow.session.state, None)

    def _fail(self, flow: AuthFlow, error: ProbeError) -> None:
        if flow.state.is_terminal:
            return
        flow.error = error
        flow.transition(FlowState.FAILED)
        flow.close_window()
        if flow.session is not None:
            self.correlator.release(flow.session.state, reason=error.message)
        self._forget(flow)
        self._logger.warning(
            "Login failed",
            session_id=flow.session.session_id if flow.session else None,
            kind=error.kind,
            error=error.message,
            history=[s.value for s in flow.history],
        )


def _error_from_token(token: TokenResult) -> ProbeError:
    """Rebuild the typed error a failed TokenResult describes."""
    if token.error:
        error: ProbeError = ProviderError(
            token.error,
            token.error_description,
            status_code=token.http_status,
            body=token.raw,
        )
        error.details = token.details
        return error
    return ProbeError(
        token.message or "Token exchange failed",
        token.error_kind or "HttpError",
        status_code=token.http_status,
        hint=token.hint,
        details=token.details,
    )
