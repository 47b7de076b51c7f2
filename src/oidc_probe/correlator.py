"""Cross-context correlation of authorization responses.

Parses the IdP redirect in the responder context, relays it as a typed
message, and matches it to exactly one open login attempt by ``state``
in the initiating context.
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from pydantic import ValidationError

from .errors import (
    FlowCancelledError,
    InvalidMessageError,
    InvalidParameterError,
    NoOpenerError,
    OriginMismatchError,
    ProbeError,
    RequestTimeoutError,
    StateMismatchError,
)
from .models import CallbackPayload
from .telemetry import get_logger

if TYPE_CHECKING:
    from .browser import WindowHandle
    from .channel import Envelope, MessageChannel, MessagePort
    from .models import AuthSession

AUTH_CALLBACK = "auth_callback"
TOKEN_RESPONSE = "token_response"

_QUERY_FIELDS = ("code", "state", "error", "error_description", "iss")
_FRAGMENT_FIELDS = (
    "access_token",
    "id_token",
    "token_type",
    "expires_in",
    "refresh_token",
    "scope",
    "state",
    "error",
    "error_description",
    "iss",
)


def _pick(params: dict[str, str], fields: tuple[str, ...]) -> dict[str, Any]:
    return {key: params[key] for key in fields if params.get(key)}


def parse_query_callback(url: str) -> CallbackPayload:
    """Parse an authorization-code callback from the query string.

    Raises:
        InvalidMessageError: If the query carries neither ``code`` nor ``error``.
    """
    params = dict(parse_qsl(urlsplit(url).query))
    data = _pick(params, _QUERY_FIELDS)
    if not data.get("code") and not data.get("error"):
        raise InvalidMessageError("No authorization code or error in callback URL")
    return CallbackPayload(**data, source="query")


def parse_fragment_callback(url: str) -> CallbackPayload:
    """Parse an implicit or hybrid callback from the URL fragment only.

    Raises:
        InvalidMessageError: If the fragment carries no tokens and no ``error``.
    """
    fragment = urlsplit(url).fragment
    data = _pick(dict(parse_qsl(fragment)), _FRAGMENT_FIELDS)
    if not (data.get("access_token") or data.get("id_token") or data.get("error")):
        raise InvalidMessageError("No tokens or error in callback fragment")

    expires_in = data.pop("expires_in", None)
    try:
        data["expires_in"] = int(expires_in) if expires_in is not None else None
    except ValueError:
        data["expires_in"] = None
    return CallbackPayload(**data, source="fragment")


def has_fragment(url: str) -> bool:
    return bool(urlsplit(url).fragment)


def strip_fragment(url: str) -> str:
    """Return ``url`` without its fragment."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


class CrossContextCorrelator:
    """Matches relayed authorization responses to open sessions.

    Open sessions are indexed by ``state`` in a lock-protected map. A
    callback is accepted only if its state names exactly one open session,
    which is consumed by the match. Waiters are per-state futures, so any
    number of flows can wait concurrently on one channel.
    """

    def __init__(self, origin: str, channel: MessageChannel | None = None) -> None:
        """Initialize correlator.

        Args:
            origin: Origin of the initiating context; messages from any
                other origin are rejected.
            channel: Channel that responder contexts post to.
        """
        self.origin = origin.rstrip("/")
        self.channel = channel
        self._lock = threading.Lock()
        self._sessions: dict[str, AuthSession] = {}
        self._waiters: dict[tuple[str, str], asyncio.Future[Any]] = {}
        self._early: dict[tuple[str, str], Any] = {}
        self._expected_tokens: set[str] = set()
        self._logger = get_logger()

    def register(self, session: AuthSession) -> None:
        """Open a session for correlation.

        Raises:
            InvalidParameterError: If a session with the same state is open.
        """
        with self._lock:
            if session.state in self._sessions:
                msg = "A login attempt with this state is already open"
                raise InvalidParameterError(msg, field="state")
            self._sessions[session.state] = session
        self._logger.debug("Session registered", session_id=session.session_id)

    def is_open(self, state: str) -> bool:
        with self._lock:
            return state in self._sessions

    @property
    def open_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def match(self, payload: CallbackPayload) -> AuthSession:
        """Consume the one open session whose state equals the payload's.

        Raises:
            StateMismatchError: If no open session has that state.
        """
        with self._lock:
            session = self._sessions.pop(payload.state, None) if payload.state else None
            if session is None:
                raise StateMismatchError(payload.state)
            session.consumed = True
        self._logger.info(
            "Callback matched to session",
            session_id=session.session_id,
            source=payload.source,
            is_error=payload.is_error,
        )
        return session

    def dispatch(self, envelope: Envelope) -> None:
        """Validate and route one received message.

        Raises:
            OriginMismatchError: If the message came from another origin.
            InvalidMessageError: If the message type or shape is unknown.
            StateMismatchError: If the message names no open session.
        """
        if envelope.origin.rstrip("/") != self.origin:
            raise OriginMismatchError(self.origin, envelope.origin)

        data = envelope.data
        if not isinstance(data, dict) or "type" not in data:
            raise InvalidMessageError("Message is not a typed object")

        message_type = data["type"]
        if message_type == AUTH_CALLBACK:
            try:
                payload = CallbackPayload.model_validate(data)
            except ValidationError as e:
                raise InvalidMessageError(f"Malformed {AUTH_CALLBACK} message: {e}") from e
            self.accept(payload)
        elif message_type == TOKEN_RESPONSE:
            state = data.get("state")
            if not isinstance(state, str) or "payload" not in data:
                raise InvalidMessageError(f"Malformed {TOKEN_RESPONSE} message")
            self._deliver(TOKEN_RESPONSE, state, data["payload"])
        else:
            raise InvalidMessageError(f"Unknown message type: {message_type!r}")

    def accept(self, payload: CallbackPayload) -> AuthSession:
        """Match a callback and hand it to whoever waits on its state.

        A callback whose state matches nothing fails every flow currently
        waiting for a callback, since it cannot be attributed to one of them.

        Raises:
            StateMismatchError: If no open session has that state.
        """
        try:
            session = self.match(payload)
        except StateMismatchError as e:
            self._logger.warning(
                "Rejected callback with unknown state",
                received_state=payload.state,
            )
            self._fail_waiters(AUTH_CALLBACK, e)
            raise
        self._deliver(AUTH_CALLBACK, session.state, payload)
        return session

    def expect_token(self, state: str) -> None:
        """Accept ``token_response`` messages for ``state`` until it is released."""
        with self._lock:
            self._expected_tokens.add(state)

    def release(self, state: str, *, reason: str | None = None) -> None:
        """Close a session and fail anything still waiting on it."""
        with self._lock:
            self._sessions.pop(state, None)
            self._expected_tokens.discard(state)
            for kind in (AUTH_CALLBACK, TOKEN_RESPONSE):
                self._early.pop((kind, state), None)
            waiters = [
                self._waiters.pop(key)
                for key in list(self._waiters)
                if key[1] == state
            ]
        for future in waiters:
            if not future.done():
                future.set_exception(FlowCancelledError(reason or "Login attempt released"))

    async def wait_for_callback(self, state: str, timeout: float) -> CallbackPayload:
        """Wait for the callback of an open session.

        Raises:
            RequestTimeoutError: If nothing arrives within ``timeout`` seconds.
            StateMismatchError: If an unattributable callback arrives.
            FlowCancelledError: If the session is released while waiting.
        """
        return await self._wait(AUTH_CALLBACK, state, timeout)

    async def wait_for_token(self, state: str, timeout: float) -> Any:
        """Wait for a ``token_response`` payload addressed to ``state``.

        Raises:
            RequestTimeoutError: If nothing arrives within ``timeout`` seconds.
            FlowCancelledError: If the state is released while waiting.
        """
        return await self._wait(TOKEN_RESPONSE, state, timeout)

    def _deliver(self, kind: str, state: str, value: Any) -> None:
        key = (kind, state)
        with self._lock:
            if kind == TOKEN_RESPONSE and state not in self._expected_tokens:
                raise StateMismatchError(state)
            future = self._waiters.get(key)
            if future is None or future.done():
                self._early[key] = value
                return
        future.set_result(value)

    def _fail_waiters(self, kind: str, error: ProbeError) -> None:
        with self._lock:
            futures = [f for key, f in self._waiters.items() if key[0] == kind]
        for future in futures:
            if not future.done():
                future.set_exception(error)

    async def _wait(self, kind: str, state: str, timeout: float) -> Any:
        key = (kind, state)
        loop = asyncio.get_running_loop()
        with self._lock:
            if key in self._early:
                return self._early.pop(key)
            future: asyncio.Future[Any] = loop.create_future()
            self._waiters[key] = future

        getter: asyncio.Future[Envelope] | None = None
        try:
            async with asyncio.timeout(timeout):
                while not future.done():
                    if self.channel is None:
                        await asyncio.shield(future)
                        break
                    getter = asyncio.ensure_future(self.channel.get())
                    done, _ = await asyncio.wait(
                        {future, getter}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if getter in done:
                        self._receive(getter.result())
                    else:
                        getter.cancel()
                    getter = None
            return future.result()
        except TimeoutError as e:
            msg = f"Timed out after {timeout:g}s waiting for {kind}"
            raise RequestTimeoutError(msg, timeout_seconds=timeout) from e
        finally:
            if getter is not None:
                getter.cancel()
            with self._lock:
                if self._waiters.get(key) is future:
                    del self._waiters[key]

    def _receive(self, envelope: Envelope) -> None:
        """Dispatch a channel message on behalf of a waiter."""
        try:
            self.dispatch(envelope)
        except (OriginMismatchError, InvalidMessageError) as e:
            self._logger.warning("Ignored cross-context message", kind=e.kind, error=e.message)
        except StateMismatchError as e:
            self._logger.warning("Unmatched cross-context message", kind=e.kind, state=e.received_state)


class CallbackResponder:
    """Sending side of the correlation, run in the redirect target context.

    Parses the redirect, posts an ``auth_callback`` message to the opener,
    then closes its own window after a grace period so the message can be
    processed first.
    """

    def __init__(
        self,
        opener: MessagePort | None,
        *,
        opener_origin: str,
        window: WindowHandle | None = None,
        close_grace: float = 0.3,
    ) -> None:
        self.opener = opener
        self.opener_origin = opener_origin
        self.window = window
        self.close_grace = close_grace

    def parse(self, url: str) -> CallbackPayload:
        """Parse the redirect: fragment responses first, query responses otherwise."""
        if has_fragment(url):
            return parse_fragment_callback(url)
        return parse_query_callback(url)

    async def respond(self, url: str) -> CallbackPayload:
        """Relay the callback at ``url`` to the opener.

        Raises:
            NoOpenerError: If there is no opener to report back to.
            InvalidMessageError: If the URL carries no authorization response.
        """
        payload = self.parse(url)
        if self.opener is None:
            raise NoOpenerError()

        self.opener.post_message(payload.to_message(), self.opener_origin)
        await self._close_after_grace()
        return payload

    async def respond_token(self, state: str, payload: Any) -> None:
        """Relay a ``token_response`` message to the opener.

        Raises:
            NoOpenerError: If there is no opener to report back to.
        """
        if self.opener is None:
            raise NoOpenerError()
        message = {"type": TOKEN_RESPONSE, "state": state, "payload": payload}
        self.opener.post_message(message, self.opener_origin)
        await self._close_after_grace()

    async def _close_after_grace(self) -> None:
        if self.window is None:
            return
        await asyncio.sleep(self.close_grace)
        if not self.window.closed:
            self.window.close()
