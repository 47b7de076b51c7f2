"""Trusted relay backend for the OIDC probe.

A FastAPI application serving the probe's HTTP API (discovery,
authorization URL building, server-side token relay) and the pages the
IdP redirects to: the callback responder and the popup token bridge.

FastAPI is an optional dependency: ``pip install oidc-probe[server]``.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import __version__
from .config import ProbeConfig
from .core.auth_builder import DEFAULT_SCOPE, AuthorizationBuilder
from .core.token_ops import TokenOperations
from .correlator import parse_fragment_callback, parse_query_callback
from .discovery import DiscoveryResolver
from .errors import ErrorKind, InvalidMessageError, MissingRequiredFieldError, ProbeError
from .exchange.popup_relay import RelayTicketStore, TokenBridge, relay_token_request
from .telemetry import configure_telemetry, get_logger

_VALIDATION_KINDS = frozenset(
    {
        ErrorKind.MISSING_REQUIRED_FIELD,
        ErrorKind.INVALID_ENDPOINT,
        ErrorKind.INVALID_PARAMETER,
        ErrorKind.INVALID_MESSAGE,
    }
)


class _RelayRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    issuer: str | None = None
    discovery_url: str | None = None
    timeout_ms: int | None = None
    skip_ssl_verify: bool = False

    @property
    def discovery_target(self) -> str:
        return (self.discovery_url or self.issuer or "").strip()

    def timeout_seconds(self, default: float) -> float:
        if self.timeout_ms and self.timeout_ms > 0:
            return self.timeout_ms / 1000
        return default


class DiscoveryRequest(_RelayRequest):
    """Body of ``POST /api/oidc/discovery``."""


class AuthUrlRequest(_RelayRequest):
    """Body of ``POST /api/oidc/auth-url``."""

    authorization_endpoint: str | None = None
    client_id: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    state: str | None = None
    nonce: str | None = None
    response_type: str | None = None
    use_pkce: bool = True
    code_challenge_method: str = "S256"
    additional_params: dict[str, Any] = Field(default_factory=dict)


class TokenRequest(_RelayRequest):
    """Body of ``POST /api/oidc/token``."""

    token_endpoint: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    client_secret: str | None = Field(default=None, repr=False)
    code_verifier: str | None = Field(default=None, repr=False)
    grant_type: str | None = None
    additional_params: dict[str, Any] = Field(default_factory=dict)


class FragmentRequest(BaseModel):
    """Body of the callback page's fragment forward."""

    fragment: str


def error_status(error: ProbeError) -> int:
    """400 for caller mistakes, 502 for upstream failures."""
    return 400 if error.kind in _VALIDATION_KINDS else 502


def error_body(error: ProbeError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error.message, "kind": error.kind}
    if error.hint:
        body["hint"] = error.hint
    return body


def _script_json(value: Any) -> str:
    """JSON safe to embed in an inline script."""
    return json.dumps(value).replace("</", "<\\/")


_CALLBACK_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Login response</title></head>
<body>
<p id="status">Login response received. You can close this window.</p>
<script>
(function () {
  var origin = %(origin)s;
  var message = %(message)s;
  if (window.location.hash.length > 1) {
    var fragment = window.location.hash.substring(1);
    history.replaceState(null, "", window.location.pathname + window.location.search);
    fetch(%(fragment_path)s, {
      method: "POST",
      headers: {"Content-Type": "application/json"},
      body: JSON.stringify({fragment: fragment})
    });
    message = {type: "auth_callback", source: "fragment"};
    new URLSearchParams(fragment).forEach(function (value, key) {
      message[key.replace(/_([a-z])/g, function (m, c) { return c.toUpperCase(); })] = value;
    });
  }
  if (!message) {
    document.getElementById("status").textContent = "No authorization response in this URL.";
    return;
  }
  if (!window.opener) {
    document.getElementById("status").textContent =
      "No opener window found. Copy the values manually.";
    return;
  }
  window.opener.postMessage(message, origin);
  setTimeout(function () { window.close(); }, %(grace_ms)d);
})();
</script>
</body>
</html>
"""

_BRIDGE_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Token bridge</title></head>
<body>
<p>Token exchange finished. This window closes automatically.</p>
<script>
(function () {
  if (window.opener) {
    window.opener.postMessage(%(message)s, %(origin)s);
  }
  setTimeout(function () { window.close(); }, %(grace_ms)d);
})();
</script>
</body>
</html>
"""


def render_callback_page(
    message: dict[str, Any] | None,
    *,
    origin: str,
    fragment_path: str,
    close_grace: float,
) -> str:
    return _CALLBACK_PAGE % {
        "origin": _script_json(origin),
        "message": _script_json(message),
        "fragment_path": _script_json(fragment_path),
        "grace_ms": int(close_grace * 1000),
    }


def render_bridge_page(message: dict[str, Any], *, origin: str, close_grace: float) -> str:
    return _BRIDGE_PAGE % {
        "origin": _script_json(origin),
        "message": _script_json(message),
        "grace_ms": int(close_grace * 1000),
    }


def create_app(
    config: ProbeConfig | None = None,
    *,
    orchestrator: Any = None,
    transport: Any = None,
) -> Any:
    """Create the relay backend application.

    Args:
        config: Probe configuration (taken from ``orchestrator`` if given).
        orchestrator: FlowOrchestrator running in this process; when given,
            callbacks and bridge results are also posted on its channel and
            its discovery cache and ticket store are shared.
        transport: Optional httpx transport override.

    Returns:
        FastAPI application.

    Raises:
        ImportError: If FastAPI not installed.
    """
    try:
        from fastapi import FastAPI, Request
        from fastapi.responses import HTMLResponse, JSONResponse
    except ImportError as e:
        msg = "FastAPI not installed. Install with: pip install oidc-probe[server]"
        raise ImportError(msg) from e

    if orchestrator is not None:
        config = orchestrator.config
        resolver = orchestrator.resolver
        tickets = orchestrator.engine.tickets
        opener = orchestrator.channel.port(config.origin)
    else:
        config = config or ProbeConfig()
        resolver = DiscoveryResolver(timeout=config.timeout, transport=transport)
        tickets = RelayTicketStore()
        opener = None

    configure_telemetry(config.telemetry)

    builder = AuthorizationBuilder()
    token_ops = TokenOperations()
    bridge = TokenBridge(
        tickets,
        opener_origin=config.origin,
        timeout=config.timeout,
        transport=transport,
        token_ops=token_ops,
    )
    fragment_path = f"{config.callback_path}/fragment"
    logger = get_logger()

    app = FastAPI(title="oidc-probe relay", version=__version__)
    app.state.config = config
    app.state.tickets = tickets

    @app.exception_handler(ProbeError)
    async def probe_error_handler(request: Request, exc: ProbeError) -> JSONResponse:
        logger.warning("Relay request failed", path=request.url.path, kind=exc.kind)
        return JSONResponse(error_body(exc), status_code=error_status(exc))

    @app.post("/api/oidc/discovery")
    async def discovery(body: DiscoveryRequest) -> dict[str, Any]:
        document = await resolver.resolve(
            body.discovery_target,
            require=(),
            timeout=body.timeout_seconds(config.timeout),
            insecure_skip_tls_verify=body.skip_ssl_verify,
            refresh=True,
        )
        return {"discoveryUrl": document.discovery_url, "configuration": document.claims}

    @app.post("/api/oidc/auth-url")
    async def auth_url(body: AuthUrlRequest) -> dict[str, Any]:
        if not body.client_id or not body.redirect_uri:
            field = "redirect_uri" if body.client_id else "client_id"
            raise MissingRequiredFieldError(field, "clientId and redirectUri are required")

        endpoint = (body.authorization_endpoint or "").strip()
        discovery_url = None
        if not endpoint:
            if not body.discovery_target:
                raise MissingRequiredFieldError(
                    "authorization_endpoint",
                    "authorizationEndpoint is required (or provide issuer/discoveryUrl)",
                )
            document = await resolver.resolve(
                body.discovery_target,
                require=("authorization_endpoint",),
                timeout=body.timeout_seconds(config.timeout),
                insecure_skip_tls_verify=body.skip_ssl_verify,
            )
            endpoint = document.authorization_endpoint or ""
            discovery_url = document.discovery_url

        request = builder.build_authorization_url(
            endpoint,
            body.client_id,
            body.redirect_uri,
            scope=body.scope or DEFAULT_SCOPE,
            response_type=body.response_type or "code",
            state=body.state,
            nonce=body.nonce,
            use_pkce=body.use_pkce,
            code_challenge_method=body.code_challenge_method,
            extra_params={
                k: None if v is None else str(v) for k, v in body.additional_params.items()
            },
        )
        pkce = request.pkce
        return {
            "authorizationEndpoint": request.authorization_endpoint,
            "discoveryUrl": discovery_url,
            "authUrl": request.url,
            "state": request.state,
            "nonce": request.nonce,
            "pkce": (
                {
                    "codeVerifier": pkce.code_verifier,
                    "codeChallenge": pkce.code_challenge,
                    "codeChallengeMethod": pkce.code_challenge_method,
                }
                if pkce
                else None
            ),
        }

    @app.post("/api/oidc/token")
    async def token(body: TokenRequest) -> dict[str, Any]:
        extra = dict(body.additional_params)
        if body.grant_type:
            extra["grant_type"] = body.grant_type
        form = token_ops.build_form(
            code=body.code,
            redirect_uri=body.redirect_uri,
            client_id=body.client_id,
            client_secret=body.client_secret,
            code_verifier=body.code_verifier,
            extra_params=extra,
        )

        endpoint = (body.token_endpoint or "").strip()
        discovery_url = None
        if not endpoint and body.discovery_target:
            document = await resolver.resolve(
                body.discovery_target,
                require=("token_endpoint",),
                timeout=body.timeout_seconds(config.timeout),
                insecure_skip_tls_verify=body.skip_ssl_verify,
            )
            endpoint = document.token_endpoint or ""
            discovery_url = document.discovery_url
        endpoint = token_ops.require_token_endpoint(endpoint)

        result = await relay_token_request(
            endpoint,
            form,
            timeout=body.timeout_seconds(config.timeout),
            insecure_skip_tls_verify=body.skip_ssl_verify,
            transport=transport,
        )
        result["discoveryUrl"] = discovery_url
        return result

    @app.get(config.callback_path, response_class=HTMLResponse)
    async def callback(request: Request) -> HTMLResponse:
        message = None
        try:
            payload = parse_query_callback(str(request.url))
        except InvalidMessageError:
            # Fragment responses never reach the server; the page forwards them
            logger.debug("Callback without query response", path=request.url.path)
        else:
            message = payload.to_message()
            if opener is not None:
                opener.post_message(message, config.origin)

        return HTMLResponse(
            render_callback_page(
                message,
                origin=config.origin,
                fragment_path=fragment_path,
                close_grace=config.popup_close_grace,
            )
        )

    @app.post(fragment_path)
    async def callback_fragment(body: FragmentRequest) -> dict[str, Any]:
        payload = parse_fragment_callback("#" + body.fragment.lstrip("#"))
        delivered = False
        if opener is not None:
            delivered = opener.post_message(payload.to_message(), config.origin)
        return {"ok": True, "delivered": delivered}

    @app.get(config.bridge_path, response_class=HTMLResponse)
    async def token_bridge(ticket: str = "", code: str = "") -> HTMLResponse:
        if not code:
            raise MissingRequiredFieldError("code")
        message = await bridge.relay(ticket, code, opener)
        return HTMLResponse(
            render_bridge_page(
                message, origin=config.origin, close_grace=config.popup_close_grace
            )
        )

    return app
