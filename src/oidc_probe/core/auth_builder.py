"""Centralized authorization URL builder for the OIDC probe.

Provides authorization request construction shared by the flow
orchestrator and the relay backend.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..errors import (
    InvalidEndpointError,
    InvalidParameterError,
    MissingRequiredFieldError,
)
from ..http import is_absolute_url
from ..models import (
    AuthorizationRequest,
    PKCEChallenge,
    ResponseType,
    is_oidc_request,
)
from ..pkce import create_pkce_challenge, generate_nonce, generate_state
from ..telemetry import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ..models import AuthSession

DEFAULT_SCOPE = "openid profile email"

# Extension parameters may never replace these
PROTECTED_PARAMS = frozenset(
    {
        "state",
        "nonce",
        "response_type",
        "client_id",
        "redirect_uri",
        "code_challenge",
        "code_challenge_method",
    }
)


def normalize_response_type(value: str | ResponseType | None) -> ResponseType:
    """Parse a response type, ignoring the order of its space-separated parts.

    Raises:
        InvalidParameterError: If the response type is not supported.
    """
    if isinstance(value, ResponseType):
        return value
    parts = sorted((value or ResponseType.CODE.value).split())
    try:
        return ResponseType(" ".join(parts))
    except ValueError:
        msg = (
            f"Unsupported response_type: {value!r}. "
            f"Supported: {', '.join(rt.value for rt in ResponseType)}"
        )
        raise InvalidParameterError(msg, field="response_type") from None


def _merge_query(endpoint: str, params: dict[str, str]) -> str:
    """Set ``params`` on the endpoint's query, keeping unrelated existing keys."""
    parts = urlsplit(endpoint)
    existing = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in params
    ]
    query = urlencode(existing + list(params.items()))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class AuthorizationBuilder:
    """Builds authorization request URLs.

    Every request carries ``response_type``, ``client_id``, ``redirect_uri``,
    ``scope`` and ``state``. ``nonce`` is added for OIDC-style requests and
    the PKCE challenge when one is supplied. Extension parameters go last
    but cannot replace the anti-forgery and client-binding parameters.
    """

    def __init__(self) -> None:
        """Initialize authorization builder."""
        self._logger = get_logger()

    def build_authorization_url(
        self,
        authorization_endpoint: str,
        client_id: str,
        redirect_uri: str,
        *,
        scope: str | None = DEFAULT_SCOPE,
        response_type: str | ResponseType = ResponseType.CODE,
        state: str | None = None,
        nonce: str | None = None,
        pkce: PKCEChallenge | None = None,
        use_pkce: bool = False,
        code_challenge_method: str = "S256",
        extra_params: Mapping[str, str | None] | None = None,
    ) -> AuthorizationRequest:
        """Build an authorization request URL.

        Args:
            authorization_endpoint: IdP authorization endpoint.
            client_id: OAuth client identifier.
            redirect_uri: Redirect URI registered with the IdP.
            scope: Space-separated scopes.
            response_type: ``code``, ``token``, ``id_token`` or ``id_token token``.
            state: Anti-forgery state (generated if not provided).
            nonce: OpenID Connect nonce (generated if not provided).
            pkce: Precomputed PKCE challenge.
            use_pkce: Generate a PKCE challenge when ``pkce`` is not given.
            code_challenge_method: Method for a generated PKCE challenge.
            extra_params: Extension query parameters.

        Returns:
            The authorization request with its URL and security parameters.

        Raises:
            MissingRequiredFieldError: If client_id, redirect_uri or the
                endpoint is blank.
            InvalidEndpointError: If the endpoint is not an absolute URL.
            InvalidParameterError: If the response type is unsupported.
        """
        endpoint = (authorization_endpoint or "").strip()
        if not endpoint:
            raise MissingRequiredFieldError("authorization_endpoint")
        if not (client_id or "").strip():
            raise MissingRequiredFieldError("client_id")
        if not (redirect_uri or "").strip():
            raise MissingRequiredFieldError("redirect_uri")
        if not is_absolute_url(endpoint):
            raise InvalidEndpointError(endpoint, field="authorization_endpoint")

        rtype = normalize_response_type(response_type)
        scope = scope if scope is not None else DEFAULT_SCOPE
        state = state or generate_state()
        nonce = (nonce or generate_nonce()) if is_oidc_request(scope, rtype) else None
        if pkce is None and use_pkce:
            pkce = create_pkce_challenge(code_challenge_method)

        candidates: dict[str, str | None] = {
            "response_type": rtype.value,
            "client_id": client_id.strip(),
            "redirect_uri": redirect_uri.strip(),
            "scope": scope,
            "state": state,
            "nonce": nonce,
        }
        if pkce:
            candidates["code_challenge"] = pkce.code_challenge
            candidates["code_challenge_method"] = pkce.code_challenge_method

        for key, value in (extra_params or {}).items():
            if key in PROTECTED_PARAMS:
                self._logger.warning(
                    "Ignoring extension parameter that would replace a protected parameter",
                    param=key,
                )
                continue
            if value is None or str(value) == "":
                continue
            candidates[key] = str(value)

        params = {key: value for key, value in candidates.items() if value}
        url = _merge_query(endpoint, params)

        self._logger.debug(
            "Authorization URL built",
            authorization_endpoint=endpoint,
            client_id=params["client_id"],
            response_type=rtype.value,
            pkce=pkce is not None,
            oidc=nonce is not None,
        )

        return AuthorizationRequest(
            url=url,
            authorization_endpoint=endpoint,
            state=state,
            nonce=nonce,
            pkce=pkce,
        )

    def build_for_session(
        self,
        session: AuthSession,
        extra_params: Mapping[str, str | None] | None = None,
    ) -> AuthorizationRequest:
        """Build the authorization request recorded by a session.

        Raises:
            MissingRequiredFieldError: If the session has no authorization endpoint.
        """
        pkce = None
        if session.code_verifier and session.code_challenge:
            pkce = PKCEChallenge(
                code_verifier=session.code_verifier,
                code_challenge=session.code_challenge,
                code_challenge_method=session.challenge_method or "S256",
            )

        return self.build_authorization_url(
            session.authorization_endpoint or "",
            session.client_id,
            session.redirect_uri,
            scope=session.scope,
            response_type=session.response_type,
            state=session.state,
            nonce=session.nonce,
            pkce=pkce,
            extra_params=extra_params,
        )
