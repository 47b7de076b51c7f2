"""Exchange strategy contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

import httpx

from ..core.errors import ErrorFactory
from ..core.token_ops import TokenOperations
from ..errors import InvalidEndpointError
from ..http import create_async_http_client, tls_verification
from ..telemetry import get_logger

if TYPE_CHECKING:
    from ..models import AuthSession, ExchangeMode, TokenResult


class ExchangeStrategy(ABC):
    """One way of turning an authorization code into tokens.

    Strategies raise ProbeError subclasses; the engine turns them into
    failed TokenResults.
    """

    mode: ClassVar[ExchangeMode]

    def __init__(self, token_ops: TokenOperations | None = None) -> None:
        self.token_ops = token_ops or TokenOperations()
        self._logger = get_logger()

    @abstractmethod
    async def exchange(self, session: AuthSession, code: str) -> TokenResult:
        """Exchange ``code`` for the session's tokens."""


async def post_token_form(
    token_endpoint: str,
    form: dict[str, str],
    *,
    timeout: float,
    insecure_skip_tls_verify: bool = False,
    origin: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.Response:
    """POST a form-encoded token request.

    Args:
        token_endpoint: Token endpoint URL.
        form: Form fields, in order.
        timeout: Request timeout in seconds.
        insecure_skip_tls_verify: Skip TLS verification (testing only).
        origin: Origin header of the requesting browser context, if any.
        transport: Optional httpx transport override.

    Returns:
        The raw response, whatever its status.

    Raises:
        RequestTimeoutError: On timeout.
        NetworkError: On connection, DNS or TLS failures.
    """
    verify = tls_verification(
        insecure_skip_tls_verify, url=token_endpoint, purpose="token exchange"
    )
    headers = TokenOperations.build_token_request_headers(origin)

    async with create_async_http_client(
        timeout=timeout, verify=verify, transport=transport
    ) as client:
        try:
            return await client.post(token_endpoint, data=form, headers=headers)
        except httpx.InvalidURL as e:
            raise InvalidEndpointError(token_endpoint, field="token_endpoint") from e
        except httpx.HTTPError as e:
            raise ErrorFactory.from_exception(e, timeout_seconds=timeout) from e
