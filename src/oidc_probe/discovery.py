"""OpenID Connect discovery resolution.

Turns an issuer (or an explicit discovery URL) into a DiscoveryDocument,
caching successful lookups by normalized discovery URL.
"""

from __future__ import annotations

import threading
from urllib.parse import urlsplit

import httpx

from .errors import (
    DiscoveryHttpError,
    DiscoveryIncompleteError,
    DiscoveryParseError,
    DiscoveryTimeoutError,
    InvalidEndpointError,
    MissingRequiredFieldError,
    NetworkError,
)
from .http import (
    body_preview,
    create_async_http_client,
    describe_network_error,
    is_absolute_url,
    tls_verification,
)
from .models import DiscoveryDocument
from .telemetry import get_logger, trace_operation

WELL_KNOWN_PATH = "/.well-known/openid-configuration"
ADFS_WELL_KNOWN_PATH = "/adfs/.well-known/openid-configuration"

DEFAULT_REQUIRED_FIELDS = ("authorization_endpoint", "token_endpoint")


def normalize_discovery_url(value: str) -> str:
    """Turn an issuer into its discovery document URL.

    A URL whose path already ends in the well-known suffix is returned
    unchanged; anything else has trailing slashes stripped and exactly
    one suffix appended.
    """
    trimmed = value.strip()
    if not trimmed:
        return trimmed
    if urlsplit(trimmed).path.endswith(WELL_KNOWN_PATH):
        return trimmed
    return trimmed.rstrip("/") + WELL_KNOWN_PATH


def adfs_discovery_url(server_url: str) -> str:
    """Discovery URL for an AD FS farm (``<server>/adfs/.well-known/...``)."""
    return server_url.strip().rstrip("/") + ADFS_WELL_KNOWN_PATH


class DiscoveryResolver:
    """Fetches and caches discovery documents.

    Attributes:
        timeout: Default fetch timeout in seconds.
    """

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize discovery resolver.

        Args:
            timeout: Default fetch timeout in seconds.
            transport: Optional httpx transport override.
        """
        self.timeout = timeout
        self._transport = transport
        self._cache: dict[str, DiscoveryDocument] = {}
        self._lock = threading.Lock()
        self._logger = get_logger()

    def cached(self, issuer: str) -> DiscoveryDocument | None:
        """Return the cached document for an issuer, if any."""
        with self._lock:
            return self._cache.get(normalize_discovery_url(issuer))

    def invalidate(self, issuer: str | None = None) -> None:
        """Drop one cached document, or all of them."""
        with self._lock:
            if issuer is None:
                self._cache.clear()
            else:
                self._cache.pop(normalize_discovery_url(issuer), None)

    async def resolve(
        self,
        issuer: str,
        *,
        require: tuple[str, ...] = DEFAULT_REQUIRED_FIELDS,
        timeout: float | None = None,
        insecure_skip_tls_verify: bool = False,
        refresh: bool = False,
    ) -> DiscoveryDocument:
        """Resolve an issuer to its discovery document.

        Args:
            issuer: Issuer URL or explicit discovery document URL.
            require: Fields that must be present in the document.
            timeout: Fetch timeout (defaults to the resolver's).
            insecure_skip_tls_verify: Skip TLS verification (testing only).
            refresh: Bypass the cache and re-fetch.

        Returns:
            The discovery document.

        Raises:
            MissingRequiredFieldError: If no issuer was given.
            InvalidEndpointError: If the discovery URL is malformed.
            DiscoveryTimeoutError: On timeout.
            DiscoveryHttpError: On a non-2xx response.
            DiscoveryParseError: On a body that is not a JSON object.
            DiscoveryIncompleteError: If a required field is missing.
            NetworkError: On connection, DNS or TLS failures.
        """
        if not issuer or not issuer.strip():
            raise MissingRequiredFieldError("issuer", "issuer (or discovery URL) is required")

        discovery_url = normalize_discovery_url(issuer)
        if not is_absolute_url(discovery_url):
            raise InvalidEndpointError(discovery_url, field="issuer/discovery")

        if not refresh:
            with self._lock:
                document = self._cache.get(discovery_url)
            if document is not None:
                self._check_required(document, require)
                return document

        document = await self._fetch(
            discovery_url,
            timeout=timeout or self.timeout,
            insecure_skip_tls_verify=insecure_skip_tls_verify,
        )
        self._check_required(document, require)

        with self._lock:
            self._cache[discovery_url] = document
        return document

    async def _fetch(
        self,
        discovery_url: str,
        *,
        timeout: float,
        insecure_skip_tls_verify: bool,
    ) -> DiscoveryDocument:
        verify = tls_verification(
            insecure_skip_tls_verify, url=discovery_url, purpose="discovery"
        )

        with trace_operation("oidc.discovery", attributes={"http.url": discovery_url}):
            async with create_async_http_client(
                timeout=timeout, verify=verify, transport=self._transport
            ) as client:
                try:
                    response = await client.get(discovery_url)
                except httpx.InvalidURL as e:
                    raise InvalidEndpointError(discovery_url, field="issuer/discovery") from e
                except httpx.TimeoutException as e:
                    raise DiscoveryTimeoutError(discovery_url, timeout) from e
                except httpx.HTTPError as e:
                    code, hint = describe_network_error(e)
                    raise NetworkError(
                        f"Network error fetching discovery document: {e}",
                        code=code,
                        hint=hint,
                        cause=e,
                    ) from e

        text = response.text
        if not response.is_success:
            raise DiscoveryHttpError(discovery_url, response.status_code, body_preview(text))

        try:
            body = response.json()
        except ValueError as e:
            raise DiscoveryParseError(
                discovery_url, response.status_code, body_preview(text)
            ) from e
        if not isinstance(body, dict):
            raise DiscoveryParseError(discovery_url, response.status_code, body_preview(text))

        self._logger.info(
            "Discovery document fetched",
            discovery_url=discovery_url,
            issuer=body.get("issuer"),
        )
        return DiscoveryDocument.from_json(body, discovery_url=discovery_url)

    @staticmethod
    def _check_required(document: DiscoveryDocument, require: tuple[str, ...]) -> None:
        for field in require:
            value = getattr(document, field, None) or document.claims.get(field)
            if not value:
                raise DiscoveryIncompleteError(document.discovery_url or "", field)
