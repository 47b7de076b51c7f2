"""HTTP client utilities for the OIDC probe.

Provides configured httpx clients, the audited TLS-verification switch,
URL validation and diagnostics helpers shared by discovery and exchange.
"""

from __future__ import annotations

import re
import socket
import ssl
from urllib.parse import urlsplit

import httpx

from .telemetry import get_logger

BODY_PREVIEW_LENGTH = 250
USER_AGENT = "oidc-probe/0.1.0 Python"

_WHITESPACE = re.compile(r"\s+")


def tls_verification(insecure_skip_tls_verify: bool, *, url: str, purpose: str) -> bool:
    """Single switch deciding whether TLS certificates are verified.

    Every bypass is logged so it can be audited.

    Args:
        insecure_skip_tls_verify: Explicit caller opt-in to skip verification.
        url: Target URL (for the audit record).
        purpose: What the request is for (for the audit record).

    Returns:
        Value for httpx's ``verify`` argument.
    """
    if insecure_skip_tls_verify is True:
        get_logger().warning(
            "TLS certificate verification disabled",
            url=url,
            purpose=purpose,
            mode="insecure/testing",
        )
        return False
    return True


def create_async_http_client(
    *,
    timeout: float,
    verify: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
    headers: dict[str, str] | None = None,
) -> httpx.AsyncClient:
    """Create configured async HTTP client.

    Args:
        timeout: Per-request timeout in seconds.
        verify: Whether to verify TLS certificates.
        transport: Optional transport override.
        headers: Extra default headers.

    Returns:
        Configured httpx.AsyncClient.
    """
    default_headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
    }
    if headers:
        default_headers.update(headers)

    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        verify=verify,
        transport=transport,
        headers=default_headers,
        follow_redirects=False,
    )


def is_absolute_url(value: str | None) -> bool:
    """Whether ``value`` is an absolute http(s) URL httpx can send to."""
    if not value:
        return False
    try:
        url = httpx.URL(value.strip())
        port = urlsplit(value.strip()).port
    except (httpx.InvalidURL, ValueError):
        return False
    return url.scheme in ("http", "https") and bool(url.host) and port != 0



def body_preview(text: str, length: int = BODY_PREVIEW_LENGTH) -> str:
    """Collapse whitespace and truncate a response body for diagnostics."""
    preview = _WHITESPACE.sub(" ", text[:length]).strip()
    if len(text) > length:
        preview += "..."
    return preview


def _exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def describe_network_error(exc: BaseException) -> tuple[str | None, str]:
    """Classify a transport failure by its underlying error.

    Returns:
        Tuple of (error code, human-readable hint).
    """
    for err in _exception_chain(exc):
        if isinstance(err, ssl.SSLCertVerificationError):
            return "CERT_ERROR", "SSL certificate issue - server may use a self-signed cert"
        if isinstance(err, socket.gaierror):
            return "ENOTFOUND", "Server hostname not found - check the URL"
        if isinstance(err, ConnectionRefusedError):
            return "ECONNREFUSED", "Connection refused - server may be down or a firewall is blocking"
        if isinstance(err, ssl.SSLError):
            return "TLS_ERROR", "TLS handshake failed"

    message = str(exc).lower()
    if "certificate verify failed" in message:
        return "CERT_ERROR", "SSL certificate issue - server may use a self-signed cert"
    if "name or service not known" in message or "nodename nor servname" in message:
        return "ENOTFOUND", "Server hostname not found - check the URL"
    if "connection refused" in message:
        return "ECONNREFUSED", "Connection refused - server may be down or a firewall is blocking"
    return None, "Network error connecting to the server"
