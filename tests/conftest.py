"""
Shared test fixtures for OIDC probe tests.

Provides a fake identity provider behind an httpx mock transport, a fake
browser context, and common configuration.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from oidc_probe.config import ClientRegistration, ProbeConfig
from oidc_probe.models import DiscoveryDocument

ISSUER = "https://idp.example.com"
ORIGIN = "http://127.0.0.1:8765"


class FakeWindow:
    """Popup handle recorded by FakeBrowser."""

    def __init__(self, url: str, name: str) -> None:
        self.url = url
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class FakeBrowser:
    """BrowserContext that records what the flow asks it to do.

    ``on_open`` is called with every opened window, which lets a test play
    the IdP and the responder page.
    """

    def __init__(
        self,
        origin: str = ORIGIN,
        *,
        block_popups: bool = False,
        on_open: Callable[[FakeWindow], None] | None = None,
    ) -> None:
        self.origin = origin
        self.block_popups = block_popups
        self.on_open = on_open
        self.windows: list[FakeWindow] = []
        self.navigations: list[str] = []
        self.forms: list[tuple[Any, str | None]] = []
        self.replaced_urls: list[str] = []

    def open_window(self, url: str, name: str) -> FakeWindow | None:
        if self.block_popups:
            return None
        window = FakeWindow(url, name)
        self.windows.append(window)
        if self.on_open is not None:
            self.on_open(window)
        return window

    def navigate(self, url: str) -> None:
        self.navigations.append(url)

    def submit_form(self, form: Any, *, target: str | None = None) -> None:
        self.forms.append((form, target))

    def replace_url(self, url: str) -> None:
        self.replaced_urls.append(url)


class FakeIdP:
    """Identity provider answering discovery and token requests."""

    def __init__(self, issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.discovery_status = 200
        self.discovery_body: Any = {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "jwks_uri": f"{issuer}/jwks",
            "code_challenge_methods_supported": ["S256", "plain"],
            "response_types_supported": ["code", "token", "id_token", "id_token token"],
        }
        self.token_status = 200
        self.token_body: Any = {
            "access_token": "at-123",
            "token_type": "Bearer",
            "expires_in": 3600,
        }
        self.token_headers: dict[str, str] = {}
        self.token_error: Exception | None = None
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/.well-known/openid-configuration"):
            return self._respond(self.discovery_status, self.discovery_body)
        if request.url.path == "/token":
            if self.token_error is not None:
                raise self.token_error
            return self._respond(self.token_status, self.token_body, self.token_headers)
        return httpx.Response(404, text="not found")

    @staticmethod
    def _respond(status: int, body: Any, headers: dict[str, str] | None = None) -> httpx.Response:
        if isinstance(body, str):
            return httpx.Response(status, text=body, headers=headers)
        return httpx.Response(status, json=body, headers=headers)

    @property
    def discovery_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def token_form(self, index: int = -1) -> list[tuple[str, str]]:
        """Decoded form fields of a token request, in order."""
        return parse_qsl(self.token_requests[index].content.decode())


@pytest.fixture
def config() -> ProbeConfig:
    """Provide a probe configuration with short timeouts for testing."""
    return ProbeConfig(
        origin=ORIGIN,
        timeout=5.0,
        flow_timeout=5.0,
        popup_close_grace=0.0,
    )


@pytest.fixture
def client() -> ClientRegistration:
    """Provide a confidential client registration using the server relay."""
    return ClientRegistration(
        client_id="abc",
        redirect_uri=f"{ORIGIN}/oidc/callback",
        client_secret="s3cr3t",
    )


@pytest.fixture
def idp() -> FakeIdP:
    """Provide a fake identity provider."""
    return FakeIdP()


@pytest.fixture
def endpoints() -> DiscoveryDocument:
    """Provide known endpoints for the fake identity provider."""
    return DiscoveryDocument(
        issuer=ISSUER,
        authorization_endpoint=f"{ISSUER}/authorize",
        token_endpoint=f"{ISSUER}/token",
    )


@pytest.fixture
def browser() -> FakeBrowser:
    """Provide a fake browser context that allows popups."""
    return FakeBrowser()


@pytest.fixture
def browser_factory() -> Callable[..., FakeBrowser]:
    """Provide a factory for fake browsers with custom behaviour."""
    return FakeBrowser
