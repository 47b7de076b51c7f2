"""Browser contexts the flow drives.

The orchestrator never talks to a browser directly; it uses a
BrowserContext to navigate, open named popups, submit forms and rewrite
the visible URL. SystemBrowser drives the user's default web browser.
"""

from __future__ import annotations

import tempfile
import threading
import webbrowser
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .telemetry import get_logger

if TYPE_CHECKING:
    from .exchange.form_post import HiddenForm


@runtime_checkable
class WindowHandle(Protocol):
    """A secondary browsing context (popup or tab)."""

    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


@runtime_checkable
class BrowserContext(Protocol):
    """The initiating browsing context."""

    origin: str

    def open_window(self, url: str, name: str) -> WindowHandle | None:
        """Open ``url`` in a named popup; None means the popup was blocked."""
        ...

    def navigate(self, url: str) -> None:
        """Navigate the current context to ``url``."""
        ...

    def submit_form(self, form: HiddenForm, *, target: str | None = None) -> None:
        """Submit ``form`` in the current context or the named window."""
        ...

    def replace_url(self, url: str) -> None:
        """Replace the visible URL without navigating."""
        ...


class SystemWindow:
    """Handle for a tab opened in the system browser.

    The tab belongs to another process; closing only detaches the handle.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class SystemBrowser:
    """BrowserContext backed by the user's default web browser.

    Hidden forms are handed over as temporary HTML files. They hold the
    client secret and PKCE verifier, so each one is deleted ``form_ttl``
    seconds after the browser was asked to load it, or on ``close()``.
    """

    def __init__(self, origin: str, *, form_ttl: float = 30.0) -> None:
        self.origin = origin.rstrip("/")
        self.form_ttl = form_ttl
        self._pending: dict[Path, threading.Timer] = {}
        self._lock = threading.Lock()
        self._logger = get_logger()

    def open_window(self, url: str, name: str) -> WindowHandle | None:
        if not webbrowser.open_new(url):
            self._logger.warning("System browser refused to open window", name=name)
            return None
        return SystemWindow(url)

    def navigate(self, url: str) -> None:
        if not webbrowser.open(url):
            self._logger.warning("System browser refused to navigate")

    def submit_form(self, form: HiddenForm, *, target: str | None = None) -> None:
        with tempfile.NamedTemporaryFile(
            "w", suffix=".html", prefix="oidc-probe-form-", delete=False, encoding="utf-8"
        ) as f:
            f.write(form.render_html())
        path = Path(f.name)

        self._logger.info("Submitting token form", action=form.action, target=target)
        if not webbrowser.open_new(path.as_uri()):
            self._logger.warning("System browser refused to load token form")
            self._discard(path)
            return

        timer = threading.Timer(self.form_ttl, self._discard, args=(path,))
        timer.daemon = True
        with self._lock:
            self._pending[path] = timer
        timer.start()

    def replace_url(self, url: str) -> None:
        # The system browser's address bar is out of reach
        self._logger.debug("Visible URL replaced", url=url)

    @property
    def pending_forms(self) -> list[Path]:
        """Form files not yet deleted."""
        with self._lock:
            return list(self._pending)

    def close(self) -> None:
        """Delete every form file still on disk."""
        with self._lock:
            pending = list(self._pending.items())
        for path, timer in pending:
            timer.cancel()
            self._discard(path)

    def _discard(self, path: Path) -> None:
        with self._lock:
            self._pending.pop(path, None)
        path.unlink(missing_ok=True)
