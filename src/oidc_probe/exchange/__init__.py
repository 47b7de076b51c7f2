"""Token exchange strategies.

One strategy per ExchangeMode, each implementing
``exchange(session, code) -> TokenResult``.
"""

from __future__ import annotations

from .base import ExchangeStrategy, post_token_form
from .client_direct import ClientDirectStrategy, NoCorsProbeStrategy, cors_allows
from .engine import TokenExchangeEngine
from .form_post import FormPostStrategy, HiddenForm, bookmarklet
from .popup_relay import (
    PopupRelayStrategy,
    RelayTicketStore,
    TokenBridge,
    relay_token_request,
)
from .server_relay import ServerRelayStrategy

__all__ = [
    "ExchangeStrategy",
    "post_token_form",
    "ServerRelayStrategy",
    "ClientDirectStrategy",
    "NoCorsProbeStrategy",
    "cors_allows",
    "FormPostStrategy",
    "HiddenForm",
    "bookmarklet",
    "PopupRelayStrategy",
    "RelayTicketStore",
    "TokenBridge",
    "relay_token_request",
    "TokenExchangeEngine",
]
