"""OIDC probe: client-side OAuth 2.0 / OpenID Connect flow orchestrator."""

__version__ = "0.1.0"

from .browser import BrowserContext, SystemBrowser, WindowHandle
from .channel import Envelope, MessageChannel, MessagePort
from .config import ClientRegistration, ProbeConfig, TelemetryConfig
from .correlator import (
    CallbackResponder,
    CrossContextCorrelator,
    parse_fragment_callback,
    parse_query_callback,
    strip_fragment,
)
from .discovery import DiscoveryResolver, adfs_discovery_url, normalize_discovery_url
from .errors import (
    ErrorKind,
    ProbeError,
    DiscoveryTimeoutError,
    DiscoveryHttpError,
    DiscoveryParseError,
    DiscoveryIncompleteError,
    StateMismatchError,
    OriginMismatchError,
    ProviderError,
    NetworkError,
)
from .exchange import TokenExchangeEngine
from .models import (
    AuthSession,
    CallbackPayload,
    DiscoveryDocument,
    ExchangeMode,
    FlowResult,
    FlowState,
    ResponseType,
    TokenOutcome,
    TokenResult,
)
from .orchestrator import AuthFlow, FlowOrchestrator

__all__ = [
    "BrowserContext",
    "SystemBrowser",
    "WindowHandle",
    "Envelope",
    "MessageChannel",
    "MessagePort",
    "ClientRegistration",
    "ProbeConfig",
    "TelemetryConfig",
    "CallbackResponder",
    "CrossContextCorrelator",
    "parse_fragment_callback",
    "parse_query_callback",
    "strip_fragment",
    "DiscoveryResolver",
    "adfs_discovery_url",
    "normalize_discovery_url",
    "ErrorKind",
    "ProbeError",
    "DiscoveryTimeoutError",
    "DiscoveryHttpError",
    "DiscoveryParseError",
    "DiscoveryIncompleteError",
    "StateMismatchError",
    "OriginMismatchError",
    "ProviderError",
    "NetworkError",
    "TokenExchangeEngine",
    "AuthSession",
    "CallbackPayload",
    "DiscoveryDocument",
    "ExchangeMode",
    "FlowResult",
    "FlowState",
    "ResponseType",
    "TokenOutcome",
    "TokenResult",
    "AuthFlow",
    "FlowOrchestrator",
]

