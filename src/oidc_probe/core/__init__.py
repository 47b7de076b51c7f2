"""Core components for the OIDC probe.

Request building and response mapping shared by the orchestrator,
the exchange strategies and the relay backend.
"""

from __future__ import annotations

from .errors import ErrorFactory
from .token_ops import TokenOperations
from .auth_builder import AuthorizationBuilder

__all__ = [
    "ErrorFactory",
    "TokenOperations",
    "AuthorizationBuilder",
]
