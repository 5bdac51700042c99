"""Upstream telemetry integration: live integrator API or mock source."""
from services.upstream.auth import TokenStore
from services.upstream.client import UpstreamClient
from services.upstream.errors import AuthError, ConfigError, UpstreamError, UpstreamTimeout
from services.upstream.mock import MockEventSource

__all__ = [
    "AuthError",
    "ConfigError",
    "MockEventSource",
    "TokenStore",
    "UpstreamClient",
    "UpstreamError",
    "UpstreamTimeout",
]
