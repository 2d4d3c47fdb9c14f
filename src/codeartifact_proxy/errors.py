"""Error taxonomy for the proxy.

Only ``ConfigError`` (at startup) and ``StaleCredentialError`` (from the
reauth loop) take the process down.  Everything raised while handling a
single request is turned into an HTTP response by ``ProxyCore``.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for all proxy errors."""


class ConfigError(ProxyError):
    """Missing or invalid environment configuration."""


class AuthError(ProxyError):
    """The credential provider could not issue a credential."""


class StaleCredentialError(ProxyError):
    """A credential outlived its validity window without being refreshed."""


class RouteError(ProxyError):
    """A request was rejected before reaching the upstream repository."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(body)
        self.status = status
        self.body = body


class UpstreamError(ProxyError):
    """Forwarding to the backing repository failed at the transport level."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class RewriteError(ProxyError):
    """A response body could not be decoded or rewritten."""
