"""Per-environment credential store.

Holds exactly one live ``Credential`` per environment.  Credentials are
immutable, so a reader holding a snapshot can never observe a half-written
refresh; the lock only makes replace/read atomic across the event loop and the
worker threads that run provider calls.
"""

from __future__ import annotations

import threading

from codeartifact_proxy.models import Credential, EnvironmentId


class CredentialCache:
    """Thread-safe map of EnvironmentId → current Credential."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._credentials: dict[EnvironmentId, Credential] = {}

    def get(self, env: EnvironmentId) -> Credential | None:
        """Return the latest committed credential, or None if none exists yet."""
        with self._lock:
            return self._credentials.get(env)

    def set(self, env: EnvironmentId, credential: Credential) -> None:
        """Replace the credential for ``env`` wholesale."""
        with self._lock:
            self._credentials[env] = credential

    def snapshot(self) -> dict[EnvironmentId, Credential]:
        with self._lock:
            return dict(self._credentials)
