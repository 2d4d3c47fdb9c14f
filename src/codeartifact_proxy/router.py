"""Token Router — maps a client's bearer route token to an environment."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from codeartifact_proxy.models import EnvironmentId

_BEARER_PREFIX = "bearer "


def parse_bearer(header: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Returns None for a missing header, another auth scheme, or an empty token.
    """
    if not header:
        return None
    if len(header) <= len(_BEARER_PREFIX) or header[: len(_BEARER_PREFIX)].lower() != _BEARER_PREFIX:
        return None
    token = header[len(_BEARER_PREFIX) :].strip()
    if not token or " " in token:
        return None
    return token


class TokenRouter:
    """Static route-token bindings, fixed at startup."""

    def __init__(self, bindings: Mapping[str, EnvironmentId]) -> None:
        self._bindings = MappingProxyType(dict(bindings))

    def resolve(self, token: str | None) -> EnvironmentId | None:
        if not token:
            return None
        return self._bindings.get(token)

    def environments(self) -> frozenset[EnvironmentId]:
        return frozenset(self._bindings.values())

    def __len__(self) -> int:
        return len(self._bindings)
