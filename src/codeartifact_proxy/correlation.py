"""Correlation store — per-request context that must survive until the response.

Each request gets its own random key, so concurrent or keep-alive requests
from the same client address never overwrite each other.  Entries are
single-use; anything not collected within ``ttl`` seconds is evicted.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """What the client originally asked for, before the Host was rewritten."""

    original_scheme: str
    original_host: str

    @property
    def base_url(self) -> str:
        return f"{self.original_scheme}://{self.original_host}/"


def new_key() -> str:
    return uuid.uuid4().hex


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: dict[str, tuple[float, RequestContext]] = {}


class CorrelationStore:
    """Sharded key → RequestContext map with TTL eviction."""

    def __init__(
        self,
        ttl: float = 300.0,
        shards: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def put(self, key: str, context: RequestContext) -> None:
        shard = self._shard(key)
        now = self._clock()
        with shard.lock:
            self._evict(shard, now - self.ttl)
            shard.entries[key] = (now, context)

    def pop(self, key: str) -> RequestContext | None:
        """Remove and return the context for ``key``; None if absent or expired."""
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.pop(key, None)
        if entry is None:
            return None
        stored_at, context = entry
        if stored_at < self._clock() - self.ttl:
            return None
        return context

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number removed."""
        cutoff = self._clock() - self.ttl
        removed = 0
        for shard in self._shards:
            with shard.lock:
                removed += self._evict(shard, cutoff)
        if removed:
            logger.debug("Evicted %d stale request context(s)", removed)
        return removed

    @staticmethod
    def _evict(shard: _Shard, cutoff: float) -> int:
        stale = [k for k, (stored_at, _) in shard.entries.items() if stored_at < cutoff]
        for k in stale:
            del shard.entries[k]
        return len(stale)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total
