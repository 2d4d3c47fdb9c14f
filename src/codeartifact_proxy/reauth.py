"""Reauth Scheduler — keeps every environment's credential fresh.

One background task per environment wakes every ``interval`` seconds and
checks the age of the cached credential:

- older than ``max_age`` (60 min): the token has expired without a
  successful refresh.  Serving on would only produce upstream 401s for every
  client, so the whole process is marked unhealthy and asked to shut down.
- missing, or older than ``refresh_after`` (45 min): ask the provider for a
  new one.  A failure is logged and retried on the next tick; the tick
  interval is the backoff.

A missing credential counts as aged from the moment the environment first
needed one, so an environment that never authenticates also trips the fatal
threshold.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from codeartifact_proxy.errors import AuthError, StaleCredentialError

if TYPE_CHECKING:
    from codeartifact_proxy.config import EnvironmentRegistry
    from codeartifact_proxy.credentials import CredentialCache
    from codeartifact_proxy.models import EnvironmentId
    from codeartifact_proxy.provider import CredentialProvider

logger = logging.getLogger(__name__)


# ── Health Signal ────────────────────────────────────────────────────────────


class HealthState:
    """Process liveness as seen by the proxy and its supervisor.

    Once fatal, it stays fatal.  Registered callbacks run exactly once, on the
    transition.
    """

    def __init__(self) -> None:
        self._fatal_reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def is_fatal(self) -> bool:
        return self._fatal_reason is not None

    @property
    def reason(self) -> str | None:
        return self._fatal_reason

    def on_fatal(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    def mark_fatal(self, reason: str) -> None:
        if self._fatal_reason is not None:
            return
        self._fatal_reason = reason
        logger.critical("Proxy is no longer healthy: %s", reason)
        for callback in self._callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception("Fatal-health callback failed")


# ── Scheduler ────────────────────────────────────────────────────────────────


class RefreshOutcome(str, enum.Enum):
    FRESH = "fresh"
    REFRESHED = "refreshed"
    REFRESH_FAILED = "refresh_failed"


class ReauthScheduler:
    """Per-environment credential refresh loops."""

    def __init__(
        self,
        registry: EnvironmentRegistry,
        cache: CredentialCache,
        provider: CredentialProvider,
        health: HealthState,
        *,
        interval: float = 15.0,
        refresh_after: timedelta = timedelta(minutes=45),
        max_age: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.provider = provider
        self.health = health
        self.interval = interval
        self.refresh_after = refresh_after
        self.max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._first_needed: dict[EnvironmentId, datetime] = {}
        self._tasks: dict[EnvironmentId, asyncio.Task] = {}

    async def start(self) -> None:
        """Authenticate every environment once, then start the refresh loops."""
        await asyncio.gather(*(self._initial_refresh(env) for env in self.registry))
        for env in self.registry:
            self._tasks[env] = asyncio.create_task(self._loop(env), name=f"reauth-{env.value}")
        logger.info(
            "Reauth scheduler started for %s (interval=%ss)",
            ", ".join(env.value for env in self.registry),
            self.interval,
        )

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Reauth scheduler stopped")

    async def _initial_refresh(self, env: EnvironmentId) -> None:
        try:
            await self.tick(env)
        except Exception:
            logger.exception("%s → initial authentication failed", env.value)

    async def _loop(self, env: EnvironmentId) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.tick(env)
            except asyncio.CancelledError:
                break
            except StaleCredentialError as exc:
                self.health.mark_fatal(str(exc))
                break
            except Exception:
                logger.exception("%s → reauth check failed", env.value)

    def age(self, env: EnvironmentId, now: datetime | None = None) -> timedelta:
        """Age of the environment's credential, or time waited for a first one."""
        now = now or self._clock()
        credential = self.cache.get(env)
        if credential is not None:
            return credential.age(now)
        return now - self._first_needed.setdefault(env, now)

    async def tick(self, env: EnvironmentId, now: datetime | None = None) -> RefreshOutcome:
        """Run one check for ``env``.

        Raises:
            StaleCredentialError: if the credential is older than ``max_age``.
        """
        now = now or self._clock()
        credential = self.cache.get(env)
        age = self.age(env, now)

        if age > self.max_age:
            raise StaleCredentialError(
                f"Was unable to re-authenticate {env.value} before its token expired "
                f"({age.total_seconds() / 60:.1f} minutes old)"
            )

        if credential is not None and age <= self.refresh_after:
            return RefreshOutcome.FRESH

        if credential is None:
            logger.info("%s → no credential yet, authenticating", env.value)
        else:
            remaining = (self.max_age - age).total_seconds() / 60
            logger.info(
                "%s → %.1f minutes until the CodeArtifact token expires, attempting a reauth",
                env.value,
                remaining,
            )

        try:
            fresh = await self.provider.authenticate(self.registry[env])
        except AuthError as exc:
            logger.warning("%s → reauth failed, retrying in %ss: %s", env.value, self.interval, exc)
            return RefreshOutcome.REFRESH_FAILED

        self.cache.set(env, fresh)
        self._first_needed.pop(env, None)
        logger.info("Requests for %s will now be proxied to %s", env.value, fresh.endpoint_url)
        return RefreshOutcome.REFRESHED
