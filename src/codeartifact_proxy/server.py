"""Proxy Server — FastAPI application that ties all components together.

Startup sequence:
1. Build the environment registry and token router from config
2. Authenticate every environment once (failures leave it answering 503)
3. Start one reauth loop per environment
4. Start the correlation sweeper
5. Begin accepting requests

Shutdown:
1. Stop the sweeper and the reauth loops
2. Close the upstream pipelines
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from codeartifact_proxy import __version__
from codeartifact_proxy.config import EnvironmentRegistry, ProxyConfig
from codeartifact_proxy.correlation import CorrelationStore
from codeartifact_proxy.credentials import CredentialCache
from codeartifact_proxy.provider import CodeArtifactProvider, CredentialProvider
from codeartifact_proxy.proxy import ProxyCore
from codeartifact_proxy.reauth import HealthState, ReauthScheduler
from codeartifact_proxy.rewrite import RequestRewriter, ResponseRewriter
from codeartifact_proxy.router import TokenRouter

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class ProxyServer:
    """Encapsulates all proxy components and their lifecycle."""

    def __init__(
        self,
        config: ProxyConfig,
        provider: CredentialProvider | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sweep_interval: float = 60.0,
    ) -> None:
        self.config = config
        self.registry = EnvironmentRegistry.from_config(config)
        self.router = TokenRouter(config.routes)
        self.cache = CredentialCache()
        self.health = HealthState()
        self.correlations = CorrelationStore(ttl=config.correlation_ttl)
        self.provider = provider or CodeArtifactProvider()
        self.sweep_interval = sweep_interval

        max_age = timedelta(minutes=config.reauth.max_age_minutes)
        self.scheduler = ReauthScheduler(
            self.registry,
            self.cache,
            self.provider,
            self.health,
            interval=config.reauth.interval,
            refresh_after=timedelta(minutes=config.reauth.refresh_after_minutes),
            max_age=max_age,
        )
        self.core = ProxyCore(
            self.router,
            self.cache,
            RequestRewriter(
                self.cache,
                self.correlations,
                username=config.basic_auth_username,
                max_age=max_age,
            ),
            ResponseRewriter(
                self.cache,
                self.correlations,
                user_agents=config.rewrite.user_agents,
                content_types=config.rewrite.content_types,
            ),
            self.health,
            upstream_timeout=config.upstream_timeout,
            transport=transport,
        )
        self._sweeper: asyncio.Task | None = None

    async def start(self) -> None:
        logger.info(
            "Proxy starting for environments: %s",
            ", ".join(env.value for env in self.registry),
        )
        await self.scheduler.start()
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="correlation-sweeper")
        logger.info("Proxy started")

    async def stop(self) -> None:
        logger.info("Proxy shutting down")
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.scheduler.stop()
        await self.core.close()
        logger.info("Proxy stopped")

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.correlations.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Correlation sweep failed")

    def status(self) -> dict:
        now = datetime.now(timezone.utc)
        environments = {}
        for env in self.registry:
            credential = self.cache.get(env)
            environments[env.value] = {
                "authenticated": credential is not None,
                "age_minutes": round(credential.age_minutes(now), 1) if credential else None,
                "endpoint": credential.endpoint_url if credential else None,
            }
        return {
            "status": "fatal" if self.health.is_fatal else "ok",
            "reason": self.health.reason,
            "environments": environments,
            "pending_requests": len(self.correlations),
        }


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(server: ProxyServer) -> FastAPI:
    """Create the FastAPI application for ``server``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        yield
        await server.stop()

    # Every path belongs to the repository, so no docs/openapi routes.
    app = FastAPI(
        title="codeartifact-proxy",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.proxy = server

    @app.get("/_health")
    async def health():
        """Liveness for the supervisor: 503 once a credential has gone stale."""
        body = server.status()
        return JSONResponse(body, status_code=503 if server.health.is_fatal else 200)

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request):
        return await server.core.dispatch(request)

    return app
