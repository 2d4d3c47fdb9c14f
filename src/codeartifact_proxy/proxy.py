"""Proxy Core — dispatches client requests to per-environment upstream pipelines.

Request flow::

    client ──► dispatch
                 │ Authorization: Bearer <route token>
                 │   missing/malformed → 401, unknown → 403 "403: Forbidden"
                 ▼
               RequestRewriter   (Host + Basic auth, stash RequestContext)
                 ▼
               UpstreamPipeline  (one httpx client per environment)
                 ▼
               ResponseRewriter  (upstream URLs → proxy URLs)
                 ▼
              client

Pipelines are built lazily on the first request for an environment and bound
to the repository endpoint known at that moment.

Only responses the ResponseRewriter may change are buffered; everything else
(tarballs, artifacts, HEAD responses) is relayed chunk by chunk, and request
bodies are streamed upstream the same way.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from http import HTTPStatus
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import TYPE_CHECKING

import httpx
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse

from codeartifact_proxy.errors import RouteError, UpstreamError
from codeartifact_proxy.rewrite import (
    UNAUTHORIZED_BODY,
    UNAVAILABLE_BODY,
    ProxyResponse,
    strip_hop_by_hop,
)
from codeartifact_proxy.router import parse_bearer

if TYPE_CHECKING:
    from codeartifact_proxy.credentials import CredentialCache
    from codeartifact_proxy.models import EnvironmentId
    from codeartifact_proxy.reauth import HealthState
    from codeartifact_proxy.rewrite import OutboundRequest, RequestRewriter, ResponseRewriter
    from codeartifact_proxy.router import TokenRouter

logger = logging.getLogger(__name__)

FORBIDDEN_BODY = "403: Forbidden"


# ── Upstream Pipeline ────────────────────────────────────────────────────────


class UpstreamPipeline:
    """Forwards rewritten requests to one environment's repository endpoint."""

    def __init__(
        self,
        env: EnvironmentId,
        endpoint_url: str,
        *,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.env = env
        self.endpoint_url = endpoint_url
        # Upstream Set-Cookie must not be replayed to other clients.
        no_cookies = CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30.0),
            follow_redirects=False,
            cookies=no_cookies,
            transport=transport,
        )

    def url_for(self, target: str) -> str:
        return self.endpoint_url.rstrip("/") + target

    async def open(self, outbound: OutboundRequest) -> httpx.Response:
        """Send ``outbound`` and return as soon as the status and headers arrive.

        The body is left unread on the wire; finish the response with either
        ``read()`` (rewrite candidates only) or ``relay()``.

        Raises:
            UpstreamError: 504 on timeout, 502 on any other transport failure.
        """
        request = httpx.Request(
            outbound.method,
            self.url_for(outbound.target),
            headers=outbound.headers,
            content=outbound.body or None,
        )
        try:
            return await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise UpstreamError(504, f"upstream timed out: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(502, f"upstream unreachable: {exc!r}") from exc

    async def read(self, response: httpx.Response) -> ProxyResponse:
        """Buffer the raw (still encoded) body of a response due for rewriting."""
        try:
            body = b"".join([chunk async for chunk in response.aiter_raw()])
        except httpx.TimeoutException as exc:
            raise UpstreamError(504, f"upstream timed out: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(502, f"upstream body failed: {exc!r}") from exc
        finally:
            await response.aclose()

        return ProxyResponse(
            status=response.status_code,
            headers=strip_hop_by_hop(response.headers),
            body=body,
        )

    async def relay(self, response: httpx.Response) -> AsyncIterator[bytes]:
        """Yield the raw body chunk by chunk, closing the response when done."""
        try:
            async for chunk in response.aiter_raw():
                yield chunk
        except httpx.TransportError as exc:
            # Status and headers are already on their way to the client.
            logger.warning("%s → upstream body cut short: %r", self.env.value, exc)
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()


# ── Dispatch ─────────────────────────────────────────────────────────────────


class ProxyCore:
    """Top-level request handler shared by all environments."""

    def __init__(
        self,
        router: TokenRouter,
        cache: CredentialCache,
        request_rewriter: RequestRewriter,
        response_rewriter: ResponseRewriter,
        health: HealthState,
        *,
        upstream_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.router = router
        self.cache = cache
        self.request_rewriter = request_rewriter
        self.response_rewriter = response_rewriter
        self.health = health
        self.upstream_timeout = upstream_timeout
        self._transport = transport
        self._pipelines: dict[EnvironmentId, UpstreamPipeline] = {}

    async def pipeline(self, env: EnvironmentId) -> UpstreamPipeline:
        """Return the environment's pipeline, building it on first use."""
        existing = self._pipelines.get(env)
        if existing is not None:
            return existing

        credential = self.cache.get(env)
        if credential is None:
            raise UpstreamError(503, f"{env.value} has no repository endpoint yet")

        candidate = UpstreamPipeline(
            env,
            credential.endpoint_url,
            timeout=self.upstream_timeout,
            transport=self._transport,
        )
        winner = self._pipelines.setdefault(env, candidate)
        if winner is not candidate:
            await candidate.aclose()
        else:
            logger.info("%s → upstream pipeline bound to %s", env.value, credential.endpoint_url)
        return winner

    async def dispatch(self, request: Request) -> Response:
        if self.health.is_fatal:
            return PlainTextResponse(UNAVAILABLE_BODY, status_code=503)

        token = parse_bearer(request.headers.get("authorization"))
        if token is None:
            return PlainTextResponse(
                UNAUTHORIZED_BODY, status_code=401, headers={"WWW-Authenticate": "Bearer"}
            )

        env = self.router.resolve(token)
        if env is None:
            logger.warning(
                "Rejected unknown route token from %s",
                request.client.host if request.client else "unknown",
            )
            return PlainTextResponse(FORBIDDEN_BODY, status_code=403)

        client_ip = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent", "")
        raw_path = request.scope.get("raw_path") or request.url.path.encode()
        raw_path = raw_path.split(b"?", 1)[0]
        path = raw_path.decode("latin-1")
        logger.info(
            '%s → Request: %s %s "%s" "%s"', env.value, client_ip, request.method, path, user_agent
        )

        has_body = (
            request.headers.get("content-length", "0") != "0"
            or "transfer-encoding" in request.headers
        )
        try:
            outbound = self.request_rewriter.rewrite(
                env,
                method=request.method,
                path=path,
                query=request.scope.get("query_string", b"").decode("latin-1"),
                headers=httpx.Headers(request.headers.raw),
                scheme=request.url.scheme,
                client_ip=client_ip,
                body=request.stream() if has_body else None,
            )
        except RouteError as exc:
            return PlainTextResponse(exc.body, status_code=exc.status)

        key = outbound.correlation_key
        try:
            pipeline = await self.pipeline(env)
            upstream = await pipeline.open(outbound)
            buffered = None
            if request.method != "HEAD" and self.response_rewriter.should_rewrite(
                upstream.status_code, upstream.headers, user_agent
            ):
                buffered = await pipeline.read(upstream)
        except UpstreamError as exc:
            self.request_rewriter.correlations.pop(key)
            logger.error("%s → %s %s failed: %s", env.value, request.method, path, exc)
            return PlainTextResponse(
                f"{exc.status}: {HTTPStatus(exc.status).phrase}", status_code=exc.status
            )

        if buffered is None:
            # Tarballs, artifacts and anything else not rewritten go out as they arrive.
            self.request_rewriter.correlations.pop(key)
            response = StreamingResponse(
                pipeline.relay(upstream), status_code=upstream.status_code
            )
            response.raw_headers = _raw_headers(strip_hop_by_hop(upstream.headers))
        else:
            result = self.response_rewriter.rewrite(env, key, buffered, user_agent)
            response = Response(content=result.body, status_code=result.status)
            response.raw_headers = _raw_headers(result.headers)

        logger.info(
            '%s → Response: %s "%s" %d "%s" "%s"',
            env.value,
            client_ip,
            request.method,
            response.status_code,
            path,
            user_agent,
        )
        return response

    async def close(self) -> None:
        pipelines = list(self._pipelines.values())
        self._pipelines.clear()
        for pipeline in pipelines:
            await pipeline.aclose()


def _raw_headers(headers: httpx.Headers) -> list[tuple[bytes, bytes]]:
    return [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers.multi_items()]
