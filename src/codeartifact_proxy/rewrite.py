"""Request and response rewriting.

Request side: validate the client's bearer header, remember what host and
scheme the client used, then swap in the repository Host and the service
credential as HTTP Basic auth.

Response side: for package-manager JSON responses, replace every absolute
upstream repository URL in the body with the proxy's own base URL so that
follow-up requests (tarballs, metadata) come back through the proxy.
Rewriting is best effort; on any decode failure the original body is sent.

The npm flow this supports::

    client   GET https://npm.example.org/@scope/pkg
    upstream GET https://<domain>-<owner>.d.codeartifact.<region>.amazonaws.com/npm/<repo>/@scope/pkg
    body     "tarball": "https://<domain>...amazonaws.com/npm/<repo>/@scope/pkg/-/pkg-1.0.0.tgz"
    client   "tarball": "https://npm.example.org/@scope/pkg/-/pkg-1.0.0.tgz"
"""

from __future__ import annotations

import base64
import gzip
import logging
import zlib
from collections.abc import AsyncIterable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import httpx

from codeartifact_proxy.correlation import RequestContext, new_key
from codeartifact_proxy.errors import RewriteError, RouteError
from codeartifact_proxy.router import parse_bearer

if TYPE_CHECKING:
    from codeartifact_proxy.correlation import CorrelationStore
    from codeartifact_proxy.credentials import CredentialCache
    from codeartifact_proxy.models import Credential, EnvironmentId

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

UNAUTHORIZED_BODY = "401: Unauthorized"
UNAVAILABLE_BODY = "503: Service Unavailable"


def strip_hop_by_hop(headers: httpx.Headers) -> httpx.Headers:
    """Copy ``headers`` without hop-by-hop fields (including any named in Connection)."""
    named = {
        token.strip().lower()
        for value in headers.get_list("connection")
        for token in value.split(",")
        if token.strip()
    }
    drop = HOP_BY_HOP_HEADERS | named
    return httpx.Headers([(k, v) for k, v in headers.multi_items() if k.lower() not in drop])


# ── Request Side ─────────────────────────────────────────────────────────────


@dataclass
class OutboundRequest:
    """A request ready for the environment's upstream pipeline."""

    env: EnvironmentId
    correlation_key: str
    method: str
    target: str  # path + query, relative to the repository endpoint
    headers: httpx.Headers
    body: bytes | AsyncIterable[bytes] | None = None


class RequestRewriter:
    """Injects the environment's service credential into a client request."""

    def __init__(
        self,
        cache: CredentialCache,
        correlations: CorrelationStore,
        *,
        username: str = "aws",
        max_age: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.cache = cache
        self.correlations = correlations
        self.username = username
        self.max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def rewrite(
        self,
        env: EnvironmentId,
        *,
        method: str,
        path: str,
        query: str,
        headers: httpx.Headers,
        scheme: str,
        client_ip: str | None = None,
        body: bytes | AsyncIterable[bytes] | None = None,
    ) -> OutboundRequest:
        """Build the upstream request and record the client's original context.

        Raises:
            RouteError: 401 on a malformed or missing bearer header, 503 when
                the environment has no usable credential.
        """
        if parse_bearer(headers.get("authorization")) is None:
            raise RouteError(401, UNAUTHORIZED_BODY)

        credential = self.cache.get(env)
        if credential is None:
            logger.warning("%s → no credential yet, rejecting request", env.value)
            raise RouteError(503, UNAVAILABLE_BODY)
        if credential.age(self._clock()) > self.max_age:
            logger.error("%s → credential expired, rejecting request", env.value)
            raise RouteError(503, UNAVAILABLE_BODY)

        original_host = headers.get("host", "")
        context = RequestContext(
            original_scheme=_forwarded_proto(headers) or scheme,
            original_host=original_host,
        )
        key = new_key()
        self.correlations.put(key, context)

        outbound = strip_hop_by_hop(headers)
        for name in ("host", "authorization"):
            outbound.pop(name, None)
        outbound["Host"] = credential.endpoint_host
        # The response side can only decode gzip.
        accepts_gzip = _accepts_gzip(headers.get("accept-encoding", ""))
        outbound["Accept-Encoding"] = "gzip" if accepts_gzip else "identity"
        outbound["Authorization"] = _basic_auth(self.username, credential.authorization_token)
        if client_ip:
            prior = outbound.get("x-forwarded-for")
            outbound["X-Forwarded-For"] = f"{prior}, {client_ip}" if prior else client_ip

        target = path if path.startswith("/") else "/" + path
        if query:
            target = f"{target}?{query}"

        logger.info("%s → Host: from %s to %s", env.value, original_host, credential.endpoint_host)
        logger.info(
            "%s → Sending request to %s%s",
            env.value,
            credential.endpoint_url.rstrip("/"),
            target,
        )
        return OutboundRequest(
            env=env,
            correlation_key=key,
            method=method,
            target=target,
            headers=outbound,
            body=body,
        )


def _forwarded_proto(headers: httpx.Headers) -> str | None:
    value = headers.get("x-forwarded-proto")
    if not value:
        return None
    proto = value.split(",")[0].strip().lower()
    return proto or None


def _accepts_gzip(accept_encoding: str) -> bool:
    for item in accept_encoding.split(","):
        coding, _, params = item.partition(";")
        if coding.strip().lower() not in ("gzip", "*"):
            continue
        weight = params.strip().lower()
        if weight.startswith("q=") and not weight[2:].strip("0. "):
            continue  # q=0: not acceptable
        return True
    return False


def _basic_auth(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode()
    return "Basic " + base64.b64encode(raw).decode("ascii")


# ── Response Side ────────────────────────────────────────────────────────────


@dataclass
class ProxyResponse:
    status: int
    headers: httpx.Headers
    body: bytes


class ResponseRewriter:
    """Points upstream URLs in package-manager JSON bodies back at the proxy."""

    def __init__(
        self,
        cache: CredentialCache,
        correlations: CorrelationStore,
        *,
        user_agents: Iterable[str] = ("npm",),
        content_types: Iterable[str] = ("application/json", "application/vnd.npm.install-v1+json"),
    ) -> None:
        self.cache = cache
        self.correlations = correlations
        self.user_agents = tuple(user_agents)
        self.content_types = tuple(ct.lower() for ct in content_types)

    def wants_rewrite(self, user_agent: str, content_type: str) -> bool:
        if not any(ua in user_agent for ua in self.user_agents):
            return False
        content_type = content_type.lower()
        return any(ct in content_type for ct in self.content_types)

    def should_rewrite(self, status: int, headers: httpx.Headers, user_agent: str) -> bool:
        """Whether a response is a rewrite candidate, judged from its headers alone.

        Only candidates are buffered; the proxy streams everything else.
        """
        if status == 404:
            return False
        return self.wants_rewrite(user_agent, headers.get("content-type", ""))

    def rewrite(
        self,
        env: EnvironmentId,
        correlation_key: str,
        response: ProxyResponse,
        user_agent: str,
    ) -> ProxyResponse:
        context = self.correlations.pop(correlation_key)

        if not self.should_rewrite(response.status, response.headers, user_agent):
            return _passthrough(response)

        credential = self.cache.get(env)
        if context is None or credential is None:
            logger.warning(
                "%s → no %s for response, passing body through",
                env.value,
                "request context" if context is None else "credential",
            )
            return _passthrough(response)

        try:
            return _with_length(_rewrite_body(response, credential, context))
        except RewriteError as exc:
            logger.warning("%s → body rewrite skipped: %s", env.value, exc)
            return _passthrough(response)


def _rewrite_body(
    response: ProxyResponse, credential: Credential, context: RequestContext
) -> ProxyResponse:
    headers = httpx.Headers(response.headers)
    body = response.body

    encoding = headers.get("content-encoding", "").strip().lower()
    if encoding == "gzip":
        try:
            body = gzip.decompress(body)
        except (OSError, EOFError, zlib.error) as exc:
            raise RewriteError(f"gzip decode failed: {exc}") from exc
        del headers["content-encoding"]
    elif encoding and encoding != "identity":
        raise RewriteError(f"unsupported content-encoding {encoding!r}")

    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise RewriteError(f"body is not UTF-8: {exc}") from exc

    replacement = context.base_url
    text = text.replace(credential.endpoint_with_port, replacement)
    text = text.replace(credential.endpoint_url, replacement)

    return ProxyResponse(status=response.status, headers=headers, body=text.encode("utf-8"))


def _passthrough(response: ProxyResponse) -> ProxyResponse:
    """Return the body untouched, keeping the upstream Content-Length."""
    headers = httpx.Headers(response.headers)
    headers.pop("transfer-encoding", None)
    if "content-length" not in headers:
        headers["Content-Length"] = str(len(response.body))
    return ProxyResponse(status=response.status, headers=headers, body=response.body)


def _with_length(response: ProxyResponse) -> ProxyResponse:
    headers = httpx.Headers(response.headers)
    headers.pop("transfer-encoding", None)
    headers["Content-Length"] = str(len(response.body))
    return ProxyResponse(status=response.status, headers=headers, body=response.body)
