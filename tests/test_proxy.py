"""Proxy integration tests.

Everything runs for real (FastAPI app, lifespan, reauth scheduler, rewriting)
except the two external services: CodeArtifact is replaced by FakeProvider and
the repository endpoint by an httpx.MockTransport.
"""

from __future__ import annotations

import asyncio
import base64
import gzip

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.responses import StreamingResponse

from codeartifact_proxy.models import EnvironmentId
from codeartifact_proxy.server import ProxyServer, create_app

from conftest import DEV_TOKEN, PROD_TOKEN, STAGE_TOKEN, FakeProvider

NPM_UA = "npm/10.2.4 node/v20.11.0 linux x64 workspaces/false"
TARBALL_BODY = b'{"dist":{"tarball":"https://cart.example.com/npm/repo/lodash/-/lodash-4.17.21.tgz"}}'


class Upstream:
    """Scriptable stand-in for the repository endpoint.

    Replies are built per request around a ByteStream so the proxy reads them
    the way it reads a real socket (``aiter_raw``).
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.error: Exception | None = None
        self.stream: httpx.AsyncByteStream | None = None
        self.reply(200, TARBALL_BODY, {"Content-Type": "application/json"})

    def reply(self, status: int, body: bytes = b"", headers: dict[str, str] | None = None) -> None:
        self.status = status
        self.body = body
        self.headers = {"Content-Length": str(len(body)), **(headers or {})}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        stream = self.stream or httpx.ByteStream(self.body)
        return httpx.Response(self.status, headers=self.headers, stream=stream)


class CountingStream(httpx.AsyncByteStream):
    """Upstream body that records how much of it has been read."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks
        self.served = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            self.served += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def server(proxy_config, provider, upstream):
    return ProxyServer(proxy_config, provider, transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(server):
    with TestClient(create_app(server)) as c:
        yield c


def _auth(token: str = DEV_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}", "User-Agent": NPM_UA}


def _direct_request(path: str, method: str = "GET") -> Request:
    """A bare ASGI request, for driving ProxyCore.dispatch without a client."""
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "root_path": "",
        "headers": [
            (b"host", b"npm.internal.example"),
            (b"authorization", f"Bearer {DEV_TOKEN}".encode()),
            (b"user-agent", NPM_UA.encode()),
        ],
        "client": ("10.0.0.5", 50000),
        "server": ("npm.internal.example", 80),
    }

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


# ── Routing ──────────────────────────────────────────────────────────────────


class TestRouting:
    def test_unknown_token_forbidden(self, client, upstream):
        resp = client.get("/lodash", headers=_auth("not-a-route-token"))
        assert resp.status_code == 403
        assert resp.text == "403: Forbidden"
        assert upstream.requests == []

    def test_missing_authorization_is_401(self, client, upstream):
        resp = client.get("/lodash")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"
        assert upstream.requests == []

    def test_basic_auth_from_client_is_401(self, client, upstream):
        resp = client.get("/lodash", headers={"Authorization": "Basic YTpi"})
        assert resp.status_code == 401
        assert upstream.requests == []

    @pytest.mark.parametrize(
        ("token", "repository"),
        [(DEV_TOKEN, "acme-dev"), (STAGE_TOKEN, "acme-stage"), (PROD_TOKEN, "acme-prod")],
    )
    def test_token_selects_environment_credential(self, client, upstream, token, repository):
        resp = client.get("/lodash", headers=_auth(token))
        assert resp.status_code == 200

        sent = upstream.requests[0]
        expected = base64.b64encode(f"aws:svc-token-{repository}".encode()).decode()
        assert sent.headers["authorization"] == f"Basic {expected}"
        assert sent.headers["host"] == "cart.example.com"
        assert str(sent.url) == "https://cart.example.com/npm/repo/lodash"

    def test_environment_without_credential_is_503(self, proxy_config, upstream):
        server = ProxyServer(
            proxy_config, FakeProvider(fail=True), transport=httpx.MockTransport(upstream)
        )
        with TestClient(create_app(server)) as c:
            resp = c.get("/lodash", headers=_auth())
        assert resp.status_code == 503
        assert upstream.requests == []


# ── Forwarding ───────────────────────────────────────────────────────────────


class TestForwarding:
    def test_npm_metadata_rewritten_to_proxy(self, client):
        resp = client.get("/lodash", headers=_auth())
        assert resp.status_code == 200
        expected = b'{"dist":{"tarball":"http://testserver/lodash/-/lodash-4.17.21.tgz"}}'
        assert resp.content == expected
        assert resp.headers["content-length"] == str(len(expected))

    def test_forwarded_proto_used_in_rewrite(self, client):
        headers = {**_auth(), "X-Forwarded-Proto": "https", "Host": "npm.internal.example"}
        resp = client.get("/lodash", headers=headers)
        assert b"https://npm.internal.example/lodash/-/" in resp.content

    def test_gzip_metadata_rewritten(self, client, upstream):
        upstream.reply(
            200,
            gzip.compress(TARBALL_BODY),
            {"Content-Type": "application/json", "Content-Encoding": "gzip"},
        )
        resp = client.get("/lodash", headers=_auth())
        assert resp.status_code == 200
        assert "content-encoding" not in resp.headers
        assert b"http://testserver/lodash/-/lodash-4.17.21.tgz" in resp.content

    def test_tarball_bytes_untouched(self, client, upstream):
        payload = gzip.compress(b"package/package.json")
        upstream.reply(200, payload, {"Content-Type": "application/octet-stream"})
        resp = client.get("/lodash/-/lodash-4.17.21.tgz", headers=_auth())
        assert resp.content == payload

    def test_404_passed_through(self, client, upstream):
        upstream.reply(404, b'{"error":"Not found"}', {"Content-Type": "application/json"})
        resp = client.get("/does-not-exist", headers=_auth())
        assert resp.status_code == 404
        assert resp.content == b'{"error":"Not found"}'

    def test_redirect_not_followed(self, client, upstream):
        upstream.reply(302, headers={"Location": "https://elsewhere.example/x"})
        resp = client.get("/lodash", headers=_auth(), follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "https://elsewhere.example/x"
        assert len(upstream.requests) == 1

    def test_query_and_body_forwarded(self, client, upstream):
        upstream.reply(201)
        resp = client.put("/lodash?write=true", headers=_auth(), content=b'{"name":"lodash"}')
        assert resp.status_code == 201
        sent = upstream.requests[0]
        assert sent.method == "PUT"
        assert sent.url.query == b"write=true"
        assert sent.content == b'{"name":"lodash"}'

    def test_connect_failure_is_502(self, client, server, upstream):
        upstream.error = httpx.ConnectError("connection refused")
        resp = client.get("/lodash", headers=_auth())
        assert resp.status_code == 502
        assert resp.text == "502: Bad Gateway"
        assert len(server.correlations) == 0

    def test_timeout_is_504(self, client, upstream):
        upstream.error = httpx.ReadTimeout("read timed out")
        resp = client.get("/lodash", headers=_auth())
        assert resp.status_code == 504
        assert resp.text == "504: Gateway Timeout"

    def test_one_pipeline_per_environment(self, client, server):
        for _ in range(3):
            client.get("/lodash", headers=_auth(DEV_TOKEN))
        client.get("/lodash", headers=_auth(PROD_TOKEN))
        assert set(server.core._pipelines) == {EnvironmentId.DEV, EnvironmentId.PROD}
        assert len(server.correlations) == 0

    @pytest.mark.parametrize(
        ("path", "content_type"),
        [
            ("/lodash/-/lodash-4.17.21.tgz", "application/octet-stream"),
            ("/lodash", "application/json"),
        ],
    )
    def test_head_keeps_upstream_length(self, client, upstream, path, content_type):
        upstream.reply(200, headers={"Content-Type": content_type, "Content-Length": "12345"})
        resp = client.head(path, headers=_auth())
        assert resp.status_code == 200
        assert resp.headers["content-length"] == "12345"
        assert upstream.requests[0].method == "HEAD"


async def test_passthrough_body_is_relayed_unread(server, upstream):
    for env in EnvironmentId:
        await server.scheduler.tick(env)
    chunks = [b"\x1f\x8b" + bytes(1022), bytes(1024), bytes(512)]
    upstream.reply(
        200, headers={"Content-Type": "application/octet-stream", "Content-Length": "2560"}
    )
    upstream.stream = CountingStream(chunks)

    response = await server.core.dispatch(_direct_request("/lodash/-/lodash-4.17.21.tgz"))

    assert isinstance(response, StreamingResponse)
    assert upstream.stream.served == 0
    assert (b"content-length", b"2560") in response.raw_headers
    assert [chunk async for chunk in response.body_iterator] == chunks
    assert upstream.stream.closed
    assert len(server.correlations) == 0
    await server.core.close()


async def test_metadata_response_is_buffered_and_rewritten(server, upstream):
    for env in EnvironmentId:
        await server.scheduler.tick(env)

    response = await server.core.dispatch(_direct_request("/lodash"))

    assert not isinstance(response, StreamingResponse)
    assert response.body == (
        b'{"dist":{"tarball":"http://npm.internal.example/lodash/-/lodash-4.17.21.tgz"}}'
    )
    await server.core.close()


async def test_concurrent_pipeline_creation_shares_one_client(server):
    for env in EnvironmentId:
        await server.scheduler.tick(env)
    first, second = await asyncio.gather(
        server.core.pipeline(EnvironmentId.STAGE), server.core.pipeline(EnvironmentId.STAGE)
    )
    assert first is second
    await server.core.close()


# ── Health ───────────────────────────────────────────────────────────────────


class TestHealth:
    def test_health_reports_environments(self, client):
        resp = client.get("/_health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert set(body["environments"]) == {"dev", "stage", "prod"}
        assert body["environments"]["dev"]["authenticated"] is True
        assert body["environments"]["dev"]["endpoint"] == "https://cart.example.com/npm/repo/"

    def test_fatal_state_rejects_everything(self, client, server, upstream):
        server.health.mark_fatal("dev credential expired")

        resp = client.get("/lodash", headers=_auth())
        assert resp.status_code == 503
        assert upstream.requests == []

        health = client.get("/_health")
        assert health.status_code == 503
        assert health.json()["status"] == "fatal"
        assert health.json()["reason"] == "dev credential expired"
