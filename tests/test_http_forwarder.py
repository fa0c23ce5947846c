"""
Tests for the HTTP forwarder, driven in-process: requests go in through
httpx.ASGITransport and the backend is an httpx.MockTransport.
"""

import os

import httpx
import pytest

from gatewrap.web.server import HttpForwarder, create_upstream_client

pytestmark = pytest.mark.anyio


class Gate:
    def __init__(self, open_=True):
        self.open = open_

    def __call__(self):
        return self.open


@pytest.fixture
def gate():
    return Gate()


@pytest.fixture
def upstream_calls():
    return []


def build_forwarder(config, gate, handler, status=None):
    client = create_upstream_client(transport=httpx.MockTransport(handler))
    return HttpForwarder(config, gate, status_provider=status, upstream_client=client)


def gateway_client(forwarder):
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=forwarder.app, client=("10.1.2.3", 51234)),
        base_url="http://gw.test",
    )


async def test_not_ready_answers_503_without_contacting_backend(make_config, gate, upstream_calls):
    def handler(request):
        upstream_calls.append(request)
        return httpx.Response(200)

    gate.open = False
    forwarder = build_forwarder(make_config(), gate, handler)
    async with gateway_client(forwarder) as client:
        response = await client.get("/anything")

    assert response.status_code == 503
    assert response.headers["retry-after"] == "1"
    assert response.headers["connection"] == "close"
    assert "not ready" in response.text
    assert upstream_calls == []


async def test_draining_answers_503(make_config, gate):
    forwarder = build_forwarder(make_config(), gate, lambda request: httpx.Response(200))
    forwarder.draining = True
    async with gateway_client(forwarder) as client:
        response = await client.get("/")

    assert response.status_code == 503
    assert "shutting down" in response.text


async def test_response_passes_through_unchanged(make_config, gate):
    body = os.urandom(256 * 1024)

    def handler(request):
        return httpx.Response(
            201,
            headers=[("X-Multi", "one"), ("X-Multi", "two"), ("Content-Type", "application/octet-stream")],
            content=body,
        )

    forwarder = build_forwarder(make_config(), gate, handler)
    async with gateway_client(forwarder) as client:
        response = await client.get("/blob")

    assert response.status_code == 201
    assert response.content == body
    assert response.headers.get_list("x-multi") == ["one", "two"]
    assert response.headers["content-type"] == "application/octet-stream"
    assert forwarder.active_sessions == 0


async def test_request_is_forwarded_faithfully(make_config, gate, upstream_calls):
    async def handler(request):
        upstream_calls.append((request, await request.aread()))
        return httpx.Response(200, content=b"ok")

    forwarder = build_forwarder(make_config(backend_port=19999), gate, handler)
    async with gateway_client(forwarder) as client:
        response = await client.post(
            "/api/v1/items?x=1&y=a%20b",
            content=b'{"message": "hi"}',
            headers={
                "Content-Type": "application/json",
                "Authorization": "Bearer abc",
                "Proxy-Authorization": "Basic Zm9vOmJhcg==",
                "Connection": "keep-alive, X-Private",
                "X-Private": "hop",
            },
        )

    assert response.status_code == 200
    request, received = upstream_calls[0]
    assert request.method == "POST"
    assert request.url.host == "127.0.0.1"
    assert request.url.port == 19999
    assert request.url.raw_path == b"/api/v1/items?x=1&y=a%20b"
    assert received == b'{"message": "hi"}'
    assert request.headers["authorization"] == "Bearer abc"
    assert request.headers["content-type"] == "application/json"
    assert "proxy-authorization" not in request.headers
    assert "x-private" not in request.headers
    assert request.headers["x-forwarded-for"] == "10.1.2.3"
    assert request.headers["x-forwarded-proto"] == "http"
    assert request.headers["x-forwarded-host"] == "gw.test"


async def test_hop_by_hop_response_headers_are_dropped(make_config, gate):
    def handler(request):
        return httpx.Response(200, headers={"Keep-Alive": "timeout=5", "X-Kept": "yes"}, content=b"x")

    forwarder = build_forwarder(make_config(), gate, handler)
    async with gateway_client(forwarder) as client:
        response = await client.get("/")

    assert "keep-alive" not in response.headers
    assert response.headers["x-kept"] == "yes"


async def test_unreachable_backend_answers_502(make_config, gate):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    forwarder = build_forwarder(make_config(), gate, handler)
    async with gateway_client(forwarder) as client:
        response = await client.get("/")

    assert response.status_code == 502
    assert response.headers["connection"] == "close"
    assert forwarder.active_sessions == 0


async def test_backend_timeout_answers_504(make_config, gate):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    forwarder = build_forwarder(make_config(), gate, handler)
    async with gateway_client(forwarder) as client:
        response = await client.get("/")

    assert response.status_code == 504


async def test_one_failing_request_does_not_affect_others(make_config, gate):
    def handler(request):
        if request.url.path == "/bad":
            raise httpx.ConnectError("reset", request=request)
        return httpx.Response(200, content=request.url.path.encode())

    forwarder = build_forwarder(make_config(), gate, handler)
    async with gateway_client(forwarder) as client:
        bad = await client.get("/bad")
        good = await client.get("/good")

    assert bad.status_code == 502
    assert good.status_code == 200
    assert good.content == b"/good"


async def test_supervisor_health_route(make_config, gate, upstream_calls):
    def handler(request):
        upstream_calls.append(request)
        return httpx.Response(200)

    status = {"state": "serving", "backend_pid": 42, "backend_state": "running", "restarts": 1}
    forwarder = build_forwarder(make_config(), gate, handler, status=lambda: status)
    async with gateway_client(forwarder) as client:
        ok = await client.get("/_supervisor/healthz")
        gate.open = False
        not_ok = await client.get("/_supervisor/healthz")

    assert ok.status_code == 200
    assert ok.json() == {**status, "active_sessions": 0}
    assert not_ok.status_code == 503
    assert upstream_calls == []


async def test_health_route_can_be_disabled(make_config, gate, upstream_calls):
    def handler(request):
        upstream_calls.append(request)
        return httpx.Response(200, content=b"backend")

    forwarder = build_forwarder(make_config(supervisor_health_path=""), gate, handler)
    async with gateway_client(forwarder) as client:
        response = await client.get("/_supervisor/healthz")

    assert response.content == b"backend"
    assert len(upstream_calls) == 1
