"""Tests for the raw TCP relay over real loopback sockets."""

import asyncio

import pytest

from gatewrap.web.relay import TcpForwarder
from conftest import free_port

pytestmark = pytest.mark.anyio


class Gate:
    def __init__(self, open_=True):
        self.open = open_

    def __call__(self):
        return self.open


async def echo_server(port):
    """Echoes every byte back, upper-cased, so direction mix-ups show."""
    async def handle(reader, writer):
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(data.upper())
                await writer.drain()
        finally:
            writer.close()

    return await asyncio.start_server(handle, "127.0.0.1", port)


@pytest.fixture
async def relay(make_config):
    backend_port = free_port()
    server = await echo_server(backend_port)
    gate = Gate()
    forwarder = TcpForwarder(make_config(backend_port=backend_port, relay_buffer_size=1024), gate)
    await forwarder.start()
    yield forwarder, gate
    await forwarder.stop(0.5)
    server.close()
    await server.wait_closed()


async def connect(forwarder):
    return await asyncio.open_connection("127.0.0.1", forwarder.config.listen_port)


async def test_bytes_are_relayed_both_ways(relay):
    forwarder, _ = relay
    reader, writer = await connect(forwarder)

    payload = b"hello websocket frame \x00\x01\x02" * 200
    writer.write(payload)
    await writer.drain()
    received = await asyncio.wait_for(reader.readexactly(len(payload)), 5)
    assert received == payload.upper()

    writer.close()
    await writer.wait_closed()


async def test_half_close_is_propagated(relay):
    forwarder, _ = relay
    reader, writer = await connect(forwarder)

    writer.write(b"last words")
    writer.write_eof()
    # The echo server sees EOF, finishes and closes; the relay passes that on.
    received = await asyncio.wait_for(reader.read(), 5)
    assert received == b"LAST WORDS"
    writer.close()


async def test_not_ready_answers_503(relay):
    forwarder, gate = relay
    gate.open = False
    reader, writer = await connect(forwarder)
    writer.write(b"GET / HTTP/1.1\r\nHost: x\r\n\r\n")
    await writer.drain()

    response = await asyncio.wait_for(reader.read(), 5)
    assert response.startswith(b"HTTP/1.1 503 Service Unavailable\r\n")
    assert b"Retry-After: 1\r\n" in response
    assert b"Connection: close\r\n" in response
    assert forwarder.active_sessions == 0
    writer.close()


async def test_unreachable_backend_answers_502(make_config):
    forwarder = TcpForwarder(make_config(backend_port=free_port()), Gate())
    await forwarder.start()
    try:
        reader, writer = await connect(forwarder)
        writer.write(b"GET / HTTP/1.1\r\n\r\n")
        response = await asyncio.wait_for(reader.read(), 10)
        assert response.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")
        writer.close()
    finally:
        await forwarder.stop(0.5)


async def test_sessions_are_isolated(relay):
    forwarder, _ = relay
    clients = [await connect(forwarder) for _ in range(5)]
    for i, (_, writer) in enumerate(clients):
        writer.write(f"client-{i}".encode())
        await writer.drain()

    # Kill one session abruptly; the others must keep working.
    clients[2][1].transport.abort()

    for i, (reader, writer) in enumerate(clients):
        if i == 2:
            continue
        expected = f"CLIENT-{i}".encode()
        assert await asyncio.wait_for(reader.readexactly(len(expected)), 5) == expected
        writer.write(b"again")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(5), 5) == b"AGAIN"

    for i, (_, writer) in enumerate(clients):
        if i != 2:
            writer.close()


async def test_drain_refuses_new_and_force_closes_after_grace(relay):
    forwarder, _ = relay
    reader, writer = await connect(forwarder)
    writer.write(b"ping")
    await writer.drain()
    assert await asyncio.wait_for(reader.readexactly(4), 5) == b"PING"
    assert forwarder.active_sessions == 1

    loop = asyncio.get_running_loop()
    started = loop.time()
    await forwarder.stop(0.3)
    elapsed = loop.time() - started

    # The idle session was given the grace period and then cut off.
    assert 0.25 <= elapsed < 5
    assert forwarder.active_sessions == 0
    assert await asyncio.wait_for(reader.read(), 5) == b""

    with pytest.raises(OSError):
        await asyncio.wait_for(connect(forwarder), 2)


async def test_drain_waits_for_sessions_that_finish(relay):
    forwarder, _ = relay
    reader, writer = await connect(forwarder)
    writer.write(b"bye")
    writer.write_eof()

    # The session finishes on its own well inside the grace period.
    stop = asyncio.create_task(forwarder.stop(5))
    assert await asyncio.wait_for(reader.read(), 5) == b"BYE"
    await asyncio.wait_for(stop, 5)
    assert forwarder.active_sessions == 0
    writer.close()
