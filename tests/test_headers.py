"""Tests for hop-by-hop header handling."""

from gatewrap.web import headers


def test_hop_by_hop_headers_are_stripped():
    raw = [
        (b"Host", b"example.com"),
        (b"Connection", b"keep-alive, X-Private"),
        (b"Keep-Alive", b"timeout=5"),
        (b"Transfer-Encoding", b"chunked"),
        (b"X-Private", b"secret"),
        (b"Accept", b"*/*"),
    ]
    assert headers.strip_hop_by_hop(raw) == [(b"Host", b"example.com"), (b"Accept", b"*/*")]


def test_duplicates_and_order_survive():
    raw = [(b"set-cookie", b"a=1"), (b"x-other", b"y"), (b"set-cookie", b"b=2")]
    assert headers.downstream_response_headers(raw) == raw


def test_forwarded_headers_are_added():
    raw = [(b"host", b"gw.example.com"), (b"accept", b"text/html")]
    result = headers.upstream_request_headers(raw, "10.0.0.7", "http")

    assert (b"x-forwarded-for", b"10.0.0.7") in result
    assert (b"x-forwarded-proto", b"http") in result
    assert (b"x-forwarded-host", b"gw.example.com") in result
    assert result[:2] == raw


def test_forwarded_for_chain_is_extended():
    raw = [(b"x-forwarded-for", b"203.0.113.9"), (b"x-forwarded-proto", b"https")]
    result = headers.upstream_request_headers(raw, "10.0.0.7", "http")

    assert [v for k, v in result if k == b"x-forwarded-for"] == [b"203.0.113.9, 10.0.0.7"]
    # A proto set by a proxy in front of us wins.
    assert [v for k, v in result if k == b"x-forwarded-proto"] == [b"https"]


def test_connection_tokens():
    raw = [(b"Connection", b"Upgrade, close"), (b"connection", b" X-Foo ")]
    assert headers.connection_tokens(raw) == {b"upgrade", b"close", b"x-foo"}


def test_websocket_handshake_headers_are_left_to_upstream_client():
    raw = [
        (b"Host", b"gw.example"),
        (b"Upgrade", b"websocket"),
        (b"Connection", b"Upgrade"),
        (b"Sec-WebSocket-Key", b"dGhlIHNhbXBsZSBub25jZQ=="),
        (b"Sec-WebSocket-Version", b"13"),
        (b"Sec-WebSocket-Protocol", b"chat.v1"),
        (b"Origin", b"https://app.example"),
        (b"Cookie", b"session=abc"),
    ]
    result = headers.upstream_websocket_headers(raw, "10.0.0.9", "wss")

    assert ("Origin", "https://app.example") in result
    assert ("Cookie", "session=abc") in result
    assert ("x-forwarded-proto", "https") in result
    assert ("x-forwarded-host", "gw.example") in result
    names = {name.lower() for name, _ in result}
    assert not names & {"host", "upgrade", "connection", "sec-websocket-key", "sec-websocket-version",
                        "sec-websocket-protocol"}
