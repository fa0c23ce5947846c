"""
Header handling for the HTTP forwarder.

Only hop-by-hop headers are touched; everything else travels byte for byte.
"""

from typing import Iterable, List, Optional, Set, Tuple

RawHeaders = List[Tuple[bytes, bytes]]

# RFC 9110 section 7.6.1, plus the legacy names proxies still strip.
HOP_BY_HOP_HEADERS = frozenset({
    b"connection",
    b"keep-alive",
    b"proxy-authenticate",
    b"proxy-authorization",
    b"proxy-connection",
    b"te",
    b"trailer",
    b"trailers",
    b"transfer-encoding",
    b"upgrade",
})


def connection_tokens(raw_headers: Iterable[Tuple[bytes, bytes]]) -> Set[bytes]:
    """Returns the lower-cased header names listed in any Connection header."""
    tokens = set()
    for name, value in raw_headers:
        if name.lower() == b"connection":
            tokens.update(token.strip().lower() for token in value.split(b",") if token.strip())
    return tokens


def strip_hop_by_hop(raw_headers: Iterable[Tuple[bytes, bytes]]) -> RawHeaders:
    """Drops hop-by-hop headers and any header the Connection header names."""
    raw_headers = list(raw_headers)
    dropped = HOP_BY_HOP_HEADERS | connection_tokens(raw_headers)
    return [(name, value) for name, value in raw_headers if name.lower() not in dropped]


def _first(raw_headers: RawHeaders, name: bytes) -> Optional[bytes]:
    for key, value in raw_headers:
        if key.lower() == name:
            return value
    return None


def upstream_request_headers(
    raw_headers: Iterable[Tuple[bytes, bytes]],
    client_host: Optional[str],
    scheme: str,
) -> RawHeaders:
    """
    Builds the header list sent to the backend.

    Hop-by-hop headers are removed and the conventional X-Forwarded-* headers
    are appended, extending any chain set by a proxy in front of us.

    :param raw_headers: The inbound request's raw headers.
    :param client_host: The peer address of the inbound connection.
    :param scheme: The scheme the client used ('http' or 'https').
    :return: Raw headers for the outbound request.
    """
    headers = strip_hop_by_hop(raw_headers)

    if client_host:
        previous = _first(headers, b"x-forwarded-for")
        forwarded_for = previous + b", " + client_host.encode("latin-1") if previous else client_host.encode("latin-1")
        headers = [(k, v) for k, v in headers if k.lower() != b"x-forwarded-for"]
        headers.append((b"x-forwarded-for", forwarded_for))

    if _first(headers, b"x-forwarded-proto") is None:
        headers.append((b"x-forwarded-proto", scheme.encode("latin-1")))

    host = _first(headers, b"host")
    if host is not None and _first(headers, b"x-forwarded-host") is None:
        headers.append((b"x-forwarded-host", host))
    return headers


def downstream_response_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> RawHeaders:
    """
    Builds the header list returned to the client from the backend's response.

    Names are lower-cased as ASGI requires; values and order are untouched.
    """
    return [(name.lower(), value) for name, value in strip_hop_by_hop(raw_headers)]


# The upstream client runs its own handshake and sets these itself.
WEBSOCKET_HANDSHAKE_HEADERS = frozenset({
    b"host",
    b"sec-websocket-accept",
    b"sec-websocket-extensions",
    b"sec-websocket-key",
    b"sec-websocket-protocol",
    b"sec-websocket-version",
})


def upstream_websocket_headers(
    raw_headers: Iterable[Tuple[bytes, bytes]],
    client_host: Optional[str],
    scheme: str,
) -> List[Tuple[str, str]]:
    """
    Builds the extra handshake headers for the backend's WebSocket.

    Cookies, Origin, Authorization and the like go through. The handshake
    headers of the client's own upgrade are left to the upstream client.

    :param scheme: The client's scheme ('ws' or 'wss').
    """
    forwarded_proto = "https" if scheme in ("wss", "https") else "http"
    headers = upstream_request_headers(raw_headers, client_host, forwarded_proto)
    return [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in headers
        if name.lower() not in WEBSOCKET_HANDSHAKE_HEADERS
    ]
