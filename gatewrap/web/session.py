import time
import logging
import itertools
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from gatewrap import settings
from gatewrap.local.config import Configuration

log = logging.getLogger(__name__)

HTTP_REASONS = {
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}


class RelayState(Enum):
    ACTIVE = "active"
    HALF_CLOSED = "half_closed"
    CLOSED = "closed"


@dataclass(eq=False)
class ConnectionSession:
    """One proxied client connection (TCP mode) or request (HTTP mode)."""
    session_id: int
    peer: str
    state: RelayState = RelayState.ACTIVE
    bytes_to_backend: int = 0
    bytes_to_client: int = 0
    opened_at: float = field(default_factory=time.monotonic)

    @property
    def duration(self) -> float:
        return time.monotonic() - self.opened_at


def raw_http_response(status: int, message: str) -> bytes:
    """
    Builds a complete HTTP/1.1 response for protocol-agnostic rejections.

    Used where there is no HTTP server in the path (TCP mode) but the client is
    most likely speaking HTTP and deserves a readable answer instead of a reset.
    """
    body = (message.rstrip("\n") + "\n").encode("utf-8")
    head = (
        f"HTTP/1.1 {status} {HTTP_REASONS.get(status, 'Error')}\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
    )
    if status == 503:
        head += f"Retry-After: {settings.NOT_READY_RETRY_AFTER}\r\n"
    head += "Connection: close\r\n\r\n"
    return head.encode("latin-1") + body


class Forwarder:
    """
    Common state of both traffic forwarders.

    The forwarder never decides on its own whether the backend is usable: the
    lifecycle controller hands it `is_ready`, and flips `draining` when
    shutting down. Sessions are tracked only to report and drain them; they
    share no mutable state with each other.

    :param config: The supervisor configuration.
    :param is_ready: Returns True while traffic may be forwarded.
    """

    def __init__(self, config: Configuration, is_ready: Callable[[], bool]) -> None:
        self.config = config
        self.is_ready = is_ready
        self.draining = False
        self._sessions: Dict[int, ConnectionSession] = {}
        self._session_ids = itertools.count(1)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def can_forward(self) -> bool:
        """True when a new session may be sent to the backend."""
        return not self.draining and self.is_ready()

    def not_ready_message(self) -> str:
        if self.draining:
            return "Service Unavailable: the gateway is shutting down."
        return "Service Unavailable: the gateway backend is not ready yet."

    def open_session(self, peer: str) -> ConnectionSession:
        session = ConnectionSession(session_id=next(self._session_ids), peer=peer)
        self._sessions[session.session_id] = session
        log.debug(f"Session {session.session_id} opened for {peer}.")
        return session

    def close_session(self, session: ConnectionSession, error: Optional[BaseException] = None) -> None:
        session.state = RelayState.CLOSED
        self._sessions.pop(session.session_id, None)
        if error is not None:
            log.warning(f"Session {session.session_id} from {session.peer} failed: {error}")
        else:
            log.debug(
                f"Session {session.session_id} closed after {session.duration:.2f}s "
                f"({session.bytes_to_backend} B up, {session.bytes_to_client} B down)."
            )

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self, grace: float) -> None:
        raise NotImplementedError
