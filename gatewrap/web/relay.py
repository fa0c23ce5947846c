import asyncio
import logging
from typing import Callable, Optional, Set

from gatewrap import settings
from gatewrap.local.config import Configuration
from gatewrap.local.errors import SessionError
from gatewrap.web.session import ConnectionSession, Forwarder, HTTP_REASONS, RelayState, raw_http_response

log = logging.getLogger(__name__)

# Seconds spent reading a rejected client's request before answering, so the
# reply is not lost to a reset caused by unread data.
REJECT_READ_TIMEOUT = 0.25


class TcpForwarder(Forwarder):
    """
    Protocol-agnostic forwarder: relays raw bytes between each client
    connection and its own backend connection.

    Carries anything that runs over TCP, WebSocket upgrades included. Every
    session owns exactly two streams and two pipe tasks; a failure tears down
    that session alone.

    :param config: The supervisor configuration.
    :param is_ready: Returns True while traffic may be forwarded.
    """

    def __init__(self, config: Configuration, is_ready: Callable[[], bool]) -> None:
        super().__init__(config, is_ready)
        self.buffer_size = config.relay_buffer_size
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()

    #* --- Serving ---
    async def start(self) -> None:
        """Binds the external port. Raises OSError if it is taken."""
        self._server = await asyncio.start_server(
            self._handle_client,
            host=self.config.listen_host or None,
            port=self.config.listen_port,
            limit=self.buffer_size,
        )
        log.info(f"Relaying TCP on {self.config.listen_host}:{self.config.listen_port} "
                 f"to {self.config.backend_address}")

    async def stop(self, grace: float) -> None:
        """
        Stops accepting, waits up to `grace` seconds for open sessions to end
        on their own and then closes whatever is left.
        """
        self.draining = True
        if self._server is not None:
            self._server.close()

        pending = set(self._tasks)
        if pending:
            log.info(f"Waiting up to {grace:.0f}s for {len(pending)} open connection(s) to finish...")
            _, pending = await asyncio.wait(pending, timeout=grace)
        if pending:
            log.warning(f"Force-closing {len(pending)} connection(s) still open after the grace period.")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()
        log.info("TCP forwarder stopped.")

    #* --- Sessions ---
    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            await self._serve_connection(reader, writer)
        finally:
            self._tasks.discard(task)

    async def _serve_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peername = writer.get_extra_info("peername")
        peer = f"{peername[0]}:{peername[1]}" if peername else "unknown"

        if not self.can_forward():
            await self._reject(reader, writer, 503, self.not_ready_message())
            return

        session = self.open_session(peer)
        try:
            backend_reader, backend_writer = await asyncio.wait_for(
                asyncio.open_connection(self.config.backend_host, self.config.backend_port, limit=self.buffer_size),
                settings.UPSTREAM_CONNECT_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.close_session(session, SessionError(f"backend unreachable: {e!r}"))
            await self._reject(reader, writer, 502, f"{HTTP_REASONS[502]}: the gateway backend could not be reached.")
            return

        for w in (writer, backend_writer):
            w.transport.set_write_buffer_limits(high=self.buffer_size)

        error = None
        try:
            await self._relay(session, reader, writer, backend_reader, backend_writer)
        except SessionError as e:
            error = e
        finally:
            await _close(backend_writer)
            await _close(writer)
            self.close_session(session, error)

    async def _relay(
        self,
        session: ConnectionSession,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        backend_reader: asyncio.StreamReader,
        backend_writer: asyncio.StreamWriter,
    ) -> None:
        """Runs both pipe directions until both have finished or one fails."""
        pipes = {
            asyncio.create_task(self._pipe(session, client_reader, backend_writer, upstream=True)),
            asyncio.create_task(self._pipe(session, backend_reader, client_writer, upstream=False)),
        }
        try:
            done, pending = await asyncio.wait(pipes, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in pipes:
                task.cancel()
            await asyncio.gather(*pipes, return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            exc = task.exception()
            if exc is not None:
                raise SessionError(f"relay broke: {exc!r}") from exc

    async def _pipe(
        self,
        session: ConnectionSession,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        upstream: bool,
    ) -> None:
        """Copies one direction. At EOF the write side is shut, leaving the other direction open."""
        while True:
            chunk = await reader.read(self.buffer_size)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()
            if upstream:
                session.bytes_to_backend += len(chunk)
            else:
                session.bytes_to_client += len(chunk)

        if session.state is RelayState.ACTIVE:
            session.state = RelayState.HALF_CLOSED
        if writer.can_write_eof():
            try:
                writer.write_eof()
            except OSError:
                pass

    async def _reject(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, status: int, message: str) -> None:
        try:
            await asyncio.wait_for(reader.read(self.buffer_size), REJECT_READ_TIMEOUT)
        except (OSError, asyncio.TimeoutError):
            pass
        try:
            writer.write(raw_http_response(status, message))
            await writer.drain()
        except OSError as e:
            log.debug(f"Could not deliver {status} to client: {e}")
        await _close(writer)


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
