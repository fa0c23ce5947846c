import httpx
import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from hypercorn.asyncio import serve
from hypercorn.config import Config as HypercornConfig
from starlette.routing import Route, WebSocketRoute
from starlette.requests import HTTPConnection, Request
from starlette.websockets import WebSocket, WebSocketState
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from websockets.asyncio.client import ClientConnection, connect as websocket_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from gatewrap import settings
from gatewrap.local.config import Configuration
from gatewrap.local.errors import SessionError
from gatewrap.local.supervisor.startup import tcp_probe
from gatewrap.web import headers as proxy_headers
from gatewrap.web.session import ConnectionSession, Forwarder, HTTP_REASONS, RelayState

log = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]
# Seconds to wait for Hypercorn to bind the external port.
BIND_TIMEOUT = 5.0
# Close codes that only describe a closure locally and may not be sent.
WEBSOCKET_LOCAL_CLOSE_CODES = {1005: 1000, 1006: 1011, 1015: 1011}


def create_upstream_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """
    The client used to talk to the backend.

    No read/write timeouts: chat gateways hold long-polling and streaming
    responses open for as long as the conversation runs.

    :param transport: Replaces the network transport. Tests pass httpx.MockTransport.
    """
    client = httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(connect=settings.UPSTREAM_CONNECT_TIMEOUT, read=None, write=None, pool=None),
        follow_redirects=False,
        trust_env=False,
    )
    # Only headers the client actually sent go upstream.
    client.headers.clear()
    return client


def error_response(status: int, message: str) -> PlainTextResponse:
    headers = {"Connection": "close"}
    if status == 503:
        headers["Retry-After"] = str(settings.NOT_READY_RETRY_AFTER)
    return PlainTextResponse(message + "\n", status_code=status, headers=headers)


def relayable_close_code(code: Optional[int]) -> int:
    if code is None:
        return 1000
    return WEBSOCKET_LOCAL_CLOSE_CODES.get(code, code)


async def deny_websocket(websocket: WebSocket, response: Response) -> None:
    """Refuses a WebSocket upgrade with a plain HTTP response where the server allows it."""
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(response)
    else:
        # 1013: Try Again Later.
        await websocket.close(code=1013)


class HttpForwarder(Forwarder):
    """
    HTTP-aware forwarder: a Starlette app served by Hypercorn that relays each
    request to the backend with a streaming httpx client.

    :param config: The supervisor configuration.
    :param is_ready: Returns True while traffic may be forwarded.
    :param status_provider: Returns the supervisor status shown on the health route.
    :param upstream_client: The client used to reach the backend. Tests pass one
                            backed by httpx.MockTransport.
    """

    def __init__(
        self,
        config: Configuration,
        is_ready: Callable[[], bool],
        status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        upstream_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(config, is_ready)
        self.status_provider = status_provider or (lambda: {})
        self.client = upstream_client or create_upstream_client()
        self.backend_base_url = f"http://{config.backend_host}:{config.backend_port}"
        self.backend_websocket_url = f"ws://{config.backend_host}:{config.backend_port}"
        self.app = create_proxy_app(self)
        self._shutdown_event: Optional[asyncio.Event] = None
        self._serve_task: Optional[asyncio.Task] = None

    #* --- Request handling ---
    async def supervisor_health(self, request: Request) -> Response:
        status = dict(self.status_provider())
        status["active_sessions"] = self.active_sessions
        return JSONResponse(status, status_code=200 if self.can_forward() else 503)

    async def proxy(self, request: Request) -> Response:
        if not self.can_forward():
            return error_response(503, self.not_ready_message())

        client_host = request.client.host if request.client else None
        session = self.open_session(f"{client_host}:{request.client.port}" if request.client else "unknown")

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = self.client.build_request(
            request.method,
            self.upstream_url(request),
            headers=proxy_headers.upstream_request_headers(request.headers.raw, client_host, request.url.scheme),
            content=self._relay_request_body(request, session) if has_body else None,
        )

        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            self.close_session(session, SessionError(f"backend timed out: {e!r}"))
            return error_response(504, f"{HTTP_REASONS[504]}: the gateway backend did not answer in time.")
        except httpx.HTTPError as e:
            self.close_session(session, SessionError(f"backend unreachable: {e!r}"))
            return error_response(502, f"{HTTP_REASONS[502]}: the gateway backend could not be reached.")
        except asyncio.CancelledError:
            self.close_session(session, SessionError("cut off while waiting for the backend"))
            raise

        response = StreamingResponse(
            self._relay_response_body(upstream, session),
            status_code=upstream.status_code,
            background=BackgroundTask(self._finish, upstream, session),
        )
        # Replace the defaults wholesale: headers go through exactly as the
        # backend sent them, duplicates included.
        response.raw_headers = proxy_headers.downstream_response_headers(upstream.headers.raw)
        return response

    def upstream_url(self, conn: HTTPConnection, base: Optional[str] = None) -> str:
        """The backend URL for a request or WebSocket, keeping the client's path encoding."""
        raw_path = conn.scope.get("raw_path") or conn.url.path.encode("utf-8")
        target = (base or self.backend_base_url) + raw_path.split(b"?", 1)[0].decode("latin-1")
        query = conn.scope.get("query_string", b"")
        if query:
            target += "?" + query.decode("latin-1")
        return target

    async def _relay_request_body(self, request: Request, session: ConnectionSession):
        async for chunk in request.stream():
            if chunk:
                session.bytes_to_backend += len(chunk)
                yield chunk
        session.state = RelayState.HALF_CLOSED

    async def _relay_response_body(self, upstream: httpx.Response, session: ConnectionSession):
        try:
            async for chunk in upstream.aiter_raw():
                session.bytes_to_client += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            # Aborting the response tells the client the body is incomplete.
            error = SessionError(f"backend stream broke after {session.bytes_to_client} bytes: {e!r}")
            self.close_session(session, error)
            raise error from e
        except asyncio.CancelledError:
            # The client went away or the server is shutting down; _finish will not run.
            self.close_session(session, SessionError(f"response cut off after {session.bytes_to_client} bytes"))
            await upstream.aclose()
            raise

    #* --- WebSocket handling ---
    async def proxy_websocket(self, websocket: WebSocket) -> None:
        """
        Relays a WebSocket to the backend, frame by frame in both directions.

        The backend's handshake answer decides the outcome: its subprotocol is
        accepted towards the client, and a refusal is passed back as is.
        """
        if not self.can_forward():
            await deny_websocket(websocket, error_response(503, self.not_ready_message()))
            return

        client_host = websocket.client.host if websocket.client else None
        session = self.open_session(f"{client_host}:{websocket.client.port}" if websocket.client else "unknown")
        try:
            upstream = await websocket_connect(
                self.upstream_url(websocket, self.backend_websocket_url),
                additional_headers=proxy_headers.upstream_websocket_headers(
                    websocket.headers.raw, client_host, websocket.url.scheme
                ),
                subprotocols=websocket.scope.get("subprotocols") or None,
                user_agent_header=None,
                compression=None,
                open_timeout=settings.UPSTREAM_CONNECT_TIMEOUT,
                ping_interval=None,
                max_size=None,
                proxy=None,
            )
        except InvalidStatus as e:
            self.close_session(session, SessionError(f"backend refused the upgrade with {e.response.status_code}"))
            await deny_websocket(websocket, Response(e.response.body, status_code=e.response.status_code))
            return
        except (OSError, asyncio.TimeoutError, InvalidHandshake) as e:
            self.close_session(session, SessionError(f"backend unreachable: {e!r}"))
            await deny_websocket(
                websocket, error_response(502, f"{HTTP_REASONS[502]}: the gateway backend could not be reached.")
            )
            return

        await websocket.accept(subprotocol=upstream.subprotocol)
        error = None
        try:
            await self._relay_websocket(websocket, upstream, session)
        except Exception as e:
            error = SessionError(f"WebSocket relay failed: {e!r}")
        finally:
            await upstream.close()
            if (websocket.application_state is WebSocketState.CONNECTED
                    and websocket.client_state is WebSocketState.CONNECTED):
                await websocket.close(code=1011 if error else 1000)
            self.close_session(session, error)

    async def _relay_websocket(self, websocket: WebSocket, upstream: ClientConnection, session: ConnectionSession):
        tasks = {
            asyncio.create_task(self._websocket_to_backend(websocket, upstream, session)),
            asyncio.create_task(self._websocket_to_client(websocket, upstream, session)),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            task.result()

    async def _websocket_to_backend(self, websocket: WebSocket, upstream: ClientConnection, session: ConnectionSession):
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                session.state = RelayState.HALF_CLOSED
                await upstream.close(
                    code=relayable_close_code(message.get("code")), reason=message.get("reason") or ""
                )
                return
            if message.get("bytes") is not None:
                session.bytes_to_backend += len(message["bytes"])
                await upstream.send(message["bytes"])
            elif message.get("text") is not None:
                session.bytes_to_backend += len(message["text"])
                await upstream.send(message["text"])

    async def _websocket_to_client(self, websocket: WebSocket, upstream: ClientConnection, session: ConnectionSession):
        try:
            async for data in upstream:
                session.bytes_to_client += len(data)
                if isinstance(data, str):
                    await websocket.send_text(data)
                else:
                    await websocket.send_bytes(data)
        except ConnectionClosed:
            pass
        session.state = RelayState.HALF_CLOSED
        await websocket.close(code=relayable_close_code(upstream.close_code), reason=upstream.close_reason or None)

    async def _finish(self, upstream: httpx.Response, session: ConnectionSession) -> None:
        await upstream.aclose()
        if session.state is not RelayState.CLOSED:
            self.close_session(session)

    #* --- Serving ---
    def hypercorn_config(self) -> HypercornConfig:
        hc = HypercornConfig()
        host = self.config.listen_host
        hc.bind = [f"[{host}]:{self.config.listen_port}" if ":" in host else f"{host}:{self.config.listen_port}"]
        hc.graceful_timeout = self.config.shutdown_grace
        hc.accesslog = logging.getLogger("hypercorn.access")
        hc.errorlog = logging.getLogger("hypercorn.error")
        # Chat clients keep connections open between messages.
        hc.keep_alive_timeout = 75
        return hc

    async def start(self) -> None:
        """Binds the external port and starts serving in the background."""
        self._shutdown_event = asyncio.Event()
        self._serve_task = asyncio.create_task(
            serve(self.app, self.hypercorn_config(), shutdown_trigger=self._shutdown_event.wait),
            name="HttpForwarder"
        )

        probe_host = "127.0.0.1" if self.config.listen_host in ("0.0.0.0", "::", "") else self.config.listen_host
        loop = asyncio.get_running_loop()
        deadline = loop.time() + BIND_TIMEOUT
        while loop.time() < deadline:
            if self._serve_task.done():
                # Bind failures surface here.
                self._serve_task.result()
                raise OSError(f"HTTP forwarder stopped while binding port {self.config.listen_port}.")
            if await tcp_probe(probe_host, self.config.listen_port, 0.5):
                log.info(f"Forwarding HTTP on {self.config.listen_host}:{self.config.listen_port} "
                         f"to {self.backend_base_url}")
                return
            await asyncio.sleep(0.05)
        raise OSError(f"HTTP forwarder did not bind port {self.config.listen_port} within {BIND_TIMEOUT}s.")

    async def stop(self, grace: float) -> None:
        """
        Stops accepting, lets in-flight requests finish for up to `grace`
        seconds and then cuts the remainder off.
        """
        self.draining = True
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if self._serve_task is not None:
            try:
                await asyncio.wait_for(self._serve_task, grace + BIND_TIMEOUT)
            except asyncio.TimeoutError:
                log.warning("HTTP server did not stop in time. Cancelling it.")
            except Exception as e:
                log.error(f"HTTP server failed during shutdown: {e}", exc_info=True)
        if self.active_sessions:
            log.warning(f"{self.active_sessions} request(s) were still in flight when the server stopped.")
        await self.client.aclose()
        log.info("HTTP forwarder stopped.")


def create_proxy_app(forwarder: HttpForwarder) -> Starlette:
    """
    Builds the ASGI app for a forwarder.

    Tests drive it in-process with httpx.ASGITransport(app=forwarder.app).
    """
    routes = []
    health_path = forwarder.config.supervisor_health_path
    if health_path:
        routes.append(Route(health_path, endpoint=forwarder.supervisor_health, methods=["GET", "HEAD"]))
    routes.append(WebSocketRoute("/{path:path}", endpoint=forwarder.proxy_websocket))
    routes.append(Route("/{path:path}", endpoint=forwarder.proxy, methods=PROXY_METHODS))

    app = Starlette(debug=False, routes=routes)
    app.state.forwarder = forwarder
    return app
