import time
import httpx
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional

from gatewrap import settings

log = logging.getLogger(__name__)


class ProbeResult(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    BACKEND_EXITED = "backend_exited"


async def tcp_probe(host: str, port: int, timeout: float) -> bool:
    """Returns True if something accepts a TCP connection on host:port."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def _http_probe(client: httpx.AsyncClient, url: str, timeout: float) -> bool:
    """Returns True if the health URL answers with anything but a server error."""
    try:
        response = await client.get(url, timeout=timeout)
    except httpx.HTTPError:
        return False
    return response.status_code < 500


def _default_is_alive(handle: Any) -> bool:
    return not handle.exited.is_set()


async def _pause(interval: float, exited: Optional[asyncio.Event]) -> None:
    """Sleeps for one probe interval, waking early if the backend exits."""
    if exited is None:
        await asyncio.sleep(interval)
        return
    try:
        await asyncio.wait_for(exited.wait(), interval)
    except asyncio.TimeoutError:
        pass


async def await_ready(
    handle: Any,
    port: int,
    timeout: float,
    *,
    host: str = settings.DEFAULT_BACKEND_HOST,
    interval: float = settings.READINESS_PROBE_INTERVAL,
    health_path: Optional[str] = None,
    is_alive: Optional[Callable[[Any], bool]] = None,
    exited: Optional[asyncio.Event] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ProbeResult:
    """
    Waits for the backend to accept connections on its internal port.

    Polls every `interval` seconds with a TCP connect, or with an HTTP GET of
    `health_path` when one is given. Probing stops at once when the backend
    exits, so a dead process never costs the full timeout.

    :param handle: The backend being probed. Passed to `is_alive`.
    :param port: The backend's internal port.
    :param timeout: Seconds before giving up. Exceeding it is final.
    :param host: The backend's interface.
    :param interval: Seconds between attempts.
    :param health_path: HTTP path to GET instead of a bare TCP connect.
    :param is_alive: Liveness check for the handle.
    :param exited: Event set by the exit notification, used to cut sleeps short.
    :param clock: Monotonic clock, replaceable in tests.
    :return: READY, TIMED_OUT or BACKEND_EXITED.
    """
    is_alive = is_alive or _default_is_alive
    deadline = clock() + timeout
    attempts = 0
    target = f"http://{host}:{port}{health_path}" if health_path else f"{host}:{port}"
    log.info(f"Waiting up to {timeout:.0f}s for backend at {target}...")

    client = httpx.AsyncClient(trust_env=False) if health_path else None
    try:
        while True:
            if (exited is not None and exited.is_set()) or not is_alive(handle):
                log.error(f"Backend exited while starting up (after {attempts} readiness attempts).")
                return ProbeResult.BACKEND_EXITED

            remaining = deadline - clock()
            if remaining <= 0:
                log.critical(f"Backend did not become available at {target} after {timeout:.0f} seconds.")
                return ProbeResult.TIMED_OUT

            attempts += 1
            attempt_timeout = min(settings.PROBE_CONNECT_TIMEOUT, remaining)
            if client is not None:
                ready = await _http_probe(client, target, attempt_timeout)
            else:
                ready = await tcp_probe(host, port, attempt_timeout)

            if ready:
                # The process may have died between connect and now; a stale
                # listener from a previous backend must not count.
                if not is_alive(handle):
                    continue
                log.info(f"Backend is up at {target} after {attempts} attempt(s).")
                return ProbeResult.READY

            await _pause(min(interval, max(deadline - clock(), 0)), exited)
    finally:
        if client is not None:
            await client.aclose()
