"""
The Lifecycle Controller.

Owns the supervisor state machine and the event loop side of supervision:
it starts the forwarder, spawns and probes the backend, restarts it within
the restart budget when it exits, and drains everything on SIGTERM/SIGINT.
"""

import time
import signal
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from gatewrap import settings
from gatewrap.local.config import Configuration
from gatewrap.local.errors import BackendCrash, IllegalTransition, ReadinessTimeout, SpawnError, SupervisorError
from gatewrap.local.supervisor import (
    BackendProcessHandle, ForcedKill, ProbeResult, ProcessManager, RestartBudget, await_ready,
)
from gatewrap.local.supervisor import process_utils
from gatewrap.web import HttpForwarder, TcpForwarder
from gatewrap.web.session import Forwarder

log = logging.getLogger(__name__)


class SupervisorState(Enum):
    INITIALIZING = "initializing"
    AWAITING_BACKEND_READY = "awaiting_backend_ready"
    SERVING = "serving"
    DRAINING = "draining"
    TERMINATED = "terminated"


ALLOWED_TRANSITIONS = {
    SupervisorState.INITIALIZING: {SupervisorState.AWAITING_BACKEND_READY, SupervisorState.DRAINING},
    SupervisorState.AWAITING_BACKEND_READY: {SupervisorState.SERVING, SupervisorState.DRAINING},
    SupervisorState.SERVING: {SupervisorState.AWAITING_BACKEND_READY, SupervisorState.DRAINING},
    SupervisorState.DRAINING: {SupervisorState.TERMINATED},
    SupervisorState.TERMINATED: set(),
}

ForwarderFactory = Callable[[Configuration, Callable[[], bool], Callable[[], Dict[str, Any]]], Forwarder]


def create_forwarder(
    config: Configuration,
    is_ready: Callable[[], bool],
    status_provider: Callable[[], Dict[str, Any]],
) -> Forwarder:
    """Builds the forwarder selected by FORWARD_MODE."""
    if config.forward_mode == "tcp":
        return TcpForwarder(config, is_ready)
    return HttpForwarder(config, is_ready, status_provider=status_provider)


class LifecycleController:
    """
    Drives the supervisor from startup to exit.

    All state lives on the instance, so several controllers can run side by
    side in one process (the tests do).

    :param config: The validated configuration.
    :param process_manager: Manager for the backend. A fresh one is created when None.
    :param forwarder_factory: Builds the forwarder. Defaults to create_forwarder.
    :param clock: Monotonic clock used for probing and the restart budget.
    :param install_signal_handlers: Whether SIGTERM/SIGINT start a drain.
    """

    def __init__(
        self,
        config: Configuration,
        process_manager: Optional[ProcessManager] = None,
        forwarder_factory: Optional[ForwarderFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        install_signal_handlers: bool = True,
    ) -> None:
        self.config = config
        self.process_manager = process_manager or ProcessManager()
        self.process_manager.on_exit = self._notify_exit
        self.clock = clock
        self.budget = RestartBudget(config.max_restarts, config.restart_window, clock=clock)
        self.forwarder = (forwarder_factory or create_forwarder)(config, self.is_serving, self.status)
        self.install_signal_handlers = install_signal_handlers

        self.state = SupervisorState.INITIALIZING
        self.history: List[SupervisorState] = [self.state]
        self.restarts = 0

        self._state_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handle: Optional[BackendProcessHandle] = None
        self._stop_requested: Optional[asyncio.Event] = None
        self._backend_exited: Optional[asyncio.Event] = None
        self._exits: Optional[asyncio.Queue] = None
        self._forwarder_started = False
        self._reaper_task: Optional[asyncio.Task] = None
        self._signals: List[int] = []

    #* --- Status ---
    def is_serving(self) -> bool:
        """The forwarder gate: True only while a live backend is being served."""
        handle = self._handle
        return (
            self.state is SupervisorState.SERVING
            and handle is not None
            and not handle.exited.is_set()
        )

    def status(self) -> Dict[str, Any]:
        handle = self._handle
        return {
            "state": self.state.value,
            "backend_pid": handle.pid if handle is not None else None,
            "backend_state": handle.state.value if handle is not None else None,
            "restarts": self.restarts,
        }

    async def _transition(self, target: SupervisorState) -> None:
        async with self._state_lock:
            if target not in ALLOWED_TRANSITIONS[self.state]:
                raise IllegalTransition(f"Cannot go from {self.state.name} to {target.name}.")
            log.info(f"Supervisor state: {self.state.name} -> {target.name}")
            self.state = target
            self.history.append(target)

    #* --- Entry ---
    async def run(self) -> int:
        """
        Runs the supervisor until it is told to stop or cannot go on.

        :return: The process exit code.
        """
        self._loop = asyncio.get_running_loop()
        self._stop_requested = asyncio.Event()
        self._backend_exited = asyncio.Event()
        self._exits = asyncio.Queue()
        self._install_signal_handlers()

        code = settings.EXIT_OK
        main_task = asyncio.create_task(self._main(), name="Supervision")
        stop_task = asyncio.create_task(self._stop_requested.wait(), name="StopWaiter")
        try:
            await asyncio.wait({main_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if not main_task.done():
                main_task.cancel()
            try:
                await main_task
            except asyncio.CancelledError:
                pass
        except SupervisorError as e:
            log.critical(f"{type(e).__name__}: {e}")
            code = e.exit_code
        except OSError as e:
            log.critical(f"Could not serve on port {self.config.listen_port}: {e}")
            code = settings.EXIT_INTERNAL_ERROR
        except Exception as e:
            log.critical(f"Unexpected supervisor failure: {e}", exc_info=True)
            code = settings.EXIT_INTERNAL_ERROR
        finally:
            stop_task.cancel()
            await self._drain()
            await self._transition(SupervisorState.TERMINATED)
            self._remove_signal_handlers()

        log.info(f"Supervisor exiting with code {code}.")
        return code

    def request_stop(self) -> None:
        """Starts a graceful drain. Safe to call more than once."""
        if self._stop_requested is None:
            return
        if self._stop_requested.is_set():
            log.warning("Stop already requested. Still draining.")
            return
        self._stop_requested.set()

    async def _main(self) -> None:
        await self._initialize()
        await self._start_backend()
        await self._supervise()

    #* --- Phases ---
    async def _initialize(self) -> None:
        for name, path in self.config.storage_paths.items():
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                log.warning(f"Could not create {name} directory '{path}': {e}")

        await self.forwarder.start()
        self._forwarder_started = True

        if process_utils.is_init_process():
            log.info("Running as PID 1. Orphaned processes will be reaped.")
            self._reaper_task = asyncio.create_task(self._reap_orphans(), name="OrphanReaper")

    async def _start_backend(self) -> None:
        """
        Spawns the backend and waits until it is ready.

        :raises SpawnError: If the executable cannot be started.
        :raises ReadinessTimeout: If the backend dies or stays silent past the startup timeout.
        """
        if self.state is not SupervisorState.AWAITING_BACKEND_READY:
            await self._transition(SupervisorState.AWAITING_BACKEND_READY)

        self._backend_exited.clear()
        handle = self.process_manager.spawn(
            self.config.backend_command,
            self.config.backend_args,
            env=self.config.child_environment(),
        )
        self._handle = handle

        result = await await_ready(
            handle,
            self.config.backend_port,
            self.config.startup_timeout,
            host=self.config.backend_host,
            interval=self.config.probe_interval,
            health_path=self.config.health_path,
            is_alive=self.process_manager.is_alive,
            exited=self._backend_exited,
            clock=self.clock,
        )
        if result is ProbeResult.READY and self.process_manager.mark_ready(handle):
            await self._transition(SupervisorState.SERVING)
            self.process_manager.mark_running(handle)
            log.info(f"Serving traffic on port {self.config.listen_port} (backend PID {handle.pid}).")
            return

        if result is ProbeResult.TIMED_OUT:
            await self._stop_backend(handle)
            message = f"Backend did not accept connections within {self.config.startup_timeout:.0f}s."
        else:
            await self._loop.run_in_executor(None, handle.exited.wait, 1.0)
            message = (f"Backend exited with {process_utils.describe_returncode(handle.exit_code)} "
                       f"before becoming ready.")
        self.process_manager.discard(handle)
        raise ReadinessTimeout(message)

    async def _supervise(self) -> None:
        """Waits for backend exits and restarts it while the budget allows."""
        while True:
            handle, returncode = await self._exits.get()
            if handle is not self._handle:
                continue
            log.error(f"Backend (PID {handle.pid}) stopped unexpectedly with "
                      f"{process_utils.describe_returncode(returncode)}.")
            self.process_manager.discard(handle)
            await self._restart()

    async def _restart(self) -> None:
        while True:
            if not self.budget.try_acquire():
                raise BackendCrash(
                    f"Backend crashed more than {self.config.max_restarts} time(s) "
                    f"within {self.config.restart_window:.0f}s. Giving up."
                )
            self.restarts += 1
            # A failed attempt leaves us in AWAITING_BACKEND_READY already.
            if self.state is not SupervisorState.AWAITING_BACKEND_READY:
                await self._transition(SupervisorState.AWAITING_BACKEND_READY)
            log.info(f"Restarting backend in {self.config.restart_backoff:.1f}s "
                     f"(restart {self.restarts}, {self.budget.remaining} left in window).")
            await asyncio.sleep(self.config.restart_backoff)
            try:
                await self._start_backend()
                return
            except (SpawnError, ReadinessTimeout) as e:
                log.error(f"Restart attempt failed: {e}")

    async def _drain(self) -> None:
        if self.state in (SupervisorState.DRAINING, SupervisorState.TERMINATED):
            return
        await self._transition(SupervisorState.DRAINING)

        if self._forwarder_started:
            await self.forwarder.stop(self.config.shutdown_grace)
        if self._handle is not None:
            await self._stop_backend(self._handle)
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            await asyncio.gather(self._reaper_task, return_exceptions=True)

    async def _stop_backend(self, handle: BackendProcessHandle) -> None:
        if handle.exited.is_set():
            return
        result = await self._loop.run_in_executor(
            None, self.process_manager.terminate, handle, self.config.shutdown_grace
        )
        if isinstance(result, ForcedKill):
            log.warning(f"Backend (PID {result.pid}) was killed after ignoring SIGTERM.")
        else:
            log.info(f"Backend stopped with {process_utils.describe_returncode(result)}.")

    async def _reap_orphans(self) -> None:
        while True:
            await asyncio.sleep(settings.ORPHAN_REAP_INTERVAL)
            reaped = process_utils.reap_orphans(self.process_manager.tracked_pids())
            if reaped:
                log.debug(f"Reaped orphaned process(es): {reaped}")

    #* --- Cross-thread and signal plumbing ---
    def _notify_exit(self, handle: BackendProcessHandle, returncode: int) -> None:
        """Called on the watcher thread. Hands the exit to the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_backend_exit, handle, returncode)
        except RuntimeError:
            log.debug(f"Event loop closed before the exit of PID {handle.pid} was delivered.")

    def _on_backend_exit(self, handle: BackendProcessHandle, returncode: int) -> None:
        if handle is self._handle:
            self._backend_exited.set()
        if self.state in (SupervisorState.SERVING, SupervisorState.AWAITING_BACKEND_READY):
            self._exits.put_nowait((handle, returncode))

    def _on_signal(self, signum: int) -> None:
        name = signal.Signals(signum).name
        if self._stop_requested.is_set():
            log.warning(f"Received {name} while already draining. Ignoring.")
            return
        log.info(f"Received {name}. Shutting down gracefully...")
        self._stop_requested.set()

    def _install_signal_handlers(self) -> None:
        if not self.install_signal_handlers:
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                log.warning(f"Could not install handler for {sig.name}: {e}")

    def _remove_signal_handlers(self) -> None:
        for sig in self._signals:
            self._loop.remove_signal_handler(sig)
        self._signals.clear()
