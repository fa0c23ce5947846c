import time
import shlex
import signal
import logging
import threading
import subprocess
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional, Sequence, Union

from gatewrap.local.errors import SpawnError
from gatewrap.local.supervisor import process_utils, shutdown

log = logging.getLogger(__name__)

# Seconds to wait for the exit status after SIGKILL.
KILL_WAIT_TIMEOUT = 5.0
# Seconds given to descendants that outlived the backend.
STRAGGLER_TIMEOUT = 1.0


class BackendState(Enum):
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


@dataclass(frozen=True)
class ForcedKill:
    """Returned by terminate() when the backend had to be SIGKILLed."""
    pid: int
    returncode: Optional[int] = None


@dataclass(eq=False)
class BackendProcessHandle:
    """
    The single supervised backend process.

    Only the ProcessManager that created a handle writes to it. Everyone else
    reads `state`, `exit_code` and `exited`.
    """
    pid: int
    command: Sequence[str]
    popen: subprocess.Popen = field(repr=False)
    state: BackendState = BackendState.STARTING
    exit_code: Optional[int] = None
    started_at: float = field(default_factory=time.monotonic)
    output_threads: List[threading.Thread] = field(default_factory=list, repr=False)
    exited: threading.Event = field(default_factory=threading.Event, repr=False)
    stop_requested: bool = False

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at


ExitCallback = Callable[[BackendProcessHandle, int], None]


class ProcessManager:
    """
    Spawns, watches and stops the backend process.

    The backend is treated as an opaque program: anything that can be started
    from a command line, exits with a status, and writes lines to stdout/stderr
    can be supervised. Exactly one live handle exists at a time.

    :param on_exit: Called from the watcher thread with (handle, returncode)
                    every time a backend exits, for whatever reason.
    :param name: Label for the backend's relayed output ('proc.<name>').
    """

    def __init__(self, on_exit: Optional[ExitCallback] = None, name: str = "backend") -> None:
        self.on_exit = on_exit
        self.logger_name = f"proc.{name}"
        self._lock = threading.Lock()
        self._handle: Optional[BackendProcessHandle] = None

    @property
    def current(self) -> Optional[BackendProcessHandle]:
        return self._handle

    def tracked_pids(self) -> List[int]:
        """PIDs whose exit status belongs to this manager."""
        handle = self._handle
        return [handle.pid] if handle is not None else []

    def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> BackendProcessHandle:
        """
        Starts the backend as a child process and begins relaying its output.

        :param command: Path of the executable.
        :param args: Arguments passed after the command.
        :param env: The complete child environment. Inherits ours when None.
        :param cwd: Working directory for the child.
        :return: The handle of the new process.
        :raises SpawnError: If a backend is already running or the executable cannot be started.
        """
        argv = [command, *args]
        with self._lock:
            if self._handle is not None and not self._handle.exited.is_set():
                raise SpawnError(f"Backend is already running with PID {self._handle.pid}.")

            log.info(f"Starting backend: {shlex.join(argv)}")
            try:
                popen = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=dict(env) if env is not None else None,
                    cwd=cwd,
                    **process_utils.get_popen_kwargs()
                )
            except OSError as e:
                log.critical(f"Failed to start backend '{command}': {e}")
                raise SpawnError(f"Could not start backend '{command}': {e}") from e

            handle = BackendProcessHandle(pid=popen.pid, command=tuple(argv), popen=popen)
            handle.output_threads = process_utils.log_process_output(popen, self.logger_name)
            self._handle = handle

        threading.Thread(
            target=self._watch, args=(handle,), daemon=True, name=f"BackendWatcher-{handle.pid}"
        ).start()
        log.info(f"Backend started with PID: {handle.pid}")
        return handle

    def _watch(self, handle: BackendProcessHandle) -> None:
        """Blocks until the backend exits, records the status and notifies the callback."""
        returncode = handle.popen.wait()
        # Let the relay threads drain what the backend printed last.
        for thread in handle.output_threads:
            thread.join(timeout=1.0)

        with self._lock:
            handle.exit_code = returncode
            if handle.state is not BackendState.KILLED:
                handle.state = BackendState.EXITED
            handle.exited.set()

        level = logging.INFO if handle.stop_requested else logging.WARNING
        log.log(level, f"Backend (PID {handle.pid}) exited with {process_utils.describe_returncode(returncode)} "
                       f"after {handle.uptime:.1f}s.")

        if self.on_exit is not None:
            try:
                self.on_exit(handle, returncode)
            except Exception as e:
                log.error(f"Backend exit callback failed: {e}", exc_info=True)

    def is_alive(self, handle: BackendProcessHandle) -> bool:
        """Non-blocking liveness check."""
        return not handle.exited.is_set() and handle.popen.poll() is None

    def _set_state(self, handle: BackendProcessHandle, state: BackendState) -> bool:
        with self._lock:
            if handle.exited.is_set():
                return False
            handle.state = state
            return True

    def mark_ready(self, handle: BackendProcessHandle) -> bool:
        """Records that the backend passed its readiness probe."""
        return self._set_state(handle, BackendState.READY)

    def mark_running(self, handle: BackendProcessHandle) -> bool:
        """Records that traffic is being forwarded to the backend."""
        return self._set_state(handle, BackendState.RUNNING)

    def discard(self, handle: BackendProcessHandle) -> None:
        """Drops the manager's reference to an exited handle."""
        with self._lock:
            if self._handle is handle and handle.exited.is_set():
                self._handle = None

    def terminate(self, handle: BackendProcessHandle, grace_timeout: float) -> Union[int, ForcedKill]:
        """
        Stops the backend: SIGTERM to its process group, then SIGKILL after the grace period.

        Blocking. Call it from a worker thread when running inside an event loop.

        :param handle: The backend to stop.
        :param grace_timeout: Seconds to wait for a graceful exit.
        :return: The exit status, or ForcedKill if the backend had to be killed.
        """
        if handle.exited.is_set():
            return handle.exit_code

        descendants = shutdown.identify_descendants(handle.pid)
        handle.stop_requested = True
        log.info(f"Sending SIGTERM to backend (PID {handle.pid}). Grace period: {grace_timeout}s.")
        shutdown.signal_process_group(handle.popen, signal.SIGTERM)

        result: Union[int, ForcedKill, None] = None
        if handle.exited.wait(grace_timeout):
            result = handle.exit_code
        else:
            with self._lock:
                forced = not handle.exited.is_set()
                if forced:
                    handle.state = BackendState.KILLED
            if forced:
                log.warning(f"Backend (PID {handle.pid}) ignored SIGTERM for {grace_timeout}s. Killing it.")
                shutdown.signal_process_group(handle.popen, getattr(signal, "SIGKILL", signal.SIGTERM))
                if not handle.exited.wait(KILL_WAIT_TIMEOUT):
                    log.error(f"Backend (PID {handle.pid}) is still not reaped after SIGKILL.")
                result = ForcedKill(pid=handle.pid, returncode=handle.exit_code)
            else:
                result = handle.exit_code

        shutdown.stop_stragglers(descendants, timeout=STRAGGLER_TIMEOUT)
        return result
