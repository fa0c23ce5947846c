import os
import sys
import signal
import psutil
import logging
import threading
import subprocess
from typing import Any, Dict, Iterable, List

log = logging.getLogger(__name__)


#* --- Process Status ---
def proc_status_string(proc: psutil.Process) -> str:
    """Gets a string representation of a process status."""
    try:
        if proc.status() == psutil.STATUS_ZOMBIE:
            return "zombie"
        return "running"
    except psutil.NoSuchProcess:
        return "stopped"
    except psutil.Error:
        return "unknown"


def describe_returncode(returncode: int) -> str:
    """Renders a Popen return code, naming the signal for negative codes."""
    if returncode < 0:
        try:
            return f"signal {-returncode} ({signal.Signals(-returncode).name})"
        except ValueError:
            return f"signal {-returncode}"
    return f"code {returncode}"


#* --- Process Creation ---
def get_popen_kwargs() -> Dict[str, Any]:
    """
    Returns platform-specific keyword arguments for subprocess.Popen.

    On POSIX the child gets its own session, which makes it the leader of a new
    process group. Signals can then be delivered to the backend and everything
    it forks in one call.
    """
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def _read_pipe(pipe, logger_name: str, level: int) -> None:
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(logger_name)
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            proc_logger.log(level, line)
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {logger_name} exited: {e}")
    finally:
        pipe.close()


def log_process_output(process: subprocess.Popen, logger_name: str) -> List[threading.Thread]:
    """
    Starts background threads that consume a process's stdout/stderr line by line.

    Consuming both pipes continuously keeps the child from blocking on a full
    pipe buffer. stdout lines are logged at INFO and stderr lines at WARNING on
    the given logger, whose 'proc.' prefix marks them as backend output.

    :param process: The `subprocess.Popen` object to monitor.
    :param logger_name: The logger the lines are relayed to.
    :return: The started reader threads.
    """
    threads = []
    streams = ((process.stdout, logging.INFO, "stdout"), (process.stderr, logging.WARNING, "stderr"))
    for pipe, level, stream_name in streams:
        if pipe is None:
            continue
        thread = threading.Thread(
            target=_read_pipe,
            args=(pipe, logger_name, level),
            daemon=True,
            name=f"{logger_name}-{stream_name}-{process.pid}"
        )
        thread.start()
        threads.append(thread)
    return threads


#* --- PID 1 duties ---
def is_init_process() -> bool:
    """True when this process is the init process of its PID namespace."""
    return os.getpid() == 1


def reap_orphans(tracked_pids: Iterable[int] = ()) -> List[int]:
    """
    Reaps zombie children that nobody else is waiting for.

    Processes forked by the backend and orphaned get re-parented to PID 1. When
    the supervisor is PID 1 they would linger as zombies forever unless
    collected here. Tracked PIDs are skipped: their Popen objects own the exit
    status.

    :param tracked_pids: PIDs whose exit status is collected elsewhere.
    :return: The PIDs that were reaped.
    """
    skip = set(tracked_pids)
    reaped = []
    try:
        children = psutil.Process().children()
    except psutil.Error:
        return reaped

    for child in children:
        if child.pid in skip:
            continue
        if proc_status_string(child) != "zombie":
            continue
        try:
            pid, status = os.waitpid(child.pid, os.WNOHANG)
        except ChildProcessError:
            continue
        if pid:
            reaped.append(pid)
            log.debug(f"Reaped orphaned process {pid} (status {status}).")
    return reaped
