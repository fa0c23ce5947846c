import os
import sys
import signal
import psutil
import logging
import subprocess
from typing import List

log = logging.getLogger(__name__)


def identify_descendants(pid: int) -> List[psutil.Process]:
    """
    Identifies every descendant of a process, recursively.

    Collected before the process is signalled: once it exits, its children are
    re-parented and can no longer be found through it.

    :param pid: The PID of the root process.
    :return: A list of psutil.Process objects, possibly empty.
    """
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    except psutil.Error as e:
        log.warning(f"Could not list children of PID {pid}: {e}")
        return []


def signal_process_group(process: subprocess.Popen, sig: int) -> None:
    """
    Sends a signal to the backend's whole process group.

    Falls back to signalling only the process itself when the group is gone or
    the platform has no process groups.

    :param process: The backend's Popen object. It must have been started as a
                    session leader for the group to exist.
    :param sig: The signal number.
    """
    if process.poll() is not None:
        return
    if sys.platform != "win32":
        try:
            os.killpg(process.pid, sig)
            return
        except ProcessLookupError:
            return
        except PermissionError as e:
            log.warning(f"Could not signal process group {process.pid}: {e}. Signalling the process only.")
    if sig == getattr(signal, "SIGKILL", None):
        process.kill()
    else:
        process.send_signal(sig)


def _terminate_processes(processes: List[psutil.Process]) -> None:
    """Sends SIGTERM to all given processes."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to {proc.name()} (PID {proc.pid})")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    if not processes:
        return

    log.warning(f"{len(processes)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            continue


def stop_stragglers(processes: List[psutil.Process], timeout: float) -> None:
    """
    Makes sure that descendants of the backend do not outlive it.

    Anything that escaped the process group (or ignored the group signal) gets
    SIGTERM, then SIGKILL once `timeout` has passed.

    :param processes: Descendants captured before the backend was signalled.
    :param timeout: Seconds to wait between SIGTERM and SIGKILL.
    """
    alive = []
    for proc in processes:
        try:
            if proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE:
                alive.append(proc)
        except psutil.NoSuchProcess:
            continue
    if not alive:
        return

    _terminate_processes(alive)
    try:
        _, alive = psutil.wait_procs(alive, timeout=timeout)
    except psutil.Error:
        pass
    _forceful_kill(alive)
