import sys
import time
import socket
import pathlib
from types import MappingProxyType

import pytest

from gatewrap.local.config import Configuration

BACKEND_SCRIPT = pathlib.Path(__file__).with_name("fake_backend.py")


@pytest.fixture
def anyio_backend():
    return "asyncio"


def free_port() -> int:
    """A loopback port that nothing listens on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def backend_argv(port: int, *extra: str):
    return (str(BACKEND_SCRIPT), "--port", str(port), *extra)


@pytest.fixture
def make_config(tmp_path):
    """
    Builds a Configuration that runs fake_backend.py with the current
    interpreter on free loopback ports. Extra positional arguments are passed
    to the backend script; keyword arguments override Configuration fields.
    """
    def factory(*backend_extra: str, **overrides) -> Configuration:
        backend_port = overrides.pop("backend_port", None) or free_port()
        values = dict(
            listen_host="127.0.0.1",
            listen_port=free_port(),
            backend_host="127.0.0.1",
            backend_port=backend_port,
            backend_command=sys.executable,
            backend_args=backend_argv(backend_port, *backend_extra),
            storage_paths=MappingProxyType({"NPM_CONFIG_PREFIX": tmp_path / "npm", "PNPM_HOME": tmp_path / "pnpm"}),
            startup_timeout=10.0,
            shutdown_grace=2.0,
            probe_interval=0.05,
            restart_backoff=0.05,
        )
        values.update(overrides)
        return Configuration(**values)
    return factory


def wait_for_port(port: int, timeout: float = 10.0) -> bool:
    """Blocks until something accepts connections on the loopback port."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.5):
                return True
        except OSError:
            time.sleep(0.05)
    return False
