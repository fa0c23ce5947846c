import os
import math
import shlex
import shutil
import logging
from pathlib import Path
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from gatewrap import settings
from gatewrap.local.errors import ConfigError

log = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1", "0.0.0.0", "::"}
_TRUTHY = ('true', '1', 't', 'yes', 'y')


@dataclass(frozen=True)
class Configuration:
    """
    The supervisor's immutable runtime configuration.

    Built once at startup by `load()`. Any change requires a process restart.
    """
    listen_port: int
    backend_command: str
    listen_host: str = settings.DEFAULT_LISTEN_HOST
    backend_host: str = settings.DEFAULT_BACKEND_HOST
    backend_port: int = settings.DEFAULT_BACKEND_PORT
    backend_args: Tuple[str, ...] = ()
    backend_env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    storage_paths: Mapping[str, Path] = field(default_factory=lambda: MappingProxyType({}))
    health_path: Optional[str] = None
    startup_timeout: float = settings.BACKEND_STARTUP_TIMEOUT
    shutdown_grace: float = settings.SHUTDOWN_GRACE_PERIOD
    probe_interval: float = settings.READINESS_PROBE_INTERVAL
    max_restarts: int = settings.MAX_RESTART_ATTEMPTS
    restart_window: float = settings.RESTART_WINDOW_SECONDS
    restart_backoff: float = settings.RESTART_BACKOFF_SECONDS
    forward_mode: str = settings.DEFAULT_FORWARD_MODE
    relay_buffer_size: int = settings.RELAY_BUFFER_SIZE
    supervisor_health_path: str = settings.DEFAULT_SUPERVISOR_HEALTH_PATH
    log_level: int = logging.INFO
    loki_url: Optional[str] = None
    loki_org_id: Optional[str] = None

    @property
    def backend_address(self) -> str:
        return f"{self.backend_host}:{self.backend_port}"

    def child_environment(self, base: Optional[Mapping[str, str]] = None) -> dict:
        """
        Builds the environment the backend process is started with.

        The storage roots are exported and their binary directories are put in
        front of PATH so that globally-installed tools survive redeploys.

        :param base: The environment to extend. Defaults to the supervisor's own.
        :return: A fresh dictionary, safe to hand to subprocess.Popen.
        """
        env = dict(os.environ if base is None else base)
        env.update(self.backend_env)
        for name, path in self.storage_paths.items():
            env[name] = str(path)
        env["PATH"] = storage_search_path(self.storage_paths, env.get("PATH", ""))
        return env


def storage_search_path(storage_paths: Mapping[str, Path], current_path: str) -> str:
    """Prepends the binary directories of the storage roots to a PATH string."""
    bin_dirs = []
    for name, sub_dir in settings.STORAGE_BIN_DIRS:
        if name in storage_paths:
            root = storage_paths[name]
            bin_dirs.append(str(root / sub_dir) if sub_dir else str(root))
    return os.pathsep.join(bin_dirs + ([current_path] if current_path else []))


#* --- Parsing helpers ---
def _get(environ: Mapping[str, str], key: str) -> Optional[str]:
    """Returns a stripped environment value, treating blank values as unset."""
    value = environ.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_port(raw: Optional[str], key: str) -> int:
    if raw is None:
        raise ConfigError(f"{key} is not set. The platform must inject the port to listen on.")
    try:
        port = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{raw}'.") from None
    if not 1 <= port <= 65535:
        raise ConfigError(f"{key} must be between 1 and 65535, got {port}.")
    return port


def _parse_number(environ: Mapping[str, str], key: str, default, cast=float, allow_zero: bool = False):
    raw = _get(environ, key)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got '{raw}'.") from None
    if not math.isfinite(value):
        raise ConfigError(f"{key} must be a finite number, got '{raw}'.")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{key} must be {'non-negative' if allow_zero else 'positive'}, got {raw}.")
    return value


def _parse_log_level(raw: Optional[str]) -> int:
    name = (raw or settings.DEFAULT_LOG_LEVEL).upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ConfigError(f"LOG_LEVEL '{raw}' is not a valid logging level.")
    return level


def resolve_executable(command: str, path: Optional[str] = None) -> str:
    """
    Resolves the backend command to an absolute, executable path.

    :param command: A bare program name (looked up on PATH) or a filesystem path.
    :param path: The PATH string to search. Defaults to the process PATH.
    :return: The absolute path of the executable.
    :raises ConfigError: If the executable does not exist or is not executable.
    """
    if os.sep in command or (os.altsep and os.altsep in command):
        candidate = Path(command).expanduser().resolve()
        if not candidate.is_file():
            raise ConfigError(f"Backend executable '{candidate}' does not exist.")
        if not os.access(candidate, os.X_OK):
            raise ConfigError(f"Backend executable '{candidate}' is not executable.")
        return str(candidate)

    found = shutil.which(command, path=path)
    if not found:
        raise ConfigError(f"Backend executable '{command}' was not found on PATH.")
    return found


def _storage_paths(environ: Mapping[str, str]) -> Mapping[str, Path]:
    data_dir = Path(_get(environ, "DATA_DIR") or settings.DEFAULT_DATA_DIR)
    paths = {}
    for name, sub_dir in settings.STORAGE_PATH_DEFAULTS.items():
        raw = _get(environ, name)
        paths[name] = Path(raw) if raw else data_dir / sub_dir
    return MappingProxyType(paths)


def _backend_env(environ: Mapping[str, str]) -> Mapping[str, str]:
    prefix = settings.BACKEND_ENV_PREFIX
    extra = {}
    for key, value in environ.items():
        if key.startswith(prefix) and len(key) > len(prefix):
            extra[key[len(prefix):]] = value
    return MappingProxyType(extra)


def load(environ: Optional[Mapping[str, str]] = None) -> Configuration:
    """
    Reads the environment into an immutable Configuration.

    Deterministic for a given environment snapshot and free of side effects
    beyond reading it.

    :param environ: The environment to read. Defaults to os.environ.
    :return: The validated Configuration.
    :raises ConfigError: If PORT is missing or malformed, the backend executable
                         cannot be found, or any other value is invalid.
    """
    env = os.environ if environ is None else environ

    listen_port = _parse_port(_get(env, "PORT"), "PORT")
    listen_host = _get(env, "LISTEN_HOST") or settings.DEFAULT_LISTEN_HOST

    backend_host = _get(env, "BACKEND_HOST") or settings.DEFAULT_BACKEND_HOST
    raw_backend_port = _get(env, "BACKEND_PORT") or _get(env, "INTERNAL_GATEWAY_PORT")
    backend_port = (
        _parse_port(raw_backend_port, "BACKEND_PORT")
        if raw_backend_port is not None else settings.DEFAULT_BACKEND_PORT
    )
    if backend_port == listen_port and backend_host in LOOPBACK_HOSTS:
        raise ConfigError(
            f"BACKEND_PORT and PORT are both {listen_port}. The supervisor would proxy to itself."
        )

    storage_paths = _storage_paths(env)

    # The command is looked up on the PATH the backend will actually see.
    backend_command = resolve_executable(
        _get(env, "BACKEND_COMMAND") or settings.DEFAULT_BACKEND_COMMAND,
        path=storage_search_path(storage_paths, env.get("PATH", "")),
    )

    log.debug(f"Backend command resolved to {backend_command}.")

    raw_args = env.get("BACKEND_ARGS")
    if raw_args is None:
        raw_args = settings.DEFAULT_BACKEND_ARGS
    try:
        backend_args = tuple(
            arg.format(backend_port=backend_port, backend_host=backend_host)
            for arg in shlex.split(raw_args)
        )
    except (ValueError, KeyError, IndexError) as e:
        raise ConfigError(f"BACKEND_ARGS could not be parsed: {e}") from None

    forward_mode = (_get(env, "FORWARD_MODE") or settings.DEFAULT_FORWARD_MODE).lower()
    if forward_mode not in settings.FORWARD_MODES:
        raise ConfigError(
            f"FORWARD_MODE must be one of {', '.join(settings.FORWARD_MODES)}, got '{forward_mode}'."
        )

    health_path = _get(env, "BACKEND_HEALTH_PATH")
    if health_path and not health_path.startswith("/"):
        health_path = "/" + health_path

    supervisor_health_path = env.get("SUPERVISOR_HEALTH_PATH")
    if supervisor_health_path is None:
        supervisor_health_path = settings.DEFAULT_SUPERVISOR_HEALTH_PATH
    supervisor_health_path = supervisor_health_path.strip()
    if supervisor_health_path and not supervisor_health_path.startswith("/"):
        supervisor_health_path = "/" + supervisor_health_path

    return Configuration(
        listen_host=listen_host,
        listen_port=listen_port,
        backend_host=backend_host,
        backend_port=backend_port,
        backend_command=backend_command,
        backend_args=backend_args,
        backend_env=_backend_env(env),
        storage_paths=storage_paths,
        health_path=health_path,
        startup_timeout=_parse_number(env, "BACKEND_STARTUP_TIMEOUT", settings.BACKEND_STARTUP_TIMEOUT),
        shutdown_grace=_parse_number(env, "SHUTDOWN_GRACE_PERIOD", settings.SHUTDOWN_GRACE_PERIOD, allow_zero=True),
        probe_interval=_parse_number(env, "READINESS_PROBE_INTERVAL", settings.READINESS_PROBE_INTERVAL),
        max_restarts=_parse_number(env, "MAX_RESTART_ATTEMPTS", settings.MAX_RESTART_ATTEMPTS, cast=int, allow_zero=True),
        restart_window=_parse_number(env, "RESTART_WINDOW_SECONDS", settings.RESTART_WINDOW_SECONDS),
        restart_backoff=_parse_number(env, "RESTART_BACKOFF_SECONDS", settings.RESTART_BACKOFF_SECONDS, allow_zero=True),
        forward_mode=forward_mode,
        relay_buffer_size=_parse_number(env, "RELAY_BUFFER_SIZE", settings.RELAY_BUFFER_SIZE, cast=int),
        supervisor_health_path=supervisor_health_path,
        log_level=_parse_log_level(_get(env, "LOG_LEVEL")),
        loki_url=_get(env, "LOKI_URL"),
        loki_org_id=_get(env, "LOKI_ORG_ID"),
    )


def is_verbose(environ: Optional[Mapping[str, str]] = None) -> bool:
    """True when VERBOSE is set to a truthy value."""
    env = os.environ if environ is None else environ
    return (env.get("VERBOSE") or "").lower() in _TRUTHY
