"""
This module contains the default configuration values for the Gateway Supervisor.
Every value here can be overridden by an environment variable of the same name,
with the exception of PORT, which has no default at all: the hosting platform
injects it and routes traffic to whatever port is actually bound.
"""

import pathlib
from dotenv import load_dotenv

# Load environment variables from a .env file, without clobbering what the
# platform already injected.
load_dotenv(override=False)

#* --- Core Paths ---
DEFAULT_DATA_DIR = pathlib.Path("/data")

#* --- Process Titles ---
SUPERVISOR_PROCESS_TITLE = "Gateway Supervisor"

#* --- Network Settings ---
# External side. PORT itself is required and intentionally absent here.
DEFAULT_LISTEN_HOST = "0.0.0.0"

# Internal side, where the backend gateway listens.
DEFAULT_BACKEND_HOST = "127.0.0.1"
DEFAULT_BACKEND_PORT = 18789

#* --- Backend Command ---
DEFAULT_BACKEND_COMMAND = "openclaw"
DEFAULT_BACKEND_ARGS = "gateway run --bind loopback --port {backend_port}"
# BACKEND_ENV_FOO=bar reaches the backend as FOO=bar.
BACKEND_ENV_PREFIX = "BACKEND_ENV_"

#* --- Supervisor Timing ---
BACKEND_STARTUP_TIMEOUT = 60.0      # seconds
SHUTDOWN_GRACE_PERIOD = 10.0        # seconds before force-killing
READINESS_PROBE_INTERVAL = 0.25     # seconds between readiness attempts
PROBE_CONNECT_TIMEOUT = 1.0         # per-attempt connect timeout
ORPHAN_REAP_INTERVAL = 2.0          # seconds, only used when running as PID 1

#* --- Restart Policy ---
MAX_RESTART_ATTEMPTS = 3
RESTART_WINDOW_SECONDS = 60.0
RESTART_BACKOFF_SECONDS = 1.0

#* --- Forwarding ---
FORWARD_MODES = ("http", "tcp")
DEFAULT_FORWARD_MODE = "http"
RELAY_BUFFER_SIZE = 64 * 1024       # bytes in flight per direction
UPSTREAM_CONNECT_TIMEOUT = 5.0
NOT_READY_RETRY_AFTER = 1           # seconds, sent as Retry-After
DEFAULT_SUPERVISOR_HEALTH_PATH = "/_supervisor/healthz"

#* --- Persistent Storage ---
# Package-manager roots that the backend's self-update and plugin installs
# write to. Defaults are relative to DATA_DIR so that a mounted volume
# persists them across deploys.
STORAGE_PATH_DEFAULTS = {
    "NPM_CONFIG_PREFIX": "npm",
    "NPM_CONFIG_CACHE": "npm-cache",
    "PNPM_HOME": "pnpm",
    "PNPM_STORE_DIR": "pnpm-store",
}
# Subdirectories of the storage roots that must be prepended to the backend's PATH.
STORAGE_BIN_DIRS = (
    ("NPM_CONFIG_PREFIX", "bin"),
    ("PNPM_HOME", ""),
)

#* --- Logging ---
DEFAULT_LOG_LEVEL = "INFO"
LOG_BUFFER_FLUSH_INTERVAL = 10
LOKI_BATCH_SIZE = 200

#* --- Exit Codes ---
EXIT_OK = 0
EXIT_INTERNAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_READINESS_FAILURE = 3
EXIT_RESTART_BUDGET_EXHAUSTED = 4
EXIT_SPAWN_FAILURE = 5
