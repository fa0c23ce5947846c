import sys
import logging
from typing import Optional

from gatewrap.log.handler import LokiHandler

BACKEND_LOG_PREFIX = "proc."


class MainFormatter(logging.Formatter):
    """
    Formats supervisor records and relayed backend lines differently.

    Backend output arrives already formatted by the backend itself, so it is
    only timestamped and tagged with the process name instead of being wrapped
    in the full supervisor format.
    """

    SUPERVISOR_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
    BACKEND_FORMAT = '%(asctime)s - [%(procname)s] %(message)s'

    def __init__(self) -> None:
        super().__init__(self.SUPERVISOR_FORMAT)
        self._backend_formatter = logging.Formatter(self.BACKEND_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if record.name.startswith(BACKEND_LOG_PREFIX):
            record.procname = record.name[len(BACKEND_LOG_PREFIX):]
            return self._backend_formatter.format(record)
        return super().format(record)


def setup_logging(
    console_level: int = logging.INFO,
    loki_url: Optional[str] = None,
    loki_org_id: Optional[str] = None,
) -> None:
    """
    Configures the root logger for the supervisor.
    This sets up a console handler and optionally a Loki handler,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param loki_url: Base URL of a Grafana Loki instance. Loki shipping is off when empty.
    :param loki_org_id: Optional Loki tenant ID.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # Third-party libraries are chatty at DEBUG.
    for noisy in ("httpx", "httpcore", "hypercorn.error", "urllib3"):
        logging.getLogger(noisy).setLevel(max(console_level, logging.INFO))

    # --- Loki Handler (conditional) ---
    if loki_url:
        try:
            loki_handler = LokiHandler(url=loki_url, org_id=loki_org_id)
            loki_handler.setLevel(logging.INFO) # Avoid spamming Loki with DEBUG logs
            loki_handler.setFormatter(MainFormatter())
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {loki_url}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
