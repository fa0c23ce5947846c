import sys
import asyncio
import logging

# Basic console logger for messages BEFORE the configuration is known.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

import setproctitle

from gatewrap import settings
from gatewrap.local import config as config_loader
from gatewrap.local.errors import ConfigError
from gatewrap.local.lifecycle import LifecycleController
from gatewrap.log.setup import setup_logging


def main() -> None:
    """The main entry point: load the configuration, then supervise until told to stop."""
    setproctitle.setproctitle(settings.SUPERVISOR_PROCESS_TITLE)

    try:
        config = config_loader.load()
    except ConfigError as e:
        log.critical(f"Invalid configuration: {e}")
        sys.exit(e.exit_code)

    console_level = logging.DEBUG if config_loader.is_verbose() else config.log_level
    setup_logging(console_level, loki_url=config.loki_url, loki_org_id=config.loki_org_id)

    log.info(f"Gateway Supervisor starting: port {config.listen_port} -> backend {config.backend_address} "
             f"({config.forward_mode} mode).")
    controller = LifecycleController(config)
    try:
        code = asyncio.run(controller.run())
    except KeyboardInterrupt:
        log.warning("Interrupted before signal handlers were installed.")
        code = settings.EXIT_OK
    sys.exit(code)


if __name__ == "__main__":
    main()
