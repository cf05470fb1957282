import logging
import signal
import sys
import threading

from config import check_private_key, describe, load_config
from errors import ConfigInvalid
from log_setup import setup_logging
from status_server import StatusServer
from tunnel_controller import TunnelController

logger = logging.getLogger("forwarder")

EXIT_OK = 0
EXIT_CONFIG = 2


def install_signal_handlers(shutdown: threading.Event) -> None:
    def _handler(signum, frame):
        logger.info("Shutdown signal received (%s)", signal.Signals(signum).name)
        shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def main() -> int:
    """
    1) Load and validate configuration from the environment.
    2) Make sure the private key exists (fatal otherwise).
    3) Start the status web interface.
    4) Run the connection loop until SIGINT/SIGTERM.
    """
    setup_logging("INFO")
    logger.info("Starting SSH Forwarder...")

    try:
        config = load_config()
        setup_logging(config.log_level)
        logger.debug("Configuration loaded: %s", describe(config))
        check_private_key(config)
    except ConfigInvalid as e:
        logger.error("%s", e)
        return EXIT_CONFIG

    shutdown = threading.Event()
    install_signal_handlers(shutdown)

    controller = TunnelController(config)
    status_server = None
    if config.web_enabled:
        status_server = StatusServer(controller, config)
        status_server.start()

    try:
        controller.run(shutdown)
    finally:
        if status_server is not None:
            status_server.stop()
        logger.info("SSH Forwarder stopped.")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
