import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

from gemini_relay.failure_logger import configure_failure_logger
from gemini_relay.utils.paths import get_logs_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Keeps the debug file limited to the relay's own DEBUG records
class RelayDebugFilter(logging.Filter):
    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith(
            "gemini_relay"
        )


def setup_logging(
    root: Optional[Union[str, Path]] = None, verbose: bool = False
) -> Path:
    """
    Configures console and file logging for the application.

    - colored console output (INFO and above, DEBUG with `verbose`)
    - logs/relay.log with INFO and above
    - logs/relay_debug.log with DEBUG records from gemini_relay only
    - logs/failures.log (JSON) through the failure logger

    Returns:
        The logs directory
    """
    log_dir = get_logs_dir(root)

    console_handler = colorlog.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    info_file_handler = logging.FileHandler(log_dir / "relay.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    debug_file_handler = logging.FileHandler(
        log_dir / "relay_debug.log", encoding="utf-8"
    )
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    debug_file_handler.addFilter(RelayDebugFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.addHandler(console_handler)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(debug_file_handler)

    # Silence other noisy loggers by setting their level higher than root
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    configure_failure_logger(log_dir)
    return log_dir
