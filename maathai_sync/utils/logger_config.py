"""Logging configuration for the Maathai sync engine"""

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path

# Libraries that log every request or frame at INFO/DEBUG
TRANSPORT_LOGGERS = ("httpx", "httpcore", "aiohttp", "asyncio")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(
    log_level=logging.INFO,
    log_dir="logs",
    console_output=True,
    file_output=True,
    transport_level=logging.WARNING,
):
    """
    Configure root logging for the sync runner

    Args:
        log_level: Level for the engine's own loggers (default: INFO)
        log_dir: Directory for the rotating sync log and errors.log
        console_output: Log to stderr
        file_output: Log to files under ``log_dir``
        transport_level: Floor applied to the HTTP and websocket libraries

    Returns:
        Path of the main log file, or None when file output is disabled
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    log_filename = None
    if file_output:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        log_filename = log_path / f"maathai_sync_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.handlers.RotatingFileHandler(
            log_filename,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_path / "errors.log",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root_logger.addHandler(error_handler)

    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(max(transport_level, log_level))

    logging.getLogger(__name__).info("Sync logging configured at %s", logging.getLevelName(log_level))
    return log_filename
