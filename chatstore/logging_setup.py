"""Process-wide logging handle for the conversation store."""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from chatstore.config import Settings

LOGGER_NAME = "chatstore"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(settings: Settings) -> logging.Logger:
    """
    Build the ``chatstore`` logger once at process start and return it.

    Records go to a daily-rotated file under the data directory and, when
    ``log_to_console`` is set, to stdout. Module loggers (``chatstore.*``)
    propagate here. Calling again replaces the handlers rather than stacking
    them.

    Parameters
    ----------
    settings : Settings
        Supplies ``log_dir``, ``log_level`` and ``log_to_console``.

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    shutdown_logging(logger)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        log_dir / "chatstore.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if settings.log_to_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        logger.addHandler(console)

    logger.setLevel(settings.log_level.upper())
    logger.propagate = False
    return logger


def shutdown_logging(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
