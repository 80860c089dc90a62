"""Logging setup for daemontop.

The terminal belongs to the dashboard, so log records go to a file or
nowhere at all.
"""

import logging
from pathlib import Path

LOGGER_NAME = "daemontop"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(log_file: Path | None = None, level: str | int = logging.INFO) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        log_file: File to append records to. Its directory is created if
            needed. None discards all records.
        level: Logging level name or number.

    Returns:
        The configured package logger.

    Raises:
        OSError: If the log directory or file cannot be created.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file is None:
        logger.addHandler(logging.NullHandler())
    else:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger
