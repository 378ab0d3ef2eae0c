"""Shared logger for the inbox sync client.

Every line names the module file and function that logged it. Those come
from the log record itself, so callers use a plain ``logging.Logger``.
"""

import logging
import os
from typing import Optional

from inbox_sync.config import config


LOGGER_NAME = "inbox_sync"
LOG_FILE_NAME = "inbox_sync.log"

LINE_FORMAT = "%(asctime)s | %(levelname)s | file: %(filename)s | func: %(funcName)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _handlers(log_dir: str) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME), encoding="utf-8"))
    return handlers


def configure_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    """Attach stdout and file handlers to the package logger.

    Calling it again replaces the handlers.
    An empty ``log_dir`` disables the file handler.

    Args:
        level: Level name; defaults to ``LOG_LEVEL``
        log_dir: Directory for the log file; defaults to ``LOG_DIR``

    Returns:
        The ``inbox_sync`` logger. Module loggers under the package
        (``logging.getLogger(__name__)``) write through the same handlers.
    """
    package_logger = logging.getLogger(LOGGER_NAME)
    package_logger.setLevel((level or config.log_level).upper())
    package_logger.propagate = False

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LINE_FORMAT, datefmt=DATE_FORMAT)
    for handler in _handlers(config.log_dir if log_dir is None else log_dir):
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    return package_logger


logger = configure_logging()
