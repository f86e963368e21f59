import logging
import os
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(name: str = "welfare_ledger", level: Optional[str] = None) -> logging.Logger:
    """Configure the package logger with a single stdout handler.

    Args:
        name: logger name (default: welfare_ledger)
        level: log level name; falls back to LOG_LEVEL, then INFO

    Returns:
        the configured logging.Logger
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")

    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Drop handlers from a previous call so records are not printed twice.
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False

    return logger
