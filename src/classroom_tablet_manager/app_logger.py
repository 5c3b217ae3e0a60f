"""Logger setup shared by the CLI and library entry points."""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str = "classroom_tablet_manager", level: str | int = "INFO") -> logging.Logger:
    """Return a logger with a single stderr handler attached.

    Calling this repeatedly for the same name does not stack handlers.

    Args:
        name: Logger name.
        level: Level name or number.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    return logger
