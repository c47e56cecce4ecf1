"""Logging setup shared by all tools."""

import logging
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

# Between INFO and WARNING, used for completed steps ("Backup created: ...")
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

FILE_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    """Get a logger by name."""
    return logging.getLogger(name)


def setup_logger(
    name: str,
    level: str = "INFO",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure a logger with a rich console handler and an optional log file.

    Calling it again for the same name replaces the previous handlers, so a
    CLI can reconfigure logging per invocation.

    Args:
        name: Logger name (child loggers inherit the handlers)
        level: Log level name
        log_file: Append-only file receiving "[timestamp] LEVEL: message" lines

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(show_path=False, markup=False)
    console_handler.setFormatter(logging.Formatter("%(message)s", datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger
