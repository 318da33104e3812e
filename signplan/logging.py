"""Logging setup for the signplan command line."""

import logging
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "signplan"

CONSOLE_FORMAT = "[%(component)s] %(levelname)s %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(component: Optional[str] = None) -> logging.Logger:
    """Logger for one engine component, e.g. get_logger("tracking") -> signplan.tracking."""
    if not component:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")


class ComponentFormatter(logging.Formatter):
    """Console formatter that shows `signplan.tracking` as `signplan:tracking`."""

    def format(self, record: logging.LogRecord) -> str:
        record.component = record.name.replace(".", ":", 1)
        return super().format(record)


def log_level(verbose: bool = False, quiet: bool = False) -> int:
    """
    Map the CLI verbosity flags to a level.

    --verbose shows per-file decisions, --quiet leaves only warnings and
    errors. Verbose wins when both are given.
    """
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return logging.INFO


def configure_logging(
    verbose: bool = False, quiet: bool = False, log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Route signplan log records to stderr and, optionally, a log file.

    Safe to call more than once; earlier handlers are replaced.

    Args:
        verbose: Log per-file decisions and cache hits
        quiet: Log warnings and errors only
        log_file: File to append full records to; its directory is created

    Returns:
        The signplan root logger
    """
    level = log_level(verbose, quiet)
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(ComponentFormatter(CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger
