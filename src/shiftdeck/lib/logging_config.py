"""Logging configuration for ShiftDeck.

Provides a single entry point for configuring the ``shiftdeck`` logger
hierarchy from CLI flags, plus a ``get_logger`` helper used by every module.
"""

from __future__ import annotations

import logging
import os
import sys

LOGGER_NAME = "shiftdeck"
DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Third-party loggers that are noisy at DEBUG level
_QUIET_LIBRARIES = ("httpx", "httpcore", "uvicorn.access")


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        Logger instance within the ShiftDeck logger hierarchy.
    """
    return logging.getLogger(name)


def _resolve_level(verbose: bool, quiet: bool) -> int:
    """Resolve the effective log level from flags and environment."""
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING

    env_level = os.environ.get("SHIFTDECK_LOG_LEVEL")
    if env_level:
        level = logging.getLevelName(env_level.upper())
        if isinstance(level, int):
            return level
    return logging.INFO


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for CLI commands.

    Installs a single stderr handler on the ``shiftdeck`` logger. Calling this
    more than once replaces the previous handler rather than stacking them.

    Args:
        verbose: Enable DEBUG output.
        quiet: Only emit warnings and errors.
    """
    level = _resolve_level(verbose, quiet)

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, DEFAULT_DATE_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    library_level = logging.DEBUG if verbose else logging.WARNING
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(max(library_level, logging.INFO))
