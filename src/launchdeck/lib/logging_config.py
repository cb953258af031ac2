"""Logging configuration for LaunchDeck.

All modules obtain their logger through ``get_logger(__name__)`` so that a
single call to ``setup_logging`` controls verbosity for the whole package.
"""

from __future__ import annotations

import logging
import sys

PACKAGE_LOGGER = "launchdeck"

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

# Chatty SDK loggers kept at WARNING unless verbose output is requested
THIRD_PARTY_LOGGERS = (
    "azure",
    "boto3",
    "botocore",
    "docker",
    "google",
    "urllib3",
)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name."""
    return logging.getLogger(name)


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure the package logger.

    Args:
        verbose: Enable DEBUG output, including third-party SDK loggers
        quiet: Only show warnings and errors
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(handler)
    logger.propagate = False

    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
