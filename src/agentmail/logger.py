# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for agentmail.

Modules obtain loggers through :func:`get_logger`; handlers, level and format
are configured exactly once by the command-line entry point through
:func:`configure_logging`, so library code never installs handlers itself.

Example:
    Typical usage in a module::

        from agentmail.logger import get_logger

        logger = get_logger("agentmail.mailman")
        logger.info("Notification cycle complete")
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def get_logger(name: str = "agentmail") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "agentmail".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging for a command-line invocation.

    Args:
        verbose: Log at DEBUG level (per-recipient dispatch decisions).
        quiet: Only log warnings and errors.
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=DATE_FORMAT)
    # watchdog is chatty at DEBUG
    logging.getLogger("watchdog").setLevel(max(level, logging.INFO))
