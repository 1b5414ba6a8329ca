"""
Logging configuration for the orchestration engine.

Handlers live on the `teamflow` logger only; every component logs through a
`teamflow.<component>` child that propagates to it, so plan transitions,
credit denials and upstream retries read as a single interleaved stream.
"""

import logging
import os
import sys
from typing import Optional

LOGGER_PREFIX = "teamflow"
LOG_FORMAT = "%(asctime)s [%(levelname)8s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    component: Optional[str] = None
) -> logging.Logger:
    """
    Configure the engine's log stream, or the level of one component.

    Calling without a component (re)installs the shared handlers: stderr,
    plus log_file when given. Calling with a component only adjusts that
    component's level; its records still go through the shared handlers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Defaults to TEAMFLOW_LOG_LEVEL, then INFO.
        log_file: Optional file path mirrored alongside stderr.
            Defaults to TEAMFLOW_LOG_FILE.
        component: Component name (e.g., "workflow", "gateway")

    Returns:
        The configured logger

    Example:
        >>> configure_logging("DEBUG", component="gateway")
        >>> get_logger("gateway").debug("retrying step:2")
    """
    level = level or os.environ.get("TEAMFLOW_LOG_LEVEL", "INFO")
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    if component:
        logger = logging.getLogger(f"{LOGGER_PREFIX}.{component}")
        logger.setLevel(numeric)
        _root()
        return logger

    logger = logging.getLogger(LOGGER_PREFIX)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_file = log_file or os.environ.get("TEAMFLOW_LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.setLevel(numeric)
    # Host applications keep their own root handlers
    logger.propagate = False
    return logger


def _root() -> logging.Logger:
    logger = logging.getLogger(LOGGER_PREFIX)
    if not logger.handlers:
        logger = configure_logging()
    return logger


def get_logger(component: str) -> logging.Logger:
    """Component logger; installs the shared handlers on first use."""
    _root()
    return logging.getLogger(f"{LOGGER_PREFIX}.{component}")
