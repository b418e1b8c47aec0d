"""
Logging Utilities

Configures the ``cloud_data_sync`` logger hierarchy with:
- Configurable log level (DEBUG, INFO, WARNING, ERROR)
- Console output and an optional log file
- Verbose mode for per-object decisions

Log Format:
    %(asctime)s - %(name)s - %(levelname)s - %(message)s

Environment:
    CLOUD_SYNC_LOG_LEVEL: Default log level (INFO)
    CLOUD_SYNC_LOG_FILE: Optional log file path
"""

import logging
import os
import sys
from typing import Optional

ROOT_LOGGER_NAME = "cloud_data_sync"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_root_configured = False


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("CLOUD_SYNC_LOG_LEVEL", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    verbose: bool = False,
) -> logging.Logger:
    """
    Configure the package root logger.

    Should be called once at application startup. Calling it again
    replaces the handlers installed by the previous call.

    Args:
        level: Log level name; defaults to CLOUD_SYNC_LOG_LEVEL or INFO
        log_file: Optional file path; defaults to CLOUD_SYNC_LOG_FILE
        verbose: Force DEBUG level

    Returns:
        Configured root logger
    """
    global _root_configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    log_level = logging.DEBUG if verbose else _resolve_level(level)
    root.setLevel(log_level)
    root.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    log_file = log_file or os.getenv("CLOUD_SYNC_LOG_FILE")
    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"Failed to create log file {log_file}: {e}")

    _root_configured = True
    return root


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get a logger inside the package hierarchy, configuring it on first use.

    Args:
        name: Logger name (e.g. 'cloud_data_sync.engine')
    """
    if not _root_configured:
        setup_logging()
    return logging.getLogger(name)
