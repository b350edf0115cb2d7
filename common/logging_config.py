"""Logging setup for fleetdeck processes.

Modules log through ``logging.getLogger(__name__)``; the CLI and HTTP server
configure the package roots once at startup with a console handler and an
optional rotating log file.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

PACKAGE_LOGGERS = ("common", "remote", "control")


def build_handlers(
    log_file: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    stream: object = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> list[logging.Handler]:
    """Create the console handler and, when ``log_file`` is set, a rotating file handler."""
    formatter = logging.Formatter(log_format, datefmt=date_format)
    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_service_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    stream: object = None,
) -> list[logging.Logger]:
    """
    Configure every package root with one shared set of handlers.

    Existing handlers are replaced, so calling this twice never duplicates output.

    Args:
        level: Log level name; unknown names fall back to INFO
        log_file: Rotating log file path, or None for console only
        stream: Console stream (default: stderr)

    Returns:
        The configured package loggers
    """
    handlers = build_handlers(log_file=log_file, stream=stream)
    loggers = []
    for name in PACKAGE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        logger.handlers = list(handlers)
        logger.propagate = False
        loggers.append(logger)
    return loggers


def get_default_log_dir() -> Path:
    """/var/log/fleetdeck for services running as root, ~/.fleetdeck/logs otherwise."""
    system_dir = Path("/var/log/fleetdeck")
    if system_dir.exists() or os.geteuid() == 0:
        return system_dir
    return Path.home() / ".fleetdeck" / "logs"


def get_default_log_file() -> Path:
    return get_default_log_dir() / "fleetdeck.log"
