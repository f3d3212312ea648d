"""Logging configuration for riceify.

Provides configurable logging with:
- File-based logging with rotation
- Console output
- Timing context managers for engine phases, on a separate perf logger

Environment Variables:
    RICEIFY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    RICEIFY_LOG_FILE: Path to log file (default: ~/.riceify/riceify.log)
    RICEIFY_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    RICEIFY_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from riceify.utils.logging_config import setup_logging, timed_section

    setup_logging()  # Call once at startup, outside the engine

    async with timed_section("apply", profile="dark-theme"):
        ...
"""
import logging
import os
import time
from contextlib import asynccontextmanager, contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("riceify.perf")

LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(name)-28s | %(levelname)-7s | %(message)s"
PERF_FORMAT = "%(asctime)s.%(msecs)03d | PERF | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("RICEIFY_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".riceify" / "riceify.log"
    path_str = os.environ.get("RICEIFY_LOG_FILE", str(default_path))
    return Path(path_str).expanduser()


def setup_logging(
    level: Optional[int] = None,
    log_file: Optional[Path] = None,
    console: bool = True,
) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (respects RICEIFY_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance log file for timing metrics

    Calling it again replaces the handlers it installed.
    """
    log_level = level if level is not None else get_log_level()
    log_file = Path(log_file) if log_file else get_log_file()
    max_size_mb = int(os.environ.get("RICEIFY_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("RICEIFY_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    perf_format = logging.Formatter(PERF_FORMAT, datefmt=DATE_FORMAT)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "riceify-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    root_logger = logging.getLogger("riceify")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(main_format)
        root_logger.addHandler(console_handler)

    # perf records go to their own file only
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.handlers.clear()
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    root_logger.debug(
        f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}"
    )


def _format_timing(operation: str, subject: Optional[str], elapsed: float, status: str, extra: dict) -> str:
    msg = f"{operation:20s} | {subject or 'N/A':20s} | {elapsed:8.2f}ms | {status}"
    if extra:
        msg += " | " + " | ".join(f"{k}={v}" for k, v in extra.items())
    return msg


@asynccontextmanager
async def timed_section(operation: str, profile: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Usage:
        async with timed_section("capture_backup", profile="dark-theme", files=12):
            ...
    """
    start = time.perf_counter()
    try:
        yield
    except BaseException as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.warning(_format_timing(operation, profile, elapsed, f"FAIL: {e!r}", extra))
        raise
    elapsed = (time.perf_counter() - start) * 1000
    perf_logger.info(_format_timing(operation, profile, elapsed, "OK", extra))


@contextmanager
def timed_section_sync(operation: str, profile: Optional[str] = None, **extra):
    """Sync context manager for timing code sections."""
    start = time.perf_counter()
    try:
        yield
    except BaseException as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.warning(_format_timing(operation, profile, elapsed, f"FAIL: {e!r}", extra))
        raise
    elapsed = (time.perf_counter() - start) * 1000
    perf_logger.info(_format_timing(operation, profile, elapsed, "OK", extra))
