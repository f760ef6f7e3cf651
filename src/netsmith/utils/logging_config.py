"""Logging configuration for netsmith.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Performance timing decorators for apply/probe analysis

Environment Variables:
    NETSMITH_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    NETSMITH_LOG_FILE: Path to log file (default: ~/.netsmith/netsmith.log)
    NETSMITH_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    NETSMITH_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from netsmith.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("apply")
    def apply(self, backend, artifact):
        ...

    with timed_section("reconcile", backend="nftables"):
        ...
"""
import functools
import logging
import os
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("netsmith.perf")


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("NETSMITH_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".netsmith" / "netsmith.log"
    path_str = os.environ.get("NETSMITH_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(log_file: Optional[Path] = None, console_level: Optional[int] = None) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (INFO+ by default, respects NETSMITH_LOG_LEVEL unless
      console_level is given)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics
    """
    log_level = console_level if console_level is not None else get_log_level()
    log_file = log_file or get_log_file()
    max_size_mb = int(os.environ.get("NETSMITH_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("NETSMITH_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(main_format)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "netsmith-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    root_logger = logging.getLogger("netsmith")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Perf records go to their own file only
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.handlers.clear()
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    root_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")
    perf_logger.info(f"Performance logging to: {perf_log_file}")


def _format_perf(operation: str, subject: Optional[str], elapsed: float, status: str) -> str:
    return f"{operation:20s} | {subject or 'N/A':15s} | {elapsed:8.2f}ms | {status}"


def timed(operation: str, backend: Optional[str] = None):
    """Decorator to log execution time of a function.

    Args:
        operation: Name of the operation (e.g., "apply", "detect")
        backend: Optional backend name (can also be inferred from self.name)

    Usage:
        @timed("apply")
        def apply(self, backend, artifact):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            subject = backend
            if subject is None and args and hasattr(args[0], "name"):
                subject = str(args[0].name)

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_format_perf(operation, subject, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_perf(operation, subject, elapsed, f"FAIL: {e}"))
                raise

        return wrapper

    return decorator


@contextmanager
def timed_section(operation: str, backend: Optional[str] = None, **extra):
    """Context manager for timing code sections.

    Usage:
        with timed_section("reconcile", backend="dnsmasq", pools=1):
            ...
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        msg = _format_perf(operation, backend, elapsed, "OK")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.info(msg)
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _format_perf(operation, backend, elapsed, f"FAIL: {e}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
