"""Utility modules for netsmith."""
from .executor import with_retry, CommandResult, HostExecutor, SubprocessExecutor
from .logging_config import setup_logging, timed, timed_section
from .audit_log import setup_audit_logging, record_apply, get_recent_applies

__all__ = [
    # Host commands
    "with_retry",
    "CommandResult",
    "HostExecutor",
    "SubprocessExecutor",
    # Logging
    "setup_logging",
    "timed",
    "timed_section",
    # Audit
    "setup_audit_logging",
    "record_apply",
    "get_recent_applies",
]
