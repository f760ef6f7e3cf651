"""Audit logging for applied configuration artifacts.

The appliance has no central log pipeline, so every apply attempt is kept as
one JSON line with the artifact and captured stderr verbatim:
- Timestamped entries for every write/reload
- Separate audit log file (netsmith.audit logger)
- Reader for the most recent entries
"""
import json
import logging
import os
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

audit_logger = logging.getLogger("netsmith.audit")

DEFAULT_AUDIT_DIR = "~/.netsmith"


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.netsmith/

    Returns:
        Path of the audit log file
    """
    log_dir = os.path.expanduser(log_dir or DEFAULT_AUDIT_DIR)
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = Path(log_dir) / "audit.log"

    audit_logger.setLevel(logging.INFO)
    audit_logger.handlers.clear()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.propagate = False

    return audit_file


@dataclass
class ApplyRecord:
    """Record of one apply attempt against a backend."""
    timestamp: str
    backend: str
    operation: str  # apply, route_add, multipath, ...
    dry_run: bool
    success: bool
    files: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    artifact: str = ""
    stderr: str = ""
    error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=None)

    @classmethod
    def from_json(cls, json_str: str) -> "ApplyRecord":
        return cls(**json.loads(json_str))


def record_apply(
    backend: str,
    operation: str,
    success: bool,
    files: Optional[list[str]] = None,
    commands: Optional[list[str]] = None,
    artifact: str = "",
    stderr: str = "",
    error: Optional[str] = None,
    dry_run: bool = False,
) -> ApplyRecord:
    """Write an apply attempt to the audit log and return the record."""
    record = ApplyRecord(
        timestamp=datetime.now(timezone.utc).isoformat(),
        backend=backend,
        operation=operation,
        dry_run=dry_run,
        success=success,
        files=files or [],
        commands=commands or [],
        artifact=artifact,
        stderr=stderr,
        error=error,
    )
    audit_logger.info(record.to_json())
    return record


def get_recent_applies(
    log_file: Optional[str] = None,
    backend: Optional[str] = None,
    failed_only: bool = False,
    limit: int = 50,
) -> list[ApplyRecord]:
    """Read recent apply records, most recent first."""
    if log_file is None:
        log_file = os.path.join(os.path.expanduser(DEFAULT_AUDIT_DIR), "audit.log")

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = ApplyRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if backend and record.backend != backend:
                continue
            if failed_only and record.success:
                continue
            records.append(record)

    return list(reversed(records[-limit:]))
