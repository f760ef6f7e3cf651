"""Host command execution behind a single injectable seam.

Every external tool netsmith touches (ip, nft, iptables, netplan, systemctl,
pgrep...) is invoked through a HostExecutor. Production code uses
SubprocessExecutor; tests substitute a scripted executor.
"""
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Exit code reported when a command is killed for exceeding its timeout
TIMEOUT_EXIT_CODE = 124

# SQLite raises OperationalError("database is locked") under write contention
RETRYABLE_EXCEPTIONS = (
    OperationalError,
    TimeoutError,
)


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.1,
    max_wait: float = 2,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        exceptions: Tuple of exception types to retry on
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            return func(*args, **kwargs)

        return sync_wrapper

    return decorator


class CommandResult:
    """Result of a command execution on the host."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.argv)

    @property
    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_EXIT_CODE

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }

    def __repr__(self) -> str:
        status = "OK" if self.success else f"FAILED({self.returncode})"
        return f"CommandResult({status}, {self.command!r})"


class HostExecutor(ABC):
    """Capability for running external commands and probing the host."""

    @abstractmethod
    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """Run a command to completion (or timeout) and capture its output."""
        pass

    @abstractmethod
    def which(self, tool: str) -> Optional[str]:
        """Resolve a tool on PATH, returning its path or None."""
        pass

    def read_file(self, path: str | Path) -> Optional[str]:
        """Read a host file, returning None when it does not exist."""
        try:
            return Path(path).read_text()
        except FileNotFoundError:
            return None

    def path_exists(self, path: str | Path) -> bool:
        return Path(path).exists()


class SubprocessExecutor(HostExecutor):
    """Run commands with subprocess, enforcing a bounded timeout."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        limit = timeout if timeout is not None else self.timeout
        logger.debug(f"Running: {' '.join(argv)} (timeout={limit}s)")

        try:
            proc = subprocess.run(
                list(argv),
                input=input_text,
                capture_output=True,
                text=True,
                timeout=limit,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run kills the child before re-raising
            logger.error(f"Command timed out after {limit}s: {' '.join(argv)}")
            stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
            return CommandResult(
                argv,
                TIMEOUT_EXIT_CODE,
                stdout=stdout,
                stderr=f"timed out after {limit}s",
            )
        except FileNotFoundError as e:
            logger.debug(f"Command not found: {argv[0]}")
            return CommandResult(argv, 127, stderr=str(e))

        if proc.returncode != 0:
            logger.debug(
                f"Command '{' '.join(argv)}' failed (exit {proc.returncode}): "
                f"{proc.stderr.strip()}"
            )
        return CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)
