"""Applier: push rendered artifacts to the host.

Writes each file atomically, runs the backend's syntax check, then its reload
chain. A failure leaves the new file on disk; there is no rollback. The
failing artifact and captured stderr are returned verbatim and audited.
"""
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from ..backends.base import Backend
from ..utils.audit_log import record_apply
from ..utils.executor import CommandResult
from ..utils.logging_config import timed_section
from .diff import file_diff
from .schema import ApplyResult, Artifact

logger = logging.getLogger(__name__)


def atomic_write(path: str | Path, content: str, mode: int = 0o644) -> None:
    """Write ``content`` to ``path`` via a temp file in the same directory.

    Readers see either the old file or the new one, never a partial write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class Applier:
    """Serialised, audited artifact application; one lock per backend."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, backend: Backend) -> threading.Lock:
        with self._locks_guard:
            if backend.name not in self._locks:
                self._locks[backend.name] = threading.Lock()
            return self._locks[backend.name]

    def apply(
        self,
        backend: Backend,
        artifact: Artifact,
        dry_run: bool = False,
        reload: bool = True,
        operation: str = "apply",
    ) -> ApplyResult:
        """
        Write an artifact and make the backend pick it up.

        Args:
            backend: Backend the artifact was rendered by
            artifact: Files to write
            dry_run: Only diff against the files on disk
            reload: Run the reload chain after writing
            operation: Name recorded in the audit log

        Returns:
            ApplyResult; ``success`` is False when a check or reload failed
        """
        result = ApplyResult(
            backend=backend.name,
            dry_run=dry_run,
            artifact=artifact.text,
            warnings=list(artifact.warnings),
        )

        with self.lock_for(backend):
            try:
                with timed_section(operation, backend=backend.name, files=len(artifact.files)):
                    self._apply_locked(backend, artifact, result, dry_run, reload)
            except OSError as e:
                logger.error(f"[{backend.name}] Failed to write artifact: {e}")
                result.success = False
                result.error = f"write failed: {e}"
            finally:
                record_apply(
                    backend=backend.name,
                    operation=operation,
                    success=result.success,
                    files=list(artifact.files),
                    commands=result.commands_executed,
                    artifact=result.artifact,
                    stderr=result.stderr,
                    error=result.error,
                    dry_run=dry_run,
                )

        return result

    def _apply_locked(
        self,
        backend: Backend,
        artifact: Artifact,
        result: ApplyResult,
        dry_run: bool,
        reload: bool,
    ) -> None:
        diffs = []
        for path, content in artifact.files.items():
            current = backend.executor.read_file(path)
            if current != content:
                result.changed = True
            diffs.append(file_diff(path, current, content))
        result.diff = "".join(diffs)

        if dry_run:
            result.success = True
            result.commands_executed = [
                f"[DRY-RUN] {' '.join(argv)}" for argv in backend.reload_commands()
            ] if reload else []
            return

        for path, content in artifact.files.items():
            atomic_write(path, content, artifact.mode)
            logger.debug(f"[{backend.name}] Wrote {path}")

        check = backend.check(artifact)
        if check is not None:
            result.commands_executed.append(check.command)
            if not check.success:
                self._fail(result, check, "syntax check failed")
                return

        if reload:
            outcome = self._reload(backend, result)
            if outcome is not None and not outcome.success:
                self._fail(result, outcome, "reload failed")
                return

        result.success = True
        logger.info(
            f"[{backend.name}] Applied {', '.join(artifact.files)}"
            f"{'' if result.changed else ' (unchanged)'}"
        )

    def _reload(self, backend: Backend, result: ApplyResult) -> Optional[CommandResult]:
        """Run the reload chain; the first command that exits 0 wins."""
        outcome = None
        for argv in backend.reload_commands():
            outcome = backend.executor.run(argv)
            result.commands_executed.append(outcome.command)
            if outcome.success:
                return outcome
            logger.debug(f"[{backend.name}] '{outcome.command}' failed, trying next")
        return outcome

    def _fail(self, result: ApplyResult, command: CommandResult, what: str) -> None:
        result.success = False
        result.stderr = command.stderr
        result.error = f"{what}: '{command.command}' exited {command.returncode}"
        logger.error(f"[{result.backend}] {result.error}\n{command.stderr.strip()}")

    def run_live(self, backend: Backend, argv: list[str], operation: str) -> CommandResult:
        """Run one live-state command (``ip route replace``...) under the backend's lock."""
        with self.lock_for(backend):
            outcome = backend.executor.run(argv)
        record_apply(
            backend=backend.name,
            operation=operation,
            success=outcome.success,
            commands=[outcome.command],
            stderr=outcome.stderr,
            error=None if outcome.success else f"exited {outcome.returncode}",
        )
        return outcome


def live_result(backend: Backend, outcome: CommandResult) -> ApplyResult:
    """ApplyResult for a single live command run through ``Applier.run_live``."""
    return ApplyResult(
        backend=backend.name,
        success=outcome.success,
        changed=outcome.success,
        stderr=outcome.stderr,
        error=None if outcome.success else f"'{outcome.command}' exited {outcome.returncode}",
        commands_executed=[outcome.command],
        live_applied=outcome.success,
    )
