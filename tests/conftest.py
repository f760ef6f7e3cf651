"""Shared fixtures: scripted host executor, re-rooted settings, open store."""
from typing import Optional, Sequence

import pytest

from netsmith.config.settings import Settings
from netsmith.config_engine.executor import Applier
from netsmith.store import IntentStore
from netsmith.utils.audit_log import setup_audit_logging
from netsmith.utils.executor import CommandResult, HostExecutor


class FakeExecutor(HostExecutor):
    """HostExecutor that answers commands from a script and records every call.

    Responses are matched by argv prefix; the most recently scripted match
    wins. Unscripted commands succeed with no output, except ``pgrep``,
    which reports no running process. Files are read from the real
    filesystem (tests point every path below ``tmp_path``).
    """

    def __init__(self, tools: Sequence[str] = ()):
        self.tools = set(tools)
        self.calls: list[list[str]] = []
        self._responses: list[tuple[tuple[str, ...], int, str, str]] = []
        self.script(["pgrep"], returncode=1)

    def script(
        self,
        prefix: Sequence[str],
        stdout: str = "",
        returncode: int = 0,
        stderr: str = "",
    ) -> "FakeExecutor":
        self._responses.append((tuple(prefix), returncode, stdout, stderr))
        return self

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        for prefix, returncode, stdout, stderr in reversed(self._responses):
            if tuple(argv[:len(prefix)]) == prefix:
                return CommandResult(argv, returncode, stdout, stderr)
        return CommandResult(argv, 0)

    def which(self, tool: str) -> Optional[str]:
        return f"/usr/sbin/{tool}" if tool in self.tools else None

    def ran(self, *prefix: str) -> bool:
        return any(tuple(call[:len(prefix)]) == prefix for call in self.calls)

    def commands(self) -> list[str]:
        return [" ".join(call) for call in self.calls]


@pytest.fixture(autouse=True)
def audit_log(tmp_path):
    """Keep audit records inside the test's temp directory."""
    return setup_audit_logging(str(tmp_path / "audit"))


@pytest.fixture
def settings(tmp_path):
    return Settings.for_root(
        tmp_path / "root",
        database_url=f"sqlite:///{tmp_path}/intent.db",
        audit_dir=str(tmp_path / "audit"),
    )


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def store(settings):
    store = IntentStore(settings.database_url).open()
    yield store
    store.close()


@pytest.fixture
def applier():
    return Applier()
