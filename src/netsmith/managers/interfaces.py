"""Interface orchestration: intent store -> interface backend -> Applier."""
import logging
from typing import Optional

from ..backends.base import InterfaceBackend
from ..config_engine.diff import DiffEngine, file_diff, summarize_diff
from ..config_engine.executor import Applier
from ..config_engine.schema import (
    ApplyResult,
    Artifact,
    InterfaceState,
    NetworkInterfaceIntent,
)
from ..config_engine.validator import ConfigValidator
from ..store import IntentStore

logger = logging.getLogger(__name__)


class InterfaceManager:
    """List, save and delete interface intents and push them to the host."""

    def __init__(
        self,
        store: IntentStore,
        backend: InterfaceBackend,
        applier: Applier,
        validator: Optional[ConfigValidator] = None,
    ):
        self.store = store
        self.backend = backend
        self.applier = applier
        self.validator = validator or ConfigValidator()
        self.diff_engine = DiffEngine()

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def list_interfaces(self) -> list[NetworkInterfaceIntent]:
        return self.store.list_interfaces()

    def get_interface(self, name: str) -> Optional[NetworkInterfaceIntent]:
        return self.store.get_interface(name)

    def save_interface(
        self,
        intent: NetworkInterfaceIntent,
        apply: bool = True,
    ) -> Optional[ApplyResult]:
        """
        Validate, persist and apply one interface intent.

        The intent replaces any stored intent with the same name.

        Raises:
            ValidationFailed: If the intent, or the set it joins, is invalid
        """
        others = [i for i in self.store.list_interfaces() if i.name != intent.name]
        validation = self.validator.validate_interfaces(others + [intent])
        validation.raise_if_invalid()
        for warning in validation.warnings:
            logger.warning(warning)

        self.store.save_interface(intent)
        logger.info(f"Saved interface intent {intent.name}")
        return self.apply() if apply else None

    def delete_interface(self, name: str, apply: bool = True) -> Optional[ApplyResult]:
        """
        Remove an interface intent.

        Raises:
            KeyError: If no intent with that name exists
        """
        if not self.store.delete_interface(name):
            raise KeyError(f"Interface not found: {name}")
        logger.info(f"Deleted interface intent {name}")
        return self.apply() if apply else None

    def live_state(self) -> InterfaceState:
        return self.backend.read_state()

    def render(self) -> Artifact:
        return self.backend.render(self.store.list_interfaces(), self.store.list_routes())

    def apply(
        self,
        dry_run: bool = False,
        reload: bool = True,
        operation: str = "interfaces",
    ) -> ApplyResult:
        """Render every stored interface and route and apply the artifact."""
        return self.applier.apply(
            self.backend, self.render(), dry_run=dry_run, reload=reload, operation=operation
        )

    def preview(self) -> str:
        """Human-readable diff of stored intent against the live file."""
        artifact = self.render()
        live = self.live_state()
        diff = self.diff_engine.interfaces(self.store.list_interfaces(), live.interfaces)
        for path, content in artifact.files.items():
            diff.file_diffs[path] = file_diff(path, self.backend.executor.read_file(path), content)

        summary = summarize_diff(diff)
        warnings = artifact.warnings + live.warnings
        if warnings:
            summary += "\n\nWarnings:\n" + "\n".join(f"  - {w}" for w in warnings)
        return summary
