"""ISC DHCP relay backend (``/etc/default/isc-dhcp-relay``)."""
import logging
import re
import shlex
from typing import Optional

from ..config_engine.schema import (
    Artifact,
    DHCPConfiguration,
    DHCPMode,
    DHCPState,
    NetworkInterfaceIntent,
)
from .base import DHCPBackend, restart_chain

logger = logging.getLogger(__name__)

ASSIGNMENT = re.compile(r"^([A-Z_][A-Z0-9_]*)=(.*)$")


class RelayBackend(DHCPBackend):
    """Forward DHCP requests on the listed interfaces to an upstream server."""

    name = "relay"

    @property
    def config_path(self) -> str:
        return self.paths.relay_defaults

    def render(
        self,
        config: DHCPConfiguration,
        existing: Optional[str] = None,
        interfaces: Optional[list[NetworkInterfaceIntent]] = None,
    ) -> Artifact:
        relay_interfaces = config.relay_interfaces or [p.interface for p in config.pools]
        text = (
            "# Generated by netsmith. Local changes will be overwritten.\n"
            f'SERVERS="{config.relay_target or ""}"\n'
            f'INTERFACES="{" ".join(relay_interfaces)}"\n'
            'OPTIONS=""\n'
        )
        return Artifact(files={self.config_path: text})

    def parse(self, text: str) -> DHCPState:
        state = DHCPState()
        values: dict[str, str] = {}

        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            match = ASSIGNMENT.match(line)
            if not match:
                state.warnings.append(f"line {lineno}: unrecognised line '{line}'")
                continue
            try:
                words = shlex.split(match.group(2))
            except ValueError:
                state.warnings.append(f"line {lineno}: unbalanced quotes")
                continue
            values[match.group(1)] = " ".join(words)

        servers = values.get("SERVERS", "").split()
        if len(servers) > 1:
            state.warnings.append(f"{len(servers)} relay servers listed, only the first is kept")

        config = state.config
        config.relay_target = servers[0] if servers else None
        config.relay_interfaces = values.get("INTERFACES", "").split()
        config.mode = DHCPMode.RELAY if config.relay_target else DHCPMode.DISABLED

        for message in state.warnings:
            logger.warning(f"{self.config_path}: {message}")
        return state

    def reload_commands(self) -> list[list[str]]:
        return restart_chain("isc-dhcp-relay")
