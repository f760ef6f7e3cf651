"""Capability interfaces for the interface, firewall and DHCP subsystems.

Each subsystem has one abstract interface; every backend variant implements
it, and the Detector picks the variant once per process.
"""
import ipaddress
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..config.settings import Paths
from ..config_engine.schema import (
    Artifact,
    DHCPConfiguration,
    DHCPState,
    FirewallRuleIntent,
    FirewallState,
    InterfaceState,
    LeaseRecord,
    NetworkInterfaceIntent,
    StaticRouteIntent,
)
from ..errors import ParseFailure
from ..utils.executor import CommandResult, HostExecutor

logger = logging.getLogger(__name__)


def route_owner(
    route: StaticRouteIntent,
    interfaces: list[NetworkInterfaceIntent],
) -> Optional[str]:
    """Interface a route is attached to: explicit, else the one whose subnet holds the gateway."""
    if route.interface:
        return route.interface
    if not route.gateway:
        return None
    gateway = ipaddress.IPv4Address(route.gateway)
    for intent in interfaces:
        network = intent.network
        if network is not None and gateway in network:
            return intent.name
    return None


def restart_chain(service: str) -> list[list[str]]:
    """Reload fallback chain for a system service."""
    return [
        ["systemctl", "restart", service],
        ["service", service, "restart"],
    ]


class Backend(ABC):
    """Common base: a named backend bound to a host executor and its paths."""

    name: str = ""

    def __init__(self, executor: HostExecutor, paths: Optional[Paths] = None):
        self.executor = executor
        self.paths = paths or Paths()

    def check(self, artifact: Artifact) -> Optional[CommandResult]:
        """Run the backend's syntax check on written files, if it has one."""
        return None

    def reload_commands(self) -> list[list[str]]:
        """Commands that make the host pick up new files; first success wins."""
        return []

    def _read(self, path: str) -> Optional[str]:
        text = self.executor.read_file(path)
        if text is None:
            logger.debug(f"[{self.name}] {path} does not exist")
        return text

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class InterfaceBackend(Backend):
    """Declarative (netplan) or stanza-file (ifupdown) interface management."""

    @property
    @abstractmethod
    def config_path(self) -> str:
        pass

    @abstractmethod
    def parse(self, text: str) -> InterfaceState:
        """Recover interfaces and static routes from the native file."""
        pass

    @abstractmethod
    def render(
        self,
        interfaces: list[NetworkInterfaceIntent],
        routes: Optional[list[StaticRouteIntent]] = None,
    ) -> Artifact:
        """Render the native file for the given intents; deterministic."""
        pass

    def read_state(self) -> InterfaceState:
        text = self._read(self.config_path)
        if text is None:
            return InterfaceState(warnings=[f"{self.config_path} not found"])
        return self.parse(text)


class FirewallBackend(Backend):
    """nftables or iptables rule management."""

    @property
    @abstractmethod
    def config_path(self) -> str:
        pass

    @abstractmethod
    def list_command(self) -> list[str]:
        """Command that prints the live ruleset."""
        pass

    @abstractmethod
    def parse(self, text: str) -> FirewallState:
        """Parse the live listing (or a saved ruleset) into rules."""
        pass

    @abstractmethod
    def render(self, rules: list[FirewallRuleIntent]) -> Artifact:
        """Render a complete ruleset file; enabled rules only."""
        pass

    def read_state(self) -> FirewallState:
        """Query the kernel for the live ruleset."""
        result = self.executor.run(self.list_command())
        if not result.success:
            raise ParseFailure(result.command, result.stderr.strip() or "listing failed")
        return self.parse(result.stdout)


class DHCPBackend(Backend):
    """DHCP server (or relay) configuration and lease access."""

    @property
    @abstractmethod
    def config_path(self) -> str:
        pass

    @abstractmethod
    def parse(self, text: str) -> DHCPState:
        pass

    @abstractmethod
    def render(
        self,
        config: DHCPConfiguration,
        existing: Optional[str] = None,
        interfaces: Optional[list[NetworkInterfaceIntent]] = None,
    ) -> Artifact:
        """Render server config.

        Args:
            config: DHCP intent to render
            existing: Current file contents, for backends that preserve foreign lines
            interfaces: Interface intents, for backends that need subnet addresses
        """
        pass

    def parse_leases(self, text: str, now: Optional[datetime] = None) -> list[LeaseRecord]:
        return []

    @property
    def leases_path(self) -> Optional[str]:
        return None

    def read_state(self) -> DHCPState:
        text = self._read(self.config_path)
        if text is None:
            return DHCPState(warnings=[f"{self.config_path} not found"])
        return self.parse(text)

    def read_leases(self, now: Optional[datetime] = None) -> list[LeaseRecord]:
        if not self.leases_path:
            return []
        text = self._read(self.leases_path)
        if text is None:
            return []
        return self.parse_leases(text, now)

    def release_artifact(self, ip: str) -> Optional[Artifact]:
        """Lease database rewritten without ``ip``, for servers released by file edit."""
        return None

    def release_command(self, ip: str) -> Optional[list[str]]:
        """Command that makes the server forget a lease, if it has one."""
        return None
