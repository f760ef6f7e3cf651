"""Backend detection.

Probes the host once per process for the tools and canonical paths of each
subsystem and selects one backend per subsystem. Settings can pin a backend
(``backends.interfaces: ifupdown``), which skips the probe for that subsystem.
"""
import logging
from typing import Optional

from ..config.settings import Settings
from ..config_engine.schema import (
    BackendSelection,
    DHCPBackendKind,
    FirewallBackendKind,
    InterfaceBackendKind,
)
from ..errors import BackendUnavailable
from ..utils.executor import HostExecutor
from ..utils.logging_config import timed

logger = logging.getLogger(__name__)


class Detector:
    """Select the active backend for each subsystem."""

    def __init__(self, executor: HostExecutor, settings: Optional[Settings] = None):
        self.executor = executor
        self.settings = settings or Settings()
        self._selection: Optional[BackendSelection] = None

    @property
    def paths(self):
        return self.settings.paths

    def _running(self, *pgrep_args: str) -> bool:
        return self.executor.run(["pgrep", *pgrep_args]).success

    def detect_interface_backend(self) -> InterfaceBackendKind:
        """Prefer netplan when its directory and CLI exist; else ifupdown.

        Raises:
            BackendUnavailable: If neither is present
        """
        if self.settings.interface_backend != "auto":
            return InterfaceBackendKind(self.settings.interface_backend)

        if self.executor.path_exists(self.paths.netplan_dir) and self.executor.which("netplan"):
            return InterfaceBackendKind.NETPLAN
        if self.executor.path_exists(self.paths.interfaces_file):
            return InterfaceBackendKind.IFUPDOWN

        raise BackendUnavailable(
            "interface",
            f"neither netplan ({self.paths.netplan_dir}) nor {self.paths.interfaces_file} found",
        )

    def detect_firewall_backend(self) -> FirewallBackendKind:
        """Prefer nftables when ``nft list tables`` works; else iptables.

        Raises:
            BackendUnavailable: If neither tool resolves
        """
        if self.settings.firewall_backend != "auto":
            return FirewallBackendKind(self.settings.firewall_backend)

        if self.executor.which("nft"):
            probe = self.executor.run(["nft", "list", "tables"])
            if probe.success:
                return FirewallBackendKind.NFTABLES
            logger.debug(f"nft present but probe failed: {probe.stderr.strip()}")

        if self.executor.which("iptables"):
            return FirewallBackendKind.IPTABLES

        raise BackendUnavailable("firewall", "neither nft nor iptables found on PATH")

    def dnsmasq_serves_dhcp(self) -> bool:
        """True when the dnsmasq config declares at least one DHCP range."""
        text = self.executor.read_file(self.paths.dnsmasq_conf)
        if not text:
            return False
        return any(
            line.strip().startswith("dhcp-range")
            for line in text.splitlines()
        )

    def detect_dhcp_backend(self) -> DHCPBackendKind:
        """Classify what currently serves DHCP on this host."""
        if self.settings.dhcp_backend != "auto":
            return DHCPBackendKind(self.settings.dhcp_backend)

        if self._running("-x", "dnsmasq") and self.dnsmasq_serves_dhcp():
            return DHCPBackendKind.DNSMASQ
        if self._running("-x", "dhcpd"):
            return DHCPBackendKind.ISC_DHCPD
        if self._running("-x", "dhcrelay"):
            return DHCPBackendKind.RELAY
        return DHCPBackendKind.DISABLED

    def select_dhcp_server(self) -> DHCPBackendKind:
        """Backend for new server configuration: dnsmasq, then ISC dhcpd.

        Raises:
            BackendUnavailable: If neither server is installed
        """
        if self.settings.dhcp_backend != "auto":
            return DHCPBackendKind(self.settings.dhcp_backend)

        if self.executor.which("dnsmasq"):
            return DHCPBackendKind.DNSMASQ
        if self.executor.which("dhcpd"):
            return DHCPBackendKind.ISC_DHCPD
        raise BackendUnavailable("dhcp", "neither dnsmasq nor dhcpd found on PATH")

    def selection(self) -> BackendSelection:
        """Cached selection for this process; unavailable subsystems are None."""
        if self._selection is None:
            self._selection = self._probe()
        return self._selection

    @timed("detect", backend="host")
    def _probe(self) -> BackendSelection:
        selection = BackendSelection()
        try:
            selection.interfaces = self.detect_interface_backend()
        except BackendUnavailable as e:
            logger.warning(str(e))
        try:
            selection.firewall = self.detect_firewall_backend()
        except BackendUnavailable as e:
            logger.warning(str(e))
        selection.dhcp = self.detect_dhcp_backend()

        logger.info(
            f"Backends: interfaces={selection.interfaces and selection.interfaces.value}, "
            f"firewall={selection.firewall and selection.firewall.value}, "
            f"dhcp={selection.dhcp.value}"
        )
        return selection

    def refresh(self) -> BackendSelection:
        """Drop the cached selection and probe again."""
        self._selection = None
        return self.selection()
