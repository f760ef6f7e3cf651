"""OS backends for interfaces, firewall and DHCP."""
from typing import Optional

from ..config.settings import Settings
from ..config_engine.schema import DHCPBackendKind, FirewallBackendKind, InterfaceBackendKind
from ..utils.executor import HostExecutor
from .base import Backend, DHCPBackend, FirewallBackend, InterfaceBackend
from .detector import Detector
from .dnsmasq import DnsmasqBackend
from .ifupdown import IfupdownBackend
from .iproute import IprouteBackend
from .iptables import IptablesBackend
from .iscdhcp import IscDhcpBackend
from .netplan import NetplanBackend
from .nftables import NftablesBackend
from .relay import RelayBackend

__all__ = [
    "Backend",
    "InterfaceBackend",
    "FirewallBackend",
    "DHCPBackend",
    "Detector",
    "NetplanBackend",
    "IfupdownBackend",
    "NftablesBackend",
    "IptablesBackend",
    "DnsmasqBackend",
    "IscDhcpBackend",
    "RelayBackend",
    "IprouteBackend",
    "create_interface_backend",
    "create_firewall_backend",
    "create_dhcp_backend",
]

# Backend registries
INTERFACE_BACKENDS = {
    InterfaceBackendKind.NETPLAN: NetplanBackend,
    InterfaceBackendKind.IFUPDOWN: IfupdownBackend,
}

FIREWALL_BACKENDS = {
    FirewallBackendKind.NFTABLES: NftablesBackend,
    FirewallBackendKind.IPTABLES: IptablesBackend,
}

DHCP_BACKENDS = {
    DHCPBackendKind.DNSMASQ: DnsmasqBackend,
    DHCPBackendKind.ISC_DHCPD: IscDhcpBackend,
    DHCPBackendKind.RELAY: RelayBackend,
}


def create_interface_backend(
    kind: InterfaceBackendKind,
    executor: HostExecutor,
    settings: Optional[Settings] = None,
) -> InterfaceBackend:
    """Factory function to create interface backend instances."""
    settings = settings or Settings()
    if kind not in INTERFACE_BACKENDS:
        raise ValueError(f"Unknown interface backend: {kind}")
    return INTERFACE_BACKENDS[kind](executor, settings.paths)


def create_firewall_backend(
    kind: FirewallBackendKind,
    executor: HostExecutor,
    settings: Optional[Settings] = None,
) -> FirewallBackend:
    """Factory function to create firewall backend instances."""
    settings = settings or Settings()
    if kind not in FIREWALL_BACKENDS:
        raise ValueError(f"Unknown firewall backend: {kind}")
    return FIREWALL_BACKENDS[kind](executor, settings.paths, settings.firewall_chains)


def create_dhcp_backend(
    kind: DHCPBackendKind,
    executor: HostExecutor,
    settings: Optional[Settings] = None,
) -> DHCPBackend:
    """Factory function to create DHCP backend instances."""
    settings = settings or Settings()
    if kind not in DHCP_BACKENDS:
        raise ValueError(f"Unknown DHCP backend: {kind}")
    return DHCP_BACKENDS[kind](executor, settings.paths)
