"""Orchestrators: validate intent, persist it, apply it through a backend."""
from .dhcp import DHCPManager
from .firewall import FirewallRuleEngine
from .interfaces import InterfaceManager
from .routing import RoutingManager

__all__ = [
    "InterfaceManager",
    "FirewallRuleEngine",
    "DHCPManager",
    "RoutingManager",
]
