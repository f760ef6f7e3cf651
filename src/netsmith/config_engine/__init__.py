"""Config Engine - declarative router configuration for Linux hosts.

The Config Engine turns declared intent into OS-native files:
- Store intent, not individual commands
- Validation before anything is persisted
- One deterministic renderer per backend
- Atomic writes, syntax checks and audited reloads

Usage:
    from netsmith.config_engine import Engine

    with Engine(load_settings()) as engine:
        engine.load({
            "interfaces": {
                "eth1": {"mode": "static", "address": "192.168.1.1", "netmask": "255.255.255.0"},
            },
            "dhcp": {
                "mode": "server",
                "pools": [{"interface": "eth1", "start": "192.168.1.100", "end": "192.168.1.200"}],
            },
        })
        print(engine.preview())
        engine.apply()
"""

from .schema import (
    InterfaceType,
    AddressMode,
    RuleAction,
    DHCPMode,
    ConnectionType,
    InterfaceBackendKind,
    FirewallBackendKind,
    DHCPBackendKind,
    ChangeType,
    NetworkInterfaceIntent,
    FirewallRuleIntent,
    DHCPPoolIntent,
    DHCPReservationIntent,
    StaticRouteIntent,
    DHCPConfiguration,
    WANConfiguration,
    WANInterface,
    MultiWANConfiguration,
    UPnPConfiguration,
    PolicyRule,
    DesiredState,
    LeaseRecord,
    SystemRoute,
    BackendSelection,
    ValidationResult,
    DiffResult,
    Artifact,
    ApplyResult,
)
from .parser import ConfigParser, ParseError
from .validator import ConfigValidator
from .diff import DiffEngine, summarize_diff
from .executor import Applier, atomic_write
from .engine import Engine

__all__ = [
    # Main engine
    "Engine",
    # Schema classes
    "InterfaceType",
    "AddressMode",
    "RuleAction",
    "DHCPMode",
    "ConnectionType",
    "InterfaceBackendKind",
    "FirewallBackendKind",
    "DHCPBackendKind",
    "ChangeType",
    "NetworkInterfaceIntent",
    "FirewallRuleIntent",
    "DHCPPoolIntent",
    "DHCPReservationIntent",
    "StaticRouteIntent",
    "DHCPConfiguration",
    "WANConfiguration",
    "WANInterface",
    "MultiWANConfiguration",
    "UPnPConfiguration",
    "PolicyRule",
    "DesiredState",
    "LeaseRecord",
    "SystemRoute",
    "BackendSelection",
    "ValidationResult",
    "DiffResult",
    "Artifact",
    "ApplyResult",
    # Parser
    "ConfigParser",
    "ParseError",
    # Components (for advanced use)
    "ConfigValidator",
    "DiffEngine",
    "summarize_diff",
    "Applier",
    "atomic_write",
]
