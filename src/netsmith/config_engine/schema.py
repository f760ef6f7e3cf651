"""Schema definitions for the Config Engine.

Declared intents, derived live-state records, and the result types that flow
between parsers, synthesizers, the Applier and the managers.
"""
import ipaddress
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..errors import ApplyFailed, ValidationFailed


class InterfaceType(str, Enum):
    """Kind of network interface."""
    ETHERNET = "ethernet"
    WIFI = "wifi"
    BRIDGE = "bridge"
    VLAN = "vlan"
    VPN = "vpn"


class AddressMode(str, Enum):
    """How an interface obtains its IPv4 address."""
    DHCP = "dhcp"
    STATIC = "static"


class RuleAction(str, Enum):
    """Verdict or NAT action of a firewall rule."""
    ACCEPT = "accept"
    DROP = "drop"
    REJECT = "reject"
    MASQUERADE = "masquerade"
    SNAT = "snat"
    DNAT = "dnat"

    @property
    def is_nat(self) -> bool:
        return self in (RuleAction.MASQUERADE, RuleAction.SNAT, RuleAction.DNAT)


class DHCPMode(str, Enum):
    """Operating mode of the DHCP subsystem."""
    SERVER = "server"
    RELAY = "relay"
    DISABLED = "disabled"


class ConnectionType(str, Enum):
    """WAN uplink type."""
    DHCP = "dhcp"
    STATIC = "static"
    PPPOE = "pppoe"


class InterfaceBackendKind(str, Enum):
    NETPLAN = "netplan"
    IFUPDOWN = "ifupdown"


class FirewallBackendKind(str, Enum):
    NFTABLES = "nftables"
    IPTABLES = "iptables"


class DHCPBackendKind(str, Enum):
    DNSMASQ = "dnsmasq"
    ISC_DHCPD = "isc_dhcpd"
    RELAY = "relay"
    DISABLED = "disabled"


class ChangeType(str, Enum):
    """Type of change in a diff."""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    NO_CHANGE = "no_change"


def to_dict(obj: Any) -> dict:
    """Convert an intent dataclass to a plain JSON-friendly dict."""
    def _plain(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {k: _plain(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_plain(v) for v in value]
        return value

    return _plain(asdict(obj))


def netmask_to_prefix(netmask: str) -> int:
    """Convert ``255.255.255.0`` (or ``24``) to a prefix length."""
    if netmask.isdigit():
        return int(netmask)
    return ipaddress.IPv4Network(f"0.0.0.0/{netmask}").prefixlen


def prefix_to_netmask(prefix: int) -> str:
    return str(ipaddress.IPv4Network(f"0.0.0.0/{prefix}").netmask)


# --- Intents ---

@dataclass
class NetworkInterfaceIntent:
    """Declared configuration of one network interface."""
    name: str
    type: InterfaceType = InterfaceType.ETHERNET
    enabled: bool = True
    mode: AddressMode = AddressMode.DHCP
    address: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    dns: list[str] = field(default_factory=list)
    mtu: Optional[int] = None
    # vlan
    vlan_id: Optional[int] = None
    link: Optional[str] = None
    # bridge
    bridge_ports: list[str] = field(default_factory=list)
    # wifi
    ssid: Optional[str] = None
    psk: Optional[str] = None

    @property
    def prefixlen(self) -> Optional[int]:
        if not self.netmask:
            return None
        return netmask_to_prefix(self.netmask)

    @property
    def cidr(self) -> Optional[str]:
        """``address/prefixlen`` for static interfaces."""
        if not self.address or not self.netmask:
            return None
        return f"{self.address}/{self.prefixlen}"

    @property
    def network(self) -> Optional[ipaddress.IPv4Network]:
        if not self.cidr:
            return None
        return ipaddress.IPv4Interface(self.cidr).network


@dataclass
class FirewallRuleIntent:
    """One firewall rule; predicate fields are optional filters."""
    chain: str
    action: RuleAction
    protocol: Optional[str] = None  # tcp, udp, icmp, all
    source: Optional[str] = None
    destination: Optional[str] = None
    port: Optional[str] = None  # "22" or "8000:8080"
    target: Optional[str] = None  # snat/dnat address
    position: int = 0  # 0 = append to the end of the chain
    enabled: bool = True
    comment: Optional[str] = None
    id: Optional[int] = None

    @property
    def table(self) -> str:
        return "nat" if self.action.is_nat else "filter"

    def match_key(self) -> tuple:
        """Identity of the rule as recovered from live state."""
        return (
            self.chain,
            self.action.value,
            self.protocol,
            self.source,
            self.destination,
            self.port,
            self.target,
        )


@dataclass
class DHCPPoolIntent:
    """Dynamic address pool served on one interface."""
    interface: str
    start: str
    end: str
    lease_time: str = "24h"
    authoritative: bool = True
    domain: Optional[str] = None
    options: dict[str, str] = field(default_factory=dict)  # routers, dns


@dataclass
class DHCPReservationIntent:
    """Fixed address for one client, keyed by MAC."""
    mac: str
    ip: str
    hostname: Optional[str] = None
    enabled: bool = True

    def __post_init__(self):
        self.mac = self.mac.strip().lower()


@dataclass
class StaticRouteIntent:
    """A static route persisted through the interface backend."""
    destination: str
    gateway: Optional[str] = None
    interface: Optional[str] = None
    metric: int = 0

    def ip_args(self) -> list[str]:
        """Arguments after ``ip route <verb>``."""
        args = [self.destination]
        if self.gateway:
            args += ["via", self.gateway]
        if self.interface:
            args += ["dev", self.interface]
        if self.metric > 0:
            args += ["metric", str(self.metric)]
        return args


@dataclass
class DHCPConfiguration:
    """Complete DHCP intent: mode plus pools and reservations."""
    mode: DHCPMode = DHCPMode.DISABLED
    pools: list[DHCPPoolIntent] = field(default_factory=list)
    reservations: list[DHCPReservationIntent] = field(default_factory=list)
    relay_target: Optional[str] = None
    relay_interfaces: list[str] = field(default_factory=list)


@dataclass
class WANConfiguration:
    """Primary uplink settings."""
    interface: str
    connection_type: ConnectionType = ConnectionType.DHCP
    ip: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    dns1: Optional[str] = None
    dns2: Optional[str] = None
    mtu: Optional[int] = None
    enabled: bool = True


@dataclass
class WANInterface:
    """One uplink participating in multi-WAN."""
    name: str
    weight: int = 1
    priority: int = 1
    enabled: bool = True


@dataclass
class LoadBalanceSettings:
    method: str = "weighted"
    sticky: bool = False
    threshold: int = 0


@dataclass
class FailoverSettings:
    enabled: bool = False
    ping_target: str = "8.8.8.8"
    ping_interval: int = 5
    ping_timeout: int = 2
    ping_failures: int = 3
    recovery_delay: int = 30


@dataclass
class MultiWANConfiguration:
    enabled: bool = False
    interfaces: list[WANInterface] = field(default_factory=list)
    load_balance: LoadBalanceSettings = field(default_factory=LoadBalanceSettings)
    failover: FailoverSettings = field(default_factory=FailoverSettings)


@dataclass
class UPnPConfiguration:
    enabled: bool = False
    allow_port_mapping: bool = True
    allow_pcp_nat_mapping: bool = False
    stun_server: Optional[str] = None
    traffic_shaping: bool = False
    interfaces: list[str] = field(default_factory=list)


@dataclass
class PolicyRule:
    """An ``ip rule`` selecting a routing table."""
    table: int
    source: Optional[str] = None
    destination: Optional[str] = None
    iif: Optional[str] = None

    def ip_args(self) -> list[str]:
        args = []
        if self.source:
            args += ["from", self.source]
        if self.destination:
            args += ["to", self.destination]
        if self.iif:
            args += ["iif", self.iif]
        return args + ["table", str(self.table)]


@dataclass
class DesiredState:
    """A complete declared configuration, as loaded from a YAML document."""
    interfaces: list[NetworkInterfaceIntent] = field(default_factory=list)
    firewall_rules: list[FirewallRuleIntent] = field(default_factory=list)
    dhcp: Optional[DHCPConfiguration] = None
    routes: list[StaticRouteIntent] = field(default_factory=list)
    wan: Optional[WANConfiguration] = None
    multiwan: Optional[MultiWANConfiguration] = None


# --- Derived live state ---

@dataclass
class LeaseRecord:
    """A DHCP lease as recorded by the running server."""
    mac: str
    ip: str
    hostname: Optional[str] = None
    expires_at: Optional[datetime] = None  # None = infinite
    active: bool = True


@dataclass
class SystemRoute:
    """One line of ``ip route show``."""
    destination: str
    gateway: Optional[str] = None
    interface: Optional[str] = None
    metric: int = 0
    protocol: Optional[str] = None
    scope: Optional[str] = None


@dataclass
class FirewallChain:
    name: str
    policy: Optional[str] = None
    table: str = "filter"


@dataclass
class BackendSelection:
    """Backends chosen by the Detector for this process."""
    interfaces: Optional[InterfaceBackendKind] = None
    firewall: Optional[FirewallBackendKind] = None
    dhcp: Optional[DHCPBackendKind] = None


@dataclass
class InterfaceState:
    """Interfaces and routes recovered from the interface backend's file."""
    interfaces: list[NetworkInterfaceIntent] = field(default_factory=list)
    routes: list[StaticRouteIntent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def get(self, name: str) -> Optional[NetworkInterfaceIntent]:
        for iface in self.interfaces:
            if iface.name == name:
                return iface
        return None


@dataclass
class FirewallState:
    """Rules and chains recovered from the firewall backend."""
    rules: list[FirewallRuleIntent] = field(default_factory=list)
    chains: list[FirewallChain] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class DHCPState:
    """DHCP configuration recovered from the running server's config."""
    config: DHCPConfiguration = field(default_factory=DHCPConfiguration)
    warnings: list[str] = field(default_factory=list)


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of intent validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        return ValidationResult(
            valid=self.valid and other.valid,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )

    def raise_if_invalid(self) -> None:
        if not self.valid:
            raise ValidationFailed(self.errors, self.warnings)


# --- Diff Results ---

@dataclass
class ItemChange:
    """A single intent-level change between desired and live state."""
    category: str  # interface, rule, pool, reservation, route
    key: str
    change_type: ChangeType
    current: Optional[dict] = None
    desired: Optional[dict] = None
    fields: list[str] = field(default_factory=list)


@dataclass
class DiffResult:
    """Result of diffing desired vs live state."""
    changes: list[ItemChange] = field(default_factory=list)
    file_diffs: dict[str, str] = field(default_factory=dict)

    @property
    def no_change(self) -> bool:
        return len(self.changes) == 0 and not any(self.file_diffs.values())

    @property
    def total_changes(self) -> int:
        return len(self.changes)


# --- Artifacts and apply results ---

@dataclass
class Artifact:
    """Rendered output of a synthesizer: one or more files to write."""
    files: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    mode: int = 0o644

    @property
    def primary_path(self) -> Optional[str]:
        return next(iter(self.files), None)

    @property
    def text(self) -> str:
        """All file contents, for logs and error reports."""
        if len(self.files) == 1:
            return next(iter(self.files.values()))
        return "".join(f"# --- {path}\n{content}" for path, content in self.files.items())


@dataclass
class ApplyResult:
    """Outcome of pushing an artifact to the host."""
    backend: str
    success: bool = False
    changed: bool = False
    dry_run: bool = False
    stderr: str = ""
    artifact: str = ""
    diff: str = ""
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    commands_executed: list[str] = field(default_factory=list)
    live_applied: bool = False

    def raise_for_status(self) -> "ApplyResult":
        if not self.success:
            raise ApplyFailed(
                self.backend,
                self.error or "apply failed",
                stderr=self.stderr,
                artifact=self.artifact,
                live_applied=self.live_applied,
            )
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "backend": self.backend,
            "success": self.success,
            "changed": self.changed,
            "dry_run": self.dry_run,
            "stderr": self.stderr,
            "diff": self.diff,
            "error": self.error,
            "warnings": self.warnings,
            "commands_executed": self.commands_executed,
            "live_applied": self.live_applied,
        }
