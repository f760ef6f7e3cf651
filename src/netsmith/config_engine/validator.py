"""Pre-flight validation for intents.

Catches malformed intents before anything is persisted or written to the host.
"""
import ipaddress
import re
from collections import Counter
from typing import Iterable, Optional

from .schema import (
    AddressMode,
    ConnectionType,
    DHCPConfiguration,
    DHCPMode,
    DHCPPoolIntent,
    DHCPReservationIntent,
    FirewallRuleIntent,
    InterfaceType,
    MultiWANConfiguration,
    NetworkInterfaceIntent,
    RuleAction,
    StaticRouteIntent,
    ValidationResult,
    WANConfiguration,
)

# Linux IFNAMSIZ is 16 including the terminator
INTERFACE_NAME = re.compile(r"^[A-Za-z0-9_.:@-]{1,15}$")
MAC_ADDRESS = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$")
LEASE_TIME = re.compile(r"^(\d+[smhdw]?|infinite)$")
PORT_SPEC = re.compile(r"^(\d{1,5})(?:[:-](\d{1,5}))?$")
HOSTNAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,62}$")

PORT_PROTOCOLS = {"tcp", "udp"}
VALID_PROTOCOLS = {"tcp", "udp", "icmp", "all"}

# Chains each action may appear in
FILTER_CHAINS = {"INPUT", "FORWARD", "OUTPUT"}
NAT_ONLY_CHAINS = {"PREROUTING", "POSTROUTING"}
ACTION_CHAINS = {
    RuleAction.MASQUERADE: {"POSTROUTING"},
    RuleAction.SNAT: {"POSTROUTING"},
    RuleAction.DNAT: {"PREROUTING", "OUTPUT"},
}


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def _is_network(value: str) -> bool:
    try:
        ipaddress.IPv4Network(value, strict=False)
        return True
    except ValueError:
        return False


def _is_netmask(value: str) -> bool:
    if value.isdigit():
        return 0 <= int(value) <= 32
    try:
        ipaddress.IPv4Network(f"0.0.0.0/{value}")
        return True
    except ValueError:
        return False


def _result(errors: list[str], warnings: list[str]) -> ValidationResult:
    return ValidationResult(valid=len(errors) == 0, errors=errors, warnings=warnings)


class ConfigValidator:
    """Validate intents for logical errors before execution."""

    def __init__(self, known_chains: Optional[Iterable[str]] = None):
        """
        Initialize validator.

        Args:
            known_chains: Chain names the active firewall backend manages.
                Defaults to the filter and nat base chains.
        """
        self.known_chains = set(known_chains) if known_chains else (
            FILTER_CHAINS | NAT_ONLY_CHAINS
        )

    # --- Interfaces ---

    def validate_interface(self, intent: NetworkInterfaceIntent) -> ValidationResult:
        """
        Validate a single interface intent.

        Checks:
        - Name format
        - Static addressing has address and netmask
        - Gateway and DNS are IPv4 addresses
        - VLAN id/link, bridge ports, wifi SSID
        """
        errors: list[str] = []
        warnings: list[str] = []
        name = intent.name

        if not INTERFACE_NAME.match(name or ""):
            errors.append(f"Invalid interface name: '{name}'")

        if intent.mode == AddressMode.STATIC:
            if not intent.address or not intent.netmask:
                errors.append(f"Interface {name}: static mode requires address and netmask")
            else:
                if not _is_ipv4(intent.address):
                    errors.append(f"Interface {name}: invalid address '{intent.address}'")
                if not _is_netmask(intent.netmask):
                    errors.append(f"Interface {name}: invalid netmask '{intent.netmask}'")

        if intent.gateway:
            if not _is_ipv4(intent.gateway):
                errors.append(f"Interface {name}: invalid gateway '{intent.gateway}'")
            elif not errors and intent.network is not None:
                if ipaddress.IPv4Address(intent.gateway) not in intent.network:
                    warnings.append(
                        f"Interface {name}: gateway {intent.gateway} is outside {intent.network}"
                    )

        for server in intent.dns:
            if not _is_ipv4(server):
                errors.append(f"Interface {name}: invalid DNS server '{server}'")

        if intent.mtu is not None and not 68 <= intent.mtu <= 9216:
            errors.append(f"Interface {name}: MTU {intent.mtu} out of range (68-9216)")

        if intent.type == InterfaceType.VLAN:
            if intent.vlan_id is None or not 1 <= intent.vlan_id <= 4094:
                errors.append(f"Interface {name}: VLAN id must be between 1 and 4094")
            if not intent.link:
                errors.append(f"Interface {name}: VLAN requires a parent link")
        elif intent.type == InterfaceType.BRIDGE and not intent.bridge_ports:
            warnings.append(f"Bridge {name} has no member ports")
        elif intent.type == InterfaceType.WIFI and not intent.ssid:
            warnings.append(f"Wifi interface {name} has no SSID")
        elif intent.type == InterfaceType.VPN:
            warnings.append(
                f"Interface {name}: vpn interfaces are not rendered by the interface backends"
            )

        return _result(errors, warnings)

    def validate_interfaces(
        self,
        interfaces: list[NetworkInterfaceIntent]
    ) -> ValidationResult:
        """Validate a full interface set, including name uniqueness."""
        result = ValidationResult(valid=True)
        for intent in interfaces:
            result = result.merge(self.validate_interface(intent))

        counts = Counter(i.name for i in interfaces)
        for name, count in counts.items():
            if count > 1:
                result.errors.append(f"Duplicate interface name: {name}")
                result.valid = False

        for intent in interfaces:
            for port in intent.bridge_ports:
                if port == intent.name:
                    result.errors.append(f"Bridge {intent.name} cannot contain itself")
                    result.valid = False

        # Overlapping subnets are allowed but reported
        seen: dict[str, str] = {}
        for intent in interfaces:
            try:
                network = intent.network
            except ValueError:
                continue
            if network is None:
                continue
            other = seen.get(str(network))
            if other:
                result.warnings.append(
                    f"Interfaces {other} and {intent.name} share subnet {network}"
                )
            seen[str(network)] = intent.name

        return result

    # --- Firewall ---

    def validate_rule(self, rule: FirewallRuleIntent) -> ValidationResult:
        """Validate one firewall rule in isolation."""
        errors: list[str] = []
        warnings: list[str] = []
        label = f"Rule in {rule.chain}"

        if rule.chain not in self.known_chains:
            errors.append(
                f"Unknown chain '{rule.chain}'. Known: {', '.join(sorted(self.known_chains))}"
            )

        allowed = ACTION_CHAINS.get(rule.action) or (self.known_chains - NAT_ONLY_CHAINS)
        if rule.chain in self.known_chains and rule.chain not in allowed:
            errors.append(
                f"{label}: action {rule.action.value} is only valid in "
                f"{', '.join(sorted(allowed))}"
            )

        if rule.action in (RuleAction.SNAT, RuleAction.DNAT):
            if not rule.target:
                errors.append(f"{label}: {rule.action.value} requires a target address")
        elif rule.target:
            warnings.append(f"{label}: target is ignored for action {rule.action.value}")

        if rule.protocol and rule.protocol not in VALID_PROTOCOLS:
            errors.append(f"{label}: invalid protocol '{rule.protocol}'")

        if rule.port:
            if rule.protocol not in PORT_PROTOCOLS:
                errors.append(f"{label}: a port requires protocol tcp or udp")
            match = PORT_SPEC.match(rule.port)
            if not match:
                errors.append(f"{label}: invalid port '{rule.port}'")
            else:
                low = int(match.group(1))
                high = int(match.group(2) or low)
                if not 1 <= low <= high <= 65535:
                    errors.append(f"{label}: invalid port range '{rule.port}'")

        for field_name in ("source", "destination"):
            value = getattr(rule, field_name)
            if value and not _is_network(value):
                errors.append(f"{label}: invalid {field_name} '{value}'")

        if rule.position < 0:
            errors.append(f"{label}: position must be >= 0")

        return _result(errors, warnings)

    def validate_rules(self, rules: list[FirewallRuleIntent]) -> ValidationResult:
        """Validate a rule set, including strict ordering within each chain."""
        result = ValidationResult(valid=True)
        for rule in rules:
            result = result.merge(self.validate_rule(rule))

        positions = Counter((r.table, r.chain, r.position) for r in rules if r.position > 0)
        for (table, chain, position), count in positions.items():
            if count > 1:
                result.errors.append(
                    f"Duplicate position {position} in {table} chain {chain}"
                )
                result.valid = False

        return result

    # --- DHCP ---

    def validate_pool(
        self,
        pool: DHCPPoolIntent,
        interfaces: Optional[list[NetworkInterfaceIntent]] = None
    ) -> ValidationResult:
        """Validate a pool; the range must fit the owning interface's subnet."""
        errors: list[str] = []
        warnings: list[str] = []
        label = f"DHCP pool on {pool.interface}"

        if not _is_ipv4(pool.start) or not _is_ipv4(pool.end):
            errors.append(f"{label}: invalid range {pool.start}-{pool.end}")
            return _result(errors, warnings)

        start = ipaddress.IPv4Address(pool.start)
        end = ipaddress.IPv4Address(pool.end)
        if start > end:
            errors.append(f"{label}: start {start} is after end {end}")

        if not LEASE_TIME.match(pool.lease_time):
            errors.append(f"{label}: invalid lease time '{pool.lease_time}'")

        for key in ("routers", "dns"):
            for value in pool.options.get(key, "").replace(",", " ").split():
                if not _is_ipv4(value):
                    errors.append(f"{label}: invalid {key} option '{value}'")

        owner = None
        for iface in interfaces or []:
            if iface.name == pool.interface:
                owner = iface
                break

        if interfaces is not None and owner is None:
            warnings.append(f"{label}: interface {pool.interface} is not configured")
        elif owner is not None:
            network = owner.network if owner.mode == AddressMode.STATIC else None
            if network is None:
                warnings.append(
                    f"{label}: interface has no static subnet, range cannot be checked"
                )
            elif start not in network or end not in network:
                errors.append(f"{label}: range {start}-{end} is outside {network}")
            elif owner.address and start <= ipaddress.IPv4Address(owner.address) <= end:
                warnings.append(f"{label}: range includes the interface address {owner.address}")

        return _result(errors, warnings)

    def validate_reservation(self, reservation: DHCPReservationIntent) -> ValidationResult:
        errors: list[str] = []
        if not MAC_ADDRESS.match(reservation.mac):
            errors.append(f"Invalid MAC address: '{reservation.mac}'")
        if not _is_ipv4(reservation.ip):
            errors.append(f"Reservation {reservation.mac}: invalid IP '{reservation.ip}'")
        if reservation.hostname and not HOSTNAME.match(reservation.hostname):
            errors.append(
                f"Reservation {reservation.mac}: invalid hostname '{reservation.hostname}'"
            )
        return _result(errors, [])

    def validate_dhcp(
        self,
        config: DHCPConfiguration,
        interfaces: Optional[list[NetworkInterfaceIntent]] = None
    ) -> ValidationResult:
        """
        Validate a complete DHCP configuration.

        Reservations that fall inside a dynamic range are reported as warnings
        only; the server still hands them out.
        """
        result = ValidationResult(valid=True)

        if config.mode == DHCPMode.RELAY:
            if not config.relay_target or not _is_ipv4(config.relay_target):
                result.errors.append("Relay mode requires a valid relay target")
                result.valid = False

        for pool in config.pools:
            result = result.merge(self.validate_pool(pool, interfaces))

        pool_interfaces = Counter(p.interface for p in config.pools)
        for name, count in pool_interfaces.items():
            if count > 1:
                result.errors.append(f"Duplicate pool for interface {name}")
                result.valid = False

        for reservation in config.reservations:
            result = result.merge(self.validate_reservation(reservation))

        macs = Counter(r.mac for r in config.reservations)
        for mac, count in macs.items():
            if count > 1:
                result.errors.append(f"Duplicate reservation for MAC {mac}")
                result.valid = False

        ips = Counter(r.ip for r in config.reservations if r.enabled)
        for ip, count in ips.items():
            if count > 1:
                result.errors.append(f"IP {ip} is reserved for more than one MAC")
                result.valid = False

        for reservation in config.reservations:
            if not _is_ipv4(reservation.ip):
                continue
            address = ipaddress.IPv4Address(reservation.ip)
            for pool in config.pools:
                if not (_is_ipv4(pool.start) and _is_ipv4(pool.end)):
                    continue
                if ipaddress.IPv4Address(pool.start) <= address <= ipaddress.IPv4Address(pool.end):
                    result.warnings.append(
                        f"Reservation {reservation.mac} ({address}) lies inside the "
                        f"dynamic range of pool on {pool.interface}"
                    )

        return result

    # --- Routing ---

    def validate_route(self, route: StaticRouteIntent) -> ValidationResult:
        errors: list[str] = []
        if route.destination != "default" and not _is_network(route.destination):
            errors.append(f"Invalid route destination: '{route.destination}'")
        if not route.gateway and not route.interface:
            errors.append(f"Route {route.destination}: requires a gateway or an interface")
        if route.gateway and not _is_ipv4(route.gateway):
            errors.append(f"Route {route.destination}: invalid gateway '{route.gateway}'")
        if route.interface and not INTERFACE_NAME.match(route.interface):
            errors.append(f"Route {route.destination}: invalid interface '{route.interface}'")
        if route.metric < 0:
            errors.append(f"Route {route.destination}: metric must be >= 0")
        return _result(errors, [])

    def validate_wan(self, wan: WANConfiguration) -> ValidationResult:
        errors: list[str] = []
        if not INTERFACE_NAME.match(wan.interface or ""):
            errors.append(f"Invalid WAN interface: '{wan.interface}'")
        if wan.connection_type == ConnectionType.STATIC:
            if not wan.ip or not wan.netmask:
                errors.append("Static WAN requires ip and netmask")
            elif not _is_ipv4(wan.ip) or not _is_netmask(wan.netmask):
                errors.append(f"Invalid static WAN address {wan.ip}/{wan.netmask}")
        for value in (wan.gateway, wan.dns1, wan.dns2):
            if value and not _is_ipv4(value):
                errors.append(f"Invalid WAN address '{value}'")
        return _result(errors, [])

    def validate_multiwan(self, config: MultiWANConfiguration) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        names = Counter(w.name for w in config.interfaces)
        for name, count in names.items():
            if count > 1:
                errors.append(f"Duplicate multi-WAN interface: {name}")
        for wan in config.interfaces:
            if not 1 <= wan.weight <= 256:
                errors.append(f"WAN {wan.name}: weight must be between 1 and 256")
        if config.enabled and sum(1 for w in config.interfaces if w.enabled) < 2:
            warnings.append("Multi-WAN enabled with fewer than two active interfaces")
        return _result(errors, warnings)
