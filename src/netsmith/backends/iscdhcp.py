"""ISC dhcpd (standalone DHCP server) backend."""
import ipaddress
import logging
import re
from datetime import datetime, timezone
from typing import Optional

from ..config_engine.schema import (
    Artifact,
    DHCPConfiguration,
    DHCPMode,
    DHCPPoolIntent,
    DHCPReservationIntent,
    DHCPState,
    LeaseRecord,
    NetworkInterfaceIntent,
)
from ..utils.executor import CommandResult
from .base import DHCPBackend, restart_chain
from .isc_syntax import Statement, parse_statements

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 86400
MAX_LEASE_SECONDS = 172800
ISC_DEFAULT_LEASE_SECONDS = 43200  # dhcpd's built-in default-lease-time
INFINITE_LEASE_SECONDS = 0xFFFFFFFF

UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
GENERATED_HOST = re.compile(r"^netsmith-[0-9a-f]{12}$")
INET_ADDR = re.compile(r"\binet (\d+\.\d+\.\d+\.\d+/\d+)")
DEFAULTS_INTERFACES = re.compile(r'^INTERFACESv4="([^"]*)"', re.MULTILINE)
INACTIVE_STATES = ("free", "released", "expired", "abandoned", "backup")

# Pool option keys with a dedicated dhcpd option name
OPTION_NAMES = {"routers": "routers", "dns": "domain-name-servers"}
OPTION_KEYS = {name: key for key, name in OPTION_NAMES.items()}


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def lease_seconds(duration: str) -> int:
    """Convert a dnsmasq-style duration (``24h``, ``30m``, ``3600``) to seconds."""
    duration = duration.strip().lower()
    if duration == "infinite":
        return INFINITE_LEASE_SECONDS
    if duration[-1] in UNITS:
        return int(duration[:-1]) * UNITS[duration[-1]]
    return int(duration)


def lease_duration(seconds: int) -> str:
    """Inverse of :func:`lease_seconds`, preferring the largest whole unit."""
    if seconds >= INFINITE_LEASE_SECONDS:
        return "infinite"
    for unit in ("h", "m"):
        if seconds and seconds % UNITS[unit] == 0:
            return f"{seconds // UNITS[unit]}{unit}"
    return f"{seconds}s"


def host_label(reservation: DHCPReservationIntent) -> str:
    """Name of the ``host`` block; must be unique within the file."""
    if reservation.hostname:
        return reservation.hostname
    return "netsmith-" + reservation.mac.replace(":", "")


def _quote(value: str) -> str:
    return '"' + value.replace('"', '\\"') + '"'


def _ends(statement: Statement) -> Optional[datetime]:
    """Expiry from ``ends W YYYY/MM/DD HH:MM:SS`` (UTC) or ``ends epoch N``."""
    words = statement.words[1:]
    if words and words[0] == "epoch" and len(words) > 1:
        return datetime.fromtimestamp(int(words[1]), tz=timezone.utc)
    if len(words) >= 3:
        stamp = datetime.strptime(f"{words[1]} {words[2]}", "%Y/%m/%d %H:%M:%S")
        return stamp.replace(tzinfo=timezone.utc)
    raise ValueError(f"unreadable expiry '{' '.join(statement.words)}'")


class IscDhcpBackend(DHCPBackend):
    """Render ``dhcpd.conf`` and its defaults file; parse config and leases."""

    name = "isc_dhcpd"

    @property
    def config_path(self) -> str:
        return self.paths.dhcpd_conf

    @property
    def leases_path(self) -> Optional[str]:
        return self.paths.dhcpd_leases

    # --- Synthesis ---

    def subnet_for(
        self,
        pool: DHCPPoolIntent,
        interfaces: Optional[list[NetworkInterfaceIntent]],
        warnings: list[str],
    ) -> ipaddress.IPv4Network:
        """Network for a pool: interface intent, else the live address, else a /24."""
        for intent in interfaces or []:
            if intent.name == pool.interface and intent.network is not None:
                return intent.network

        result = self.executor.run(["ip", "-o", "-4", "addr", "show", "dev", pool.interface])
        if result.success:
            match = INET_ADDR.search(result.stdout)
            if match:
                return ipaddress.IPv4Interface(match.group(1)).network

        network = ipaddress.IPv4Network(f"{pool.start}/24", strict=False)
        warnings.append(
            f"Pool on {pool.interface}: interface address unknown, assuming {network}"
        )
        return network

    def render(
        self,
        config: DHCPConfiguration,
        existing: Optional[str] = None,
        interfaces: Optional[list[NetworkInterfaceIntent]] = None,
    ) -> Artifact:
        warnings: list[str] = []
        pools = config.pools if config.mode == DHCPMode.SERVER else []

        lines = [
            "# Generated by netsmith. Local changes will be overwritten.",
            f"default-lease-time {DEFAULT_LEASE_SECONDS};",
            f"max-lease-time {MAX_LEASE_SECONDS};",
        ]
        if any(p.authoritative for p in pools):
            lines.append("authoritative;")

        for pool in pools:
            network = self.subnet_for(pool, interfaces, warnings)
            lines.append("")
            lines.append(f"subnet {network.network_address} netmask {network.netmask} {{")
            lines.append(f"    range {pool.start} {pool.end};")
            for key in ("routers", "dns"):
                if pool.options.get(key):
                    values = ", ".join(pool.options[key].replace(",", " ").split())
                    lines.append(f"    option {OPTION_NAMES[key]} {values};")
            if pool.domain:
                lines.append(f"    option domain-name {_quote(pool.domain)};")
            for key, value in sorted(pool.options.items()):
                if key not in OPTION_NAMES:
                    lines.append(f"    option {key} {value};")
            lines.append(f"    default-lease-time {lease_seconds(pool.lease_time)};")
            lines.append("}")

        if pools:
            for reservation in config.reservations:
                if not reservation.enabled:
                    continue
                lines.append("")
                lines.append(f"host {host_label(reservation)} {{")
                lines.append(f"    hardware ethernet {reservation.mac};")
                lines.append(f"    fixed-address {reservation.ip};")
                lines.append("}")

        for message in warnings:
            logger.warning(message)

        return Artifact(
            files={
                self.config_path: "\n".join(lines) + "\n",
                self.paths.dhcpd_defaults: self.render_defaults(pools),
            },
            warnings=warnings,
        )

    def render_defaults(self, pools: list[DHCPPoolIntent]) -> str:
        names = " ".join(p.interface for p in pools)
        return f'INTERFACESv4="{names}"\nINTERFACESv6=""\n'

    # --- Parsing ---

    def parse(self, text: str, interface_names: Optional[list[str]] = None) -> DHCPState:
        """Parse ``dhcpd.conf``.

        Args:
            text: Config file contents
            interface_names: Served interfaces (``INTERFACESv4``), assigned to
                subnets in declaration order
        """
        statements, warnings = parse_statements(text, source=self.config_path)
        state = DHCPState(warnings=warnings)
        config = state.config

        root = Statement(["root"], children=statements)
        global_authoritative = root.first("authoritative") is not None
        global_lease = self._lease_time(root, ISC_DEFAULT_LEASE_SECONDS, state.warnings)

        for subnet in self._subnets(statements):
            pool = self._pool(subnet, global_authoritative, global_lease, state.warnings)
            if pool is not None:
                config.pools.append(pool)

        for host in self._hosts(statements):
            reservation = self._reservation(host)
            if reservation is None:
                state.warnings.append(
                    f"line {host.line}: host block without hardware ethernet or fixed-address"
                )
                continue
            config.reservations.append(reservation)

        for pool, name in zip(config.pools, interface_names or []):
            pool.interface = name

        config.mode = DHCPMode.SERVER if config.pools else DHCPMode.DISABLED

        for message in state.warnings:
            logger.warning(f"{self.config_path}: {message}")
        return state

    def _subnets(self, statements: list[Statement]) -> list[Statement]:
        """Subnet blocks, including ones nested in shared-network or group blocks."""
        found = []
        for statement in statements:
            if statement.children is None:
                continue
            if statement.keyword == "subnet":
                found.append(statement)
            elif statement.keyword in ("shared-network", "group"):
                found.extend(self._subnets(statement.children))
        return found

    def _hosts(self, statements: list[Statement]) -> list[Statement]:
        found = []
        for statement in statements:
            if statement.children is None:
                continue
            if statement.keyword == "host":
                found.append(statement)
            else:
                found.extend(self._hosts(statement.children))
        return found

    def _lease_time(self, block: Statement, default: int, warnings: list[str]) -> int:
        statement = block.first("default-lease-time")
        if statement is None or len(statement.words) < 2:
            return default
        try:
            return int(statement.words[1])
        except ValueError:
            warnings.append(f"line {statement.line}: unreadable default-lease-time")
            return default

    def _pool(
        self,
        subnet: Statement,
        authoritative: bool,
        default_lease: int,
        warnings: list[str],
    ) -> Optional[DHCPPoolIntent]:
        # Ranges may sit directly in the subnet or inside pool blocks
        ranges = list(subnet.find("range"))
        for nested in subnet.find("pool"):
            ranges.extend(nested.find("range"))
        bounds = []
        for statement in ranges:
            words = [w for w in statement.words[1:] if w != "dynamic-bootp"]
            if len(words) == 1:
                # A single-address range
                words = words * 2
            if len(words) != 2 or not all(_is_ipv4(w) for w in words):
                warnings.append(f"line {statement.line}: unreadable range skipped")
                continue
            bounds.append(words)
        if not bounds:
            warnings.append(f"line {subnet.line}: subnet without a range skipped")
            return None
        if len(bounds) > 1:
            warnings.append(f"line {subnet.line}: only the first of {len(bounds)} ranges kept")

        pool = DHCPPoolIntent(
            interface="",
            start=bounds[0][0],
            end=bounds[0][1],
            lease_time=lease_duration(self._lease_time(subnet, default_lease, warnings)),
            authoritative=authoritative or subnet.first("authoritative") is not None,
        )

        for option in subnet.find("option"):
            if len(option.words) < 3:
                continue
            name, values = option.words[1], option.words[2:]
            if name == "domain-name":
                pool.domain = values[0]
            elif name in OPTION_KEYS:
                pool.options[OPTION_KEYS[name]] = ",".join(values)
            else:
                pool.options[name] = " ".join(values)
        return pool

    def _reservation(self, host: Statement) -> Optional[DHCPReservationIntent]:
        hardware = host.first("hardware", "ethernet")
        fixed = host.first("fixed-address")
        if hardware is None or fixed is None or len(hardware.words) < 3 or len(fixed.words) < 2:
            return None

        label = host.words[1] if len(host.words) > 1 else ""
        hostname = None if GENERATED_HOST.match(label) else label or None
        host_name_option = host.first("option", "host-name")
        if host_name_option is not None and len(host_name_option.words) > 2:
            hostname = host_name_option.words[2]

        return DHCPReservationIntent(mac=hardware.words[2], ip=fixed.words[1], hostname=hostname)

    def served_interfaces(self) -> list[str]:
        """``INTERFACESv4`` from the defaults file."""
        text = self._read(self.paths.dhcpd_defaults)
        if not text:
            return []
        match = DEFAULTS_INTERFACES.search(text)
        return match.group(1).split() if match else []

    def read_state(self) -> DHCPState:
        text = self._read(self.config_path)
        if text is None:
            return DHCPState(warnings=[f"{self.config_path} not found"])
        return self.parse(text, interface_names=self.served_interfaces())

    def parse_leases(self, text: str, now: Optional[datetime] = None) -> list[LeaseRecord]:
        """Parse ``dhcpd.leases``; a later block for the same IP supersedes earlier ones."""
        now = now or datetime.now(timezone.utc)
        statements, warnings = parse_statements(text, source=self.leases_path or "dhcpd.leases")
        for message in warnings:
            logger.warning(f"{self.leases_path}: {message}")

        by_ip: dict[str, LeaseRecord] = {}
        for block in statements:
            if block.keyword != "lease" or block.children is None or len(block.words) < 2:
                continue

            hardware = block.first("hardware", "ethernet")
            if hardware is None or len(hardware.words) < 3:
                logger.warning(f"{self.leases_path}: lease {block.words[1]} has no MAC, skipped")
                continue

            expires_at = None
            ends = block.first("ends")
            if ends is not None and ends.words[1:2] != ["never"]:
                try:
                    expires_at = _ends(ends)
                except ValueError as e:
                    logger.warning(f"{self.leases_path}: lease {block.words[1]}: {e}")
                    continue

            hostname = block.first("client-hostname")
            binding = block.first("binding", "state")
            bound = binding is None or binding.words[-1] not in INACTIVE_STATES

            by_ip[block.words[1]] = LeaseRecord(
                mac=hardware.words[2].lower(),
                ip=block.words[1],
                hostname=hostname.words[1] if hostname and len(hostname.words) > 1 else None,
                expires_at=expires_at,
                active=bound and (expires_at is None or now < expires_at),
            )

        return list(by_ip.values())

    def release_artifact(self, ip: str) -> Optional[Artifact]:
        """The leases file with every block for ``ip`` removed; None if absent."""
        if not self.leases_path:
            return None
        text = self._read(self.leases_path)
        if text is None:
            return None
        pattern = re.compile(r"^lease " + re.escape(ip) + r" \{[^}]*\}\n?", re.MULTILINE)
        remaining, count = pattern.subn("", text)
        if count == 0:
            return None
        return Artifact(files={self.leases_path: remaining})

    # --- Apply hooks ---

    def check(self, artifact: Artifact) -> Optional[CommandResult]:
        return self.executor.run(["dhcpd", "-t", "-cf", self.config_path])

    def reload_commands(self) -> list[list[str]]:
        return restart_chain("isc-dhcp-server")
