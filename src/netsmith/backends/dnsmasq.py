"""dnsmasq (integrated DNS/DHCP resolver) backend."""
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

logger = logging.getLogger(__name__)

BLOCK_BEGIN = "# BEGIN netsmith dhcp"
BLOCK_END = "# END netsmith dhcp"

# Directives owned by the DHCP block; anything else in the file is preserved
DHCP_DIRECTIVES = ("dhcp-range", "dhcp-option", "dhcp-host", "dhcp-authoritative")

MAC = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")
DURATION = re.compile(r"^(\d+[smhdw]?|infinite)$")

# DHCP option codes and dnsmasq option names mapped to pool option keys
OPTION_KEYS = {
    "3": "routers",
    "router": "routers",
    "6": "dns",
    "dns-server": "dns",
    "15": "domain-name",
    "domain-name": "domain-name",
}
OPTION_NAMES = {"routers": "router", "dns": "dns-server"}


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def _directive(line: str) -> tuple[str, str]:
    key, _, value = line.partition("=")
    return key.strip(), value.strip()


def _strip_tags(fields: list[str]) -> tuple[list[str], Optional[str]]:
    """Drop ``tag:``/``set:`` fields, returning the remaining fields and the first tag."""
    tag = None
    rest = []
    for item in fields:
        if item.startswith(("set:", "tag:", "net:")):
            tag = tag or item.split(":", 1)[1]
        else:
            rest.append(item)
    return rest, tag


class DnsmasqBackend(DHCPBackend):
    """Maintain a marked DHCP block inside ``dnsmasq.conf``; parse dnsmasq leases."""

    name = "dnsmasq"

    @property
    def config_path(self) -> str:
        return self.paths.dnsmasq_conf

    @property
    def leases_path(self) -> Optional[str]:
        return self.paths.dnsmasq_leases

    # --- Synthesis ---

    def render_block(self, config: DHCPConfiguration) -> list[str]:
        """The marked block for ``config``; empty when DHCP is not served."""
        if config.mode != DHCPMode.SERVER or not config.pools:
            return []

        tagged = len(config.pools) > 1
        lines = [BLOCK_BEGIN]
        for pool in config.pools:
            tag = f"set:{pool.interface}," if tagged else ""
            opt = f"tag:{pool.interface}," if tagged else ""
            lines.append(f"interface={pool.interface}")
            lines.append(f"dhcp-range={tag}{pool.start},{pool.end},{pool.lease_time}")
            for key in ("routers", "dns"):
                if pool.options.get(key):
                    values = ",".join(pool.options[key].replace(",", " ").split())
                    lines.append(f"dhcp-option={opt}option:{OPTION_NAMES[key]},{values}")
            if pool.domain:
                lines.append(f"dhcp-option={opt}option:domain-name,{pool.domain}")
            for key, value in sorted(pool.options.items()):
                if key not in OPTION_NAMES:
                    lines.append(f"dhcp-option={opt}{key},{value}")

        if any(p.authoritative for p in config.pools):
            lines.append("dhcp-authoritative")

        for reservation in config.reservations:
            if not reservation.enabled:
                continue
            entry = f"dhcp-host={reservation.mac},{reservation.ip}"
            if reservation.hostname:
                entry += f",{reservation.hostname}"
            lines.append(entry)

        lines.append(BLOCK_END)
        return lines

    def render(
        self,
        config: DHCPConfiguration,
        existing: Optional[str] = None,
        interfaces: Optional[list[NetworkInterfaceIntent]] = None,
    ) -> Artifact:
        kept = self.preserved_lines(existing or "")
        while kept and not kept[-1].strip():
            kept.pop()

        block = self.render_block(config)
        lines = list(kept)
        if block:
            if lines:
                lines.append("")
            lines.extend(block)

        text = "\n".join(lines) + "\n" if lines else ""
        return Artifact(files={self.config_path: text})

    def preserved_lines(self, text: str) -> list[str]:
        """Lines of an existing config that are not DHCP directives or the old block."""
        kept = []
        in_block = False
        for line in text.splitlines():
            stripped = line.strip()
            if stripped == BLOCK_BEGIN:
                in_block = True
                continue
            if stripped == BLOCK_END:
                in_block = False
                continue
            if in_block:
                continue
            if _directive(stripped)[0] in DHCP_DIRECTIVES:
                continue
            kept.append(line)
        return kept

    # --- Parsing ---

    def parse(self, text: str) -> DHCPState:
        state = DHCPState()
        config = state.config
        interfaces: list[str] = []
        block_interfaces: list[str] = []
        in_block = False
        untagged: list[DHCPPoolIntent] = []
        pools_by_tag: dict[str, DHCPPoolIntent] = {}
        options: list[tuple[Optional[str], str, str]] = []
        authoritative = False

        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if line in (BLOCK_BEGIN, BLOCK_END):
                in_block = line == BLOCK_BEGIN
                continue
            if not line or line.startswith("#"):
                continue
            key, value = _directive(line)

            if key == "interface":
                names = [v.strip() for v in value.split(",") if v.strip()]
                interfaces.extend(names)
                if in_block:
                    block_interfaces.extend(names)
            elif key == "dhcp-authoritative":
                authoritative = True
            elif key == "dhcp-range":
                pool_tag, pool = self._parse_range(value)
                if pool is None:
                    state.warnings.append(f"line {lineno}: unreadable dhcp-range '{value}'")
                    continue
                if pool_tag is None:
                    untagged.append(pool)
                else:
                    pools_by_tag[pool_tag] = pool
                config.pools.append(pool)
            elif key == "dhcp-option":
                fields, tag = _strip_tags([f.strip() for f in value.split(",")])
                if len(fields) < 2:
                    state.warnings.append(f"line {lineno}: unreadable dhcp-option '{value}'")
                    continue
                options.append((tag, fields[0], ",".join(fields[1:])))
            elif key == "dhcp-host":
                reservation = self._parse_host(value)
                if reservation is None:
                    state.warnings.append(f"line {lineno}: unreadable dhcp-host '{value}'")
                    continue
                config.reservations.append(reservation)

        # Untagged pools belong to the configured interfaces, in order; inside
        # the managed block only its own interface= lines count
        for pool, name in zip(untagged, block_interfaces or interfaces):
            pool.interface = name
        for tag, pool in pools_by_tag.items():
            pool.interface = tag

        for tag, code, value in options:
            code = code.removeprefix("option:")
            targets = [pools_by_tag[tag]] if tag in pools_by_tag else config.pools
            option_key = OPTION_KEYS.get(code)
            for pool in targets:
                if option_key == "domain-name":
                    pool.domain = value
                elif option_key:
                    pool.options[option_key] = value
                else:
                    pool.options[f"option:{code}" if not code.isdigit() else code] = value

        for pool in config.pools:
            pool.authoritative = authoritative

        config.mode = DHCPMode.SERVER if config.pools else DHCPMode.DISABLED

        for message in state.warnings:
            logger.warning(f"{self.config_path}: {message}")
        return state

    def _parse_range(self, value: str) -> tuple[Optional[str], Optional[DHCPPoolIntent]]:
        fields, tag = _strip_tags([f.strip() for f in value.split(",") if f.strip()])
        if len(fields) < 2 or not _is_ipv4(fields[0]) or not _is_ipv4(fields[1]):
            return tag, None

        lease_time = "1h"  # dnsmasq's default
        for extra in fields[2:]:
            if DURATION.match(extra):
                lease_time = extra
        return tag, DHCPPoolIntent(
            interface="",
            start=fields[0],
            end=fields[1],
            lease_time=lease_time,
            authoritative=False,
        )

    def _parse_host(self, value: str) -> Optional[DHCPReservationIntent]:
        fields, _ = _strip_tags([f.strip() for f in value.split(",") if f.strip()])
        mac = next((f for f in fields if MAC.match(f)), None)
        ip = next((f for f in fields if _is_ipv4(f)), None)
        if mac is None or ip is None:
            return None
        names = [
            f for f in fields
            if f not in (mac, ip) and not DURATION.match(f) and not f.startswith("id:")
        ]
        return DHCPReservationIntent(mac=mac, ip=ip, hostname=names[0] if names else None)

    def parse_leases(self, text: str, now: Optional[datetime] = None) -> list[LeaseRecord]:
        """Parse ``<expiry> <mac> <ip> <hostname> <client-id>`` lines."""
        now = now or datetime.now(timezone.utc)
        leases = []

        for lineno, line in enumerate(text.splitlines(), start=1):
            parts = line.split()
            if not parts:
                continue
            if parts[0] == "duid":
                continue
            if len(parts) < 4 or not parts[0].isdigit():
                logger.warning(f"{self.leases_path}: malformed lease on line {lineno} skipped")
                continue

            epoch = int(parts[0])
            expires_at = None if epoch == 0 else datetime.fromtimestamp(epoch, tz=timezone.utc)
            leases.append(LeaseRecord(
                mac=parts[1].lower(),
                ip=parts[2],
                hostname=None if parts[3] == "*" else parts[3],
                expires_at=expires_at,
                active=expires_at is None or now < expires_at,
            ))

        return leases

    # --- Apply hooks ---

    def check(self, artifact: Artifact) -> Optional[CommandResult]:
        return self.executor.run(["dnsmasq", "--test", f"--conf-file={self.config_path}"])

    def reload_commands(self) -> list[list[str]]:
        return restart_chain("dnsmasq")

    def release_command(self, ip: str) -> Optional[list[str]]:
        # dnsmasq re-reads its lease database and hosts on SIGHUP
        return ["killall", "-HUP", "dnsmasq"]
