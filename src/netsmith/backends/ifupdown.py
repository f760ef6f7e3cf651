"""ifupdown (``/etc/network/interfaces``) interface backend."""
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..config_engine.schema import (
    AddressMode,
    Artifact,
    InterfaceState,
    InterfaceType,
    NetworkInterfaceIntent,
    StaticRouteIntent,
    prefix_to_netmask,
)
from .base import InterfaceBackend, restart_chain, route_owner

logger = logging.getLogger(__name__)

HEADER = (
    "# This file describes the network interfaces available on your system\n"
    "# and how to activate them. For more information, see interfaces(5).\n"
    "# Generated by netsmith. Local changes will be overwritten.\n"
    "\n"
    "source /etc/network/interfaces.d/*\n"
    "\n"
    "# The loopback network interface\n"
    "auto lo\n"
    "iface lo inet loopback\n"
)

AUTO_KEYWORDS = ("auto", "allow-auto", "allow-hotplug")
IGNORED_KEYWORDS = ("source", "source-directory", "rename")
ROUTE_VERBS = ("add", "replace")


@dataclass
class Stanza:
    """One ``iface`` block as written in the file."""
    name: str
    family: str
    method: str
    address: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    dns: list[str] = field(default_factory=list)
    pre_up: list[str] = field(default_factory=list)
    post_up: list[str] = field(default_factory=list)
    pre_down: list[str] = field(default_factory=list)
    post_down: list[str] = field(default_factory=list)
    options: dict[str, str] = field(default_factory=dict)


def parse_route_hook(command: str, default_dev: str) -> Optional[StaticRouteIntent]:
    """Recover a route from ``ip route add DEST [via G] [dev D] [metric M]``."""
    parts = command.split()
    if len(parts) < 4 or parts[0] != "ip" or parts[1] != "route" or parts[2] not in ROUTE_VERBS:
        return None

    route = StaticRouteIntent(destination=parts[3], interface=default_dev)
    i = 4
    while i < len(parts) - 1:
        key, value = parts[i], parts[i + 1]
        if key == "via":
            route.gateway = value
        elif key == "dev":
            route.interface = value
        elif key == "metric":
            try:
                route.metric = int(value)
            except ValueError:
                return None
        i += 2
    return route


class IfupdownBackend(InterfaceBackend):
    """Render and parse the legacy stanza file; reload via the networking service."""

    name = "ifupdown"

    @property
    def config_path(self) -> str:
        return self.paths.interfaces_file

    # --- Parsing ---

    def parse_stanzas(self, text: str, warnings: list[str]) -> tuple[list[Stanza], set[str]]:
        """Tokenize the file into iface stanzas plus the set of auto interfaces."""
        stanzas: list[Stanza] = []
        auto: set[str] = set()
        current: Optional[Stanza] = None
        skipping = False  # inside a block we do not manage (inet6, mapping)

        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue

            parts = line.split()
            keyword = parts[0]

            if keyword in AUTO_KEYWORDS:
                auto.update(parts[1:])
                current, skipping = None, False
                continue

            if keyword in IGNORED_KEYWORDS:
                current, skipping = None, False
                continue

            if keyword == "mapping":
                current, skipping = None, True
                continue

            if keyword == "iface":
                if len(parts) < 4:
                    warnings.append(f"line {lineno}: incomplete iface declaration skipped")
                    current, skipping = None, True
                    continue
                if parts[2] != "inet":
                    current, skipping = None, True
                    continue
                current, skipping = Stanza(parts[1], parts[2], parts[3]), False
                stanzas.append(current)
                continue

            if current is None:
                if not skipping:
                    warnings.append(f"line {lineno}: unrecognised line '{line}' skipped")
                continue

            if len(parts) < 2:
                warnings.append(f"line {lineno}: option '{keyword}' without value skipped")
                continue

            value = " ".join(parts[1:])
            if keyword == "address":
                current.address = value
            elif keyword == "netmask":
                current.netmask = value
            elif keyword == "gateway":
                current.gateway = value
            elif keyword in ("dns-nameservers", "dns-servers"):
                current.dns = parts[1:]
            elif keyword == "pre-up":
                current.pre_up.append(value)
            elif keyword in ("post-up", "up"):
                current.post_up.append(value)
            elif keyword == "pre-down":
                current.pre_down.append(value)
            elif keyword in ("post-down", "down"):
                current.post_down.append(value)
            else:
                current.options[keyword] = value

        return stanzas, auto

    def parse(self, text: str) -> InterfaceState:
        state = InterfaceState()
        stanzas, auto = self.parse_stanzas(text, state.warnings)

        for stanza in stanzas:
            if stanza.method == "loopback" or stanza.name == "lo":
                continue
            state.interfaces.append(self._to_intent(stanza, auto, state.warnings))
            for command in stanza.post_up:
                route = parse_route_hook(command, stanza.name)
                if route is not None:
                    state.routes.append(route)

        for message in state.warnings:
            logger.warning(f"{self.config_path}: {message}")
        return state

    def _to_intent(
        self,
        stanza: Stanza,
        auto: set[str],
        warnings: list[str],
    ) -> NetworkInterfaceIntent:
        options = stanza.options
        intent = NetworkInterfaceIntent(
            name=stanza.name,
            enabled=stanza.name in auto,
            gateway=stanza.gateway,
            dns=list(stanza.dns),
        )

        if stanza.method == "static":
            intent.mode = AddressMode.STATIC
        elif stanza.method != "dhcp":
            warnings.append(f"{stanza.name}: method '{stanza.method}' treated as dhcp")

        if stanza.address and "/" in stanza.address:
            try:
                iface = ipaddress.IPv4Interface(stanza.address)
                intent.address = str(iface.ip)
                intent.netmask = prefix_to_netmask(iface.network.prefixlen)
            except ValueError:
                warnings.append(f"{stanza.name}: unreadable address '{stanza.address}'")
        else:
            intent.address = stanza.address
            intent.netmask = stanza.netmask

        if "mtu" in options and options["mtu"].isdigit():
            intent.mtu = int(options["mtu"])

        raw_device = options.get("vlan-raw-device") or options.get("vlan_raw_device")
        bridge_ports = options.get("bridge_ports") or options.get("bridge-ports")
        if raw_device:
            intent.type = InterfaceType.VLAN
            intent.link = raw_device
            suffix = stanza.name.rpartition(".")[2]
            vlan_id = options.get("vlan-id") or (suffix if suffix.isdigit() else None)
            intent.vlan_id = int(vlan_id) if vlan_id else None
        elif bridge_ports is not None:
            intent.type = InterfaceType.BRIDGE
            intent.bridge_ports = [] if bridge_ports == "none" else bridge_ports.split()
        elif "wpa-ssid" in options:
            intent.type = InterfaceType.WIFI
            intent.ssid = options["wpa-ssid"]
            intent.psk = options.get("wpa-psk")

        return intent

    # --- Synthesis ---

    def render(
        self,
        interfaces: list[NetworkInterfaceIntent],
        routes: Optional[list[StaticRouteIntent]] = None,
    ) -> Artifact:
        warnings: list[str] = []
        hooks: dict[str, list[StaticRouteIntent]] = {}
        managed = {i.name for i in interfaces if i.type != InterfaceType.VPN}

        for route in routes or []:
            owner = route_owner(route, interfaces)
            if owner not in managed:
                warnings.append(
                    f"Route {route.destination}: no managed interface to attach it to, omitted"
                )
                continue
            hooks.setdefault(owner, []).append(route)

        blocks = [HEADER]
        for intent in interfaces:
            if intent.name == "lo":
                continue
            if intent.type == InterfaceType.VPN:
                warnings.append(
                    f"Interface {intent.name}: vpn interfaces cannot be expressed in "
                    f"{self.config_path}, omitted"
                )
                continue
            blocks.append(self._render_stanza(intent, hooks.get(intent.name, [])))

        for message in warnings:
            logger.warning(message)

        return Artifact(files={self.config_path: "\n".join(blocks)}, warnings=warnings)

    def _render_stanza(
        self,
        intent: NetworkInterfaceIntent,
        routes: list[StaticRouteIntent],
    ) -> str:
        lines = [f"# Interface {intent.name}"]
        if intent.enabled:
            lines.append(f"auto {intent.name}")
        lines.append(f"iface {intent.name} inet {intent.mode.value}")

        body: list[tuple[str, str]] = []
        if intent.mode == AddressMode.STATIC:
            if intent.address:
                body.append(("address", intent.address))
            if intent.prefixlen is not None:
                body.append(("netmask", prefix_to_netmask(intent.prefixlen)))
            if intent.gateway:
                body.append(("gateway", intent.gateway))
        if intent.dns:
            body.append(("dns-nameservers", " ".join(intent.dns)))
        if intent.mtu:
            body.append(("mtu", str(intent.mtu)))

        if intent.type == InterfaceType.BRIDGE:
            body.append(("bridge_ports", " ".join(intent.bridge_ports) or "none"))
        elif intent.type == InterfaceType.VLAN:
            body.append(("vlan-raw-device", intent.link or ""))
        elif intent.type == InterfaceType.WIFI:
            if intent.ssid:
                body.append(("wpa-ssid", intent.ssid))
            if intent.psk:
                body.append(("wpa-psk", intent.psk))

        for route in routes:
            args = " ".join(StaticRouteIntent(
                route.destination, route.gateway, route.interface or intent.name, route.metric
            ).ip_args())
            body.append(("post-up", f"ip route add {args}"))
        for route in routes:
            args = " ".join(StaticRouteIntent(
                route.destination, route.gateway, route.interface or intent.name, route.metric
            ).ip_args())
            body.append(("pre-down", f"ip route del {args}"))

        lines.extend(f"    {key} {value}" for key, value in body)
        return "\n".join(lines) + "\n"

    # --- Apply hooks ---

    def reload_commands(self) -> list[list[str]]:
        return restart_chain("networking")
