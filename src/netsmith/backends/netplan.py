"""Netplan (declarative YAML) interface backend."""
import ipaddress
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from ..config_engine.schema import (
    AddressMode,
    Artifact,
    InterfaceState,
    InterfaceType,
    NetworkInterfaceIntent,
    StaticRouteIntent,
    prefix_to_netmask,
)
from ..errors import ParseFailure
from ..utils.executor import CommandResult
from .base import InterfaceBackend, route_owner

logger = logging.getLogger(__name__)

SECTIONS = {
    "ethernets": InterfaceType.ETHERNET,
    "wifis": InterfaceType.WIFI,
    "bridges": InterfaceType.BRIDGE,
    "vlans": InterfaceType.VLAN,
}
SECTION_FOR_TYPE = {t: s for s, t in SECTIONS.items()}

DEFAULT_DESTINATIONS = ("default", "0.0.0.0/0")


def _as_list(value: Any) -> list[Any]:
    """A YAML sequence, or a lone scalar as a one-item list."""
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _as_int(value: Any, what: str, state: InterfaceState) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        state.warnings.append(f"{what} {value!r} is not a number, ignored")
        return None


class NetplanBackend(InterfaceBackend):
    """Render and parse ``/etc/netplan`` YAML; apply with ``netplan apply``."""

    name = "netplan"

    @property
    def config_path(self) -> str:
        return self.paths.netplan_file

    # --- Synthesis ---

    def render(
        self,
        interfaces: list[NetworkInterfaceIntent],
        routes: Optional[list[StaticRouteIntent]] = None,
    ) -> Artifact:
        warnings: list[str] = []
        network: dict[str, Any] = {"version": 2, "renderer": "networkd"}
        entries: dict[str, dict[str, Any]] = {}

        for intent in interfaces:
            section = SECTION_FOR_TYPE.get(intent.type)
            if section is None:
                warnings.append(
                    f"Interface {intent.name}: {intent.type.value} interfaces cannot be "
                    f"expressed in netplan, omitted"
                )
                continue
            entry = self._render_interface(intent, warnings)
            network.setdefault(section, {})[intent.name] = entry
            entries[intent.name] = entry

        for route in routes or []:
            owner = route_owner(route, interfaces)
            if owner not in entries:
                warnings.append(
                    f"Route {route.destination}: no managed interface to attach it to, omitted"
                )
                continue
            item: dict[str, Any] = {"to": route.destination}
            if route.gateway:
                item["via"] = route.gateway
            if route.metric > 0:
                item["metric"] = route.metric
            entries[owner].setdefault("routes", []).append(item)

        for message in warnings:
            logger.warning(message)

        text = yaml.safe_dump(
            {"network": network},
            default_flow_style=False,
            sort_keys=True,
        )
        header = "# Generated by netsmith. Local changes will be overwritten.\n"
        return Artifact(
            files={self.config_path: header + text},
            warnings=warnings,
            mode=0o600,
        )

    def _render_interface(
        self,
        intent: NetworkInterfaceIntent,
        warnings: list[str],
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {}

        if intent.mode == AddressMode.DHCP:
            entry["dhcp4"] = True
        elif intent.cidr:
            entry["addresses"] = [intent.cidr]
            if intent.gateway:
                entry["gateway4"] = intent.gateway

        if intent.dns:
            entry["nameservers"] = {"addresses": list(intent.dns)}
        if intent.mtu:
            entry["mtu"] = intent.mtu
        if not intent.enabled:
            entry["activation-mode"] = "off"

        if intent.type == InterfaceType.VLAN:
            entry["id"] = intent.vlan_id
            entry["link"] = intent.link
        elif intent.type == InterfaceType.BRIDGE:
            entry["interfaces"] = list(intent.bridge_ports)
        elif intent.type == InterfaceType.WIFI:
            if intent.ssid:
                point = {"password": intent.psk} if intent.psk else {}
                entry["access-points"] = {intent.ssid: point}
            else:
                warnings.append(f"Wifi interface {intent.name} has no SSID")

        return entry

    # --- Parsing ---

    def parse(self, text: str, source: Optional[str] = None) -> InterfaceState:
        source = source or self.config_path
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ParseFailure(source, str(e))

        if not isinstance(data, dict) or not isinstance(data.get("network", {}), dict):
            raise ParseFailure(source, "top-level 'network' mapping missing")

        network = data.get("network") or {}
        state = InterfaceState()

        for section, iface_type in SECTIONS.items():
            definitions = network.get(section) or {}
            if not isinstance(definitions, dict):
                state.warnings.append(f"{source}: '{section}' is not a mapping, skipped")
                continue
            for name, cfg in definitions.items():
                if cfg is not None and not isinstance(cfg, dict):
                    state.warnings.append(f"{source}: {section}.{name} is not a mapping, skipped")
                    continue
                intent, routes = self._parse_interface(str(name), iface_type, cfg or {}, state)
                state.interfaces.append(intent)
                state.routes.extend(routes)

        for message in state.warnings:
            logger.warning(message)
        return state

    def _parse_interface(
        self,
        name: str,
        iface_type: InterfaceType,
        cfg: dict[str, Any],
        state: InterfaceState,
    ) -> tuple[NetworkInterfaceIntent, list[StaticRouteIntent]]:
        intent = NetworkInterfaceIntent(name=name, type=iface_type)

        addresses = [a for a in _as_list(cfg.get("addresses")) if ":" not in str(a)]
        if addresses:
            try:
                iface = ipaddress.IPv4Interface(str(addresses[0]))
                intent.address = str(iface.ip)
                intent.netmask = prefix_to_netmask(iface.network.prefixlen)
            except ValueError:
                state.warnings.append(f"Interface {name}: unreadable address {addresses[0]!r}")
            if len(addresses) > 1:
                state.warnings.append(
                    f"Interface {name}: only the first of {len(addresses)} addresses is managed"
                )

        dhcp4 = cfg.get("dhcp4") in (True, "true", "yes", "on")
        intent.mode = AddressMode.DHCP if dhcp4 or not intent.address else AddressMode.STATIC
        intent.enabled = str(cfg.get("activation-mode", "")).lower() != "off"
        intent.gateway = cfg.get("gateway4")
        nameservers = cfg.get("nameservers") or {}
        if isinstance(nameservers, dict):
            intent.dns = [str(a) for a in _as_list(nameservers.get("addresses"))]
        else:
            state.warnings.append(f"Interface {name}: nameservers is not a mapping, ignored")
        if cfg.get("mtu") is not None:
            intent.mtu = _as_int(cfg["mtu"], f"Interface {name}: mtu", state)

        if iface_type == InterfaceType.VLAN:
            if cfg.get("id") is not None:
                intent.vlan_id = _as_int(cfg["id"], f"Interface {name}: vlan id", state)
            intent.link = cfg.get("link")
        elif iface_type == InterfaceType.BRIDGE:
            intent.bridge_ports = [str(p) for p in _as_list(cfg.get("interfaces"))]
        elif iface_type == InterfaceType.WIFI:
            points = cfg.get("access-points") or {}
            if points and isinstance(points, dict):
                ssid, point = next(iter(points.items()))
                intent.ssid = str(ssid)
                if isinstance(point, dict):
                    intent.psk = point.get("password")

        routes = []
        for item in _as_list(cfg.get("routes")):
            if not isinstance(item, dict):
                state.warnings.append(f"Interface {name}: route entry {item!r} is not a mapping, skipped")
                continue
            to = str(item.get("to", ""))
            via = item.get("via")
            if to in DEFAULT_DESTINATIONS:
                if intent.gateway is None:
                    intent.gateway = via
                continue
            if not to:
                state.warnings.append(f"Interface {name}: route without destination skipped")
                continue
            routes.append(StaticRouteIntent(
                destination=to,
                gateway=via,
                interface=name,
                metric=_as_int(item.get("metric", 0), f"Interface {name}: route {to} metric", state) or 0,
            ))

        return intent, routes

    def read_state(self) -> InterfaceState:
        """Merge every YAML file under the netplan directory, in netplan's order."""
        directory = Path(self.paths.netplan_dir)
        files = sorted(directory.glob("*.yaml")) if directory.is_dir() else []
        if not files:
            return super().read_state()

        merged = InterfaceState()
        for path in files:
            text = self._read(str(path))
            if text is None:
                continue
            state = self.parse(text, source=str(path))
            for intent in state.interfaces:
                if merged.get(intent.name) is not None:
                    merged.warnings.append(f"Interface {intent.name} redefined in {path}")
                    merged.interfaces = [i for i in merged.interfaces if i.name != intent.name]
                merged.interfaces.append(intent)
            merged.routes.extend(state.routes)
            merged.warnings.extend(state.warnings)
        return merged

    # --- Apply hooks ---

    def check(self, artifact: Artifact) -> Optional[CommandResult]:
        return self.executor.run(["netplan", "generate"])

    def reload_commands(self) -> list[list[str]]:
        return [["netplan", "apply"]]
