"""Parser for declared intents.

Converts dict/YAML input (from the admin layer, the CLI or the settings
table of the intent store) to strongly-typed intent objects.
"""
from typing import Any, Optional

from ..errors import NetsmithError
from .schema import (
    AddressMode,
    ConnectionType,
    DesiredState,
    DHCPConfiguration,
    DHCPMode,
    DHCPPoolIntent,
    DHCPReservationIntent,
    FailoverSettings,
    FirewallRuleIntent,
    InterfaceType,
    LoadBalanceSettings,
    MultiWANConfiguration,
    NetworkInterfaceIntent,
    PolicyRule,
    RuleAction,
    StaticRouteIntent,
    UPnPConfiguration,
    WANConfiguration,
    WANInterface,
)


class ParseError(NetsmithError, ValueError):
    """Error parsing an intent document."""
    pass


def _enum(enum_cls, value: Any, what: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        valid = ", ".join(m.value for m in enum_cls)
        raise ParseError(f"Invalid {what}: {value}. Must be one of: {valid}")


def _int(value: Any, what: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ParseError(f"Invalid {what}: {value}")


def _str_list(value: Any) -> list[str]:
    """Accept ``[a, b]``, ``"a b"`` or ``"a,b"``."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v for v in value.replace(",", " ").split() if v]
    return [str(v) for v in value]


def _opt_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class ConfigParser:
    """Parse intents from dict/YAML format."""

    def parse(self, config: dict[str, Any]) -> DesiredState:
        """
        Parse a complete configuration document.

        Args:
            config: Dict with interfaces, firewall, dhcp, routes, wan, multiwan

        Returns:
            DesiredState object

        Raises:
            ParseError: If the document is malformed
        """
        if not isinstance(config, dict):
            raise ParseError("Configuration document must be a mapping")

        firewall = config.get("firewall") or {}
        rules = firewall.get("rules", []) if isinstance(firewall, dict) else firewall

        dhcp = config.get("dhcp")
        wan = config.get("wan")
        multiwan = config.get("multiwan")

        return DesiredState(
            interfaces=self.parse_interfaces(config.get("interfaces") or {}),
            firewall_rules=[self.parse_rule(r) for r in rules or []],
            dhcp=self.parse_dhcp(dhcp) if dhcp is not None else None,
            routes=[self.parse_route(r) for r in config.get("routes") or []],
            wan=self.parse_wan(wan) if wan else None,
            multiwan=self.parse_multiwan(multiwan) if multiwan else None,
        )

    def parse_interfaces(
        self,
        interfaces: dict[str, Any] | list[dict[str, Any]]
    ) -> list[NetworkInterfaceIntent]:
        """Parse interfaces given either keyed by name or as a list."""
        if isinstance(interfaces, dict):
            return [
                self.parse_interface({**(cfg or {}), "name": name})
                for name, cfg in interfaces.items()
            ]
        return [self.parse_interface(cfg) for cfg in interfaces]

    def parse_interface(self, config: dict[str, Any]) -> NetworkInterfaceIntent:
        """Parse a single interface intent."""
        name = config.get("name")
        if not name:
            raise ParseError("Missing required field: interface name")

        iface_type = _enum(InterfaceType, config.get("type", "ethernet"), f"type for {name}")

        # "method: static" is accepted as an alias, matching ifupdown wording
        mode_value = config.get("mode") or config.get("method")
        if mode_value is None:
            mode_value = "static" if config.get("address") else "dhcp"
        mode = _enum(AddressMode, mode_value, f"mode for {name}")

        address = _opt_str(config.get("address"))
        netmask = _opt_str(config.get("netmask"))
        if address and "/" in address and not netmask:
            address, netmask = address.split("/", 1)

        vlan_id = _int(config.get("vlan_id", config.get("id")), f"vlan_id for {name}")
        link = _opt_str(config.get("link"))
        if iface_type == InterfaceType.VLAN and "." in name:
            base, _, suffix = name.rpartition(".")
            if link is None:
                link = base
            if vlan_id is None and suffix.isdigit():
                vlan_id = int(suffix)

        return NetworkInterfaceIntent(
            name=str(name),
            type=iface_type,
            enabled=bool(config.get("enabled", True)),
            mode=mode,
            address=address,
            netmask=netmask,
            gateway=_opt_str(config.get("gateway")),
            dns=_str_list(config.get("dns")),
            mtu=_int(config.get("mtu"), f"mtu for {name}"),
            vlan_id=vlan_id,
            link=link,
            bridge_ports=_str_list(config.get("bridge_ports") or config.get("ports")),
            ssid=_opt_str(config.get("ssid")),
            psk=_opt_str(config.get("psk") or config.get("password")),
        )

    def parse_rule(self, config: dict[str, Any]) -> FirewallRuleIntent:
        """Parse a single firewall rule."""
        chain = config.get("chain")
        if not chain:
            raise ParseError("Missing required field: chain")
        if "action" not in config:
            raise ParseError(f"Missing required field: action (chain {chain})")

        protocol = _opt_str(config.get("protocol"))
        port = config.get("port")

        return FirewallRuleIntent(
            chain=str(chain).upper(),
            action=_enum(RuleAction, config["action"], "action"),
            protocol=protocol.lower() if protocol else None,
            source=_opt_str(config.get("source")),
            destination=_opt_str(config.get("destination")),
            port=_opt_str(port),
            target=_opt_str(config.get("target")),
            position=_int(config.get("position"), "position") or 0,
            enabled=bool(config.get("enabled", True)),
            comment=_opt_str(config.get("comment")),
            id=_int(config.get("id"), "rule id"),
        )

    def parse_pool(self, config: dict[str, Any]) -> DHCPPoolIntent:
        """Parse a DHCP pool."""
        for required in ("interface", "start", "end"):
            if not config.get(required):
                raise ParseError(f"Missing required field in DHCP pool: {required}")

        options = {str(k): str(v) for k, v in (config.get("options") or {}).items()}
        domain = _opt_str(config.get("domain")) or options.pop("domain-name", None)

        return DHCPPoolIntent(
            interface=str(config["interface"]),
            start=str(config["start"]),
            end=str(config["end"]),
            lease_time=str(config.get("lease_time", "24h")),
            authoritative=bool(config.get("authoritative", True)),
            domain=domain,
            options=options,
        )

    def parse_reservation(self, config: dict[str, Any]) -> DHCPReservationIntent:
        """Parse a DHCP reservation."""
        if not config.get("mac") or not config.get("ip"):
            raise ParseError("DHCP reservation requires mac and ip")
        return DHCPReservationIntent(
            mac=str(config["mac"]),
            ip=str(config["ip"]),
            hostname=_opt_str(config.get("hostname")),
            enabled=bool(config.get("enabled", True)),
        )

    def parse_dhcp(self, config: dict[str, Any]) -> DHCPConfiguration:
        """Parse the complete DHCP configuration."""
        return DHCPConfiguration(
            mode=_enum(DHCPMode, config.get("mode", "server"), "DHCP mode"),
            pools=[self.parse_pool(p) for p in config.get("pools") or []],
            reservations=[
                self.parse_reservation(r) for r in config.get("reservations") or []
            ],
            relay_target=_opt_str(config.get("relay_target")),
            relay_interfaces=_str_list(config.get("relay_interfaces")),
        )

    def parse_route(self, config: dict[str, Any]) -> StaticRouteIntent:
        """Parse a static route."""
        if not config.get("destination"):
            raise ParseError("Missing required field in route: destination")
        metric = _int(config.get("metric"), "metric") or 0
        return StaticRouteIntent(
            destination=str(config["destination"]),
            gateway=_opt_str(config.get("gateway")),
            interface=_opt_str(config.get("interface")),
            metric=metric,
        )

    def parse_policy_rule(self, config: dict[str, Any]) -> PolicyRule:
        table = _int(config.get("table"), "table")
        if table is None:
            raise ParseError("Missing required field in policy rule: table")
        return PolicyRule(
            table=table,
            source=_opt_str(config.get("source")),
            destination=_opt_str(config.get("destination")),
            iif=_opt_str(config.get("iif") or config.get("interface")),
        )

    def parse_wan(self, config: dict[str, Any]) -> WANConfiguration:
        """Parse the primary WAN configuration."""
        if not config.get("interface"):
            raise ParseError("Missing required field in WAN config: interface")
        return WANConfiguration(
            interface=str(config["interface"]),
            connection_type=_enum(
                ConnectionType, config.get("connection_type", "dhcp"), "connection type"
            ),
            ip=_opt_str(config.get("ip")),
            netmask=_opt_str(config.get("netmask")),
            gateway=_opt_str(config.get("gateway")),
            dns1=_opt_str(config.get("dns1")),
            dns2=_opt_str(config.get("dns2")),
            mtu=_int(config.get("mtu"), "mtu"),
            enabled=bool(config.get("enabled", True)),
        )

    def parse_multiwan(self, config: dict[str, Any]) -> MultiWANConfiguration:
        """Parse multi-WAN settings."""
        interfaces = []
        for entry in config.get("interfaces") or []:
            if not entry.get("name"):
                raise ParseError("Multi-WAN interface requires a name")
            interfaces.append(WANInterface(
                name=str(entry["name"]),
                weight=_int(entry.get("weight"), "weight") or 1,
                priority=_int(entry.get("priority"), "priority") or 1,
                enabled=bool(entry.get("enabled", True)),
            ))

        lb = config.get("load_balance") or {}
        fo = config.get("failover") or {}
        defaults = FailoverSettings()

        return MultiWANConfiguration(
            enabled=bool(config.get("enabled", False)),
            interfaces=interfaces,
            load_balance=LoadBalanceSettings(
                method=str(lb.get("method", "weighted")),
                sticky=bool(lb.get("sticky", False)),
                threshold=_int(lb.get("threshold"), "threshold") or 0,
            ),
            failover=FailoverSettings(
                enabled=bool(fo.get("enabled", False)),
                ping_target=str(fo.get("ping_target", defaults.ping_target)),
                ping_interval=_int(fo.get("ping_interval"), "ping_interval") or defaults.ping_interval,
                ping_timeout=_int(fo.get("ping_timeout"), "ping_timeout") or defaults.ping_timeout,
                ping_failures=_int(fo.get("ping_failures"), "ping_failures") or defaults.ping_failures,
                recovery_delay=_int(fo.get("recovery_delay"), "recovery_delay") or defaults.recovery_delay,
            ),
        )

    def parse_upnp(self, config: dict[str, Any]) -> UPnPConfiguration:
        return UPnPConfiguration(
            enabled=bool(config.get("enabled", False)),
            allow_port_mapping=bool(config.get("allow_port_mapping", True)),
            allow_pcp_nat_mapping=bool(config.get("allow_pcp_nat_mapping", False)),
            stun_server=_opt_str(config.get("stun_server")),
            traffic_shaping=bool(config.get("traffic_shaping", False)),
            interfaces=_str_list(config.get("interfaces")),
        )
