"""Routing & Multi-WAN Manager.

Static routes are applied live with ``ip route replace`` and persisted by
re-rendering the interface backend's file (netplan ``routes:`` or ifupdown
``post-up`` hooks). Multi-WAN load balancing installs one weighted multipath
default route plus a default route in each per-WAN routing table.
"""
import logging
from typing import Any, Optional

from ..backends.iproute import KERNEL_PROTOCOLS, WAN_TABLE_BASE, IprouteBackend
from ..config_engine.executor import Applier, live_result
from ..config_engine.schema import (
    AddressMode,
    ApplyResult,
    ConnectionType,
    MultiWANConfiguration,
    NetworkInterfaceIntent,
    PolicyRule,
    StaticRouteIntent,
    SystemRoute,
    UPnPConfiguration,
    WANConfiguration,
)
from ..config_engine.validator import ConfigValidator
from ..errors import FeatureNotImplemented
from ..store import IntentStore
from .interfaces import InterfaceManager

logger = logging.getLogger(__name__)


class RoutingManager:
    """Static routes, policy rules, WAN and multi-WAN."""

    def __init__(
        self,
        store: IntentStore,
        iproute: IprouteBackend,
        interfaces: InterfaceManager,
        applier: Applier,
        validator: Optional[ConfigValidator] = None,
    ):
        self.store = store
        self.iproute = iproute
        self.interfaces = interfaces
        self.applier = applier
        self.validator = validator or ConfigValidator()

    def _live(self, argv: list[str], operation: str, result: ApplyResult, dry_run: bool = False) -> bool:
        """Run one live command, appending it to ``result``; True on success."""
        if dry_run:
            result.commands_executed.append(f"[DRY-RUN] {' '.join(argv)}")
            return True
        outcome = self.applier.run_live(self.iproute, argv, operation)
        result.commands_executed.append(outcome.command)
        if not outcome.success:
            result.stderr += outcome.stderr
            logger.warning(f"'{outcome.command}' exited {outcome.returncode}: {outcome.stderr.strip()}")
        return outcome.success

    # --- Routes ---

    def list_routes(self) -> list[SystemRoute]:
        """Live routes in the main table."""
        return self.iproute.list_routes()

    def list_static_routes(self) -> list[StaticRouteIntent]:
        return self.store.list_routes()

    def add_static_route(self, route: StaticRouteIntent) -> ApplyResult:
        """
        Add a static route: persist the intent, install it live, then write it
        into the interface backend's file without reloading.

        A route that is live but could not be written to the interface file
        yields a failed result with ``live_applied`` set.

        Raises:
            ValidationFailed: If the route is invalid
        """
        self.validator.validate_route(route).raise_if_invalid()
        self.store.save_route(route)
        logger.info(f"Saved static route {route.destination}")

        live = live_result(
            self.iproute,
            self.applier.run_live(self.iproute, self.iproute.route_argv("replace", route), "add_static_route"),
        )
        if not live.success:
            logger.error(f"Failed to install route {route.destination}: {live.stderr.strip()}")
            return live

        persisted = self.interfaces.apply(reload=False, operation="route_persist")
        persisted.live_applied = True
        persisted.commands_executed = live.commands_executed + persisted.commands_executed
        if not persisted.success:
            persisted.error = f"route {route.destination} is live but not persisted: {persisted.error}"
            logger.error(persisted.error)
        return persisted

    def remove_static_route(self, destination: str) -> ApplyResult:
        """
        Remove a static route from the kernel and from the interface file.

        Raises:
            KeyError: If no static route to ``destination`` is stored
        """
        route = next((r for r in self.store.list_routes() if r.destination == destination), None)
        if route is None:
            raise KeyError(f"No static route to {destination}")
        self.store.delete_route(destination)

        result = ApplyResult(backend=self.iproute.name)
        if not self._live(self.iproute.route_argv("del", route), "remove_static_route", result):
            # Already gone from the kernel
            result.warnings.append(f"route {destination} was not in the kernel table")

        persisted = self.interfaces.apply(reload=False, operation="route_persist")
        persisted.commands_executed = result.commands_executed + persisted.commands_executed
        persisted.warnings = result.warnings + persisted.warnings
        persisted.live_applied = True
        return persisted

    # --- Default gateway ---

    def get_default_gateway(self) -> Optional[SystemRoute]:
        return self.iproute.default_route()

    def set_default_gateway(self, gateway: str, interface: Optional[str] = None) -> ApplyResult:
        route = StaticRouteIntent(destination="default", gateway=gateway, interface=interface)
        self.validator.validate_route(route).raise_if_invalid()
        outcome = self.applier.run_live(
            self.iproute, self.iproute.route_argv("replace", route), "set_default_gateway"
        )
        if outcome.success:
            logger.info(f"Default gateway set to {gateway}")
        return live_result(self.iproute, outcome)

    # --- Policy routing ---

    def add_policy_rule(self, rule: PolicyRule) -> ApplyResult:
        outcome = self.applier.run_live(self.iproute, self.iproute.policy_argv("add", rule), "add_policy_rule")
        return live_result(self.iproute, outcome)

    def remove_policy_rule(self, rule: PolicyRule) -> ApplyResult:
        outcome = self.applier.run_live(self.iproute, self.iproute.policy_argv("del", rule), "remove_policy_rule")
        return live_result(self.iproute, outcome)

    def get_route_table(self, table: int | str) -> list[SystemRoute]:
        return self.iproute.list_routes("table", str(table))

    def flush_route_table(self, table: int | str) -> ApplyResult:
        outcome = self.applier.run_live(
            self.iproute, ["ip", "route", "flush", "table", str(table)], "flush_route_table"
        )
        return live_result(self.iproute, outcome)

    def routing_status(self) -> dict[str, Any]:
        routes = self.list_routes()
        default = next((r for r in routes if r.destination == "default"), None)
        return {
            "default_gateway": default.gateway if default else None,
            "default_interface": default.interface if default else None,
            "total_routes": len(routes),
            "static_routes": sum(1 for r in routes if r.protocol not in KERNEL_PROTOCOLS),
            "ip_forward": self.iproute.ip_forward_enabled(),
            "multiwan_enabled": self.store.get_multiwan().enabled,
        }

    # --- WAN ---

    def get_wan(self) -> Optional[WANConfiguration]:
        """Stored WAN settings, else what the live default route implies."""
        wan = self.store.get_wan()
        if wan is not None:
            return wan

        default = self.iproute.default_route()
        if default is None or not default.interface:
            return None
        connection = ConnectionType.DHCP if default.protocol == "dhcp" else ConnectionType.STATIC
        return WANConfiguration(
            interface=default.interface,
            connection_type=connection,
            gateway=default.gateway,
        )

    def set_wan(self, wan: WANConfiguration, apply: bool = True) -> Optional[ApplyResult]:
        """
        Store WAN settings and apply them as the uplink's interface intent.

        Raises:
            FeatureNotImplemented: For PPPoE uplinks
            ValidationFailed: If the settings are invalid
        """
        if wan.connection_type == ConnectionType.PPPOE:
            raise FeatureNotImplemented("PPPoE WAN")
        self.validator.validate_wan(wan).raise_if_invalid()

        intent = self.interfaces.get_interface(wan.interface) or NetworkInterfaceIntent(name=wan.interface)
        intent.enabled = wan.enabled
        intent.mtu = wan.mtu
        if wan.connection_type == ConnectionType.STATIC:
            intent.mode = AddressMode.STATIC
            intent.address = wan.ip
            intent.netmask = wan.netmask
            intent.gateway = wan.gateway
            intent.dns = [d for d in (wan.dns1, wan.dns2) if d]
        else:
            intent.mode = AddressMode.DHCP
            intent.address = intent.netmask = intent.gateway = None
            intent.dns = []

        self.store.set_wan(wan)
        logger.info(f"WAN set to {wan.interface} ({wan.connection_type.value})")
        return self.interfaces.save_interface(intent, apply=apply)

    # --- Multi-WAN ---

    def get_multiwan(self) -> MultiWANConfiguration:
        return self.store.get_multiwan()

    def configure_multiwan(
        self,
        config: MultiWANConfiguration,
        apply: bool = True,
    ) -> Optional[ApplyResult]:
        """
        Store multi-WAN settings and, when enabled, install load balancing.

        Raises:
            FeatureNotImplemented: If failover is enabled
            ValidationFailed: If the settings are invalid
        """
        if config.failover.enabled:
            raise FeatureNotImplemented("Multi-WAN failover")
        validation = self.validator.validate_multiwan(config)
        validation.raise_if_invalid()
        for warning in validation.warnings:
            logger.warning(warning)

        self.store.set_multiwan(config)
        if apply and config.enabled:
            return self.apply_load_balancing(config)
        return None

    def _gateway_for(self, name: str) -> Optional[str]:
        intent = self.store.get_interface(name)
        if intent is not None and intent.gateway:
            return intent.gateway
        wan = self.store.get_wan()
        if wan is not None and wan.interface == name and wan.gateway:
            return wan.gateway
        return self.iproute.resolve_gateway(name)

    def apply_load_balancing(
        self,
        config: Optional[MultiWANConfiguration] = None,
        dry_run: bool = False,
    ) -> ApplyResult:
        """
        Install a weighted multipath default route across the enabled WANs.

        Interfaces whose gateway cannot be resolved are left out with a
        warning; with no resolvable gateway at all nothing is changed.
        """
        config = config or self.store.get_multiwan()
        result = ApplyResult(backend=self.iproute.name, dry_run=dry_run)

        nexthops: list[tuple[str, str, int]] = []
        # Each WAN keeps the table of its place in the configuration
        tables_by_device: dict[str, int] = {}
        for ordinal, wan in enumerate(config.interfaces):
            if not wan.enabled:
                continue
            gateway = self._gateway_for(wan.name)
            if gateway is None:
                warning = f"No gateway found for WAN {wan.name}; excluded from load balancing"
                logger.warning(warning)
                result.warnings.append(warning)
                continue
            nexthops.append((gateway, wan.name, wan.weight))
            tables_by_device[wan.name] = WAN_TABLE_BASE + ordinal

        if not nexthops:
            result.error = "no WAN interface has a resolvable gateway"
            logger.error(f"Load balancing not applied: {result.error}")
            return result

        tables = self.iproute.render_rt_tables(
            [wan.name for wan in config.interfaces],
            self.iproute.executor.read_file(self.iproute.paths.rt_tables),
        )
        written = self.applier.apply(self.iproute, tables, dry_run=dry_run, operation="multiwan_tables")
        result.diff = written.diff
        result.changed = written.changed
        if not written.success:
            written.warnings = result.warnings + written.warnings
            return written

        for gateway, device, _ in nexthops:
            table = tables_by_device[device]
            argv = self.iproute.table_default_argv(gateway, device, table)
            if not self._live(argv, "multiwan_table_route", result, dry_run):
                result.warnings.append(f"default route for table {table} not installed")

        if not self._live(self.iproute.multipath_argv(nexthops), "multiwan_default", result, dry_run):
            result.error = "multipath default route rejected"
            return result

        result.success = True
        result.changed = True
        result.live_applied = not dry_run
        logger.info(
            "Load balancing across "
            + ", ".join(f"{device} (weight {weight})" for _, device, weight in nexthops)
        )
        return result

    # --- UPnP ---

    def get_upnp(self) -> UPnPConfiguration:
        return self.store.get_upnp()

    def set_upnp(self, config: UPnPConfiguration) -> None:
        """
        Store UPnP settings.

        Raises:
            FeatureNotImplemented: If UPnP or traffic shaping is enabled
        """
        if config.enabled:
            raise FeatureNotImplemented("UPnP")
        if config.traffic_shaping:
            raise FeatureNotImplemented("Traffic shaping")
        self.store.set_upnp(config)
