"""Main Config Engine - wires the store, detector, applier and managers.

Provides a single entry point for:
1. Detecting the backends of the running host
2. Loading a declared configuration document into the intent store
3. Previewing stored (or proposed) intent against live state
4. Applying stored intent to every subsystem
"""
import logging
from typing import Any, Optional

from ..backends import (
    Detector,
    FirewallBackend,
    InterfaceBackend,
    IprouteBackend,
    create_firewall_backend,
    create_interface_backend,
)
from ..config.settings import Settings
from ..errors import FeatureNotImplemented, NetsmithError
from ..managers import DHCPManager, FirewallRuleEngine, InterfaceManager, RoutingManager
from ..store import IntentStore
from ..utils.audit_log import setup_audit_logging
from ..utils.executor import HostExecutor, SubprocessExecutor
from .executor import Applier
from .parser import ConfigParser
from .schema import (
    ApplyResult,
    BackendSelection,
    ConnectionType,
    DesiredState,
    ValidationResult,
)
from .validator import ConfigValidator

logger = logging.getLogger(__name__)

SUBSYSTEMS = ("interfaces", "firewall", "dhcp", "routing")


class Engine:
    """
    Entry point for netsmith.

    Usage:
        with Engine(load_settings()) as engine:
            engine.load(yaml.safe_load(open("router.yaml")))
            results = engine.apply()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        executor: Optional[HostExecutor] = None,
        store: Optional[IntentStore] = None,
    ):
        """
        Initialize the engine.

        Args:
            settings: Runtime settings (defaults when omitted)
            executor: Host command executor; a SubprocessExecutor by default
            store: Intent store; built from ``settings.database_url`` by default
        """
        self.settings = settings or Settings()
        self.executor = executor or SubprocessExecutor(self.settings.command_timeout)
        self.store = store or IntentStore(self.settings.database_url)
        self.detector = Detector(self.executor, self.settings)
        self.applier = Applier()
        self.validator = ConfigValidator(self.settings.known_chains())
        self.parser = ConfigParser()

        self._interface_backend: Optional[InterfaceBackend] = None
        self._firewall_backend: Optional[FirewallBackend] = None
        self._interfaces: Optional[InterfaceManager] = None
        self._firewall: Optional[FirewallRuleEngine] = None
        self._dhcp: Optional[DHCPManager] = None
        self._routing: Optional[RoutingManager] = None
        self.iproute = IprouteBackend(self.executor, self.settings.paths)

    # --- Lifecycle ---

    def open(self) -> "Engine":
        if not self.store.is_open:
            self.store.open()
        setup_audit_logging(self.settings.audit_dir)
        logger.info(f"Engine opened ({self.settings.database_url})")
        return self

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "Engine":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # --- Backends ---

    def detect(self) -> BackendSelection:
        return self.detector.selection()

    @property
    def interface_backend(self) -> InterfaceBackend:
        """
        Raises:
            BackendUnavailable: If neither netplan nor ifupdown is present
        """
        if self._interface_backend is None:
            kind = self.detector.detect_interface_backend()
            self._interface_backend = create_interface_backend(kind, self.executor, self.settings)
        return self._interface_backend

    @property
    def firewall_backend(self) -> FirewallBackend:
        if self._firewall_backend is None:
            kind = self.detector.detect_firewall_backend()
            self._firewall_backend = create_firewall_backend(kind, self.executor, self.settings)
        return self._firewall_backend

    # --- Managers ---

    @property
    def interfaces(self) -> InterfaceManager:
        if self._interfaces is None:
            self._interfaces = InterfaceManager(
                self.store, self.interface_backend, self.applier, self.validator
            )
        return self._interfaces

    @property
    def firewall(self) -> FirewallRuleEngine:
        if self._firewall is None:
            self._firewall = FirewallRuleEngine(
                self.store, self.firewall_backend, self.applier, self.validator
            )
        return self._firewall

    @property
    def dhcp(self) -> DHCPManager:
        if self._dhcp is None:
            self._dhcp = DHCPManager(
                self.store, self.detector, self.executor, self.applier, self.settings, self.validator
            )
        return self._dhcp

    @property
    def routing(self) -> RoutingManager:
        if self._routing is None:
            self._routing = RoutingManager(
                self.store, self.iproute, self.interfaces, self.applier, self.validator
            )
        return self._routing

    # --- Declared documents ---

    def parse(self, config: dict[str, Any]) -> DesiredState:
        """Parse config dict to DesiredState (for external use)."""
        return self.parser.parse(config)

    def validate(self, desired: DesiredState) -> ValidationResult:
        """Validate every section of a document against the others."""
        interfaces = desired.interfaces or self.store.list_interfaces()
        result = self.validator.validate_interfaces(interfaces)
        result = result.merge(self.validator.validate_rules(desired.firewall_rules))
        if desired.dhcp is not None:
            result = result.merge(self.validator.validate_dhcp(desired.dhcp, interfaces))
        for route in desired.routes:
            result = result.merge(self.validator.validate_route(route))
        if desired.wan is not None:
            result = result.merge(self.validator.validate_wan(desired.wan))
        if desired.multiwan is not None:
            result = result.merge(self.validator.validate_multiwan(desired.multiwan))
        return result

    def load(self, config: dict[str, Any]) -> DesiredState:
        """
        Validate a configuration document and persist it as intent.

        Each section present in the document replaces the stored section;
        absent sections are left alone. Nothing is applied.

        Raises:
            ParseError: If the document is malformed
            ValidationFailed: If any section is invalid
            FeatureNotImplemented: If the document enables failover or PPPoE
        """
        desired = self.parser.parse(config)
        if desired.wan is not None and desired.wan.connection_type == ConnectionType.PPPOE:
            raise FeatureNotImplemented("PPPoE WAN")
        if desired.multiwan is not None and desired.multiwan.failover.enabled:
            raise FeatureNotImplemented("Multi-WAN failover")

        validation = self.validate(desired)
        validation.raise_if_invalid()
        for warning in validation.warnings:
            logger.warning(warning)

        with self.store.transaction():
            if "interfaces" in config:
                for stale in self.store.list_interfaces():
                    self.store.delete_interface(stale.name)
                for intent in desired.interfaces:
                    self.store.save_interface(intent)

            if "firewall" in config:
                for stale in self.store.list_rules():
                    self.store.delete_rule(stale.id)
                chains: dict[tuple[str, str], list] = {}
                for rule in desired.firewall_rules:
                    rule.id = None
                    ordered = chains.setdefault((rule.table, rule.chain), [])
                    index = len(ordered) if not 0 < rule.position <= len(ordered) else rule.position - 1
                    ordered.insert(index, rule)
                for ordered in chains.values():
                    for position, rule in enumerate(ordered, start=1):
                        rule.position = position
                        self.store.save_rule(rule)

            if desired.dhcp is not None:
                self.store.save_dhcp_configuration(desired.dhcp)

            if "routes" in config:
                for stale in self.store.list_routes():
                    self.store.delete_route(stale.destination)
                for route in desired.routes:
                    self.store.save_route(route)

            if desired.wan is not None:
                self.routing.set_wan(desired.wan, apply=False)
            if desired.multiwan is not None:
                self.routing.configure_multiwan(desired.multiwan, apply=False)
        logger.info(
            f"Loaded configuration: {len(desired.interfaces)} interfaces, "
            f"{len(desired.firewall_rules)} rules, {len(desired.routes)} routes"
        )
        return desired

    # --- Apply / preview ---

    def _subsystem(self, name: str, dry_run: bool) -> Optional[ApplyResult]:
        if name == "interfaces":
            return self.interfaces.apply(dry_run=dry_run)
        if name == "firewall":
            return self.firewall.apply(dry_run=dry_run)
        if name == "dhcp":
            return self.dhcp.apply(dry_run=dry_run)
        if self.store.get_multiwan().enabled:
            return self.routing.apply_load_balancing(dry_run=dry_run)
        return None

    def apply(
        self,
        subsystems: tuple[str, ...] = SUBSYSTEMS,
        dry_run: bool = False,
    ) -> list[ApplyResult]:
        """
        Apply stored intent to each subsystem in order.

        A subsystem without a usable backend, or whose intent no longer
        validates, yields a failed result; later subsystems still run.
        """
        results = []
        for name in subsystems:
            try:
                result = self._subsystem(name, dry_run)
            except NetsmithError as e:
                logger.error(f"{name}: {e}")
                result = ApplyResult(backend=name, dry_run=dry_run, error=str(e))
            if result is not None:
                results.append(result)
        return results

    def preview(self, subsystems: tuple[str, ...] = ("interfaces", "firewall", "dhcp")) -> str:
        """Human-readable diff of stored intent against live state."""
        sections = []
        for name in subsystems:
            try:
                body = getattr(self, name).preview()
            except NetsmithError as e:
                body = f"unavailable: {e}"
            sections.append(f"== {name} ==\n{body}")
        return "\n\n".join(sections)

    def status(self) -> dict[str, Any]:
        """Backends in use and a count of stored intents."""
        selection = self.detect()
        return {
            "backends": {
                "interfaces": selection.interfaces.value if selection.interfaces else None,
                "firewall": selection.firewall.value if selection.firewall else None,
                "dhcp": selection.dhcp.value if selection.dhcp else None,
            },
            "intent": {
                "interfaces": len(self.store.list_interfaces()),
                "firewall_rules": len(self.store.list_rules()),
                "dhcp_mode": self.store.get_dhcp_configuration().mode.value,
                "reservations": len(self.store.list_reservations()),
                "static_routes": len(self.store.list_routes()),
            },
        }
