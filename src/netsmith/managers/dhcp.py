"""DHCP Lease/Reservation Manager.

Serves DHCP through dnsmasq or ISC dhcpd (whichever the Detector selects for
new configuration), relays it with dhcrelay, or turns it off. Leases are read
from whichever server is running.
"""
import logging
from datetime import datetime
from typing import Optional

from ..backends import create_dhcp_backend
from ..backends.base import DHCPBackend
from ..backends.detector import Detector
from ..backends.dnsmasq import BLOCK_BEGIN, DnsmasqBackend
from ..backends.relay import RelayBackend
from ..config.settings import Settings
from ..config_engine.diff import DiffEngine, summarize_diff
from ..config_engine.executor import Applier, live_result
from ..config_engine.schema import (
    ApplyResult,
    DHCPBackendKind,
    DHCPConfiguration,
    DHCPMode,
    DHCPReservationIntent,
    DHCPState,
    LeaseRecord,
)
from ..config_engine.validator import ConfigValidator
from ..errors import BackendUnavailable
from ..store import IntentStore
from ..utils.executor import HostExecutor

logger = logging.getLogger(__name__)

# Services stopped when DHCP is disabled; dnsmasq keeps running for DNS
STANDALONE_SERVICES = ("isc-dhcp-server", "isc-dhcp-relay")


class DHCPManager:
    """DHCP configuration, reservations and leases."""

    def __init__(
        self,
        store: IntentStore,
        detector: Detector,
        executor: HostExecutor,
        applier: Applier,
        settings: Optional[Settings] = None,
        validator: Optional[ConfigValidator] = None,
    ):
        self.store = store
        self.detector = detector
        self.executor = executor
        self.applier = applier
        self.settings = settings or Settings()
        self.validator = validator or ConfigValidator()
        self.diff_engine = DiffEngine()

    # --- Backend selection ---

    def server_backend(self) -> DHCPBackend:
        """Backend used to serve new configuration."""
        return create_dhcp_backend(self.detector.select_dhcp_server(), self.executor, self.settings)

    def relay_backend(self) -> DHCPBackend:
        return RelayBackend(self.executor, self.settings.paths)

    def active_backend(self) -> Optional[DHCPBackend]:
        """Backend of whatever currently serves DHCP, or None when disabled."""
        kind = self.detector.detect_dhcp_backend()
        if kind == DHCPBackendKind.DISABLED:
            return None
        return create_dhcp_backend(kind, self.executor, self.settings)

    def backend_for(self, config: DHCPConfiguration) -> Optional[DHCPBackend]:
        if config.mode == DHCPMode.SERVER:
            return self.server_backend()
        if config.mode == DHCPMode.RELAY:
            return self.relay_backend()
        return None

    # --- Configuration ---

    def get_configuration(self) -> DHCPConfiguration:
        return self.store.get_dhcp_configuration()

    def _validate(self, config: DHCPConfiguration) -> None:
        validation = self.validator.validate_dhcp(config, self.store.list_interfaces())
        validation.raise_if_invalid()
        for warning in validation.warnings:
            logger.warning(warning)

    def set_configuration(self, config: DHCPConfiguration, apply: bool = True) -> Optional[ApplyResult]:
        """
        Replace the DHCP configuration.

        Raises:
            ValidationFailed: If the configuration is invalid
            BackendUnavailable: If server mode is requested and no server is installed
        """
        self._validate(config)
        # Resolve the backend before persisting so an unusable mode is never stored
        self.backend_for(config)
        self.store.save_dhcp_configuration(config)
        logger.info(
            f"Saved DHCP configuration: mode={config.mode.value}, "
            f"{len(config.pools)} pools, {len(config.reservations)} reservations"
        )
        return self.apply() if apply else None

    # --- Reservations ---

    def list_reservations(self) -> list[DHCPReservationIntent]:
        return self.store.list_reservations()

    def add_reservation(
        self,
        reservation: DHCPReservationIntent,
        apply: bool = True,
    ) -> Optional[ApplyResult]:
        """Add a reservation; an existing one with the same MAC is replaced in place."""
        config = self.store.get_dhcp_configuration()
        merged = [r for r in config.reservations if r.mac != reservation.mac]
        existing = [r.mac for r in config.reservations]
        if reservation.mac in existing:
            merged.insert(existing.index(reservation.mac), reservation)
        else:
            merged.append(reservation)
        config.reservations = merged
        self._validate(config)

        replaced = self.store.save_reservation(reservation)
        logger.info(
            f"{'Replaced' if replaced else 'Added'} reservation "
            f"{reservation.mac} -> {reservation.ip}"
        )
        return self.apply() if apply else None

    def remove_reservation(self, mac: str, apply: bool = True) -> Optional[ApplyResult]:
        """
        Remove the reservation for ``mac``.

        Raises:
            KeyError: If no reservation exists for that MAC
        """
        if not self.store.delete_reservation(mac):
            raise KeyError(f"No reservation for MAC {mac}")
        logger.info(f"Removed reservation {mac}")
        return self.apply() if apply else None

    # --- Leases ---

    def get_leases(self, now: Optional[datetime] = None) -> list[LeaseRecord]:
        backend = self.active_backend()
        if backend is None:
            return []
        return backend.read_leases(now)

    def release_lease(self, ip: str) -> ApplyResult:
        """
        Make the running server forget the lease for ``ip``.

        Raises:
            BackendUnavailable: If no DHCP server is running
        """
        backend = self.active_backend()
        if backend is None or backend.name == RelayBackend.name:
            raise BackendUnavailable("dhcp", "no DHCP server running")

        artifact = backend.release_artifact(ip)
        if artifact is not None:
            return self.applier.apply(backend, artifact, operation="release_lease")

        argv = backend.release_command(ip)
        if argv is None:
            return ApplyResult(backend=backend.name, error=f"no lease for {ip}")

        return live_result(backend, self.applier.run_live(backend, argv, operation="release_lease"))

    # --- State and apply ---

    def live_state(self) -> DHCPState:
        backend = self.active_backend()
        if backend is None:
            return DHCPState(config=DHCPConfiguration(mode=DHCPMode.DISABLED))
        return backend.read_state()

    def apply(self, dry_run: bool = False) -> ApplyResult:
        """Render the stored configuration for its mode and apply it."""
        config = self.store.get_dhcp_configuration()
        backend = self.backend_for(config)
        if backend is None:
            return self._disable(dry_run)

        existing = backend.executor.read_file(backend.config_path)
        artifact = backend.render(config, existing, self.store.list_interfaces())
        return self.applier.apply(backend, artifact, dry_run=dry_run, operation=f"dhcp_{config.mode.value}")

    def _disable(self, dry_run: bool) -> ApplyResult:
        """Stop standalone DHCP services and strip the DHCP block from dnsmasq."""
        result = ApplyResult(backend="dhcp", success=True, dry_run=dry_run)

        dnsmasq = DnsmasqBackend(self.executor, self.settings.paths)
        existing = self.executor.read_file(dnsmasq.config_path)
        if existing and (BLOCK_BEGIN in existing or "dhcp-range" in existing):
            artifact = dnsmasq.render(DHCPConfiguration(mode=DHCPMode.DISABLED), existing)
            stripped = self.applier.apply(dnsmasq, artifact, dry_run=dry_run, operation="dhcp_disable")
            result.changed = stripped.changed
            result.diff = stripped.diff
            result.commands_executed.extend(stripped.commands_executed)
            if not stripped.success:
                return stripped

        relay = self.relay_backend()
        for service in STANDALONE_SERVICES:
            for verb in ("stop", "disable"):
                argv = ["systemctl", verb, service]
                if dry_run:
                    result.commands_executed.append(f"[DRY-RUN] {' '.join(argv)}")
                    continue
                outcome = self.applier.run_live(relay, argv, operation="dhcp_disable")
                result.commands_executed.append(outcome.command)
                if not outcome.success:
                    # Not installed, or already stopped
                    logger.debug(f"'{outcome.command}' failed: {outcome.stderr.strip()}")

        logger.info("DHCP disabled")
        return result

    def preview(self) -> str:
        config = self.store.get_dhcp_configuration()
        live = self.live_state()
        diff = self.diff_engine.dhcp(config, live.config)
        summary = summarize_diff(diff)
        if live.warnings:
            summary += "\n\nWarnings:\n" + "\n".join(f"  - {w}" for w in live.warnings)
        return summary
