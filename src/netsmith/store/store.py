"""Persistent intent store.

Declared configuration lives here, independent of live system state. The
engine constructs one IntentStore at startup and passes it to every manager.

Usage:
    store = IntentStore("sqlite:////var/lib/netsmith/intent.db")
    with store:
        store.save_interface(NetworkInterfaceIntent(name="eth0"))
"""
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from ..config.settings import DEFAULT_DB_URL
from ..config_engine.parser import ConfigParser
from ..config_engine.schema import (
    AddressMode,
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
    UPnPConfiguration,
    WANConfiguration,
    to_dict,
)
from ..errors import NetsmithError
from ..utils.executor import with_retry
from .models import (
    Base,
    DHCPPoolRow,
    DHCPReservationRow,
    FirewallRuleRow,
    InterfaceRow,
    SettingRow,
    StaticRouteRow,
)

logger = logging.getLogger(__name__)

DHCP_MODE_KEY = "dhcp.mode"
DHCP_RELAY_KEY = "dhcp.relay"
WAN_KEY = "wan"
MULTIWAN_KEY = "multiwan"
UPNP_KEY = "upnp"


class StoreClosed(NetsmithError):
    """The store was used before open() or after close()."""
    pass


# --- Row <-> intent conversion ---

def _interface_from_row(row: InterfaceRow) -> NetworkInterfaceIntent:
    return NetworkInterfaceIntent(
        name=row.name,
        type=InterfaceType(row.type),
        enabled=row.enabled,
        mode=AddressMode(row.mode),
        address=row.address,
        netmask=row.netmask,
        gateway=row.gateway,
        dns=list(row.dns or []),
        mtu=row.mtu,
        vlan_id=row.vlan_id,
        link=row.link,
        bridge_ports=list(row.bridge_ports or []),
        ssid=row.ssid,
        psk=row.psk,
    )


def _rule_from_row(row: FirewallRuleRow) -> FirewallRuleIntent:
    return FirewallRuleIntent(
        id=row.id,
        chain=row.chain,
        action=RuleAction(row.action),
        protocol=row.protocol,
        source=row.source,
        destination=row.destination,
        port=row.port,
        target=row.target,
        position=row.position,
        enabled=row.enabled,
        comment=row.comment,
    )


def _pool_from_row(row: DHCPPoolRow) -> DHCPPoolIntent:
    return DHCPPoolIntent(
        interface=row.interface,
        start=row.start,
        end=row.end,
        lease_time=row.lease_time,
        authoritative=row.authoritative,
        domain=row.domain,
        options=dict(row.options or {}),
    )


def _reservation_from_row(row: DHCPReservationRow) -> DHCPReservationIntent:
    return DHCPReservationIntent(
        mac=row.mac,
        ip=row.ip,
        hostname=row.hostname,
        enabled=row.enabled,
    )


def _route_from_row(row: StaticRouteRow) -> StaticRouteIntent:
    return StaticRouteIntent(
        destination=row.destination,
        gateway=row.gateway,
        interface=row.interface,
        metric=row.metric,
    )


def _assign(row: Any, values: dict[str, Any]) -> None:
    for key, value in values.items():
        setattr(row, key, value)


class IntentStore:
    """SQLAlchemy-backed store for declared intents."""

    def __init__(self, database_url: str = DEFAULT_DB_URL):
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._sessions: Optional[sessionmaker] = None
        self._parser = ConfigParser()
        self._local = threading.local()

    # --- Lifecycle ---

    def open(self) -> "IntentStore":
        if self._engine is not None:
            return self

        url = make_url(self.database_url)
        if url.drivername.startswith("sqlite") and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        self._engine = sa.create_engine(self.database_url)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)
        logger.debug(f"Intent store opened: {url.render_as_string(hide_password=True)}")
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.debug("Intent store closed")
        self._engine = None
        self._sessions = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def __enter__(self) -> "IntentStore":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session: commit on success, roll back on error.

        Inside :meth:`transaction` the enclosing session is reused and the
        commit is left to it.
        """
        active = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return
        if self._sessions is None:
            raise StoreClosed("Intent store is not open")
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Run several store calls as one commit; any error rolls all of them back.

        Usage:
            with store.transaction():
                store.delete_route("10.0.0.0/8")
                store.save_route(route)
        """
        if getattr(self._local, "session", None) is not None:
            yield self._local.session
            return
        with self.session() as s:
            self._local.session = s
            try:
                yield s
            finally:
                self._local.session = None

    # --- Interfaces ---

    def list_interfaces(self) -> list[NetworkInterfaceIntent]:
        with self.session() as s:
            rows = s.scalars(sa.select(InterfaceRow).order_by(InterfaceRow.name)).all()
            return [_interface_from_row(r) for r in rows]

    def get_interface(self, name: str) -> Optional[NetworkInterfaceIntent]:
        with self.session() as s:
            row = s.scalar(sa.select(InterfaceRow).where(InterfaceRow.name == name))
            return _interface_from_row(row) if row else None

    @with_retry()
    def save_interface(self, intent: NetworkInterfaceIntent) -> None:
        """Insert or replace the interface with the same name."""
        values = to_dict(intent)
        with self.session() as s:
            row = s.scalar(sa.select(InterfaceRow).where(InterfaceRow.name == intent.name))
            if row is None:
                row = InterfaceRow()
                s.add(row)
            _assign(row, values)

    @with_retry()
    def delete_interface(self, name: str) -> bool:
        with self.session() as s:
            result = s.execute(sa.delete(InterfaceRow).where(InterfaceRow.name == name))
            return result.rowcount > 0

    # --- Firewall rules ---

    def list_rules(self) -> list[FirewallRuleIntent]:
        with self.session() as s:
            rows = s.scalars(
                sa.select(FirewallRuleRow).order_by(
                    FirewallRuleRow.table_name, FirewallRuleRow.chain, FirewallRuleRow.position
                )
            ).all()
            return [_rule_from_row(r) for r in rows]

    def get_rule(self, rule_id: int) -> Optional[FirewallRuleIntent]:
        with self.session() as s:
            row = s.get(FirewallRuleRow, rule_id)
            return _rule_from_row(row) if row else None

    def chain_rules(self, table: str, chain: str) -> list[FirewallRuleIntent]:
        """Rules of one chain in position order."""
        with self.session() as s:
            rows = s.scalars(
                sa.select(FirewallRuleRow)
                .where(FirewallRuleRow.table_name == table, FirewallRuleRow.chain == chain)
                .order_by(FirewallRuleRow.position)
            ).all()
            return [_rule_from_row(r) for r in rows]

    @with_retry()
    def save_rule(self, rule: FirewallRuleIntent) -> FirewallRuleIntent:
        """Insert (no id) or update (id) a rule; returns it with its id set."""
        values = to_dict(rule)
        values.pop("id")
        values["table_name"] = rule.table
        with self.session() as s:
            row = s.get(FirewallRuleRow, rule.id) if rule.id is not None else None
            if row is None:
                row = FirewallRuleRow()
                s.add(row)
            _assign(row, values)
            s.flush()
            rule.id = row.id
        return rule

    @with_retry()
    def delete_rule(self, rule_id: int) -> bool:
        with self.session() as s:
            result = s.execute(sa.delete(FirewallRuleRow).where(FirewallRuleRow.id == rule_id))
            return result.rowcount > 0

    @with_retry()
    def set_positions(self, positions: dict[int, int]) -> None:
        """Rewrite rule positions in one transaction.

        Positions are first parked at negative values so that swapping two
        rules never trips the (table, chain, position) unique constraint.
        """
        with self.session() as s:
            rows = s.scalars(
                sa.select(FirewallRuleRow).where(FirewallRuleRow.id.in_(list(positions)))
            ).all()
            for row in rows:
                row.position = -row.id
            s.flush()
            for row in rows:
                row.position = positions[row.id]

    # --- DHCP ---

    def get_dhcp_configuration(self) -> DHCPConfiguration:
        with self.session() as s:
            pools = s.scalars(sa.select(DHCPPoolRow).order_by(DHCPPoolRow.ordinal)).all()
            reservations = s.scalars(
                sa.select(DHCPReservationRow).order_by(DHCPReservationRow.ordinal)
            ).all()
            mode = s.get(SettingRow, DHCP_MODE_KEY)
            relay = s.get(SettingRow, DHCP_RELAY_KEY)
            relay_value = (relay.value if relay else None) or {}

            return DHCPConfiguration(
                mode=DHCPMode(mode.value) if mode and mode.value else DHCPMode.DISABLED,
                pools=[_pool_from_row(r) for r in pools],
                reservations=[_reservation_from_row(r) for r in reservations],
                relay_target=relay_value.get("target"),
                relay_interfaces=list(relay_value.get("interfaces") or []),
            )

    @with_retry()
    def save_dhcp_configuration(self, config: DHCPConfiguration) -> None:
        """Replace the whole DHCP configuration."""
        with self.session() as s:
            s.execute(sa.delete(DHCPPoolRow))
            s.execute(sa.delete(DHCPReservationRow))
            s.flush()
            for ordinal, pool in enumerate(config.pools):
                s.add(DHCPPoolRow(ordinal=ordinal, **to_dict(pool)))
            for ordinal, reservation in enumerate(config.reservations):
                s.add(DHCPReservationRow(ordinal=ordinal, **to_dict(reservation)))
            self._put(s, DHCP_MODE_KEY, config.mode.value)
            self._put(s, DHCP_RELAY_KEY, {
                "target": config.relay_target,
                "interfaces": list(config.relay_interfaces),
            })

    def list_reservations(self) -> list[DHCPReservationIntent]:
        with self.session() as s:
            rows = s.scalars(
                sa.select(DHCPReservationRow).order_by(DHCPReservationRow.ordinal)
            ).all()
            return [_reservation_from_row(r) for r in rows]

    @with_retry()
    def save_reservation(self, reservation: DHCPReservationIntent) -> bool:
        """Add a reservation, replacing in place any entry with the same MAC.

        Returns:
            True if an existing reservation was replaced
        """
        with self.session() as s:
            row = s.scalar(
                sa.select(DHCPReservationRow).where(DHCPReservationRow.mac == reservation.mac)
            )
            replaced = row is not None
            if row is None:
                last = s.scalar(sa.select(sa.func.max(DHCPReservationRow.ordinal)))
                row = DHCPReservationRow(ordinal=(last + 1) if last is not None else 0)
                s.add(row)
            _assign(row, to_dict(reservation))
            return replaced

    @with_retry()
    def delete_reservation(self, mac: str) -> bool:
        mac = mac.strip().lower()
        with self.session() as s:
            result = s.execute(
                sa.delete(DHCPReservationRow).where(DHCPReservationRow.mac == mac)
            )
            return result.rowcount > 0

    # --- Static routes ---

    def list_routes(self) -> list[StaticRouteIntent]:
        with self.session() as s:
            rows = s.scalars(sa.select(StaticRouteRow).order_by(StaticRouteRow.id)).all()
            return [_route_from_row(r) for r in rows]

    @with_retry()
    def save_route(self, route: StaticRouteIntent) -> None:
        """Insert or replace the route for the same destination."""
        with self.session() as s:
            row = s.scalar(
                sa.select(StaticRouteRow).where(StaticRouteRow.destination == route.destination)
            )
            if row is None:
                row = StaticRouteRow()
                s.add(row)
            _assign(row, to_dict(route))

    @with_retry()
    def delete_route(self, destination: str) -> bool:
        with self.session() as s:
            result = s.execute(
                sa.delete(StaticRouteRow).where(StaticRouteRow.destination == destination)
            )
            return result.rowcount > 0

    # --- Settings documents ---

    def _put(self, session: Session, key: str, value: Any) -> None:
        row = session.get(SettingRow, key)
        if row is None:
            session.add(SettingRow(key=key, value=value))
        else:
            row.value = value

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self.session() as s:
            row = s.get(SettingRow, key)
            return row.value if row is not None and row.value is not None else default

    @with_retry()
    def set_setting(self, key: str, value: Any) -> None:
        with self.session() as s:
            self._put(s, key, value)

    def get_wan(self) -> Optional[WANConfiguration]:
        data = self.get_setting(WAN_KEY)
        return self._parser.parse_wan(data) if data else None

    def set_wan(self, wan: WANConfiguration) -> None:
        self.set_setting(WAN_KEY, to_dict(wan))

    def get_multiwan(self) -> MultiWANConfiguration:
        data = self.get_setting(MULTIWAN_KEY)
        return self._parser.parse_multiwan(data) if data else MultiWANConfiguration()

    def set_multiwan(self, config: MultiWANConfiguration) -> None:
        self.set_setting(MULTIWAN_KEY, to_dict(config))

    def get_upnp(self) -> UPnPConfiguration:
        data = self.get_setting(UPNP_KEY)
        return self._parser.parse_upnp(data) if data else UPnPConfiguration()

    def set_upnp(self, config: UPnPConfiguration) -> None:
        self.set_setting(UPNP_KEY, to_dict(config))
