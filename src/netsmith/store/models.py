"""ORM tables for the intent store."""
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class InterfaceRow(Base):
    __tablename__ = "interfaces"

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True)
    name: Mapped[str] = mapped_column(sa.String(32), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="ethernet")
    enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    mode: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="dhcp")
    address: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    netmask: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    gateway: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    dns: Mapped[list[str]] = mapped_column(sa.JSON(), nullable=False, default=list)
    mtu: Mapped[Optional[int]] = mapped_column(sa.Integer(), nullable=True)
    vlan_id: Mapped[Optional[int]] = mapped_column(sa.Integer(), nullable=True)
    link: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    bridge_ports: Mapped[list[str]] = mapped_column(sa.JSON(), nullable=False, default=list)
    ssid: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    psk: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)


class FirewallRuleRow(Base):
    """Positions are unique per (table, chain); OUTPUT exists in filter and nat."""
    __tablename__ = "firewall_rules"
    __table_args__ = (
        sa.UniqueConstraint("table_name", "chain", "position", name="uq_rule_position"),
    )

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True)
    table_name: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="filter")
    chain: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    action: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    protocol: Mapped[Optional[str]] = mapped_column(sa.String(8), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    destination: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    port: Mapped[Optional[str]] = mapped_column(sa.String(16), nullable=True)
    target: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    position: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    comment: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)


class DHCPPoolRow(Base):
    __tablename__ = "dhcp_pools"

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True)
    interface: Mapped[str] = mapped_column(sa.String(32), nullable=False, unique=True)
    start: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    end: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    lease_time: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="24h")
    authoritative: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    domain: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    options: Mapped[dict[str, Any]] = mapped_column(sa.JSON(), nullable=False, default=dict)
    ordinal: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)


class DHCPReservationRow(Base):
    """``ordinal`` keeps declared order stable when a MAC is replaced in place."""
    __tablename__ = "dhcp_reservations"

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True)
    mac: Mapped[str] = mapped_column(sa.String(17), nullable=False, unique=True)
    ip: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    hostname: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=True)
    ordinal: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)


class StaticRouteRow(Base):
    __tablename__ = "static_routes"

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True)
    destination: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    gateway: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    interface: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    metric: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)


class SettingRow(Base):
    """Small documents: DHCP mode, WAN, multi-WAN and UPnP settings."""
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    value: Mapped[Any] = mapped_column(sa.JSON(), nullable=True)
