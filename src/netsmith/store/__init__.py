"""Persistent intent store.

Tables (SQLite by default):
    interfaces           one row per interface intent, unique name
    firewall_rules       unique (table, chain, position)
    dhcp_pools           one pool per interface
    dhcp_reservations    unique MAC, declared order kept in ``ordinal``
    static_routes        unique destination
    settings             key -> JSON document (DHCP mode, WAN, multi-WAN, UPnP)
"""

from .store import IntentStore, StoreClosed
from .models import Base

__all__ = [
    "IntentStore",
    "StoreClosed",
    "Base",
]
