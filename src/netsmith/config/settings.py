"""Runtime settings loaded from YAML.

Example ``netsmith.yaml``:

```yaml
database_url: sqlite:////var/lib/netsmith/intent.db
command_timeout: 30
backends:
  interfaces: auto     # auto, netplan, ifupdown
  firewall: nftables   # auto, nftables, iptables
paths:
  dnsmasq_conf: /etc/dnsmasq.d/netsmith.conf
```
"""
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite:////var/lib/netsmith/intent.db"

DEFAULT_CHAINS = {
    "filter": ["INPUT", "FORWARD", "OUTPUT"],
    "nat": ["PREROUTING", "POSTROUTING", "OUTPUT"],
}

BACKEND_CHOICES = {
    "interfaces": ("auto", "netplan", "ifupdown"),
    "firewall": ("auto", "nftables", "iptables"),
    "dhcp": ("auto", "dnsmasq", "isc_dhcpd"),
}


@dataclass
class Paths:
    """Canonical host paths read and written by the backends."""
    netplan_dir: str = "/etc/netplan"
    netplan_file: str = "/etc/netplan/01-netsmith.yaml"
    interfaces_file: str = "/etc/network/interfaces"
    nftables_conf: str = "/etc/nftables.conf"
    iptables_rules: str = "/etc/iptables/rules.v4"
    dnsmasq_conf: str = "/etc/dnsmasq.conf"
    dnsmasq_leases: str = "/var/lib/dhcp/dnsmasq.leases"
    dhcpd_conf: str = "/etc/dhcp/dhcpd.conf"
    dhcpd_leases: str = "/var/lib/dhcp/dhcpd.leases"
    dhcpd_defaults: str = "/etc/default/isc-dhcp-server"
    relay_defaults: str = "/etc/default/isc-dhcp-relay"
    rt_tables: str = "/etc/iproute2/rt_tables"
    ip_forward: str = "/proc/sys/net/ipv4/ip_forward"

    def under(self, root: str | Path) -> "Paths":
        """Return a copy with every path re-rooted below ``root``.

        Used for staging trees and tests; ``/etc/x`` becomes ``<root>/etc/x``.
        """
        root = Path(root)
        rebased = {
            f.name: str(root / getattr(self, f.name).lstrip("/"))
            for f in fields(self)
        }
        return Paths(**rebased)


@dataclass
class Settings:
    """Complete runtime settings."""
    database_url: str = DEFAULT_DB_URL
    command_timeout: float = 30.0
    audit_dir: Optional[str] = None
    interface_backend: str = "auto"
    firewall_backend: str = "auto"
    dhcp_backend: str = "auto"
    paths: Paths = field(default_factory=Paths)
    firewall_chains: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_CHAINS.items()}
    )
    source: Optional[str] = None  # file the settings were loaded from

    def known_chains(self) -> set[str]:
        """All chain names across every table."""
        return {chain for chains in self.firewall_chains.values() for chain in chains}

    @classmethod
    def for_root(cls, root: str | Path, **overrides: Any) -> "Settings":
        """Settings whose canonical paths all live below ``root``."""
        settings = cls(**overrides)
        settings.paths = Paths().under(root)
        return settings


def find_settings_file() -> Optional[Path]:
    """Find netsmith.yaml on the search path, or None."""
    env_path = os.environ.get("NETSMITH_CONFIG")
    if env_path:
        return Path(env_path)

    search_paths = [
        Path.cwd() / "configs" / "netsmith.yaml",
        Path.home() / ".config" / "netsmith" / "netsmith.yaml",
        Path("/etc/netsmith/netsmith.yaml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def _settings_from_dict(data: dict[str, Any]) -> Settings:
    settings = Settings()

    if "database_url" in data:
        settings.database_url = str(data["database_url"])
    if "command_timeout" in data:
        settings.command_timeout = float(data["command_timeout"])
    if data.get("audit_dir"):
        settings.audit_dir = str(data["audit_dir"])

    backends = data.get("backends") or {}
    for subsystem, choice in backends.items():
        if subsystem not in BACKEND_CHOICES:
            logger.warning(f"Ignoring unknown backend subsystem '{subsystem}'")
            continue
        choice = str(choice).lower()
        if choice not in BACKEND_CHOICES[subsystem]:
            raise ValueError(
                f"Invalid {subsystem} backend '{choice}'. "
                f"Valid: {', '.join(BACKEND_CHOICES[subsystem])}"
            )
        attr = "interface_backend" if subsystem == "interfaces" else f"{subsystem}_backend"
        setattr(settings, attr, choice)

    path_overrides = data.get("paths") or {}
    known = {f.name for f in fields(Paths)}
    for key in list(path_overrides):
        if key not in known:
            logger.warning(f"Ignoring unknown path setting '{key}'")
            path_overrides.pop(key)
    if path_overrides:
        settings.paths = replace(settings.paths, **{k: str(v) for k, v in path_overrides.items()})

    chains = data.get("firewall_chains")
    if chains:
        settings.firewall_chains = {
            str(table): [str(c) for c in names] for table, names in chains.items()
        }

    return settings


def load_settings(config_path: Optional[str | Path] = None) -> Settings:
    """Load settings from YAML with environment overrides.

    Args:
        config_path: Explicit settings file. When omitted the search path is
            used, and built-in defaults apply if no file is found.

    Returns:
        Settings instance

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
    """
    path = Path(config_path) if config_path else find_settings_file()

    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        settings = _settings_from_dict(data)
        settings.source = str(path)
        logger.debug(f"Loaded settings from {path}")
    else:
        settings = Settings()
        logger.debug("No settings file found, using defaults")

    # Environment wins over the file
    if os.environ.get("NETSMITH_DB_URL"):
        settings.database_url = os.environ["NETSMITH_DB_URL"]
    if os.environ.get("NETSMITH_COMMAND_TIMEOUT"):
        settings.command_timeout = float(os.environ["NETSMITH_COMMAND_TIMEOUT"])

    return settings
