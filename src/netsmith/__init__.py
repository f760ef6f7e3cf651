"""netsmith - network, firewall and DHCP configuration reconciliation for Linux routers."""

__version__ = "0.1.0"

from .config_engine import Engine
from .errors import (
    NetsmithError,
    BackendUnavailable,
    ParseFailure,
    ValidationFailed,
    ApplyFailed,
    FeatureNotImplemented,
)

__all__ = [
    "Engine",
    "NetsmithError",
    "BackendUnavailable",
    "ParseFailure",
    "ValidationFailed",
    "ApplyFailed",
    "FeatureNotImplemented",
]
