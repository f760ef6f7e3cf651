"""Configuration management."""
from .settings import Settings, Paths, load_settings

__all__ = ["Settings", "Paths", "load_settings"]
