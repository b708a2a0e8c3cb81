"""Configuration package for the dashboard core."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
