"""Utility helpers for the transmitter."""

from .logging import configure_logging
from .paths import ensure_parent_dir, resolve_config_path

__all__ = ["configure_logging", "ensure_parent_dir", "resolve_config_path"]
