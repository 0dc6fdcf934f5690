"""
Configuration file discovery.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

ENV_CONFIG_VAR = "CAMTX_CONFIG_PATH"
APP_DIR_NAME = "camtx"
DEFAULT_CONFIG_FILENAME = "config.json"

LOG = logging.getLogger(__name__)


def _home_dir() -> Optional[Path]:
    try:
        home = Path.home()
    except RuntimeError:
        return None
    return home if str(home) else None


def _candidates() -> Iterable[Optional[Path]]:
    env_path = os.environ.get(ENV_CONFIG_VAR)
    if env_path:
        yield Path(env_path).expanduser()

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        yield Path(xdg_config).expanduser() / APP_DIR_NAME / DEFAULT_CONFIG_FILENAME

    home = _home_dir()
    if home is not None:
        yield home / f".{APP_DIR_NAME}" / DEFAULT_CONFIG_FILENAME


def resolve_config_path(override: Optional[str] = None) -> Path:
    """
    Return the configuration file location.

    Precedence: explicit ``override``, ``$CAMTX_CONFIG_PATH``,
    ``$XDG_CONFIG_HOME/camtx/config.json``, ``~/.camtx/config.json`` and
    finally ``config.json`` in the working directory.
    """

    if override:
        return Path(override).expanduser()

    for candidate in _candidates():
        if candidate is not None:
            return candidate

    LOG.warning(
        "Falling back to relative %s for configuration; no home directory detected",
        DEFAULT_CONFIG_FILENAME,
    )
    return Path(DEFAULT_CONFIG_FILENAME)


def ensure_parent_dir(path: Path) -> bool:
    parent = path.parent
    if str(parent) in {"", "."}:
        return True
    try:
        parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        LOG.error("Failed to create configuration directory %s: %s", parent, exc)
        return False
    return True
