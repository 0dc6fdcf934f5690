"""
Stream configuration and the lock-guarded store that owns it.

The store is the single writer of :class:`StreamConfig`.  Every update goes
through :meth:`ConfigStore.apply`, which validates each field on its own,
keeps the previous value for anything out of range and classifies the change
so the lifecycle controller knows whether a rebuild is needed.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .utils.paths import ensure_parent_dir

LOG = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5000
DEFAULT_SOURCE = "libcamera"
DEFAULT_ENCODER = "v4l2h264enc"
DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 720
DEFAULT_FRAMERATE = 30

PORT_RANGE = (1, 65535)
WIDTH_RANGE = (320, 4608)
HEIGHT_RANGE = (240, 2592)
FRAMERATE_RANGE = (1, 120)
LENS_POSITION_RANGE = (0.0, 1.0)

SOURCE_KINDS = ("libcamera", "v4l2", "test")
AUTO_DETECT = "auto-detect"

CONNECTION_FIELDS = ("host", "port")
TOPOLOGY_FIELDS = (
    "source",
    "device",
    "encoder",
    "width",
    "height",
    "framerate",
    "autofocus",
    "lens_position",
)
FIELD_ALIASES = {"src": "source", "camera": "device"}

_FACTORY_NAME = re.compile(r"^[A-Za-z0-9_\-]+$")


class ChangeClass(str, Enum):
    """How an applied update affects the running pipeline."""

    NONE = "none"
    CONNECTION_ONLY = "connection_only"
    TOPOLOGY_CHANGING = "topology_changing"


@dataclass
class StreamConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    source: str = DEFAULT_SOURCE
    device: str = ""
    encoder: str = DEFAULT_ENCODER
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    framerate: int = DEFAULT_FRAMERATE
    autofocus: Optional[bool] = None
    lens_position: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def copy(self) -> "StreamConfig":
        return replace(self)

    def describe(self) -> str:
        return (
            f"host={self.host}, port={self.port}, source={self.source}, "
            f"device={self.device or AUTO_DETECT}, encoder={self.encoder}, "
            f"{self.width}x{self.height}@{self.framerate}fps"
        )


# ---------------------------------------------------------------- validation


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _bounded_int(name: str, value: object, bounds: Tuple[int, int], current: object) -> Optional[int]:
    if not _is_int(value):
        LOG.warning("Ignoring non-integer %s %r, keeping current value %s", name, value, current)
        return None
    low, high = bounds
    if not low <= value <= high:  # type: ignore[operator]
        LOG.warning(
            "Invalid %s %s (allowed %s..%s), keeping current value %s",
            name,
            value,
            low,
            high,
            current,
        )
        return None
    return int(value)  # type: ignore[arg-type]


def _validate_field(name: str, value: object, current: StreamConfig) -> Tuple[bool, Any]:
    """
    Validate one incoming field.

    Returns ``(accepted, normalised_value)``.  Rejections are logged here so
    callers only deal with accepted values.
    """

    previous = getattr(current, name)

    if name == "host":
        if isinstance(value, str) and value.strip() and not any(ch.isspace() for ch in value.strip()):
            return True, value.strip()
        LOG.warning("Ignoring invalid host %r, keeping %s", value, previous)
        return False, None

    if name == "port":
        port = _bounded_int(name, value, PORT_RANGE, previous)
        return port is not None, port

    if name == "source":
        candidate = str(value).strip().lower() if isinstance(value, str) else None
        if candidate in SOURCE_KINDS:
            return True, candidate
        LOG.warning("Ignoring unknown source %r (expected one of %s)", value, ", ".join(SOURCE_KINDS))
        return False, None

    if name == "device":
        if value is None:
            return True, ""
        if isinstance(value, str):
            candidate = value.strip()
            return True, "" if candidate == AUTO_DETECT else candidate
        LOG.warning("Ignoring invalid device %r", value)
        return False, None

    if name == "encoder":
        if isinstance(value, str) and _FACTORY_NAME.match(value.strip()):
            return True, value.strip()
        LOG.warning("Ignoring invalid encoder %r, keeping %s", value, previous)
        return False, None

    if name == "width":
        width = _bounded_int(name, value, WIDTH_RANGE, previous)
        return width is not None, width

    if name == "height":
        height = _bounded_int(name, value, HEIGHT_RANGE, previous)
        return height is not None, height

    if name == "framerate":
        framerate = _bounded_int(name, value, FRAMERATE_RANGE, previous)
        return framerate is not None, framerate

    if name == "autofocus":
        if value is None or isinstance(value, bool):
            return True, value
        LOG.warning("Ignoring non-boolean autofocus %r", value)
        return False, None

    if name == "lens_position":
        if value is None:
            return True, None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            low, high = LENS_POSITION_RANGE
            numeric = float(value)
            if low <= numeric <= high:
                return True, numeric
        LOG.warning("Invalid lens_position %r (allowed 0.0..1.0), keeping %s", value, previous)
        return False, None

    return False, None


def validate_update(incoming: Mapping[str, Any], current: StreamConfig) -> Dict[str, Any]:
    """
    Return the subset of ``incoming`` that is recognised and valid.

    Aliases (``src``, ``camera``) are folded onto their canonical names;
    unknown keys are dropped silently.
    """

    recognised = {f.name for f in fields(StreamConfig)}
    accepted: Dict[str, Any] = {}
    for raw_key, value in incoming.items():
        key = FIELD_ALIASES.get(raw_key, raw_key)
        if key not in recognised:
            LOG.debug("Ignoring unrecognised configuration field %r", raw_key)
            continue
        ok, normalised = _validate_field(key, value, current)
        if ok:
            accepted[key] = normalised
    return accepted


def classify(changed: Mapping[str, Any]) -> ChangeClass:
    if any(name in TOPOLOGY_FIELDS for name in changed):
        return ChangeClass.TOPOLOGY_CHANGING
    if any(name in CONNECTION_FIELDS for name in changed):
        return ChangeClass.CONNECTION_ONLY
    return ChangeClass.NONE


# --------------------------------------------------------------- persistence


def load_config(path: Path) -> StreamConfig:
    """
    Read ``path`` and validate each field against the live-update bounds.

    Raises :class:`OSError` or :class:`ValueError` when the file cannot be read
    or is not a JSON object.
    """

    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"{path} does not contain a JSON object")

    config = StreamConfig()
    for key, value in validate_update(payload, config).items():
        setattr(config, key, value)
    return config


def save_config(config: StreamConfig, path: Path) -> bool:
    if not ensure_parent_dir(path):
        return False
    payload = config.to_dict()
    # Older readers expect the camera name under "camera".
    payload["camera"] = payload.pop("device")
    try:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
    except OSError as exc:
        LOG.error("Failed to save configuration to %s: %s", path, exc)
        return False
    LOG.info("Configuration persisted to %s", path)
    return True


# ---------------------------------------------------------------------- store


class ConfigStore:
    """
    Owner of the current :class:`StreamConfig`.

    ``lock`` is shared with the lifecycle controller: it also guards the
    pipeline reference and the restart/terminate signals, so a reader holding
    it never sees a configuration that does not match the pipeline that is
    running or about to be built.
    """

    def __init__(self, config: Optional[StreamConfig] = None, *, path: Optional[Path] = None) -> None:
        self.lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._config = config.copy() if config is not None else StreamConfig()
        self.path = path

    @classmethod
    def from_file(cls, path: Path) -> "ConfigStore":
        store = cls(path=path)
        if not path.exists():
            LOG.info("Configuration file %s not found. Creating with defaults.", path)
            store.save()
            return store
        try:
            store._config = load_config(path)
        except (OSError, ValueError) as exc:
            LOG.error("Failed to parse %s (%s), rewriting defaults", path, exc)
            store.save()
        else:
            LOG.info("Loaded configuration from %s", path)
        return store

    def snapshot(self) -> StreamConfig:
        with self.lock:
            return self._config.copy()

    def apply(self, incoming: Mapping[str, Any], *, persist: bool = True) -> ChangeClass:
        """
        Merge ``incoming`` into the current configuration.

        The file is written once ``lock`` is released. Callers that already
        hold it pass ``persist=False`` and call :meth:`save` after letting go.
        """

        with self.lock:
            current = self._config
            accepted = validate_update(incoming, current)
            old_values = {name: getattr(current, name) for name in accepted}
            changed = {
                name: value for name, value in accepted.items() if old_values[name] != value
            }
            for name, value in changed.items():
                setattr(current, name, value)

            change = classify(changed)
            if change is ChangeClass.NONE:
                LOG.info("Configuration updated (no changes required): %s", current.describe())
            else:
                LOG.info(
                    "Configuration change (%s) on %s: %s",
                    change.value,
                    ", ".join(sorted(changed)),
                    current.describe(),
                )
        if persist and change is not ChangeClass.NONE:
            self.save()
        return change

    def reset_to_defaults(self) -> StreamConfig:
        with self.lock:
            self._config = StreamConfig()
            config = self._config.copy()
        self.save()
        return config

    def save(self) -> bool:
        if self.path is None:
            return False
        with self._save_lock:
            with self.lock:
                config = self._config.copy()
            ok = save_config(config, self.path)
        if not ok:
            LOG.error("Failed to persist configuration; continuing with in-memory values")
        return ok
