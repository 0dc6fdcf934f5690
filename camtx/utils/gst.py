"""
Optional GStreamer import.

PyGObject and the GStreamer runtime are host dependencies.  When they are
missing, ``Gst`` is ``None`` and anything that needs to build a pipeline
raises :class:`PipelineUnavailableError`, while the control API, tests and
capability endpoints keep working.
"""

from __future__ import annotations

import logging
import threading

from .. import BuildError

LOG = logging.getLogger(__name__)

_INIT_LOCK = threading.Lock()
_GST_INITIALISED = False

try:  # pragma: no cover - availability depends on host environment
    import gi  # type: ignore

    gi.require_version("Gst", "1.0")
    from gi.repository import Gst  # type: ignore
except (ImportError, ValueError) as exc:  # pragma: no cover
    Gst = None  # type: ignore[assignment]
    _GST_IMPORT_ERROR = exc
else:  # pragma: no cover - executed only when GStreamer is present
    _GST_IMPORT_ERROR = None


class PipelineUnavailableError(BuildError):
    """GStreamer or its Python bindings are missing on this host."""


def is_available() -> bool:
    return Gst is not None


def ensure_initialised() -> None:
    global _GST_INITIALISED
    if Gst is None:
        return
    with _INIT_LOCK:
        if _GST_INITIALISED:
            return
        Gst.init(None)
        _GST_INITIALISED = True
        LOG.debug("GStreamer %s initialised", Gst.version_string())


def require_gstreamer() -> None:
    if Gst is None:  # pragma: no cover - runtime guard
        raise PipelineUnavailableError(
            "Cannot build a pipeline: PyGObject with GStreamer 1.x is not installed "
            "(pip install camtx[gst] and the distribution's gstreamer1.0 packages)."
        ) from _GST_IMPORT_ERROR
    ensure_initialised()
