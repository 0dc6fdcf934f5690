"""
Read-only capability queries backing the ``/get`` endpoints.

Devices are enumerated through ``Gst.DeviceMonitor``; creating a throwaway
capture element is only used when the monitor reports nothing.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..config import AUTO_DETECT, FRAMERATE_RANGE, HEIGHT_RANGE, WIDTH_RANGE
from ..graph.factory import StageFactory
from ..graph.stages import KNOWN_ENCODERS, dedupe
from ..utils import gst

LOG = logging.getLogger(__name__)

VIDEO_SOURCE_CLASS = "Video/Source"
SOFTWARE_ENCODER = "x264enc"
# Reported when a device cannot be probed.
FALLBACK_MODES = ((640, 480, 30), (1280, 720, 30), (1920, 1080, 15))
# Checked against devices that advertise width/height ranges.
RANGE_MODES = ((640, 480, 60), (1280, 720, 60), (1920, 1080, 30), (2304, 1296, 25), (4608, 2592, 10))
DEFAULT_MAX_FRAMERATE = 30


def _video_devices() -> List[Any]:
    Gst = gst.Gst
    monitor = Gst.DeviceMonitor.new()
    monitor.add_filter(VIDEO_SOURCE_CLASS, None)
    if not monitor.start():
        LOG.debug("Device monitor failed to start")
        return []
    try:
        return list(monitor.get_devices() or [])
    finally:
        monitor.stop()


def _probe_libcamera_default() -> Optional[str]:
    Gst = gst.Gst
    element = Gst.ElementFactory.make("libcamerasrc", None)
    if element is None:
        return None
    try:
        if element.set_state(Gst.State.READY) == Gst.StateChangeReturn.FAILURE:
            return None
        name = element.get_property("camera-name")
        return name or None
    finally:
        element.set_state(Gst.State.NULL)


def list_cameras() -> List[str]:
    if not gst.is_available():
        return [AUTO_DETECT]
    gst.ensure_initialised()

    names = [device.get_display_name() for device in _video_devices()]
    if not names:
        default = _probe_libcamera_default()
        if default:
            names.append(default)
    names = dedupe(names)
    if not names:
        LOG.info("No specific cameras detected, using auto-detect")
        names = [AUTO_DETECT]
    return names


def list_encoders(factory: Optional[StageFactory] = None) -> List[str]:
    if not gst.is_available():
        return []
    factory = factory or StageFactory()
    encoders = [name for name in KNOWN_ENCODERS if factory.is_available(name)]
    if not encoders:
        LOG.warning("No H.264 encoders detected, adding %s as fallback", SOFTWARE_ENCODER)
        encoders = [SOFTWARE_ENCODER]
    return encoders


def _in_bounds(width: int, height: int) -> bool:
    return WIDTH_RANGE[0] <= width <= WIDTH_RANGE[1] and HEIGHT_RANGE[0] <= height <= HEIGHT_RANGE[1]


def _int_bounds(structure: Any, field: str) -> Optional[Tuple[int, int]]:
    """Inclusive ``(low, high)`` for a fixed or int-range caps field."""

    has_value, value = structure.get_int(field)
    if has_value:
        return value, value
    value = structure.get_value(field)
    # gst-python wraps GstIntRange with a ``range`` ending at the inclusive maximum.
    span = getattr(value, "range", None)
    if isinstance(span, range):
        return span.start, span.stop
    if hasattr(value, "get_int_range_min"):
        return value.get_int_range_min(), value.get_int_range_max()
    return None


def _max_framerate(structure: Any) -> int:
    has_rate, numerator, denominator = structure.get_fraction("framerate")
    if has_rate and denominator:
        return max(FRAMERATE_RANGE[0], min(FRAMERATE_RANGE[1], numerator // denominator))
    return DEFAULT_MAX_FRAMERATE


def _resolutions_from_caps(caps: Any) -> List[Dict[str, int]]:
    found: List[Dict[str, int]] = []
    seen: set[tuple[int, int]] = set()

    def _add(width: int, height: int, max_fps: int) -> None:
        if (width, height) in seen or not _in_bounds(width, height):
            return
        seen.add((width, height))
        found.append({"width": width, "height": height, "max_framerate": max_fps})

    for index in range(caps.get_size()):
        structure = caps.get_structure(index)
        if not structure.get_name().startswith("video/x-raw"):
            continue
        widths = _int_bounds(structure, "width")
        heights = _int_bounds(structure, "height")
        if widths is None or heights is None:
            continue
        if widths[0] == widths[1] and heights[0] == heights[1]:
            _add(widths[0], heights[0], _max_framerate(structure))
            continue
        # Ranged caps: offer the sensor modes that fit inside the range.
        for width, height, max_fps in RANGE_MODES:
            if widths[0] <= width <= widths[1] and heights[0] <= height <= heights[1]:
                _add(width, height, max_fps)
    return found


def camera_resolutions(camera: str) -> List[Dict[str, int]]:
    resolutions: List[Dict[str, int]] = []
    if gst.is_available():
        gst.ensure_initialised()
        for device in _video_devices():
            if camera not in {AUTO_DETECT, ""} and device.get_display_name() != camera:
                continue
            caps = device.get_caps()
            if caps is not None:
                resolutions = _resolutions_from_caps(caps)
            if resolutions:
                break

    if not resolutions:
        LOG.info("Could not probe resolutions for %s; reporting common modes", camera)
        resolutions = [
            {"width": width, "height": height, "max_framerate": max_fps}
            for width, height, max_fps in FALLBACK_MODES
        ]
    return resolutions
