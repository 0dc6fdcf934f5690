"""
Stage catalogue: roles, candidate implementations and their tuning tables.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..config import (
    DEFAULT_FRAMERATE,
    DEFAULT_HEIGHT,
    DEFAULT_WIDTH,
    StreamConfig,
)


class StageKind(str, Enum):
    """Pipeline roles in link order.  Element names in the live pipeline match the values."""

    SOURCE = "source"
    FORMAT = "capsfilter"
    CONVERT = "convert"
    ENCODER_INPUT = "encoder_input"
    ENCODER = "encoder"
    ENCODED_FORMAT = "encoder_caps"
    PARSER = "parser"
    PAYLOADER = "payloader"
    SINK = "sink"


STAGE_ORDER: Tuple[StageKind, ...] = tuple(StageKind)

SOURCE_IMPLEMENTATIONS: Dict[str, str] = {
    "libcamera": "libcamerasrc",
    "v4l2": "v4l2src",
    "test": "videotestsrc",
}

# Tried after the configured encoder, in order.
ENCODER_FALLBACKS: Tuple[str, ...] = (
    "v4l2h264enc",
    "omxh264enc",
    "x264enc",
    "nvh264enc",
    "vaapih264enc",
)

# Reported by the capability endpoint; superset of the fallback chain.
KNOWN_ENCODERS: Tuple[str, ...] = ENCODER_FALLBACKS + (
    "qsvh264enc",
    "vtenc_h264",
    "mfh264enc",
)

# Values are serialised strings so enum nicks and GstStructure fields can be
# deserialised by ``Gst.util_set_object_arg``.
IMPLEMENTATION_PROPERTIES: Dict[str, Dict[str, str]] = {
    "x264enc": {
        "tune": "zerolatency",
        "speed-preset": "superfast",
        "bitrate": "2048",
        "threads": "1",
        "key-int-max": "30",
    },
    "v4l2h264enc": {
        "extra-controls": "controls,repeat_sequence_header=(boolean)true",
    },
    "omxh264enc": {
        "target-bitrate": "2048000",
        "control-rate": "variable",
    },
    "nvh264enc": {
        "bitrate": "2048",
        "gop-size": "30",
        "preset": "low-latency-hq",
    },
    "vaapih264enc": {
        "bitrate": "2048",
        "keyframe-period": "30",
    },
    "videotestsrc": {
        "is-live": "true",
    },
    "rtph264pay": {
        "config-interval": "-1",
    },
    "udpsink": {
        "sync": "false",
        "async": "false",
    },
}

# Extra raw-video fields a capture implementation needs in its output caps.
SOURCE_FORMAT_HINTS: Dict[str, Dict[str, str]] = {
    "libcamerasrc": {"format": "NV12", "colorimetry": "bt709"},
}

# Pixel format the encoder expects on its sink pad; applied after convert.
ENCODER_INPUT_FORMATS: Dict[str, str] = {
    "v4l2h264enc": "I420",
    "omxh264enc": "I420",
    "nvh264enc": "NV12",
    "vaapih264enc": "NV12",
}

ENCODED_CAPS = "video/x-h264,level=(string)4"

# libcamerasrc af-mode nicks.
AF_MODE_MANUAL = "manual"
AF_MODE_CONTINUOUS = "continuous"


@dataclass(frozen=True)
class VideoFormat:
    width: int
    height: int
    framerate: int

    def to_caps_string(self, hints: Optional[Mapping[str, str]] = None) -> str:
        parts = [
            "video/x-raw",
            f"width=(int){self.width}",
            f"height=(int){self.height}",
            f"framerate=(fraction){self.framerate}/1",
        ]
        for key, value in (hints or {}).items():
            parts.append(f"{key}=(string){value}")
        return ",".join(parts)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}@{self.framerate}"


FALLBACK_FORMAT = VideoFormat(DEFAULT_WIDTH, DEFAULT_HEIGHT, DEFAULT_FRAMERATE)


def requested_format(config: StreamConfig) -> VideoFormat:
    return VideoFormat(config.width, config.height, config.framerate)


def dedupe(names: Sequence[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for name in names:
        if not name or name in seen:
            continue
        seen.add(name)
        ordered.append(name)
    return ordered


def encoder_candidates(configured: str) -> List[str]:
    return dedupe([configured, *ENCODER_FALLBACKS])


def source_candidates(config: StreamConfig) -> List[str]:
    return [SOURCE_IMPLEMENTATIONS.get(config.source, SOURCE_IMPLEMENTATIONS["libcamera"])]


def source_properties(config: StreamConfig, implementation: str) -> Dict[str, str]:
    """Per-build properties for the capture stage."""

    props: Dict[str, str] = {}
    if implementation == "libcamerasrc":
        if config.device:
            props["camera-name"] = config.device
        if config.autofocus is True:
            props["af-mode"] = AF_MODE_CONTINUOUS
        elif config.autofocus is False or config.lens_position is not None:
            props["af-mode"] = AF_MODE_MANUAL
        if config.lens_position is not None and config.autofocus is not True:
            props["lens-position"] = f"{config.lens_position:.3f}"
    elif implementation == "v4l2src":
        if config.device:
            props["device"] = config.device
    return props


def sink_properties(config: StreamConfig) -> Dict[str, str]:
    return {"host": config.host, "port": str(config.port)}
