"""
Runtime pieces that own the live GStreamer pipeline.
"""

from __future__ import annotations

from .builder import LivePipeline, PipelineBuilder
from .events import EventChannel, EventMonitor, MonitorAction, PipelineEvent
from .lifecycle import ControllerState, LifecycleController

__all__ = [
    "ControllerState",
    "EventChannel",
    "EventMonitor",
    "LifecycleController",
    "LivePipeline",
    "MonitorAction",
    "PipelineBuilder",
    "PipelineEvent",
]
