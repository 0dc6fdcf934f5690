"""
Pipeline bus polling and event classification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..graph.stages import StageKind
from ..utils import gst

LOG = logging.getLogger(__name__)

BUS_POLL_INTERVAL = 0.1  # seconds


class EventKind(str, Enum):
    ERROR = "error"
    END_OF_STREAM = "eos"
    WARNING = "warning"
    INFO = "info"
    STATE_CHANGED = "state-changed"


class MonitorAction(str, Enum):
    NONE = "none"
    TERMINATE = "terminate"
    REBUILD = "rebuild"


@dataclass(frozen=True)
class PipelineEvent:
    kind: EventKind
    source: str = "unknown"
    message: str = ""
    detail: Optional[str] = None
    old_state: Optional[str] = None
    new_state: Optional[str] = None
    from_pipeline: bool = False

    @property
    def from_encoder(self) -> bool:
        return self.source == StageKind.ENCODER.value


class EventChannel:
    """
    Wrapper around a pipeline bus that yields :class:`PipelineEvent` values.

    The channel belongs to one pipeline and is closed when that pipeline is
    released; polling a closed channel returns ``None``.
    """

    def __init__(self, bus: Any, pipeline: Any) -> None:
        self._bus = bus
        self._pipeline = pipeline

    @property
    def closed(self) -> bool:
        return self._bus is None

    def close(self) -> None:
        self._bus = None
        self._pipeline = None

    def poll(self, timeout: float = BUS_POLL_INTERVAL) -> Optional[PipelineEvent]:
        bus = self._bus
        if bus is None:
            return None
        Gst = gst.Gst
        mask = (
            Gst.MessageType.ERROR
            | Gst.MessageType.EOS
            | Gst.MessageType.STATE_CHANGED
            | Gst.MessageType.WARNING
            | Gst.MessageType.INFO
        )
        message = bus.timed_pop_filtered(int(max(0.0, timeout) * Gst.SECOND), mask)
        if message is None:
            return None
        return self._convert(message)

    def _convert(self, message: Any) -> Optional[PipelineEvent]:
        Gst = gst.Gst
        source = message.src.get_name() if message.src is not None else "unknown"
        msg_type = message.type

        if msg_type == Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            return PipelineEvent(EventKind.ERROR, source, err.message, debug)
        if msg_type == Gst.MessageType.WARNING:
            err, debug = message.parse_warning()
            return PipelineEvent(EventKind.WARNING, source, err.message, debug)
        if msg_type == Gst.MessageType.INFO:
            err, debug = message.parse_info()
            return PipelineEvent(EventKind.INFO, source, err.message, debug)
        if msg_type == Gst.MessageType.EOS:
            return PipelineEvent(EventKind.END_OF_STREAM, source, "End-Of-Stream reached")
        if msg_type == Gst.MessageType.STATE_CHANGED:
            old, new, _pending = message.parse_state_changed()
            return PipelineEvent(
                EventKind.STATE_CHANGED,
                source,
                old_state=Gst.Element.state_get_name(old),
                new_state=Gst.Element.state_get_name(new),
                from_pipeline=self._pipeline is not None and message.src == self._pipeline,
            )
        return None


class EventMonitor:
    """
    Map pipeline events to controller actions.

    Errors and end-of-stream terminate the process.  Encoder errors add
    remediation guidance and, only when ``encoder_fallback_on_error`` is
    enabled, ask the controller for a rebuild with another encoder instead.
    """

    def __init__(
        self,
        control_url: str = "http://localhost:8888",
        *,
        encoder_fallback_on_error: bool = False,
    ) -> None:
        self.control_url = control_url.rstrip("/")
        self.encoder_fallback_on_error = encoder_fallback_on_error

    def handle(self, event: PipelineEvent) -> MonitorAction:
        if event.kind is EventKind.ERROR:
            LOG.error("ERROR from element %s: %s", event.source, event.message)
            LOG.error("Debugging info: %s", event.detail or "none")
            if event.from_encoder and self.encoder_fallback_on_error:
                LOG.warning("Encoder error detected; requesting rebuild with the next encoder candidate.")
                return MonitorAction.REBUILD
            if event.from_encoder:
                LOG.error("Encoder error detected. Consider using a different encoder via the /config API.")
                LOG.error(
                    "Try: curl -X POST %s/config -d '{\"encoder\":\"x264enc\"}'",
                    self.control_url,
                )
            return MonitorAction.TERMINATE

        if event.kind is EventKind.END_OF_STREAM:
            LOG.info("End-Of-Stream reached (from %s)", event.source)
            return MonitorAction.TERMINATE

        if event.kind is EventKind.WARNING:
            LOG.warning("WARNING from element %s: %s (%s)", event.source, event.message, event.detail or "none")
        elif event.kind is EventKind.INFO:
            LOG.info("INFO from element %s: %s (%s)", event.source, event.message, event.detail or "none")
        elif event.kind is EventKind.STATE_CHANGED and event.from_pipeline:
            LOG.info("Pipeline state changed from %s to %s", event.old_state, event.new_state)
        return MonitorAction.NONE
