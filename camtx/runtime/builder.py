"""
Assemble the capture -> encode -> transmit pipeline from the stage catalogue.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .. import BuildError
from ..config import StreamConfig
from ..graph.factory import StageCreation, StageCreationError, StageFactory
from ..graph.stages import (
    ENCODED_CAPS,
    ENCODER_INPUT_FORMATS,
    FALLBACK_FORMAT,
    SOURCE_FORMAT_HINTS,
    STAGE_ORDER,
    StageKind,
    VideoFormat,
    encoder_candidates,
    requested_format,
    sink_properties,
    source_candidates,
    source_properties,
)
from ..stats import StatisticsCollector
from ..utils import gst
from .events import EventChannel

LOG = logging.getLogger(__name__)

PIPELINE_NAME = "camtx-pipeline"
QUIESCE_TIMEOUT = 5.0  # seconds


class LivePipeline:
    """
    Handle on a built pipeline.

    Exclusively owned by the lifecycle controller.  After :meth:`release` the
    handle and its event channel are unusable.
    """

    def __init__(
        self,
        pipeline: Any,
        stages: Mapping[StageKind, StageCreation],
        *,
        video_format: VideoFormat,
        used_fallback_format: bool,
        probes: Sequence[Tuple[Any, int]],
        host: str,
        port: int,
    ) -> None:
        self._pipeline = pipeline
        self._stages = dict(stages)
        self._probes: List[Tuple[Any, int]] = list(probes)
        self._channel: Optional[EventChannel] = None
        self.video_format = video_format
        self.used_fallback_format = used_fallback_format
        self.host = host
        self.port = port

    @property
    def released(self) -> bool:
        return self._pipeline is None

    def implementation(self, kind: StageKind) -> Optional[str]:
        creation = self._stages.get(kind)
        return creation.implementation if creation else None

    @property
    def encoder(self) -> Optional[str]:
        return self.implementation(StageKind.ENCODER)

    def event_channel(self) -> Optional[EventChannel]:
        if self._pipeline is None:
            return None
        if self._channel is None:
            bus = self._pipeline.get_bus()
            if bus is None:
                LOG.warning("Pipeline bus is not available; events will not be monitored.")
                return None
            self._channel = EventChannel(bus, self._pipeline)
        return self._channel

    def play(self) -> None:
        Gst = gst.Gst
        result = self._pipeline.set_state(Gst.State.PLAYING)
        if result == Gst.StateChangeReturn.FAILURE:
            raise BuildError("Failed to set pipeline to PLAYING state.")
        LOG.debug("Pipeline state change result: %s", result)

    def set_destination(self, host: str, port: int) -> bool:
        """Point the transmit stage at a new destination without touching upstream stages."""

        if self._pipeline is None:
            return False
        sink = self._pipeline.get_by_name(StageKind.SINK.value)
        if sink is None:
            LOG.error("Could not find transmit element for destination update")
            return False
        sink.set_property("host", host)
        sink.set_property("port", int(port))
        self.host = host
        self.port = int(port)
        LOG.info("Transmit destination updated to %s:%d (no pipeline rebuild needed)", host, port)
        return True

    def quiesce(self, timeout: float = QUIESCE_TIMEOUT) -> bool:
        """
        Stop the pipeline and wait up to ``timeout`` seconds for it to settle.

        Returns ``False`` when the state change failed or did not complete in
        time; the caller then proceeds with a forced release.
        """

        if self._pipeline is None:
            return True
        Gst = gst.Gst
        result = self._pipeline.set_state(Gst.State.NULL)
        if result == Gst.StateChangeReturn.FAILURE:
            LOG.warning("Pipeline refused to stop")
            return False
        if result == Gst.StateChangeReturn.ASYNC:
            LOG.info("Waiting for pipeline to stop...")
            outcome, _state, _pending = self._pipeline.get_state(int(timeout * Gst.SECOND))
            if outcome != Gst.StateChangeReturn.SUCCESS:
                LOG.warning("Pipeline did not stop within %.1fs", timeout)
                return False
        return True

    def release(self) -> None:
        if self._pipeline is None:
            return
        for pad, probe_id in self._probes:
            try:
                pad.remove_probe(probe_id)
            except Exception:  # pragma: no cover - defensive
                LOG.debug("Failed to remove pad probe %s", probe_id, exc_info=True)
        self._probes.clear()

        if self._channel is not None:
            self._channel.close()
            self._channel = None

        try:
            self._pipeline.set_state(gst.Gst.State.NULL)
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Failed to set pipeline to NULL during release")

        self._stages.clear()
        self._pipeline = None


class PipelineBuilder:
    def __init__(
        self,
        factory: StageFactory,
        stats: StatisticsCollector,
        *,
        fallback_format: VideoFormat = FALLBACK_FORMAT,
    ) -> None:
        self._factory = factory
        self._stats = stats
        self._fallback_format = fallback_format

    def build(self, config: StreamConfig) -> LivePipeline:
        gst.require_gstreamer()
        Gst = gst.Gst
        LOG.info("Building pipeline with config: %s", config.describe())

        pipeline = Gst.Pipeline.new(PIPELINE_NAME)
        if pipeline is None:
            raise BuildError("Failed to create pipeline.")

        added: List[Any] = []
        probes: List[Tuple[Any, int]] = []
        try:
            stages = self._create_stages(config)
            for kind in STAGE_ORDER:
                creation = stages.get(kind)
                if creation is None:
                    continue
                pipeline.add(creation.element)
                added.append(creation.element)

            video_format, used_fallback = self._link_stages(stages, requested_format(config))
            probes = self._attach_taps(stages)

            self._stats.reset(target_framerate=video_format.framerate)

            live = LivePipeline(
                pipeline,
                stages,
                video_format=video_format,
                used_fallback_format=used_fallback,
                probes=probes,
                host=config.host,
                port=config.port,
            )
            live.play()
        except StageCreationError as exc:
            LOG.error("%s", exc)
            self._discard(pipeline, added, probes)
            raise BuildError(str(exc)) from exc
        except BuildError:
            self._discard(pipeline, added, probes)
            raise

        LOG.info(
            "Pipeline started (%s, encoder %s), streaming to %s:%d",
            video_format,
            live.encoder,
            config.host,
            config.port,
        )
        return live

    # -------------------------------------------------------------- stages

    def _create_stages(self, config: StreamConfig) -> Dict[StageKind, StageCreation]:
        create = self._factory.create
        stages: Dict[StageKind, StageCreation] = {}

        candidates = source_candidates(config)
        stages[StageKind.SOURCE] = create(
            StageKind.SOURCE, candidates, source_properties(config, candidates[0])
        )
        if config.device:
            LOG.info("Using camera: %s", config.device)
        else:
            LOG.info("Using auto-detected camera")

        stages[StageKind.FORMAT] = create(StageKind.FORMAT, ["capsfilter"])
        self._set_caps(
            stages[StageKind.FORMAT].element,
            requested_format(config).to_caps_string(self._format_hints(stages)),
        )

        stages[StageKind.CONVERT] = create(StageKind.CONVERT, ["videoconvert"])
        stages[StageKind.ENCODER] = create(StageKind.ENCODER, encoder_candidates(config.encoder))

        input_format = ENCODER_INPUT_FORMATS.get(stages[StageKind.ENCODER].implementation)
        if input_format:
            stages[StageKind.ENCODER_INPUT] = create(StageKind.ENCODER_INPUT, ["capsfilter"])
            self._set_caps(
                stages[StageKind.ENCODER_INPUT].element,
                f"video/x-raw,format=(string){input_format}",
            )

        stages[StageKind.ENCODED_FORMAT] = create(StageKind.ENCODED_FORMAT, ["capsfilter"])
        self._set_caps(stages[StageKind.ENCODED_FORMAT].element, ENCODED_CAPS)

        stages[StageKind.PARSER] = create(StageKind.PARSER, ["h264parse"])
        stages[StageKind.PAYLOADER] = create(StageKind.PAYLOADER, ["rtph264pay"])
        stages[StageKind.SINK] = create(StageKind.SINK, ["udpsink"], sink_properties(config))
        LOG.info("Configuring transmit sink: %s:%d", config.host, config.port)
        return stages

    @staticmethod
    def _format_hints(stages: Mapping[StageKind, StageCreation]) -> Mapping[str, str]:
        source = stages.get(StageKind.SOURCE)
        return SOURCE_FORMAT_HINTS.get(source.implementation, {}) if source else {}

    @staticmethod
    def _set_caps(element: Any, caps_string: str) -> None:
        caps = gst.Gst.Caps.from_string(caps_string)
        if caps is None:
            raise BuildError(f"Invalid caps '{caps_string}'")
        LOG.info("Setting caps on %s: %s", element.get_name(), caps_string)
        element.set_property("caps", caps)

    # ------------------------------------------------------------- linking

    def _link_stages(
        self,
        stages: Mapping[StageKind, StageCreation],
        requested: VideoFormat,
    ) -> Tuple[VideoFormat, bool]:
        chain = [stages[kind].element for kind in STAGE_ORDER if kind in stages]

        failed_at = self._link_from(chain, 0)
        if failed_at is None:
            return requested, False

        upstream, downstream = chain[failed_at], chain[failed_at + 1]
        if requested == self._fallback_format:
            raise BuildError(f"Failed to link {upstream.get_name()} -> {downstream.get_name()}")

        LOG.warning(
            "Failed to link %s -> %s with %s; retrying with fallback format %s",
            upstream.get_name(),
            downstream.get_name(),
            requested,
            self._fallback_format,
        )
        self._set_caps(
            stages[StageKind.FORMAT].element,
            self._fallback_format.to_caps_string(self._format_hints(stages)),
        )
        failed_at = self._link_from(chain, failed_at)
        if failed_at is not None:
            raise BuildError(
                f"Failed to link {chain[failed_at].get_name()} -> {chain[failed_at + 1].get_name()} "
                f"even with fallback format {self._fallback_format}"
            )
        return self._fallback_format, True

    @staticmethod
    def _link_from(chain: Sequence[Any], start: int) -> Optional[int]:
        """Link ``chain`` pairwise from ``start``; return the index of the first failed pair."""

        for idx in range(start, len(chain) - 1):
            if not chain[idx].link(chain[idx + 1]):
                return idx
        return None

    # ---------------------------------------------------------------- taps

    def _attach_taps(self, stages: Mapping[StageKind, StageCreation]) -> List[Tuple[Any, int]]:
        Gst = gst.Gst
        probes: List[Tuple[Any, int]] = []

        sink_pad = stages[StageKind.SINK].element.get_static_pad("sink")
        if sink_pad is None:
            LOG.warning("Transmit sink pad unavailable; statistics will stay at zero.")
        else:
            # Payloaders push fragmented NAL units as buffer lists.
            mask = Gst.PadProbeType.BUFFER | Gst.PadProbeType.BUFFER_LIST
            probes.append((sink_pad, sink_pad.add_probe(mask, self._on_transmit_buffer)))

        source_pad = stages[StageKind.SOURCE].element.get_static_pad("src")
        if source_pad is None:
            LOG.warning("Capture source pad unavailable; latency will not be measured.")
        else:
            probes.append((source_pad, source_pad.add_probe(Gst.PadProbeType.BUFFER, self._on_capture_buffer)))
        return probes

    def _on_transmit_buffer(self, _pad: Any, info: Any) -> Any:
        Gst = gst.Gst
        if info.type & Gst.PadProbeType.BUFFER_LIST:
            buffers = info.get_buffer_list()
            if buffers is not None:
                for index in range(buffers.length()):
                    self._record_transmit(buffers.get(index))
        else:
            buffer = info.get_buffer()
            if buffer is not None:
                self._record_transmit(buffer)
        return Gst.PadProbeReturn.OK

    def _record_transmit(self, buffer: Any) -> None:
        self._stats.record(buffer.get_size())
        self._stats.match_transmit(_buffer_pts(buffer))

    def _on_capture_buffer(self, _pad: Any, info: Any) -> Any:
        buffer = info.get_buffer()
        if buffer is not None:
            self._stats.mark_capture(_buffer_pts(buffer))
        return gst.Gst.PadProbeReturn.OK

    # ------------------------------------------------------------- cleanup

    @staticmethod
    def _discard(pipeline: Any, elements: Sequence[Any], probes: Sequence[Tuple[Any, int]]) -> None:
        LOG.error("Error during pipeline construction; releasing partial pipeline.")
        for pad, probe_id in probes:
            try:
                pad.remove_probe(probe_id)
            except Exception:  # pragma: no cover - defensive
                LOG.debug("Failed to remove probe during cleanup", exc_info=True)
        try:
            pipeline.set_state(gst.Gst.State.NULL)
        except Exception:  # pragma: no cover - defensive
            LOG.debug("Failed to stop partial pipeline", exc_info=True)
        for element in elements:
            try:
                pipeline.remove(element)
            except Exception:  # pragma: no cover - defensive
                LOG.debug(
                    "Failed to remove element '%s' during cleanup",
                    element.get_name() if hasattr(element, "get_name") else element,
                    exc_info=True,
                )


def _buffer_pts(buffer: Any) -> Optional[int]:
    pts = buffer.pts
    if pts is None or pts == gst.Gst.CLOCK_TIME_NONE:
        return None
    return int(pts)
