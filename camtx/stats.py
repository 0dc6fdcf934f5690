"""
Stream statistics fed by pad probes on the running pipeline.

Probe callbacks run on GStreamer streaming threads, so every method here only
takes the collector's own lock for a handful of arithmetic operations and
never touches the configuration lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass
from typing import Callable, Deque, Dict, Optional

LOG = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 60
MAX_EFFICIENCY_PERCENT = 150.0
LATENCY_WINDOW = 120
PENDING_CAPTURE_LIMIT = 256


@dataclass(frozen=True)
class StatsSnapshot:
    total_bytes: int
    frame_count: int
    current_bitrate_kbps: float
    elapsed_seconds: float
    framerate: float
    target_framerate: int
    framerate_efficiency: float
    latency_ms: Optional[float]

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class StatisticsCollector:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._total_bytes = 0
        self._frame_count = 0
        self._start_time = clock()
        self._first_frame_time: Optional[float] = None
        self._target_framerate = 0
        self._pending_captures: "OrderedDict[int, float]" = OrderedDict()
        self._latencies: Deque[float] = deque(maxlen=LATENCY_WINDOW)

    def reset(self, target_framerate: int = 0) -> None:
        with self._lock:
            self._total_bytes = 0
            self._frame_count = 0
            self._start_time = self._clock()
            self._first_frame_time = None
            self._target_framerate = int(target_framerate)
            self._pending_captures.clear()
            self._latencies.clear()

    def record(self, nbytes: int) -> None:
        """Account one data unit reaching the transmit stage."""

        with self._lock:
            now = self._clock()
            self._total_bytes += int(nbytes)
            self._frame_count += 1
            if self._first_frame_time is None:
                self._first_frame_time = now
            frame_count = self._frame_count
            total_bytes = self._total_bytes

        if frame_count % PROGRESS_LOG_EVERY == 0:
            LOG.debug(
                "Streaming: frame %d, size %d bytes, total %d bytes",
                frame_count,
                nbytes,
                total_bytes,
            )

    # ------------------------------------------------------------ latency tap

    def mark_capture(self, pts: Optional[int]) -> None:
        if pts is None:
            return
        with self._lock:
            self._pending_captures[int(pts)] = self._clock()
            while len(self._pending_captures) > PENDING_CAPTURE_LIMIT:
                self._pending_captures.popitem(last=False)

    def match_transmit(self, pts: Optional[int]) -> None:
        if pts is None:
            return
        with self._lock:
            captured_at = self._pending_captures.pop(int(pts), None)
            if captured_at is None:
                return
            self._latencies.append(max(0.0, self._clock() - captured_at))

    # ----------------------------------------------------------------- reads

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            now = self._clock()
            total_bytes = self._total_bytes
            frame_count = self._frame_count
            elapsed = max(0.0, now - self._start_time)
            first_frame = self._first_frame_time
            target = self._target_framerate
            latencies = list(self._latencies)

        bitrate = 0.0
        if elapsed > 0:
            bitrate = (total_bytes * 8.0) / (elapsed * 1000.0)

        framerate = 0.0
        if first_frame is not None and frame_count > 1:
            since_first = now - first_frame
            if since_first > 0:
                framerate = (frame_count - 1) / since_first

        efficiency = 0.0
        if target > 0:
            efficiency = min(MAX_EFFICIENCY_PERCENT, framerate / target * 100.0)

        latency_ms = None
        if latencies:
            latency_ms = sum(latencies) / len(latencies) * 1000.0

        return StatsSnapshot(
            total_bytes=total_bytes,
            frame_count=frame_count,
            current_bitrate_kbps=bitrate,
            elapsed_seconds=elapsed,
            framerate=framerate,
            target_framerate=target,
            framerate_efficiency=efficiency,
            latency_ms=latency_ms,
        )
