"""Report which cameras and H.264 encoders this host can use.

Lists what the control API's ``/get`` endpoint would report and, with
``--trial``, streams the test pattern through each available encoder for a
few seconds using the regular pipeline builder.

Examples
--------
List cameras and encoders::

    python scripts/probe_encoders.py

Run a three second trial per encoder towards a local receiver::

    python scripts/probe_encoders.py --trial --duration 3 --port 5000

Press Ctrl+C to abort a trial.
"""

from __future__ import annotations

import argparse
import signal
import sys
import time
from typing import Iterable, Optional

from camtx import BuildError
from camtx.config import StreamConfig
from camtx.graph.factory import StageFactory
from camtx.runtime import capabilities
from camtx.runtime.builder import PipelineBuilder
from camtx.runtime.events import EventKind
from camtx.stats import StatisticsCollector
from camtx.utils import configure_logging, gst


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="camtx encoder probe")
    parser.add_argument("--trial", action="store_true", help="stream the test source through each encoder")
    parser.add_argument(
        "--encoder",
        action="append",
        default=[],
        help="limit trials to this encoder (may be repeated)",
    )
    parser.add_argument("--duration", type=float, default=3.0, help="seconds per trial")
    parser.add_argument("--host", default="127.0.0.1", help="destination host for trial packets")
    parser.add_argument("--port", type=int, default=5000, help="destination port for trial packets")
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args(argv)


def trial(encoder: str, args: argparse.Namespace, stop: "list[bool]") -> Optional[str]:
    """Stream the test pattern through ``encoder``; return an error message on failure."""

    stats = StatisticsCollector()
    builder = PipelineBuilder(StageFactory(), stats)
    config = StreamConfig(host=args.host, port=args.port, source="test", encoder=encoder)
    try:
        live = builder.build(config)
    except BuildError as exc:
        return str(exc)

    error: Optional[str] = None
    try:
        if live.encoder != encoder:
            error = f"fell back to {live.encoder}"
        channel = live.event_channel()
        deadline = time.monotonic() + args.duration
        while error is None and not stop[0] and time.monotonic() < deadline:
            event = channel.poll() if channel is not None else None
            if event is not None and event.kind is EventKind.ERROR:
                error = f"{event.source}: {event.message}"
    finally:
        live.quiesce()
        live.release()

    snap = stats.snapshot()
    print(
        f"    {snap.frame_count} buffers, {snap.current_bitrate_kbps:.0f} kbps, "
        f"{snap.framerate:.1f} fps ({snap.framerate_efficiency:.0f}% of target)"
    )
    if error is None and snap.frame_count == 0:
        error = "no data reached the transmit stage"
    return error


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if not gst.is_available():
        print("GStreamer Python bindings are not installed (PyGObject + GStreamer 1.x required).")
        return 1
    gst.ensure_initialised()
    print(f"GStreamer: {gst.Gst.version_string()}")

    factory = StageFactory()
    print("Cameras:")
    for camera in capabilities.list_cameras():
        print(f"  {camera}")
    print(f"libcamerasrc: {'available' if factory.is_available('libcamerasrc') else 'not available'}")

    encoders = capabilities.list_encoders(factory)
    print("Encoders:")
    for encoder in encoders:
        print(f"  {encoder}: {'available' if factory.is_available(encoder) else 'not available'}")

    if not args.trial:
        return 0

    stop = [False]

    def _handle_signal(signum, frame):  # type: ignore[override]
        stop[0] = True

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    working = []
    for encoder in args.encoder or encoders:
        if stop[0]:
            break
        print(f"Trial {encoder} -> {args.host}:{args.port}")
        error = trial(encoder, args, stop)
        if error is None:
            print("    ok")
            working.append(encoder)
        else:
            print(f"    failed: {error}")

    if not working:
        print("No encoder produced output. Install gstreamer1.0-plugins-ugly for x264enc.")
        return 1
    print(
        "Select one with: curl -X POST http://localhost:8888/config "
        f"-d '{{\"encoder\":\"{working[0]}\"}}'"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
