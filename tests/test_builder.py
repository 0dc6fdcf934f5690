from __future__ import annotations

import pytest

from camtx import BuildError
from camtx.config import StreamConfig
from camtx.graph.factory import StageFactory
from camtx.graph.stages import StageKind
from camtx.runtime.builder import PipelineBuilder
from camtx.stats import StatisticsCollector

from gst_fakes import FakeBuffer, State, StateChangeReturn


def _builder(clock) -> tuple:
    stats = StatisticsCollector(clock=clock)
    return PipelineBuilder(StageFactory(), stats), stats


def test_builds_stages_in_link_order(fake_gst, clock) -> None:
    builder, _stats = _builder(clock)

    live = builder.build(StreamConfig(device="imx708"))

    pipeline = fake_gst.pipelines[-1]
    names = [element.get_name() for element in pipeline.elements]
    assert names == [
        "source",
        "capsfilter",
        "convert",
        "encoder_input",
        "encoder",
        "encoder_caps",
        "parser",
        "payloader",
        "sink",
    ]
    for upstream, downstream in zip(pipeline.elements, pipeline.elements[1:]):
        assert upstream.links == [downstream]
    assert pipeline.state == State.PLAYING
    assert live.implementation(StageKind.SOURCE) == "libcamerasrc"
    assert live.encoder == "v4l2h264enc"
    assert live.used_fallback_format is False


def test_caps_and_properties(fake_gst, clock) -> None:
    builder, _stats = _builder(clock)

    builder.build(StreamConfig(device="imx708", host="10.0.0.5", port=6000, autofocus=True))

    caps = str(fake_gst.element("capsfilter").props["caps"])
    assert "width=(int)1280" in caps
    assert "height=(int)720" in caps
    assert "framerate=(fraction)30/1" in caps
    assert "format=(string)NV12" in caps
    assert str(fake_gst.element("encoder_input").props["caps"]) == "video/x-raw,format=(string)I420"
    assert str(fake_gst.element("encoder_caps").props["caps"]) == "video/x-h264,level=(string)4"

    source = fake_gst.element("source")
    assert source.props["camera-name"] == "imx708"
    assert source.props["af-mode"] == "continuous"
    sink = fake_gst.element("sink")
    assert sink.props["host"] == "10.0.0.5"
    assert sink.props["port"] == "6000"
    assert sink.props["sync"] == "false"


def test_software_encoder_has_no_input_constraint(fake_gst, clock) -> None:
    builder, _stats = _builder(clock)

    live = builder.build(StreamConfig(source="test", encoder="x264enc"))

    names = [element.get_name() for element in fake_gst.pipelines[-1].elements]
    assert "encoder_input" not in names
    assert live.implementation(StageKind.SOURCE) == "videotestsrc"
    assert "format=" not in str(fake_gst.element("capsfilter").props["caps"])


def test_link_failure_retries_with_fallback_format(fake_gst, clock) -> None:
    fake_gst.link_rule = lambda up, down: (
        down.get_name() == "capsfilter" and "width=(int)4608" in str(down.props["caps"])
    )
    builder, stats = _builder(clock)

    live = builder.build(StreamConfig(width=4608, height=2592, framerate=15))

    assert live.used_fallback_format is True
    assert str(live.video_format) == "1280x720@30"
    assert "width=(int)1280" in str(fake_gst.element("capsfilter").props["caps"])
    assert stats.snapshot().target_framerate == 30


def test_link_failure_with_fallback_format_is_fatal(fake_gst, clock) -> None:
    fake_gst.link_rule = lambda up, down: down.get_name() == "parser"
    builder, _stats = _builder(clock)

    with pytest.raises(BuildError):
        builder.build(StreamConfig())

    pipeline = fake_gst.pipelines[-1]
    assert pipeline.elements == []
    assert pipeline.state == State.NULL


def test_missing_stage_releases_partial_pipeline(fake_gst, clock) -> None:
    fake_gst.registry.discard("rtph264pay")
    builder, _stats = _builder(clock)

    with pytest.raises(BuildError, match="payloader"):
        builder.build(StreamConfig())

    assert fake_gst.pipelines[-1].elements == []


def test_play_failure_is_a_build_error(fake_gst, clock) -> None:
    fake_gst.play_result = StateChangeReturn.FAILURE
    builder, _stats = _builder(clock)

    with pytest.raises(BuildError):
        builder.build(StreamConfig())

    pipeline = fake_gst.pipelines[-1]
    assert pipeline.elements == []
    assert pipeline.state == State.NULL


def test_build_without_gstreamer(no_gst, clock) -> None:
    builder, _stats = _builder(clock)

    with pytest.raises(BuildError):
        builder.build(StreamConfig())


def test_taps_feed_statistics(fake_gst, clock) -> None:
    builder, stats = _builder(clock)
    builder.build(StreamConfig(framerate=25))

    source_pad = fake_gst.element("source").get_static_pad("src")
    sink_pad = fake_gst.element("sink").get_static_pad("sink")
    assert source_pad.push(FakeBuffer(0, pts=10)) == ["ok"]
    clock.advance(0.004)
    assert sink_pad.push(FakeBuffer(1200, pts=10)) == ["ok"]
    sink_pad.push(FakeBuffer(800, pts=fake_gst.CLOCK_TIME_NONE))

    snap = stats.snapshot()
    assert snap.total_bytes == 2000
    assert snap.frame_count == 2
    assert snap.target_framerate == 25
    assert snap.latency_ms == pytest.approx(4.0)


def test_transmit_tap_counts_buffer_lists(fake_gst, clock) -> None:
    builder, stats = _builder(clock)
    builder.build(StreamConfig())

    sink_pad = fake_gst.element("sink").get_static_pad("sink")
    assert sink_pad.push_list([FakeBuffer(1400), FakeBuffer(1400), FakeBuffer(600)]) == ["ok"]
    sink_pad.push(FakeBuffer(200))

    snap = stats.snapshot()
    assert snap.total_bytes == 3600
    assert snap.frame_count == 4


def test_destination_update_and_release(fake_gst, clock) -> None:
    builder, _stats = _builder(clock)
    live = builder.build(StreamConfig())
    sink = fake_gst.element("sink")
    sink_pad = sink.get_static_pad("sink")

    assert live.set_destination("192.168.1.50", 7000)
    assert sink.props["host"] == "192.168.1.50"
    assert sink.props["port"] == 7000

    assert live.quiesce(1.0)
    live.release()

    assert live.released
    assert sink_pad.probes == {}
    assert live.event_channel() is None
    assert not live.set_destination("10.0.0.1", 5000)


def test_quiesce_timeout_reports_failure(fake_gst, clock) -> None:
    fake_gst.stop_result = StateChangeReturn.ASYNC
    fake_gst.stop_wait_result = StateChangeReturn.ASYNC
    builder, _stats = _builder(clock)
    live = builder.build(StreamConfig())

    assert live.quiesce(0.5) is False
