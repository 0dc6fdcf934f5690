from __future__ import annotations

import threading
from collections import deque
from typing import Callable, List, Optional

import pytest

from camtx import BuildError
from camtx import config as config_module
from camtx.config import ChangeClass, ConfigStore, StreamConfig
from camtx.graph.factory import StageFactory
from camtx.runtime.builder import PipelineBuilder
from camtx.runtime.events import EventKind, EventMonitor, PipelineEvent
from camtx.runtime.lifecycle import ControllerState, LifecycleController
from camtx.stats import StatisticsCollector

from gst_fakes import FakeBuffer, State


class FakeLive:
    def __init__(self, config: StreamConfig) -> None:
        self.config = config
        self.encoder = config.encoder
        self.destinations: List[tuple] = []
        self.events: deque = deque()
        self.quiesce_ok = True
        self.quiesced = False
        self.released = False

    def event_channel(self) -> Optional["FakeLive"]:
        return None if self.released else self

    def poll(self, _timeout: float) -> Optional[PipelineEvent]:
        return self.events.popleft() if self.events else None

    def set_destination(self, host: str, port: int) -> bool:
        self.destinations.append((host, port))
        return True

    def quiesce(self, _timeout: float) -> bool:
        self.quiesced = True
        return self.quiesce_ok

    def release(self) -> None:
        self.released = True


class FakeBuilder:
    def __init__(self) -> None:
        self.built: List[FakeLive] = []
        self.failures = 0
        self.on_build: Optional[Callable[[StreamConfig], None]] = None

    def build(self, config: StreamConfig) -> FakeLive:
        if self.on_build is not None:
            self.on_build(config)
        if self.failures:
            self.failures -= 1
            raise BuildError("cannot open camera")
        live = FakeLive(config)
        self.built.append(live)
        return live


def _controller(**kwargs) -> tuple:
    store = ConfigStore()
    builder = FakeBuilder()
    sleeps: List[float] = []
    monitor = kwargs.pop("monitor", None)
    controller = LifecycleController(store, builder, monitor, sleep=sleeps.append, **kwargs)
    return controller, builder, sleeps


def test_start_builds_initial_pipeline() -> None:
    controller, builder, _sleeps = _controller()
    assert controller.state is ControllerState.STOPPED

    controller.start()

    assert controller.state is ControllerState.RUNNING
    assert controller.pipeline is builder.built[0]


def test_start_failure_propagates() -> None:
    controller, builder, _sleeps = _controller()
    builder.failures = 1

    with pytest.raises(BuildError):
        controller.start()

    assert controller.state is ControllerState.STOPPED


def test_connection_only_update_does_not_rebuild() -> None:
    controller, builder, sleeps = _controller()
    controller.start()

    change = controller.apply_update({"host": "192.168.1.100", "port": 6000})
    controller.tick()

    assert change is ChangeClass.CONNECTION_ONLY
    assert len(builder.built) == 1
    assert builder.built[0].destinations == [("192.168.1.100", 6000)]
    assert not controller.restart_requested
    assert controller.state is ControllerState.RUNNING
    assert sleeps == []


def test_no_change_update_is_a_noop() -> None:
    controller, builder, _sleeps = _controller()
    controller.start()

    assert controller.apply_update({"width": 1280, "unknown": 1}) is ChangeClass.NONE
    assert not controller.restart_requested
    assert builder.built[0].destinations == []


def test_topology_update_rebuilds_with_grace_period() -> None:
    controller, builder, sleeps = _controller(release_grace=1.5)
    controller.start()
    states: List[ControllerState] = []
    builder.on_build = lambda _config: states.append(controller.state)

    change = controller.apply_update({"width": 1920, "height": 1080})
    assert change is ChangeClass.TOPOLOGY_CHANGING
    assert controller.restart_requested

    assert controller.tick() is True

    old, new = builder.built
    assert old.quiesced and old.released
    assert sleeps == [1.5]
    assert states == [ControllerState.REBUILDING]
    assert (new.config.width, new.config.height) == (1920, 1080)
    assert controller.pipeline is new
    assert controller.state is ControllerState.RUNNING
    assert not controller.restart_requested


def test_quiesce_timeout_still_releases() -> None:
    controller, builder, sleeps = _controller()
    controller.start()
    builder.built[0].quiesce_ok = False

    controller.request_rebuild("test")
    controller.tick()

    assert builder.built[0].released
    assert sleeps == [1.0]
    assert len(builder.built) == 2


def test_updates_are_coalesced_into_one_rebuild() -> None:
    controller, builder, _sleeps = _controller()
    controller.start()

    controller.apply_update({"framerate": 15})
    controller.apply_update({"framerate": 20, "encoder": "x264enc"})
    controller.tick()
    controller.tick()

    assert len(builder.built) == 2
    assert builder.built[1].config.framerate == 20
    assert builder.built[1].config.encoder == "x264enc"


def test_destination_change_during_build_is_reconciled() -> None:
    controller, builder, _sleeps = _controller()
    controller.start()

    def _change_port(_config: StreamConfig) -> None:
        builder.on_build = None
        controller.apply_update({"port": 7000})

    builder.on_build = _change_port
    controller.apply_update({"width": 640, "height": 480})
    controller.tick()

    new = builder.built[1]
    assert new.config.port == 5000
    assert new.destinations == [("127.0.0.1", 7000)]


def test_rebuild_failure_stops_and_terminates() -> None:
    controller, builder, _sleeps = _controller()
    controller.start()
    builder.failures = 1

    controller.apply_update({"width": 1920, "height": 1080})

    assert controller.tick() is False
    assert controller.state is ControllerState.STOPPED
    assert controller.should_terminate
    assert controller.exit_code == 1
    assert controller.pipeline is None


def test_rebuild_failure_can_retry_with_defaults() -> None:
    controller, builder, _sleeps = _controller(retry_with_defaults=True)
    controller.start()
    builder.failures = 1

    controller.apply_update({"width": 4608, "height": 2592})
    controller.tick()

    assert controller.state is ControllerState.RUNNING
    assert builder.built[-1].config == StreamConfig()
    assert controller.config_snapshot() == StreamConfig()


def test_runtime_error_terminates_and_tears_down() -> None:
    controller, builder, sleeps = _controller()
    controller.start()
    live = builder.built[0]
    live.events.append(PipelineEvent(EventKind.ERROR, "source", "Device disconnected"))

    controller.run()

    assert controller.exit_code == 1
    assert controller.state is ControllerState.STOPPED
    assert live.quiesced and live.released
    assert sleeps == []


def test_end_of_stream_terminates_cleanly() -> None:
    controller, builder, _sleeps = _controller()
    controller.start()
    builder.built[0].events.append(PipelineEvent(EventKind.END_OF_STREAM, "source"))

    controller.run()

    assert controller.exit_code == 0
    assert controller.state is ControllerState.STOPPED


def test_encoder_error_switches_encoder_when_enabled() -> None:
    monitor = EventMonitor(encoder_fallback_on_error=True)
    controller, builder, _sleeps = _controller(monitor=monitor)
    controller.start()
    builder.built[0].events.append(PipelineEvent(EventKind.ERROR, "encoder", "Device busy"))

    controller.tick()
    assert controller.restart_requested
    controller.tick()

    assert not controller.should_terminate
    assert builder.built[1].config.encoder == "omxh264enc"


def test_encoder_fallback_gives_up_when_exhausted() -> None:
    monitor = EventMonitor(encoder_fallback_on_error=True)
    controller, builder, _sleeps = _controller(monitor=monitor)
    controller.start()

    for _ in range(6):
        live = controller.pipeline
        if live is None:
            break
        live.events.append(PipelineEvent(EventKind.ERROR, "encoder", "broken"))
        controller.tick()
        controller.tick()

    assert controller.should_terminate
    assert controller.exit_code == 1
    assert [live.config.encoder for live in builder.built] == [
        "v4l2h264enc",
        "omxh264enc",
        "x264enc",
        "nvh264enc",
        "vaapih264enc",
    ]


def test_tick_without_pipeline_sleeps() -> None:
    controller, _builder, sleeps = _controller(poll_interval=0.25)

    assert controller.tick() is True
    assert sleeps == [0.25]


def test_shutdown_request_stops_loop() -> None:
    controller, builder, _sleeps = _controller()
    controller.start()
    controller.request_shutdown("test", exit_code=3)
    controller.request_shutdown("again", exit_code=5)

    controller.run()

    assert controller.exit_code == 3
    assert builder.built[0].released
    assert controller.state is ControllerState.STOPPED


# Same controller, real builder over the fake GStreamer namespace.


def _live_controller(clock) -> tuple:
    stats = StatisticsCollector(clock=clock)
    store = ConfigStore()
    controller = LifecycleController(
        store,
        PipelineBuilder(StageFactory(), stats),
        sleep=lambda _seconds: None,
    )
    return controller, stats


def test_host_only_change_keeps_counters_running(fake_gst, clock) -> None:
    controller, stats = _live_controller(clock)
    controller.start()
    sink = fake_gst.element("sink")
    pad = sink.get_static_pad("sink")
    for _ in range(5):
        pad.push(FakeBuffer(1000))

    controller.apply_update({"host": "192.168.1.100"})
    controller.tick()
    for _ in range(5):
        pad.push(FakeBuffer(1000))

    assert len(fake_gst.pipelines) == 1
    assert sink.props["host"] == "192.168.1.100"
    assert stats.snapshot().frame_count == 10
    assert stats.snapshot().total_bytes == 10_000


def test_resolution_change_rebuilds_and_resets_statistics(fake_gst, clock) -> None:
    controller, stats = _live_controller(clock)
    controller.start()
    first = fake_gst.pipelines[0]
    fake_gst.element("sink").get_static_pad("sink").push(FakeBuffer(4000))

    controller.apply_update({"width": 1920, "height": 1080})
    controller.tick()

    assert len(fake_gst.pipelines) == 2
    assert first.state == State.NULL
    assert fake_gst.pipelines[1].state == State.PLAYING
    assert "width=(int)1920" in str(fake_gst.element("capsfilter").props["caps"])
    assert "height=(int)1080" in str(fake_gst.element("capsfilter").props["caps"])
    snap = stats.snapshot()
    assert snap.frame_count == 0
    assert snap.target_framerate == 30
    assert controller.state is ControllerState.RUNNING


def test_fatal_bus_error_tears_down_pipeline(fake_gst, clock) -> None:
    controller, _stats = _live_controller(clock)
    controller.start()
    pipeline = fake_gst.pipelines[0]
    pipeline.bus.messages.append(fake_gst.error(fake_gst.element("source"), "Device disconnected"))

    controller.run()

    assert controller.exit_code == 1
    assert pipeline.state == State.NULL
    assert controller.pipeline is None


def test_update_persists_after_releasing_shared_lock(tmp_path, monkeypatch) -> None:
    store = ConfigStore(path=tmp_path / "config.json")
    controller = LifecycleController(store, FakeBuilder(), sleep=lambda _seconds: None)
    controller.start()
    lock_free: List[bool] = []

    def _save(_config: StreamConfig, _path) -> bool:
        def _try_lock() -> None:
            acquired = store.lock.acquire(timeout=1.0)
            if acquired:
                store.lock.release()
            lock_free.append(acquired)

        worker = threading.Thread(target=_try_lock)
        worker.start()
        worker.join()
        return True

    monkeypatch.setattr(config_module, "save_config", _save)

    controller.apply_update({"host": "10.0.0.2"})
    controller.apply_update({"width": 1920, "height": 1080})
    controller.apply_update({"width": 1920})

    assert lock_free == [True, True]
