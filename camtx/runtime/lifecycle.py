"""
Pipeline lifecycle controller.

The controller owns the live pipeline and is the only component that builds,
tears down or swaps it.  HTTP handlers call :meth:`LifecycleController.apply_update`
from their own threads; the controller thread drives :meth:`LifecycleController.tick`
which, in order, honours a terminate request, performs a pending rebuild or
polls the pipeline bus.

The configuration store's lock guards the pipeline reference, the restart
signal and the terminate signal.  It is never held across the teardown wait
or a build, so configuration requests are never blocked by either.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Set, Tuple

from .. import BuildError
from ..config import ChangeClass, ConfigStore, StreamConfig
from ..graph.stages import encoder_candidates
from .builder import QUIESCE_TIMEOUT, LivePipeline, PipelineBuilder
from .events import BUS_POLL_INTERVAL, EventKind, EventMonitor, MonitorAction, PipelineEvent

LOG = logging.getLogger(__name__)

RELEASE_GRACE = 1.0  # seconds for the OS to release the capture device


class ControllerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    REBUILDING = "rebuilding"


class LifecycleController:
    def __init__(
        self,
        store: ConfigStore,
        builder: PipelineBuilder,
        monitor: Optional[EventMonitor] = None,
        *,
        quiesce_timeout: float = QUIESCE_TIMEOUT,
        release_grace: float = RELEASE_GRACE,
        poll_interval: float = BUS_POLL_INTERVAL,
        retry_with_defaults: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._builder = builder
        self._monitor = monitor or EventMonitor()
        self._lock = store.lock
        self._quiesce_timeout = quiesce_timeout
        self._release_grace = release_grace
        self._poll_interval = poll_interval
        self._retry_with_defaults = retry_with_defaults
        self._sleep = sleep

        self._pipeline: Optional[LivePipeline] = None
        self._state = ControllerState.STOPPED
        self._restart_requested = False
        self._terminate = False
        self._tried_encoders: Set[str] = set()
        self._thread: Optional[threading.Thread] = None
        self.exit_code = 0

    # ----------------------------------------------------------------- state

    @property
    def state(self) -> ControllerState:
        with self._lock:
            return self._state

    @property
    def restart_requested(self) -> bool:
        with self._lock:
            return self._restart_requested

    @property
    def should_terminate(self) -> bool:
        with self._lock:
            return self._terminate

    @property
    def pipeline(self) -> Optional[LivePipeline]:
        with self._lock:
            return self._pipeline

    def config_snapshot(self) -> StreamConfig:
        return self._store.snapshot()

    # ------------------------------------------------------------ entry points

    def start(self) -> None:
        """
        Build the initial pipeline.

        A :class:`BuildError` here is fatal for the process and is propagated.
        """

        with self._lock:
            if self._state is not ControllerState.STOPPED or self._pipeline is not None:
                return
        config = self._store.snapshot()
        live = self._builder.build(config)
        with self._lock:
            self._install(live, config)

    def apply_update(self, payload: Mapping[str, Any]) -> ChangeClass:
        with self._lock:
            change = self._store.apply(payload, persist=False)
            if change is ChangeClass.TOPOLOGY_CHANGING:
                LOG.info("Configuration change requires pipeline rebuild")
                self._restart_requested = True
            elif change is ChangeClass.CONNECTION_ONLY and self._pipeline is not None:
                config = self._store.snapshot()
                self._pipeline.set_destination(config.host, config.port)
        if change is not ChangeClass.NONE:
            self._store.save()
        return change

    def request_rebuild(self, reason: str) -> None:
        with self._lock:
            LOG.info("Pipeline rebuild requested: %s", reason)
            self._restart_requested = True

    def request_shutdown(self, reason: str = "shutdown requested", *, exit_code: int = 0) -> None:
        with self._lock:
            if not self._terminate:
                LOG.info("Terminating: %s", reason)
                self.exit_code = exit_code
            self._terminate = True

    # -------------------------------------------------------------- main loop

    def tick(self) -> bool:
        """
        Run one controller iteration.

        Returns ``False`` once termination has been requested.
        """

        if self.should_terminate:
            return False
        restart, old = self._take_restart_signal()
        if restart:
            self._rebuild(old)
            return not self.should_terminate
        self._poll_events()
        return not self.should_terminate

    def run(self) -> None:
        try:
            while self.tick():
                pass
        finally:
            self.shutdown()

    def start_thread(self, on_exit: Optional[Callable[[], None]] = None) -> threading.Thread:
        def _target() -> None:
            try:
                self.run()
            except Exception:
                LOG.exception("Controller loop crashed")
                self.exit_code = 1
            finally:
                if on_exit is not None:
                    on_exit()

        thread = threading.Thread(target=_target, name="camtx-controller", daemon=True)
        thread.start()
        self._thread = thread
        return thread

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread and thread.is_alive() and threading.current_thread() is not thread:
            thread.join(timeout=timeout)

    def shutdown(self) -> None:
        with self._lock:
            self._terminate = True
            live = self._pipeline
            self._pipeline = None
        if live is not None:
            self._teardown(live, reacquire=False)
        with self._lock:
            self._state = ControllerState.STOPPED
        LOG.info("Controller stopped")

    # ------------------------------------------------------------ transitions

    def _take_restart_signal(self) -> Tuple[bool, Optional[LivePipeline]]:
        with self._lock:
            if not self._restart_requested:
                return False, None
            self._restart_requested = False
            old = self._pipeline
            self._pipeline = None
            self._state = ControllerState.REBUILDING
            return True, old

    def _rebuild(self, old: Optional[LivePipeline]) -> None:
        LOG.info("Rebuilding pipeline with new configuration...")
        if old is not None:
            self._teardown(old, reacquire=True)

        config = self._store.snapshot()
        try:
            live = self._builder.build(config)
        except BuildError as exc:
            LOG.error("Failed to rebuild pipeline: %s", exc)
            rebuilt = self._build_with_defaults() if self._retry_with_defaults else None
            if rebuilt is None:
                with self._lock:
                    self._state = ControllerState.STOPPED
                self.request_shutdown("pipeline rebuild failed", exit_code=1)
                return
            live, config = rebuilt

        with self._lock:
            self._install(live, config)
        LOG.info("Pipeline successfully rebuilt and started.")

    def _build_with_defaults(self) -> Optional[Tuple[LivePipeline, StreamConfig]]:
        LOG.warning("Retrying pipeline build with default configuration")
        config = self._store.reset_to_defaults()
        try:
            return self._builder.build(config), config
        except BuildError as exc:
            LOG.error("Default configuration also failed to build: %s", exc)
            return None

    def _install(self, live: LivePipeline, config: StreamConfig) -> None:
        # Caller holds the lock.
        self._pipeline = live
        self._state = ControllerState.RUNNING
        current = self._store.snapshot()
        if (current.host, current.port) != (config.host, config.port):
            live.set_destination(current.host, current.port)

    def _teardown(self, live: LivePipeline, *, reacquire: bool) -> None:
        LOG.info("Stopping existing pipeline.")
        if not live.quiesce(self._quiesce_timeout):
            LOG.warning("Pipeline did not quiesce cleanly; forcing release")
        live.release()
        if reacquire:
            LOG.info("Waiting %.1fs for camera resource to be released...", self._release_grace)
            self._sleep(self._release_grace)

    # ----------------------------------------------------------------- events

    def _poll_events(self) -> None:
        with self._lock:
            live = self._pipeline
            channel = live.event_channel() if live is not None else None

        if channel is None:
            self._sleep(self._poll_interval)
            return

        event = channel.poll(self._poll_interval)
        if event is None:
            return
        self._dispatch(event, live)

    def _dispatch(self, event: PipelineEvent, live: Optional[LivePipeline]) -> None:
        action = self._monitor.handle(event)
        if action is MonitorAction.TERMINATE:
            exit_code = 1 if event.kind is EventKind.ERROR else 0
            self.request_shutdown(f"{event.kind.value} from {event.source}", exit_code=exit_code)
        elif action is MonitorAction.REBUILD:
            self._fall_back_encoder(live)

    def _fall_back_encoder(self, live: Optional[LivePipeline]) -> None:
        with self._lock:
            configured = self._store.snapshot().encoder
            self._tried_encoders.add(configured)
            if live is not None and live.encoder:
                self._tried_encoders.add(live.encoder)
            remaining = [name for name in encoder_candidates(configured) if name not in self._tried_encoders]
            if not remaining:
                LOG.error("No untried encoder left after runtime encoder error")
                self.request_shutdown("encoder candidates exhausted", exit_code=1)
                return
            LOG.warning("Switching encoder from %s to %s after runtime error", configured, remaining[0])
            self.apply_update({"encoder": remaining[0]})
