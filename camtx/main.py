"""
Transmitter process entrypoint.

Resolves and loads the persisted configuration, builds the initial pipeline,
then runs the lifecycle controller on its own thread while uvicorn serves the
control API on the main asyncio loop.  Either side stopping stops the other.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import BuildError
from .api.server import create_app
from .config import ConfigStore
from .graph.factory import StageFactory
from .runtime.builder import PipelineBuilder
from .runtime.events import EventMonitor
from .runtime.lifecycle import RELEASE_GRACE, LifecycleController
from .stats import StatisticsCollector
from .utils.logging import configure_logging
from .utils.paths import resolve_config_path

LOG = logging.getLogger(__name__)

DEFAULT_BIND_HOST = "0.0.0.0"
DEFAULT_BIND_PORT = 8888
CONTROLLER_JOIN_TIMEOUT = 10.0  # seconds


def build_controller(args: argparse.Namespace, stats: StatisticsCollector) -> LifecycleController:
    store = ConfigStore.from_file(resolve_config_path(args.config))
    builder = PipelineBuilder(StageFactory(), stats)
    monitor = EventMonitor(
        f"http://localhost:{args.port}",
        encoder_fallback_on_error=args.encoder_fallback_on_error,
    )
    return LifecycleController(
        store,
        builder,
        monitor,
        release_grace=args.release_grace,
        retry_with_defaults=args.retry_defaults,
    )


async def serve(
    controller: LifecycleController,
    stats: StatisticsCollector,
    host: str = DEFAULT_BIND_HOST,
    port: int = DEFAULT_BIND_PORT,
) -> None:
    """
    Serve the control API until a signal arrives or the controller stops.

    The controller thread is started from the app lifespan so requests are
    only accepted once the loop that reacts to them is running.
    """

    import uvicorn

    server: Optional[uvicorn.Server] = None

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()

        def _controller_exited() -> None:
            if server is not None:
                loop.call_soon_threadsafe(setattr, server, "should_exit", True)

        controller.start_thread(on_exit=_controller_exited)
        LOG.info("Control API listening on %s:%d", host, port)
        try:
            yield
        finally:
            controller.request_shutdown("control API shutting down")
            await asyncio.to_thread(controller.join, CONTROLLER_JOIN_TIMEOUT)

    app = create_app(controller=controller, stats=stats, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down...", signum)
        controller.request_shutdown(f"signal {signum}")
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Live camera H.264 RTP/UDP transmitter")
    parser.add_argument("--host", default=DEFAULT_BIND_HOST, help="bind host for the control API")
    parser.add_argument("--port", type=int, default=DEFAULT_BIND_PORT, help="bind port for the control API")
    parser.add_argument("--config", default=None, help="path of the persisted configuration file")
    parser.add_argument("--log-level", default="INFO", help="logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument(
        "--release-grace",
        type=float,
        default=RELEASE_GRACE,
        help="seconds to wait for the camera to be released before a rebuild",
    )
    parser.add_argument(
        "--retry-defaults",
        action="store_true",
        help="retry a failed rebuild once with the default configuration",
    )
    parser.add_argument(
        "--encoder-fallback-on-error",
        action="store_true",
        help="switch to the next encoder instead of exiting on an encoder runtime error",
    )
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    stats = StatisticsCollector()
    controller = build_controller(args, stats)
    try:
        controller.start()
    except BuildError as exc:
        LOG.error("Failed to start pipeline: %s", exc)
        return 1

    try:
        asyncio.run(serve(controller, stats, host=args.host, port=args.port))
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")
    finally:
        controller.request_shutdown("process exiting")
        controller.join(CONTROLLER_JOIN_TIMEOUT)
        if controller.pipeline is not None:
            controller.shutdown()

    LOG.info("Exiting with code %d", controller.exit_code)
    return controller.exit_code


if __name__ == "__main__":
    sys.exit(run())
