"""
FastAPI control surface for the transmitter.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..runtime import capabilities as default_capabilities
from ..runtime.lifecycle import LifecycleController
from ..stats import StatisticsCollector
from . import schemas

LOG = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=schemas.ErrorModel(error=message).model_dump())


def create_app(
    *,
    controller: LifecycleController,
    stats: StatisticsCollector,
    capabilities: Any = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    caps = capabilities or default_capabilities

    app = FastAPI(title="camtx control API", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return _error(404, "Not Found")
        return _error(exc.status_code, str(exc.detail))

    @app.get("/health", response_model=schemas.HealthModel)
    def health() -> schemas.HealthModel:
        return schemas.HealthModel(status="healthy", state=controller.state.value)

    @app.get("/stats", response_model=schemas.StatsModel)
    def get_stats() -> schemas.StatsModel:
        return schemas.StatsModel(**stats.snapshot().to_dict())

    @app.get("/config", response_model=schemas.StreamConfigModel)
    def get_config() -> schemas.StreamConfigModel:
        return schemas.StreamConfigModel(**controller.config_snapshot().to_dict())

    @app.post(
        "/config",
        response_model=schemas.ConfigUpdateResponse,
        responses={400: {"model": schemas.ErrorModel}},
    )
    async def update_config(request: Request) -> Any:
        body = await request.body()
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            LOG.warning("Rejected configuration update: %s", exc)
            return _error(400, "Invalid JSON")
        if not isinstance(payload, dict):
            LOG.warning("Rejected configuration update: body is not a JSON object")
            return _error(400, "Invalid JSON")

        change = await asyncio.to_thread(controller.apply_update, payload)
        return schemas.ConfigUpdateResponse(change=change.value)

    @app.get("/get", response_model=schemas.CapabilitiesModel)
    def list_capabilities() -> schemas.CapabilitiesModel:
        return schemas.CapabilitiesModel(cameras=caps.list_cameras(), encoders=caps.list_encoders())

    @app.get("/get/{device:path}", response_model=schemas.CameraInfoModel)
    def camera_info(device: str) -> schemas.CameraInfoModel:
        return schemas.CameraInfoModel(
            camera=device,
            supported_resolutions=[
                schemas.ResolutionModel(**entry) for entry in caps.camera_resolutions(device)
            ],
        )

    return app
