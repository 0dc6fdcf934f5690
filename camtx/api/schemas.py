"""
Pydantic schemas for the control API responses.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, validator


class HealthModel(BaseModel):
    status: str = "healthy"
    state: str


class StatsModel(BaseModel):
    total_bytes: int = 0
    frame_count: int = 0
    current_bitrate_kbps: float = 0.0
    elapsed_seconds: float = 0.0
    framerate: float = 0.0
    target_framerate: int = 0
    framerate_efficiency: float = 0.0
    latency_ms: Optional[float] = None


class StreamConfigModel(BaseModel):
    host: str
    port: int
    source: str
    device: str = ""
    encoder: str
    width: int
    height: int
    framerate: int
    autofocus: Optional[bool] = None
    lens_position: Optional[float] = None

    @validator("device", pre=True)
    def _normalise_device(cls, value: object) -> str:
        return str(value or "")


class ConfigUpdateResponse(BaseModel):
    status: str = "configuration updated"
    change: str


class ErrorModel(BaseModel):
    error: str


class CapabilitiesModel(BaseModel):
    cameras: List[str] = Field(default_factory=list)
    encoders: List[str] = Field(default_factory=list)


class ResolutionModel(BaseModel):
    width: int
    height: int
    max_framerate: int


class CameraInfoModel(BaseModel):
    camera: str
    supported_resolutions: List[ResolutionModel] = Field(default_factory=list)
