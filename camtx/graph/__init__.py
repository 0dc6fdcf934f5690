"""
Pipeline stage catalogue and factory.

:mod:`.stages` declares the roles, candidate implementations and tuning
tables; :mod:`.factory` turns a candidate list into a live element.
"""

from __future__ import annotations

__all__ = [
    "StageCreation",
    "StageCreationError",
    "StageFactory",
    "StageKind",
    "VideoFormat",
]

from .factory import StageCreation, StageCreationError, StageFactory
from .stages import StageKind, VideoFormat
