"""
Process-wide logging setup.

uvicorn runs with ``log_config=None`` so its loggers propagate to the root
handler installed here and share one format with the pipeline logs.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# Per-request access lines drown out pipeline events unless debugging.
QUIET_LOGGERS = ("uvicorn.access",)


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Configure the root logger once; later calls only adjust the level.
    """

    numeric = _coerce_level(level)
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(numeric)
    else:
        logging.basicConfig(
            level=numeric,
            format=format or DEFAULT_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)],
        )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(numeric if numeric <= logging.DEBUG else logging.WARNING)
