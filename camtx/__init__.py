"""
camtx: live camera transmitter.

The package captures video through GStreamer, encodes it to H.264, sends it
as RTP over UDP and exposes an HTTP control surface that reconfigures the
stream at runtime.  :mod:`camtx.runtime.lifecycle` owns the pipeline;
:mod:`camtx.api.server` is the control plane.
"""

from __future__ import annotations

__all__ = [
    "BuildError",
    "CamtxError",
    "__version__",
]

__version__ = "0.1.0"


class CamtxError(RuntimeError):
    """Base class for transmitter errors."""


class BuildError(CamtxError):
    """Raised when a pipeline cannot be assembled or started."""
