"""
Stage factory with ordered fallback between interchangeable implementations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .. import CamtxError
from ..utils import gst
from .stages import IMPLEMENTATION_PROPERTIES, StageKind

LOG = logging.getLogger(__name__)


class StageCreationError(CamtxError):
    """Raised when no candidate implementation for a stage could be created."""

    def __init__(self, kind: StageKind, attempted: Sequence[str]) -> None:
        self.kind = kind
        self.attempted = list(attempted)
        tried = ", ".join(self.attempted) or "no candidates"
        super().__init__(f"No usable implementation for stage '{kind.value}' (tried: {tried})")


@dataclass
class StageCreation:
    kind: StageKind
    element: Any
    implementation: str


class StageFactory:
    """
    Create pipeline stages from a prioritised candidate list.

    Each candidate is first looked up in the element registry; only
    registered factories are instantiated.  The first instance that comes back
    gets its implementation tuning table and the per-build context applied.
    """

    def __init__(self, property_table: Optional[Mapping[str, Mapping[str, str]]] = None) -> None:
        self._property_table = IMPLEMENTATION_PROPERTIES if property_table is None else property_table

    def is_available(self, implementation: str) -> bool:
        gst.require_gstreamer()
        return gst.Gst.ElementFactory.find(implementation) is not None

    def create(
        self,
        kind: StageKind,
        candidates: Sequence[str],
        context: Optional[Mapping[str, str]] = None,
    ) -> StageCreation:
        gst.require_gstreamer()
        attempted: List[str] = []
        for implementation in candidates:
            if not implementation or implementation in attempted:
                continue
            attempted.append(implementation)

            if not self.is_available(implementation):
                LOG.info("%s implementation %s not available", kind.value, implementation)
                continue

            element = gst.Gst.ElementFactory.make(implementation, kind.value)
            if element is None:
                LOG.warning("%s implementation %s is registered but failed to instantiate", kind.value, implementation)
                continue

            if len(attempted) > 1:
                LOG.warning(
                    "Using fallback %s implementation %s (preferred %s unavailable)",
                    kind.value,
                    implementation,
                    attempted[0],
                )
            else:
                LOG.info("Created %s stage: %s", kind.value, implementation)

            self.apply_properties(element, self._property_table.get(implementation, {}))
            if context:
                self.apply_properties(element, context)
            return StageCreation(kind=kind, element=element, implementation=implementation)

        raise StageCreationError(kind, attempted)

    @staticmethod
    def apply_properties(element: Any, properties: Mapping[str, str]) -> Dict[str, str]:
        """
        Apply serialised property values, skipping ones the element lacks.

        Returns the properties that were actually set.
        """

        applied: Dict[str, str] = {}
        for key, value in properties.items():
            if value is None:
                continue
            if element.find_property(key) is None:
                LOG.debug(
                    "Element %s has no property '%s'; skipping",
                    element.get_name(),
                    key,
                )
                continue
            try:
                gst.Gst.util_set_object_arg(element, key, str(value))
            except Exception:
                LOG.debug(
                    "Failed to set property '%s' on element %s; ignoring override.",
                    key,
                    element.get_name(),
                    exc_info=True,
                )
                continue
            applied[key] = str(value)
        return applied
