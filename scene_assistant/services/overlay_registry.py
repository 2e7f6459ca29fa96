"""Overlay registry: detected objects, selection and per-object transform images.

The registry is the sole owner of DetectedObject and OverlayTransform state.
Readers receive copies, so nothing outside can mutate the registry in place.
Objects and transforms are keyed by name; when a batch contains the same name
twice the first entry wins for transform tracking and hit-testing.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Dict, List, Optional

from ..core.entities import DetectedObject, OverlayTransform, NormBBox
from ..utils.geometry import bbox_contains

logger = logging.getLogger(__name__)


class OverlayRegistry:
    """State container redrawn by the overlay renderer whenever it changes."""

    def __init__(self):
        self._objects: List[DetectedObject] = []
        self._selected_name: Optional[str] = None
        self._transforms: Dict[str, OverlayTransform] = {}
        self._listeners: List[Callable[[], None]] = []
        self._version = 0

    # -- change notification -------------------------------------------------

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    @property
    def version(self) -> int:
        """Monotonic change counter; bumps on every mutation."""
        return self._version

    def _changed(self) -> None:
        self._version += 1
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in registry listener: {e}", exc_info=True)

    # -- detected objects -----------------------------------------------------

    def merge_detection(self, objects: List[DetectedObject]) -> None:
        """Replace the object list wholesale and move matching transforms.

        Transforms whose object is absent from the new batch keep their last
        box, since the object may come back into view.
        """
        self._objects = [dataclasses.replace(obj) for obj in objects]

        latest: Dict[str, NormBBox] = {}
        for obj in self._objects:
            latest.setdefault(obj.name, obj.bbox)

        for name, transform in self._transforms.items():
            if name in latest and transform.bbox != latest[name]:
                transform.bbox = latest[name]

        logger.debug(f"Registry now tracks {len(self._objects)} objects, {len(self._transforms)} transforms")
        self._changed()

    def get_objects(self) -> List[DetectedObject]:
        return [dataclasses.replace(obj) for obj in self._objects]

    def find_object(self, name: str) -> Optional[DetectedObject]:
        for obj in self._objects:
            if obj.name == name:
                return dataclasses.replace(obj)
        return None

    # -- selection --------------------------------------------------------------

    @property
    def selected_name(self) -> Optional[str]:
        return self._selected_name

    def selected_object(self) -> Optional[DetectedObject]:
        if self._selected_name is None:
            return None
        return self.find_object(self._selected_name)

    def select(self, name: Optional[str]) -> None:
        if name != self._selected_name:
            self._selected_name = name
            self._changed()

    def hit_test(self, x: float, y: float) -> Optional[DetectedObject]:
        """First object (in list order) whose normalized box contains the point."""
        for obj in self._objects:
            if bbox_contains(obj.bbox, x, y):
                return dataclasses.replace(obj)
        return None

    def select_at(self, x: float, y: float) -> Optional[DetectedObject]:
        """Select the object under a normalized pointer position; a miss clears selection."""
        hit = self.hit_test(x, y)
        self.select(hit.name if hit else None)
        return hit

    # -- transforms -------------------------------------------------------------

    def put_transform(self, transform: OverlayTransform) -> None:
        """Store a transform, replacing any existing one for the same object name."""
        self._transforms.pop(transform.object_name, None)
        self._transforms[transform.object_name] = dataclasses.replace(transform)
        self._changed()

    def get_transform(self, name: str) -> Optional[OverlayTransform]:
        transform = self._transforms.get(name)
        return dataclasses.replace(transform) if transform else None

    def has_transform(self, name: str) -> bool:
        return name in self._transforms

    def get_transforms(self) -> List[OverlayTransform]:
        return [dataclasses.replace(t) for t in self._transforms.values()]

    def remove_transform(self, name: str) -> bool:
        if self._transforms.pop(name, None) is None:
            return False
        self._changed()
        return True

    def clear_transforms(self) -> None:
        if self._transforms:
            self._transforms.clear()
            self._changed()

    def clear(self) -> None:
        """Drop all state (session end)."""
        self._objects = []
        self._selected_name = None
        self._transforms.clear()
        self._changed()
