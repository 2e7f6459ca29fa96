"""Overlay renderer: a pure function from registry state to pixels.

Transform images are blended into their boxes below full opacity so they read
as a preview, then every detected object gets a labeled box. The selected
object is drawn solid with corner brackets; objects that already have a
transform are drawn in the "completed" green; everything else is dashed in its
category color.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from ..core.entities import DetectedObject, OverlayTransform
from ..utils.geometry import to_pixel_rect

Color = Tuple[int, int, int]


def hex_to_bgr(value: str) -> Color:
    value = value.lstrip("#")
    r, g, b = int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)
    return (b, g, r)


CATEGORY_COLORS: Dict[str, Color] = {
    "furniture": hex_to_bgr("#8b5cf6"),
    "lighting": hex_to_bgr("#f59e0b"),
    "decor": hex_to_bgr("#ec4899"),
    "electronics": hex_to_bgr("#06b6d4"),
    "storage": hex_to_bgr("#22c55e"),
    "textiles": hex_to_bgr("#f97316"),
    "plants": hex_to_bgr("#10b981"),
    "tech": hex_to_bgr("#3b82f6"),
    "other": hex_to_bgr("#94a3b8"),
}
SELECTED_COLOR = hex_to_bgr("#a78bfa")
SELECTED_LABEL_BG = hex_to_bgr("#8b5cf6")
COMPLETED_COLOR = hex_to_bgr("#22c55e")
LABEL_BG = (0, 0, 0)
WHITE = (255, 255, 255)

FONT = cv2.FONT_HERSHEY_SIMPLEX
FONT_SCALE = 0.4
CORNER = 12


@dataclass(slots=True)
class OverlayState:
    """Snapshot of everything the renderer draws."""
    objects: List[DetectedObject] = field(default_factory=list)
    selected_name: Optional[str] = None
    transforms: List[OverlayTransform] = field(default_factory=list)


def _dashed_rectangle(image: np.ndarray, p1: Tuple[int, int], p2: Tuple[int, int],
                      color: Color, thickness: int = 1, dash: int = 6, gap: int = 3) -> None:
    x1, y1 = p1
    x2, y2 = p2
    step = dash + gap
    for x in range(x1, x2, step):
        cv2.line(image, (x, y1), (min(x + dash, x2), y1), color, thickness)
        cv2.line(image, (x, y2), (min(x + dash, x2), y2), color, thickness)
    for y in range(y1, y2, step):
        cv2.line(image, (x1, y), (x1, min(y + dash, y2)), color, thickness)
        cv2.line(image, (x2, y), (x2, min(y + dash, y2)), color, thickness)


def _corner_brackets(image: np.ndarray, x1: int, y1: int, x2: int, y2: int) -> None:
    c = CORNER
    for pts in (
        [(x1, y1 + c), (x1, y1), (x1 + c, y1)],
        [(x2 - c, y1), (x2, y1), (x2, y1 + c)],
        [(x1, y2 - c), (x1, y2), (x1 + c, y2)],
        [(x2 - c, y2), (x2, y2), (x2, y2 - c)],
    ):
        cv2.polylines(image, [np.array(pts, dtype=np.int32)], False, WHITE, 3, cv2.LINE_AA)


def _blend_transform(image: np.ndarray, transform: OverlayTransform, opacity: float) -> None:
    h, w = image.shape[:2]
    x1, y1, x2, y2 = to_pixel_rect(transform.bbox, w, h)
    if x2 <= x1 or y2 <= y1 or transform.image is None:
        return
    patch = transform.image
    if patch.ndim == 2:
        patch = cv2.cvtColor(patch, cv2.COLOR_GRAY2BGR)
    elif patch.shape[2] == 4:
        patch = cv2.cvtColor(patch, cv2.COLOR_BGRA2BGR)
    patch = cv2.resize(patch, (x2 - x1, y2 - y1), interpolation=cv2.INTER_LINEAR)
    region = image[y1:y2, x1:x2]
    image[y1:y2, x1:x2] = cv2.addWeighted(patch, opacity, region, 1.0 - opacity, 0)


def _draw_label(image: np.ndarray, text: str, x: int, y: int, background: Color, dot: Color) -> None:
    (tw, th), _ = cv2.getTextSize(text, FONT, FONT_SCALE, 1)
    lw, lh = tw + 14, 20
    top = y - lh - 2 if y - lh - 2 >= 0 else y + 2
    cv2.rectangle(image, (x, top), (x + lw, top + lh), background, -1)
    cv2.putText(image, text, (x + 7, top + lh - 6), FONT, FONT_SCALE, WHITE, 1, cv2.LINE_AA)
    cv2.circle(image, (x + lw + 6, top + lh // 2), 4, dot, -1, cv2.LINE_AA)


def render_overlay(base: np.ndarray, state: OverlayState, opacity: float = 0.85) -> np.ndarray:
    """Draw transforms and object boxes onto a copy of ``base`` (BGR, surface-sized)."""
    image = base.copy()
    h, w = image.shape[:2]
    completed = {t.object_name for t in state.transforms}

    for transform in state.transforms:
        _blend_transform(image, transform, opacity)

    for obj in state.objects:
        x1, y1, x2, y2 = to_pixel_rect(obj.bbox, w, h)
        category_color = CATEGORY_COLORS.get(obj.category.value, CATEGORY_COLORS["other"])
        is_selected = obj.name == state.selected_name

        if is_selected:
            color = SELECTED_COLOR
            cv2.rectangle(image, (x1, y1), (x2, y2), color, 3, cv2.LINE_AA)
            _corner_brackets(image, x1, y1, x2, y2)
            label_bg = SELECTED_LABEL_BG
        elif obj.name in completed:
            color = COMPLETED_COLOR
            cv2.rectangle(image, (x1, y1), (x2, y2), color, 2, cv2.LINE_AA)
            label_bg = COMPLETED_COLOR
        else:
            color = category_color
            _dashed_rectangle(image, (x1, y1), (x2, y2), color, 1)
            label_bg = LABEL_BG

        _draw_label(image, obj.name.upper(), x1, y1, label_bg, color)

    return image


class SurfaceSync:
    """Keeps the rendering surface pixel-sized to its container."""

    def __init__(self, width: int = 1, height: int = 1):
        self.width = max(1, int(width))
        self.height = max(1, int(height))

    def resize(self, width: int, height: int) -> bool:
        """Record the container's new size; returns True when it changed."""
        width, height = max(1, int(width)), max(1, int(height))
        if (width, height) == (self.width, self.height):
            return False
        self.width, self.height = width, height
        return True

    def fit_frame(self, frame: np.ndarray) -> np.ndarray:
        """Scale a frame to the surface so normalized boxes stay aligned with the video."""
        if frame.shape[1] == self.width and frame.shape[0] == self.height:
            return frame
        return cv2.resize(frame, (self.width, self.height), interpolation=cv2.INTER_LINEAR)

    def normalize_point(self, x: float, y: float) -> Tuple[float, float]:
        """Map a surface pixel position to normalized [0,1] coordinates."""
        return (min(max(x / self.width, 0.0), 1.0), min(max(y / self.height, 0.0), 1.0))
