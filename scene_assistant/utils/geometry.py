"""Normalized bounding box utilities."""

from typing import Any, Optional, Sequence, Tuple

NormBBox = Tuple[float, float, float, float]


def clamp_unit(value: Any) -> float:
    """Clamp a single coordinate into [0, 1]; non-numeric values become 0."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(1.0, v))


def clamp_bbox(box: Optional[Sequence[Any]]) -> Optional[NormBBox]:
    """Clamp a model-reported box to [0,1] and order its corners.

    Returns None when the box is missing, malformed, or degenerate after
    clamping (zero width or height), since such a box cannot satisfy
    x1 < x2 and y1 < y2.
    """
    if box is None:
        box = (0.0, 0.0, 1.0, 1.0)
    try:
        if len(box) != 4:
            return None
    except TypeError:
        return None
    x1, y1, x2, y2 = (clamp_unit(v) for v in box)
    x1, x2 = min(x1, x2), max(x1, x2)
    y1, y2 = min(y1, y2), max(y1, y2)
    if x1 >= x2 or y1 >= y2:
        return None
    return (x1, y1, x2, y2)


def bbox_contains(box: NormBBox, x: float, y: float) -> bool:
    """Inclusive containment test in normalized coordinates."""
    x1, y1, x2, y2 = box
    return x1 <= x <= x2 and y1 <= y <= y2


def to_pixel_rect(box: NormBBox, width: int, height: int) -> Tuple[int, int, int, int]:
    """Convert a normalized box to integer pixel corners within a width x height surface."""
    x1, y1, x2, y2 = box
    px1 = int(round(x1 * width))
    py1 = int(round(y1 * height))
    px2 = int(round(x2 * width))
    py2 = int(round(y2 * height))
    px1 = max(0, min(px1, width))
    py1 = max(0, min(py1, height))
    px2 = max(px1, min(px2, width))
    py2 = max(py1, min(py2, height))
    return px1, py1, px2, py2
