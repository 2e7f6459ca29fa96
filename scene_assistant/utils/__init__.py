"""Utility functions package."""

from .geometry import clamp_bbox, bbox_contains, to_pixel_rect
from .image_utils import encode_jpeg, decode_image, crop_normalized, to_thumbnail

__all__ = [
    "clamp_bbox", "bbox_contains", "to_pixel_rect",
    "encode_jpeg", "decode_image", "crop_normalized", "to_thumbnail",
]
