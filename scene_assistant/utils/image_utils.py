"""Image encoding and region utilities."""

import io
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from .geometry import NormBBox, to_pixel_rect


def encode_jpeg(image: np.ndarray, quality: int = 80) -> bytes:
    """Encode a BGR frame as JPEG bytes."""
    if image is None or not isinstance(image, np.ndarray) or image.ndim != 3 or image.size == 0:
        raise ValueError("Expected a non-empty HxWx3 image array")
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (PNG/JPEG/WebP) into a BGR array."""
    with Image.open(io.BytesIO(data)) as pil_image:
        rgb = np.array(pil_image.convert("RGB"))
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def crop_normalized(image: np.ndarray, bbox: NormBBox) -> Optional[np.ndarray]:
    """Crop the region covered by a normalized bbox; None when it has no pixels."""
    h, w = image.shape[:2]
    x1, y1, x2, y2 = to_pixel_rect(bbox, w, h)
    if x2 <= x1 or y2 <= y1:
        return None
    return image[y1:y2, x1:x2].copy()


def to_thumbnail(image: np.ndarray, max_size: int = 240) -> Image.Image:
    """BGR array to an RGB PIL image no larger than max_size on either side."""
    thumbnail = Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))
    thumbnail.thumbnail((max_size, max_size))
    return thumbnail
