"""Two-tier object style transforms.

Instant tier: a local OpenCV filter (brightness, contrast, saturation, hue and
a translucent color blend) applied to the object's region of the current
frame. It never touches the network and returns within the calling
interaction.

High-fidelity tier: an explicit, user-triggered upgrade that asks the image
capability for a generated rendition of the object. Success replaces the
instant overlay with a ``highDef`` one; failure leaves the instant overlay
exactly as it was.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from ..core.entities import Fidelity, OverlayTransform, SceneContext
from ..core.exceptions import InputCaptureError, ProviderError, QuotaExhaustedError
from ..core.logging_config import FlowContext
from ..utils.image_utils import crop_normalized, decode_image
from .gemini_service import GeminiService, ImageRequest
from .model_orchestrator import CandidateChain, InvocationResult, ModelInvoker
from .overlay_registry import OverlayRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StylePreset:
    id: str
    label: str
    brightness: float
    contrast: float
    saturation: float
    hue_shift: int
    tint: Tuple[int, int, int]  # BGR
    tint_alpha: float
    descriptor: str


STYLE_PRESETS: Dict[str, StylePreset] = {
    preset.id: preset for preset in (
        StylePreset("zen", "Zen", 1.08, 0.90, 0.75, 4, (110, 160, 90), 0.22,
                    "calm Japanese zen aesthetic, natural wood, soft greens, rounded organic forms"),
        StylePreset("cyberpunk", "Cyber", 0.95, 1.30, 1.45, -12, (230, 200, 20), 0.28,
                    "cyberpunk neon aesthetic, glowing cyan and magenta accents, dark glossy surfaces"),
        StylePreset("professional", "Pro", 1.02, 1.10, 0.55, 0, (120, 110, 100), 0.18,
                    "clean professional office aesthetic, slate and charcoal tones, brushed metal"),
        StylePreset("fantasy", "Fantasy", 1.05, 1.15, 1.30, 10, (200, 80, 170), 0.26,
                    "whimsical fantasy aesthetic, enchanted purple and pink hues, ornate carved details"),
        StylePreset("minimalist", "Minimal", 1.12, 0.95, 0.35, 0, (215, 215, 210), 0.20,
                    "scandinavian minimalist aesthetic, white and light oak, simple geometric lines"),
        StylePreset("cozy", "Cozy", 1.04, 1.05, 1.10, -4, (40, 140, 235), 0.24,
                    "warm cozy cabin aesthetic, amber light, knitted textiles, warm walnut wood"),
    )
}


def get_preset(style: str) -> StylePreset:
    try:
        return STYLE_PRESETS[style]
    except KeyError:
        raise ValueError(f"Unknown style preset '{style}'. Available: {', '.join(STYLE_PRESETS)}") from None


def apply_style_filter(region: np.ndarray, preset: StylePreset) -> np.ndarray:
    """Deterministic instant-tier filter; same region and preset give identical pixels."""
    hsv = cv2.cvtColor(region, cv2.COLOR_BGR2HSV).astype(np.float32)
    hsv[:, :, 0] = np.mod(hsv[:, :, 0] + preset.hue_shift, 180)
    hsv[:, :, 1] = np.clip(hsv[:, :, 1] * preset.saturation, 0, 255)
    hsv[:, :, 2] = np.clip(hsv[:, :, 2] * preset.brightness, 0, 255)
    adjusted = cv2.cvtColor(hsv.astype(np.uint8), cv2.COLOR_HSV2BGR)

    # Contrast on the L channel around its mean
    lab = cv2.cvtColor(adjusted, cv2.COLOR_BGR2LAB).astype(np.float32)
    mean_l = float(lab[:, :, 0].mean())
    lab[:, :, 0] = np.clip((lab[:, :, 0] - mean_l) * preset.contrast + mean_l, 0, 255)
    adjusted = cv2.cvtColor(lab.astype(np.uint8), cv2.COLOR_LAB2BGR)

    tint = np.empty_like(adjusted)
    tint[:] = preset.tint
    return cv2.addWeighted(tint, preset.tint_alpha, adjusted, 1.0 - preset.tint_alpha, 0)


def describe_image_failure(error: Exception) -> str:
    """User-facing text for an exhausted image-generation call."""
    if isinstance(error, QuotaExhaustedError):
        if error.retry_after:
            return f"Image generation quota reached. Please wait ~{error.retry_after} seconds and try again."
        return "Image generation quota reached. Please wait a minute and try again, or try a different style."
    raw = str(getattr(error, "last_error", None) or error)
    if "503" in raw or "UNAVAILABLE" in raw:
        return "Image models are overloaded right now. Please try again in a few seconds."
    return "Image generation failed, all models are currently unavailable."


class ImageCapability:
    """Remote image generation through the shared invoker."""

    def __init__(self, gemini: GeminiService, invoker: ModelInvoker, chain: CandidateChain):
        self.gemini = gemini
        self.invoker = invoker
        self.chain = chain

    async def generate(self, prompt: str, style: Optional[str] = None) -> Tuple[np.ndarray, InvocationResult]:
        """Return the decoded BGR image and the invocation record."""
        result = await self.invoker.invoke(self.chain, self.gemini.generate_image, ImageRequest(prompt, style))
        try:
            image = decode_image(result.output)
        except (OSError, ValueError) as e:
            raise ProviderError(f"Generated image could not be decoded: {e}", last_error=e,
                                model=result.model, attempts=result.attempts) from e
        return image, result


@dataclass(slots=True)
class TransformFailure:
    object_name: str
    style: str
    message: str


class TransformPipeline:
    """Creates instant overlays and upgrades them to generated ones."""

    def __init__(self, registry: OverlayRegistry, frame_provider: Callable[[], Optional[np.ndarray]],
                 images: ImageCapability, scene: SceneContext):
        self.registry = registry
        self._frame_provider = frame_provider
        self.images = images
        self.scene = scene
        self._upgrading = False
        self.last_failure: Optional[TransformFailure] = None

    @property
    def is_upgrading(self) -> bool:
        return self._upgrading

    def apply_instant(self, object_name: str, style: str) -> OverlayTransform:
        """Filter the object's region of the current frame and store it as its overlay.

        Raises:
            ValueError: unknown style, or the object is not currently detected
            InputCaptureError: no frame available
        """
        preset = get_preset(style)
        obj = self.registry.find_object(object_name)
        if obj is None:
            raise ValueError(f"'{object_name}' is not among the detected objects")

        frame = self._frame_provider()
        if frame is None:
            raise InputCaptureError("VISUAL_CAPTURE_FAILED: no camera frame available")
        region = crop_normalized(frame, obj.bbox)
        if region is None:
            raise InputCaptureError(f"Region for '{object_name}' has no pixels")

        transform = OverlayTransform(
            object_name=obj.name,
            image=apply_style_filter(region, preset),
            bbox=obj.bbox,
            fidelity=Fidelity.INSTANT,
            style=preset.id,
        )
        self.registry.put_transform(transform)
        logger.info(f"Instant {preset.id} transform applied to '{obj.name}'")
        return transform

    def build_prompt(self, object_name: str, description: str, preset: StylePreset) -> str:
        parts = [f"A {preset.descriptor} style {object_name}."]
        if description:
            parts.append(f"Original object: {description}.")
        if self.scene.mood:
            parts.append(f"Room mood: {self.scene.mood}.")
        if self.scene.color_palette:
            parts.append(f"Harmonize with the room palette {', '.join(self.scene.color_palette)}.")
        parts.append("Photorealistic, matching indoor room lighting, product shot on transparent background.")
        return " ".join(parts)

    async def upgrade_high_def(self, object_name: str, style: str) -> Optional[OverlayTransform]:
        """Replace the object's overlay with a generated one.

        Returns the stored transform, or None when the request was dropped
        (another upgrade in flight) or its result was superseded by a newer
        style choice. Failures re-raise after recording ``last_failure``;
        the instant overlay is left untouched.
        """
        if self._upgrading:
            logger.info("High-fidelity upgrade already in flight, ignoring request")
            return None

        preset = get_preset(style)
        obj = self.registry.find_object(object_name)
        current = self.registry.get_transform(object_name)
        description = obj.description if obj else ""
        if obj is None and current is None:
            raise ValueError(f"'{object_name}' is not among the detected objects")

        self._upgrading = True
        try:
            with FlowContext("transform"):
                image, result = await self.images.generate(
                    self.build_prompt(object_name, description, preset), preset.id)
        except ProviderError as e:
            self.last_failure = TransformFailure(object_name, preset.id, describe_image_failure(e))
            raise
        finally:
            self._upgrading = False

        self.last_failure = None
        latest = self.registry.get_transform(object_name)
        if latest is not None and latest.style != preset.id:
            logger.info(f"Discarding {preset.id} result for '{object_name}', style changed to {latest.style}")
            return None

        bbox = latest.bbox if latest else (obj.bbox if obj else current.bbox)
        transform = OverlayTransform(object_name=object_name, image=image, bbox=bbox,
                                     fidelity=Fidelity.HIGH_DEF, style=preset.id)
        self.registry.put_transform(transform)
        logger.info(f"High-fidelity {preset.id} transform for '{object_name}' via {result.model}")
        return transform
