"""Detection and tracking loop.

Captures a still, asks the detection capability for objects and merges the
batch into the overlay registry. Runs on demand or on a fixed auto-scan
interval; at most one detection is ever in flight.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Set

from ..core.entities import ChatMessage, DetectionBatch, Role, SceneContext
from ..core.exceptions import InputCaptureError, ProviderError
from ..core.logging_config import FlowContext
from .gemini_service import GeminiService
from .model_orchestrator import CandidateChain, InvocationResult, ModelInvoker
from .overlay_registry import OverlayRegistry
from .webcam_service import FrameSource

logger = logging.getLogger(__name__)


class DetectionState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    AWAITING_RESULT = "awaitingResult"
    MERGING = "merging"
    FAILED = "failed"


def format_scan_summary(batch: DetectionBatch) -> str:
    names = ", ".join(obj.name for obj in batch.objects)
    mood = f" | Mood: {batch.mood}" if batch.mood else ""
    text = f"Scan Complete: found {len(batch.objects)} objects: {names}.{mood}"
    if batch.scene:
        text += f"\n\n{batch.scene}"
    return text + "\n\nSelect any object to transform it, or ask for product suggestions."


class DetectionLoop:
    """Detection state machine feeding the overlay registry and scene context."""

    def __init__(self, registry: OverlayRegistry, frame_source: FrameSource, gemini: GeminiService,
                 invoker: ModelInvoker, chain: CandidateChain, scene: SceneContext,
                 post_message: Optional[Callable[[ChatMessage], None]] = None):
        self.registry = registry
        self.frame_source = frame_source
        self.gemini = gemini
        self.invoker = invoker
        self.chain = chain
        self.scene = scene
        self._post_message = post_message

        self.state = DetectionState.IDLE
        self.last_result: Optional[InvocationResult] = None
        self.last_error: Optional[Exception] = None
        self._auto_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    @property
    def is_busy(self) -> bool:
        return self.state in (DetectionState.CAPTURING, DetectionState.AWAITING_RESULT, DetectionState.MERGING)

    @property
    def auto_scan_enabled(self) -> bool:
        return self._auto_task is not None and not self._auto_task.done()

    async def run_detection(self, manual: bool = True) -> Optional[DetectionBatch]:
        """Run one detection pass.

        Returns the merged batch, or None when the pass was skipped (busy) or
        failed. Provider failures are logged only and leave the previous
        objects intact.

        Raises:
            InputCaptureError: no frame was available (manual runs only)
        """
        if self.is_busy:
            logger.debug("Detection already in flight, skipping")
            return None

        self.state = DetectionState.CAPTURING
        try:
            image = self.frame_source.capture_jpeg()
        except InputCaptureError as e:
            self.state = DetectionState.IDLE
            if manual:
                raise
            logger.debug(f"Auto-scan tick without a frame: {e}")
            return None

        self.state = DetectionState.AWAITING_RESULT
        try:
            with FlowContext("detect"):
                result = await self.invoker.invoke(self.chain, self.gemini.detect, image)
        except ProviderError as e:
            self.state = DetectionState.FAILED
            self.last_error = e
            logger.warning(f"Detection failed, keeping previous objects: {e}")
            return None
        except BaseException:
            self.state = DetectionState.IDLE
            raise

        self.state = DetectionState.MERGING
        try:
            batch: DetectionBatch = result.output
            self.registry.merge_detection(batch.objects)
            self.scene.last_scene_description = batch.scene
            self.scene.lighting = batch.lighting
            if batch.mood:
                self.scene.mood = batch.mood
            if batch.color_palette:
                self.scene.color_palette = list(batch.color_palette)

            self.last_result = result
            self.last_error = None
            logger.info(f"Detected {len(batch.objects)} objects via {result.model}")

            if manual and self._post_message is not None:
                self._post_message(ChatMessage(role=Role.ASSISTANT, content=format_scan_summary(batch)))
        finally:
            self.state = DetectionState.IDLE
        return batch

    def _tick(self) -> None:
        if self.is_busy:
            logger.debug("Auto-scan tick dropped, detection busy")
            return
        task = asyncio.get_running_loop().create_task(self.run_detection(manual=False))
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def _auto_scan_loop(self, interval: float) -> None:
        while True:
            self._tick()
            await asyncio.sleep(interval)

    def start_auto_scan(self, interval: float) -> None:
        """Scan immediately, then every ``interval`` seconds until stopped."""
        if self.auto_scan_enabled:
            return
        logger.info(f"Auto-scan enabled every {interval}s")
        self._auto_task = asyncio.get_running_loop().create_task(self._auto_scan_loop(interval))

    def stop_auto_scan(self) -> None:
        if self._auto_task is not None:
            self._auto_task.cancel()
            self._auto_task = None
            logger.info("Auto-scan disabled")

    def shutdown(self) -> None:
        """Stop auto-scan and cancel any timer-started pass still in flight."""
        self.stop_auto_scan()
        for task in list(self._tick_tasks):
            task.cancel()
        self._tick_tasks.clear()
        self.state = DetectionState.IDLE
