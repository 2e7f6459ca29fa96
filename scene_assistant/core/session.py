"""Assistant session: explicit owner of all per-session state.

A session wires the frame source, the provider adapter and the shared model
invoker into the detection loop, the transform pipeline and the
conversational orchestrator. ``start`` and ``close`` bound the lifetime of the
scene context, overlay registry, chat log and notices.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..config.settings import Config
from ..services.chat_service import LIGHTING_PROMPT, ConversationOrchestrator
from ..services.detection_service import DetectionLoop
from ..services.gemini_service import GeminiService
from ..services.model_orchestrator import CandidateChain, ModelInvoker
from ..services.overlay_registry import OverlayRegistry
from ..services.speech_service import SpeechIO
from ..services.transform_service import ImageCapability, TransformPipeline
from ..services.webcam_service import FrameSource
from .entities import ChatMessage, DetectedObject, DetectionBatch, Notice, OverlayTransform, SceneContext
from .exceptions import InputCaptureError, ProviderError, UnsupportedCapabilityError, WebcamError

logger = logging.getLogger(__name__)


def build_chains(config: Config) -> Dict[str, CandidateChain]:
    """One candidate chain per remote capability, from configuration."""
    return {
        "detection": CandidateChain("detection", tuple(config.detection_models),
                                    config.detection_timeout, config.detection_backoff),
        "suggestion": CandidateChain("suggestion", tuple(config.suggestion_models),
                                     config.suggestion_timeout, config.suggestion_backoff),
        "chat": CandidateChain("chat", tuple(config.chat_models), config.chat_timeout, config.chat_backoff),
        "image": CandidateChain("image", tuple(config.image_models) + tuple(config.imagen_models),
                                config.image_timeout, config.image_backoff),
    }


class AssistantSession:
    """Live scene assistant session."""

    def __init__(self, config: Config, frame_source: FrameSource, gemini: GeminiService,
                 speech: Optional[SpeechIO] = None, invoker: Optional[ModelInvoker] = None):
        self.config = config
        self.frame_source = frame_source
        self.gemini = gemini
        self.speech = speech
        self.invoker = invoker or ModelInvoker(retry_delay_ceiling=config.retry_delay_ceiling)
        self.chains = build_chains(config)

        self.scene = SceneContext()
        self.registry = OverlayRegistry()
        self.images = ImageCapability(gemini, self.invoker, self.chains["image"])
        self.conversation = ConversationOrchestrator(
            frame_source, self.registry, self.scene, gemini, self.invoker,
            self.chains["chat"], self.chains["suggestion"], self.images,
            context_turns=config.chat_context_turns,
            notify=self.post_notice,
            speech=speech,
            voice_enabled=config.voice_enabled,
            speech_language=config.speech_language,
        )
        self.detection = DetectionLoop(
            self.registry, frame_source, gemini, self.invoker, self.chains["detection"], self.scene,
            post_message=self.conversation.post_message,
        )
        self.transforms = TransformPipeline(self.registry, frame_source.get_current_frame, self.images, self.scene)

        self.active_style = config.default_style
        self._notices: Dict[str, Notice] = {}
        self.started = False

    # -- lifecycle --------------------------------------------------------------------

    def start(self) -> None:
        """Open the frame source, connect the provider and greet the user."""
        if self.started:
            return
        try:
            self.frame_source.start_stream()
        except WebcamError as e:
            logger.error(f"Camera unavailable: {e}")
            self.post_notice(Notice("error", f"Camera unavailable: {e}", flow="camera"))

        if not self.gemini.initialize():
            self.post_notice(Notice("error", "Gemini is not configured. Set GEMINI_API_KEY and restart.",
                                    flow="provider"))

        self.conversation.post_welcome()
        self.started = True
        logger.info("Assistant session started")

    def close(self) -> None:
        """End the session: stop scanning, drop all state and release the camera."""
        self.detection.shutdown()
        self.conversation.clear()
        self.registry.clear()
        self.scene.reset()
        self._notices.clear()
        self.frame_source.stop_stream()
        self.started = False
        logger.info("Assistant session closed")

    # -- notices ------------------------------------------------------------------------

    def post_notice(self, notice: Notice) -> None:
        """Show a notice; it replaces any earlier notice from the same flow."""
        self._notices[notice.flow] = notice
        logger.debug(f"Notice [{notice.flow}] {notice.kind}: {notice.message}")

    def dismiss_notice(self, flow: str) -> None:
        self._notices.pop(flow, None)

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices.values())

    async def retry_notice(self, flow: str):
        """Replay the exact action behind a notice's retry affordance."""
        notice = self._notices.pop(flow, None)
        if notice is None or notice.retry is None:
            return None
        return await notice.retry()

    @property
    def status_text(self) -> str:
        status = self.conversation.status
        if self.conversation.processing_time is not None:
            status += f" | {self.conversation.processing_time:.1f}s"
        return status

    @property
    def camera_text(self) -> str:
        width, height = self.frame_source.get_resolution()
        if not width or not height:
            return "NO SIGNAL"
        fps = self.frame_source.get_fps()
        return f"{width}x{height} @ {fps:.0f} FPS" if fps > 0 else f"{width}x{height} STILL"

    # -- detection ------------------------------------------------------------------------

    async def run_detection(self) -> Optional[DetectionBatch]:
        try:
            return await self.detection.run_detection(manual=True)
        except InputCaptureError as e:
            self.post_notice(Notice("error", str(e), flow="detect"))
            return None

    def set_auto_scan(self, enabled: bool) -> None:
        if enabled:
            self.detection.start_auto_scan(self.config.auto_scan_interval)
        else:
            self.detection.stop_auto_scan()

    def select_at(self, x: float, y: float) -> Optional[DetectedObject]:
        return self.registry.select_at(x, y)

    # -- transforms ---------------------------------------------------------------------

    def _target(self, object_name: Optional[str]) -> Optional[str]:
        return object_name or self.registry.selected_name

    def apply_style(self, style: Optional[str] = None, object_name: Optional[str] = None) -> Optional[OverlayTransform]:
        """Instant-tier transform of the given (or selected) object."""
        style = style or self.active_style
        name = self._target(object_name)
        if name is None:
            self.post_notice(Notice("status", "Select an object first.", flow="transform"))
            return None
        self.active_style = style
        try:
            transform = self.transforms.apply_instant(name, style)
        except (ValueError, InputCaptureError) as e:
            self.post_notice(Notice("error", str(e), flow="transform"))
            return None
        self.dismiss_notice("transform")
        return transform

    async def upgrade_transform(self, object_name: Optional[str] = None,
                                style: Optional[str] = None) -> Optional[OverlayTransform]:
        """High-fidelity upgrade; on failure the instant overlay stays and a retry notice is shown."""
        style = style or self.active_style
        name = self._target(object_name)
        if name is None:
            self.post_notice(Notice("status", "Select an object first.", flow="transform"))
            return None
        try:
            transform = await self.transforms.upgrade_high_def(name, style)
        except ValueError as e:
            self.post_notice(Notice("error", str(e), flow="transform"))
            return None
        except ProviderError:
            failure = self.transforms.last_failure
            self.post_notice(Notice(
                "error", failure.message, flow="transform",
                retry=lambda: self.upgrade_transform(failure.object_name, failure.style),
            ))
            return None
        if transform is not None:
            self.dismiss_notice("transform")
        return transform

    def clear_transforms(self) -> None:
        self.registry.clear_transforms()

    # -- conversation -------------------------------------------------------------------

    async def ask(self, utterance: str) -> Optional[ChatMessage]:
        return await self.conversation.ask(utterance, self.active_style)

    async def analyze_lighting(self) -> Optional[ChatMessage]:
        return await self.ask(LIGHTING_PROMPT)

    async def suggest(self, context: Optional[str] = None) -> Optional[ChatMessage]:
        return await self.conversation.fetch_suggestions(context)

    async def fetch_preview(self, suggestion_id: int):
        return await self.conversation.fetch_preview(suggestion_id)

    async def listen_and_ask(self) -> Optional[ChatMessage]:
        """Transcribe one spoken utterance and ask it; degrades to text-only input."""
        if self.speech is None:
            self.post_notice(Notice("status", "Voice input is not available, please type.", flow="speech"))
            return None
        try:
            text = await self.speech.listen(self.config.speech_language)
        except UnsupportedCapabilityError as e:
            logger.info(f"Voice input unavailable: {e}")
            self.post_notice(Notice("status", "Voice input is not available, please type.", flow="speech"))
            return None
        if not text:
            return None
        return await self.ask(text)
