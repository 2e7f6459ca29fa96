"""Services package for capture, model orchestration and assistant flows."""

from .model_orchestrator import CandidateChain, InvocationResult, ModelInvoker, QuotaAwareClassifier
from .gemini_service import GeminiService
from .webcam_service import WebcamService, StaticFrameSource
from .overlay_registry import OverlayRegistry
from .detection_service import DetectionLoop
from .transform_service import TransformPipeline, ImageCapability, STYLE_PRESETS
from .chat_service import ConversationOrchestrator, mentions_purchasable_items
from .speech_service import SpeechIO

__all__ = [
    "CandidateChain", "InvocationResult", "ModelInvoker", "QuotaAwareClassifier",
    "GeminiService", "WebcamService", "StaticFrameSource", "OverlayRegistry",
    "DetectionLoop", "TransformPipeline", "ImageCapability", "STYLE_PRESETS",
    "ConversationOrchestrator", "mentions_purchasable_items", "SpeechIO",
]
