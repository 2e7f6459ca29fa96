"""Core domain entities, exceptions and session state."""

from .entities import (
    DetectedObject, OverlayTransform, ChatMessage, ProductSuggestion, SceneContext,
    DetectionBatch, SuggestionBatch, ChatReply, GroundingSource, Notice,
    ObjectCategory, Fidelity, Role, Impact, PreviewState,
)
from .exceptions import (
    ApplicationError, ConfigError, ServiceError, AIServiceError, ProviderError,
    QuotaExhaustedError, RateLimitError, InputCaptureError, UnsupportedCapabilityError,
    WebcamError,
)

__all__ = [
    "DetectedObject", "OverlayTransform", "ChatMessage", "ProductSuggestion", "SceneContext",
    "DetectionBatch", "SuggestionBatch", "ChatReply", "GroundingSource", "Notice",
    "ObjectCategory", "Fidelity", "Role", "Impact", "PreviewState",
    "ApplicationError", "ConfigError", "ServiceError", "AIServiceError", "ProviderError",
    "QuotaExhaustedError", "RateLimitError", "InputCaptureError", "UnsupportedCapabilityError",
    "WebcamError",
]
