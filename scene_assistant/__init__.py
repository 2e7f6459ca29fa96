"""
Live Scene Assistant: camera-driven room detection, style overlays and chat.
"""

__version__ = "1.0.0"

from .config.settings import Config, load_config, save_config
from .core.entities import DetectedObject, OverlayTransform, ChatMessage, ProductSuggestion, SceneContext

__all__ = [
    "Config", "load_config", "save_config",
    "DetectedObject", "OverlayTransform", "ChatMessage", "ProductSuggestion", "SceneContext",
]
