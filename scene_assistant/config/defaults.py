"""Default configuration values."""

from typing import Any, Dict

DEFAULT_CONFIG: Dict[str, Any] = {
    # Camera settings
    "camera_index": 0,
    "camera_width": 1280,
    "camera_height": 720,
    "camera_fps": 30,
    "jpeg_quality": 80,

    # Provider settings
    "gemini_api_key": "",
    "gemini_temperature": 0.7,

    # Candidate models per capability, tried in order
    "detection_models": ["gemini-3-flash-preview", "gemini-2.5-flash"],
    "suggestion_models": ["gemini-3-flash-preview", "gemini-2.5-flash", "gemini-2.0-flash"],
    "chat_models": ["gemini-2.0-flash", "gemini-2.0-flash-lite", "gemini-flash-latest", "gemini-pro-latest"],
    "image_models": [
        "nano-banana-pro-preview",
        "gemini-3-pro-image-preview",
        "gemini-2.0-flash-exp-image-generation",
    ],
    "imagen_models": ["imagen-3.0-generate-001", "imagen-3.0-fast-generate-001"],

    # Per-call timeouts (seconds)
    "detection_timeout": 8.0,
    "chat_timeout": 9.0,
    "suggestion_timeout": 9.0,
    "image_timeout": 60.0,

    # Backoff before advancing to the next candidate (seconds)
    "detection_backoff": 0.5,
    "chat_backoff": 0.5,
    "suggestion_backoff": 0.5,
    "image_backoff": 0.3,

    # A provider retry delay above this is treated as a plain failure (seconds)
    "retry_delay_ceiling": 40,

    # Assistant behaviour
    "auto_scan_interval": 6.0,
    "chat_context_turns": 12,
    "overlay_opacity": 0.85,
    "default_style": "zen",

    # Speech settings
    "speech_language": "en-US",
    "voice_enabled": True,
    "speech_max_chars": 250,

    # Debug and Logging Settings
    "log_level": "INFO",
    "log_file": "",
    "structured_logging": False,
}
