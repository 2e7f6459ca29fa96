"""Configuration dataclass and loading utilities.

Provides a strongly-typed configuration object that is injected into the
session and services instead of a global module-level dictionary.

The Gemini API key is taken from the GEMINI_API_KEY (or GOOGLE_API_KEY)
environment variable when present; an environment-provided key is never
written back to disk.
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List
import json, os, logging
from .defaults import DEFAULT_CONFIG
from ..core.exceptions import ConfigError

API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")


def _default_list(key: str):
    return field(default_factory=lambda: list(DEFAULT_CONFIG[key]))


@dataclass(slots=True)
class Config:
    # Camera settings
    camera_index: int = DEFAULT_CONFIG["camera_index"]
    camera_width: int = DEFAULT_CONFIG["camera_width"]
    camera_height: int = DEFAULT_CONFIG["camera_height"]
    camera_fps: int = DEFAULT_CONFIG["camera_fps"]
    jpeg_quality: int = DEFAULT_CONFIG["jpeg_quality"]

    # Provider settings
    gemini_api_key: str = DEFAULT_CONFIG["gemini_api_key"]
    gemini_temperature: float = DEFAULT_CONFIG["gemini_temperature"]

    # Candidate models
    detection_models: List[str] = _default_list("detection_models")
    suggestion_models: List[str] = _default_list("suggestion_models")
    chat_models: List[str] = _default_list("chat_models")
    image_models: List[str] = _default_list("image_models")
    imagen_models: List[str] = _default_list("imagen_models")

    # Timeouts and backoff
    detection_timeout: float = DEFAULT_CONFIG["detection_timeout"]
    chat_timeout: float = DEFAULT_CONFIG["chat_timeout"]
    suggestion_timeout: float = DEFAULT_CONFIG["suggestion_timeout"]
    image_timeout: float = DEFAULT_CONFIG["image_timeout"]
    detection_backoff: float = DEFAULT_CONFIG["detection_backoff"]
    chat_backoff: float = DEFAULT_CONFIG["chat_backoff"]
    suggestion_backoff: float = DEFAULT_CONFIG["suggestion_backoff"]
    image_backoff: float = DEFAULT_CONFIG["image_backoff"]
    retry_delay_ceiling: int = DEFAULT_CONFIG["retry_delay_ceiling"]

    # Assistant behaviour
    auto_scan_interval: float = DEFAULT_CONFIG["auto_scan_interval"]
    chat_context_turns: int = DEFAULT_CONFIG["chat_context_turns"]
    overlay_opacity: float = DEFAULT_CONFIG["overlay_opacity"]
    default_style: str = DEFAULT_CONFIG["default_style"]

    # Speech settings
    speech_language: str = DEFAULT_CONFIG["speech_language"]
    voice_enabled: bool = DEFAULT_CONFIG["voice_enabled"]
    speech_max_chars: int = DEFAULT_CONFIG["speech_max_chars"]

    # Logging
    log_level: str = DEFAULT_CONFIG["log_level"]
    log_file: str = DEFAULT_CONFIG["log_file"]
    structured_logging: bool = DEFAULT_CONFIG["structured_logging"]

    # Security flags
    _has_env_api_key: bool = False

    # Arbitrary extra values retained for forward compatibility
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        # merge extra keys at top-level for saving
        extra = d.pop("extra", {})
        d.pop("_has_env_api_key", None)
        d.update(extra)
        return d

    def timeout_for(self, capability: str) -> float:
        return float(getattr(self, f"{capability}_timeout"))

    def backoff_for(self, capability: str) -> float:
        return float(getattr(self, f"{capability}_backoff"))

    def validate(self) -> None:
        """Raise ConfigError for values the runtime cannot work with."""
        for key in ("detection_models", "suggestion_models", "chat_models", "image_models"):
            models = getattr(self, key)
            if not isinstance(models, list) or not models or not all(isinstance(m, str) and m for m in models):
                raise ConfigError(f"'{key}' must be a non-empty list of model names")
        for cap in ("detection", "chat", "suggestion", "image"):
            if self.timeout_for(cap) <= 0:
                raise ConfigError(f"'{cap}_timeout' must be positive")
            if self.backoff_for(cap) < 0:
                raise ConfigError(f"'{cap}_backoff' must not be negative")
        if self.retry_delay_ceiling < 0:
            raise ConfigError("'retry_delay_ceiling' must not be negative")
        if not 0.0 < self.overlay_opacity < 1.0:
            raise ConfigError("'overlay_opacity' must be between 0 and 1 (exclusive)")
        if self.auto_scan_interval <= 0:
            raise ConfigError("'auto_scan_interval' must be positive")
        if self.chat_context_turns < 1:
            raise ConfigError("'chat_context_turns' must be at least 1")
        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigError("'jpeg_quality' must be between 1 and 100")


def _api_key_from_environment() -> str:
    for var in API_KEY_ENV_VARS:
        value = os.environ.get(var, "").strip()
        if value:
            return value
    return ""


def load_config(path: str = "config.json") -> Config:
    """Load configuration from a JSON file, falling back to defaults on any problem.

    Args:
        path: Path to config.json file

    Returns:
        Config: Loaded and validated configuration
    """
    data: Dict[str, Any] = {}

    if os.path.isfile(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded_data = json.load(f)
            if loaded_data is None:
                logging.warning(f"Configuration file '{path}' is empty, using defaults")
            elif not isinstance(loaded_data, dict):
                logging.error(f"Configuration file '{path}' does not contain a valid JSON object, using defaults")
            else:
                data = loaded_data
                logging.info(f"Successfully loaded configuration from '{path}'")
        except json.JSONDecodeError as e:
            logging.error(f"Failed to parse JSON configuration file '{path}': {e}. Using defaults.")
        except PermissionError:
            logging.error(f"Permission denied reading configuration file '{path}'. Using defaults.")
        except OSError as e:
            logging.error(f"Error reading configuration file '{path}': {e}. Using defaults.")
    else:
        logging.info(f"Configuration file '{path}' does not exist. Using defaults.")

    merged = {**DEFAULT_CONFIG, **data}

    env_key = _api_key_from_environment()
    if env_key:
        merged["gemini_api_key"] = env_key

    known = {name for name in Config.__dataclass_fields__ if name not in ("extra", "_has_env_api_key")}
    extra = {k: v for k, v in merged.items() if k not in known}
    if extra:
        logging.info(f"Found extra configuration keys: {list(extra.keys())}")

    try:
        cfg = Config(**{k: merged[k] for k in known if k in merged}, extra=extra)
        cfg.validate()
    except (TypeError, ConfigError) as e:
        logging.error(f"Invalid configuration in '{path}': {e}. Falling back to pure defaults.")
        cfg = Config(gemini_api_key=env_key)

    cfg._has_env_api_key = bool(env_key)
    return cfg


def save_config(cfg: Config, path: str = "config.json") -> None:
    """Save configuration to a JSON file; environment-provided API keys are excluded."""
    config_dict = cfg.to_dict()

    if cfg._has_env_api_key:
        config_dict["gemini_api_key"] = ""
        logging.info("API key excluded from saved config (using environment variable)")

    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(config_dict, f, indent=2, ensure_ascii=False)
        logging.info(f"Configuration saved successfully to '{path}'")
    except PermissionError:
        logging.error(f"Permission denied writing configuration file '{path}'")
    except OSError as e:
        logging.error(f"OS error saving configuration file '{path}': {e}")
