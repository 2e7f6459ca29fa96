"""Entry point for the Live Scene Assistant."""

import argparse
import asyncio
import logging
import sys
import tkinter as tk

from .config.settings import load_config
from .core.logging_config import setup_logging
from .core.session import AssistantSession
from .services.gemini_service import GeminiService
from .services.speech_service import SpeechIO, create_platform_synthesizer
from .services.webcam_service import StaticFrameSource, WebcamService
from .ui.main_window import MainWindow

logger = logging.getLogger(__name__)


def build_session(config, image_path=None) -> AssistantSession:
    if image_path:
        frame_source = StaticFrameSource.from_file(image_path, config.jpeg_quality)
    else:
        frame_source = WebcamService(config.camera_index, config.camera_width, config.camera_height,
                                     config.camera_fps, config.jpeg_quality)
    gemini = GeminiService(config.gemini_api_key, config.gemini_temperature)
    synthesizer = create_platform_synthesizer() if config.voice_enabled else None
    speech = SpeechIO(language=config.speech_language, synthesizer=synthesizer,
                      max_chars=config.speech_max_chars)
    return AssistantSession(config, frame_source, gemini, speech=speech)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Live Scene Assistant")
    parser.add_argument("--config", default="config.json", help="Path to config.json")
    parser.add_argument("--image", help="Use a still image instead of the camera")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.log_level, config.log_file or None, structured=config.structured_logging)

    try:
        session = build_session(config, args.image)
        root = tk.Tk()
        window = MainWindow(root, session, fps=config.camera_fps)
        asyncio.run(window.run())
    except Exception as e:
        logger.error(f"Failed to start application: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
