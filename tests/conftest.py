"""Pytest configuration and shared fixtures for the live scene assistant.

Provides real configuration objects, synthetic frames, a static frame source
and fake provider adapters built from AsyncMock, so no test touches a camera
or the network.
"""
import json
import logging
import sys
import tempfile
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, Mock

import cv2
import numpy as np
import pytest

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from scene_assistant.config.settings import Config
from scene_assistant.core.entities import (
    ChatReply, DetectedObject, DetectionBatch, ObjectCategory, ProductSuggestion, SuggestionBatch,
)
from scene_assistant.services.gemini_service import GeminiService
from scene_assistant.services.model_orchestrator import ModelInvoker
from scene_assistant.services.webcam_service import StaticFrameSource
from scene_assistant.utils.image_utils import encode_jpeg


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)
logging.getLogger('PIL').setLevel(logging.WARNING)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays without waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def real_config():
    """Default configuration with an explicit (fake) API key."""
    return Config(gemini_api_key="test-api-key", voice_enabled=False)


@pytest.fixture
def config_file(temp_dir):
    """Write a small config.json and return its path."""
    path = temp_dir / "config.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"camera_index": 2, "chat_context_turns": 6, "custom_flag": True}, f)
    return path


@pytest.fixture
def sample_frame():
    """Deterministic 480x640 BGR frame with a gradient and a few colored blocks."""
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    frame[:, :, 0] = np.linspace(0, 255, 640, dtype=np.uint8)[None, :]
    frame[:, :, 1] = np.linspace(0, 255, 480, dtype=np.uint8)[:, None]
    frame[100:200, 100:300] = (30, 120, 200)
    frame[300:420, 350:600] = (180, 60, 90)
    return frame


@pytest.fixture
def sample_png_bytes(sample_frame):
    ok, buffer = cv2.imencode(".png", sample_frame[:64, :64])
    assert ok
    return buffer.tobytes()


@pytest.fixture
def frame_source(sample_frame):
    return StaticFrameSource(sample_frame)


@pytest.fixture
def sample_jpeg(sample_frame):
    return encode_jpeg(sample_frame, 80)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def invoker(sleep_recorder):
    """Model invoker whose waits are recorded instead of slept."""
    return ModelInvoker(retry_delay_ceiling=40, sleep=sleep_recorder)


def make_object(name: str, bbox=(0.1, 0.1, 0.4, 0.5), category=ObjectCategory.FURNITURE,
                description: str = "") -> DetectedObject:
    return DetectedObject(name=name, category=category, bbox=bbox, description=description)


def make_batch(*objects: DetectedObject, mood: str = "calm") -> DetectionBatch:
    return DetectionBatch(scene="A tidy study", lighting="warm", mood=mood,
                          color_palette=["#ffffff", "#333333", "#c0a080", "#406040"], objects=list(objects))


def make_suggestions(count: int = 2) -> SuggestionBatch:
    return SuggestionBatch(
        room_summary="A bright room that needs warmth.",
        mood="bright",
        color_palette=["#ffffff"],
        suggestions=[
            ProductSuggestion(id=i, name=f"Product {i}", estimated_price=f"${i * 10}", reason="Adds warmth",
                              shopping_query=f"product {i}")
            for i in range(1, count + 1)
        ],
    )


@pytest.fixture
def fake_gemini(sample_png_bytes):
    """GeminiService double whose capabilities are AsyncMocks."""
    gemini = Mock(spec=GeminiService)
    gemini.initialize.return_value = True
    gemini.is_configured.return_value = True
    gemini.detect = AsyncMock(return_value=make_batch(
        make_object("desk lamp", (0.1, 0.1, 0.3, 0.4), ObjectCategory.LIGHTING, "brass desk lamp"),
        make_object("rug", (0.2, 0.6, 0.9, 0.95), ObjectCategory.TEXTILES, "striped wool rug"),
    ))
    gemini.chat = AsyncMock(return_value=ChatReply(text="The lighting looks warm and even."))
    gemini.suggest = AsyncMock(return_value=make_suggestions())
    gemini.generate_image = AsyncMock(return_value=sample_png_bytes)
    return gemini
