"""Unit tests for the two-tier transform pipeline."""
from unittest.mock import AsyncMock

import numpy as np
import pytest

from scene_assistant.core.entities import Fidelity, SceneContext
from scene_assistant.core.exceptions import InputCaptureError, ProviderError, QuotaExhaustedError
from scene_assistant.services.model_orchestrator import CandidateChain
from scene_assistant.services.overlay_registry import OverlayRegistry
from scene_assistant.services.transform_service import (
    STYLE_PRESETS, ImageCapability, TransformPipeline, apply_style_filter, describe_image_failure, get_preset,
)

from conftest import make_object


@pytest.fixture
def registry():
    registry = OverlayRegistry()
    registry.merge_detection([make_object("desk lamp", (0.1, 0.1, 0.3, 0.4), description="brass desk lamp")])
    return registry


@pytest.fixture
def scene():
    return SceneContext(mood="calm focus", color_palette=["#ffffff", "#c0a080"])


@pytest.fixture
def images(fake_gemini, invoker):
    chain = CandidateChain("image", ("gemini-image", "imagen-3.0-generate-001"), 60.0, 0.3)
    return ImageCapability(fake_gemini, invoker, chain)


@pytest.fixture
def pipeline(registry, frame_source, images, scene):
    return TransformPipeline(registry, frame_source.get_current_frame, images, scene)


class TestStyleFilter:

    def test_all_presets_registered(self):
        assert set(STYLE_PRESETS) == {"zen", "cyberpunk", "professional", "fantasy", "minimalist", "cozy"}

    def test_unknown_style_rejected(self):
        with pytest.raises(ValueError):
            get_preset("baroque")

    @pytest.mark.parametrize("style", sorted(STYLE_PRESETS))
    def test_filter_is_deterministic(self, sample_frame, style):
        region = sample_frame[100:220, 80:320]
        preset = STYLE_PRESETS[style]

        first = apply_style_filter(region, preset)
        second = apply_style_filter(region.copy(), preset)

        assert first.shape == region.shape
        assert first.dtype == np.uint8
        assert np.array_equal(first, second)

    def test_presets_produce_distinct_looks(self, sample_frame):
        region = sample_frame[100:220, 80:320]

        zen = apply_style_filter(region, STYLE_PRESETS["zen"])
        cyber = apply_style_filter(region, STYLE_PRESETS["cyberpunk"])

        assert not np.array_equal(zen, cyber)


class TestInstantTier:

    def test_creates_single_instant_transform(self, pipeline, registry):
        transform = pipeline.apply_instant("desk lamp", "zen")

        stored = registry.get_transforms()
        assert len(stored) == 1
        assert stored[0].object_name == "desk lamp"
        assert stored[0].fidelity is Fidelity.INSTANT
        assert stored[0].style == "zen"
        assert transform.image.shape == (144, 128, 3)

    def test_reapplying_replaces_transform(self, pipeline, registry):
        pipeline.apply_instant("desk lamp", "zen")
        pipeline.apply_instant("desk lamp", "cozy")

        assert [t.style for t in registry.get_transforms()] == ["cozy"]

    def test_makes_no_remote_call(self, pipeline, fake_gemini):
        pipeline.apply_instant("desk lamp", "cyberpunk")

        fake_gemini.generate_image.assert_not_called()

    def test_unknown_object_rejected(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.apply_instant("sofa", "zen")

    def test_no_frame_aborts_without_state_change(self, registry, images, scene):
        pipeline = TransformPipeline(registry, lambda: None, images, scene)

        with pytest.raises(InputCaptureError):
            pipeline.apply_instant("desk lamp", "zen")

        assert registry.get_transforms() == []


class TestHighFidelityTier:

    def test_prompt_carries_object_style_and_scene(self, pipeline):
        prompt = pipeline.build_prompt("desk lamp", "brass desk lamp", STYLE_PRESETS["zen"])

        assert "desk lamp" in prompt
        assert "brass desk lamp" in prompt
        assert "zen" in prompt
        assert "calm focus" in prompt
        assert "#c0a080" in prompt

    @pytest.mark.asyncio
    async def test_success_replaces_instant_with_high_def(self, pipeline, registry):
        pipeline.apply_instant("desk lamp", "zen")

        result = await pipeline.upgrade_high_def("desk lamp", "zen")

        stored = registry.get_transforms()
        assert len(stored) == 1
        assert stored[0].fidelity is Fidelity.HIGH_DEF
        assert result.image.shape == (64, 64, 3)
        assert pipeline.last_failure is None

    @pytest.mark.asyncio
    async def test_failure_keeps_instant_overlay(self, pipeline, registry, fake_gemini):
        fake_gemini.generate_image = AsyncMock(side_effect=RuntimeError("503 UNAVAILABLE"))
        instant = pipeline.apply_instant("desk lamp", "zen")

        with pytest.raises(ProviderError):
            await pipeline.upgrade_high_def("desk lamp", "zen")

        stored = registry.get_transform("desk lamp")
        assert stored.fidelity is Fidelity.INSTANT
        assert np.array_equal(stored.image, instant.image)
        assert pipeline.last_failure.object_name == "desk lamp"
        assert pipeline.last_failure.style == "zen"
        assert "overloaded" in pipeline.last_failure.message
        assert pipeline.is_upgrading is False

    @pytest.mark.asyncio
    async def test_superseded_style_result_is_ignored(self, pipeline, registry, fake_gemini, sample_png_bytes):
        pipeline.apply_instant("desk lamp", "zen")

        async def switch_style_midflight(model, request):
            pipeline.apply_instant("desk lamp", "cozy")
            return sample_png_bytes

        fake_gemini.generate_image = AsyncMock(side_effect=switch_style_midflight)

        result = await pipeline.upgrade_high_def("desk lamp", "zen")

        assert result is None
        stored = registry.get_transform("desk lamp")
        assert stored.style == "cozy"
        assert stored.fidelity is Fidelity.INSTANT

    @pytest.mark.asyncio
    async def test_concurrent_upgrade_is_dropped(self, pipeline, fake_gemini, sample_png_bytes):
        nested = {}

        async def reenter(model, request):
            nested["result"] = await pipeline.upgrade_high_def("desk lamp", "zen")
            return sample_png_bytes

        fake_gemini.generate_image = AsyncMock(side_effect=reenter)

        await pipeline.upgrade_high_def("desk lamp", "zen")

        assert nested["result"] is None
        assert fake_gemini.generate_image.await_count == 1

    @pytest.mark.asyncio
    async def test_undecodable_image_is_failure(self, pipeline, fake_gemini):
        fake_gemini.generate_image = AsyncMock(return_value=b"not an image")

        with pytest.raises(ProviderError):
            await pipeline.upgrade_high_def("desk lamp", "zen")


class TestFailureMessages:

    def test_quota_message_mentions_wait(self):
        message = describe_image_failure(QuotaExhaustedError("all busy", retry_after=30))
        assert "~30 seconds" in message

    def test_generic_message(self):
        assert "unavailable" in describe_image_failure(ProviderError("boom", last_error=ValueError("x")))
