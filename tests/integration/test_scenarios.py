"""End-to-end session scenarios with a fake provider.

A session is driven the way the window drives it: scan, tap, restyle,
upgrade, ask. Provider calls are AsyncMocks; everything else is real.
"""
import asyncio
from unittest.mock import AsyncMock

import numpy as np
import pytest

from scene_assistant.core.entities import ChatReply, Fidelity, ObjectCategory, Role
from scene_assistant.core.session import AssistantSession
from scene_assistant.ui.overlay_renderer import OverlayState, SurfaceSync, render_overlay

from conftest import make_batch, make_object


@pytest.fixture
def session(real_config, frame_source, fake_gemini, invoker):
    session = AssistantSession(real_config, frame_source, fake_gemini, invoker=invoker)
    session.start()
    yield session
    session.close()


@pytest.mark.integration
class TestTransformScenarios:

    @pytest.mark.asyncio
    async def test_tap_and_restyle_then_rescan_moves_overlay(self, session, fake_gemini):
        await session.run_detection()

        surface = SurfaceSync(640, 480)
        picked = session.select_at(*surface.normalize_point(128, 120))
        assert picked.name == "desk lamp"

        session.apply_style("zen")

        transforms = session.registry.get_transforms()
        assert len(transforms) == 1
        assert transforms[0].fidelity is Fidelity.INSTANT
        assert transforms[0].style == "zen"
        fake_gemini.generate_image.assert_not_called()

        fake_gemini.detect = AsyncMock(return_value=make_batch(
            make_object("desk lamp", (0.5, 0.2, 0.7, 0.6), ObjectCategory.LIGHTING),
            make_object("rug", (0.2, 0.6, 0.9, 0.95), ObjectCategory.TEXTILES),
        ))
        await session.run_detection()

        transforms = session.registry.get_transforms()
        assert len(transforms) == 1
        assert transforms[0].bbox == (0.5, 0.2, 0.7, 0.6)

        state = OverlayState(objects=session.registry.get_objects(), transforms=transforms,
                             selected_name=session.registry.selected_name)
        frame = session.frame_source.get_current_frame()
        assert not np.array_equal(render_overlay(frame, state), frame)

    @pytest.mark.asyncio
    async def test_failed_upgrades_keep_instant_overlay_and_one_notice(self, session, fake_gemini):
        await session.run_detection()
        session.select_at(0.2, 0.2)
        instant = session.apply_style("zen")
        fake_gemini.generate_image = AsyncMock(side_effect=RuntimeError("503 UNAVAILABLE"))

        await session.upgrade_transform()
        await session.upgrade_transform()

        stored = session.registry.get_transform("desk lamp")
        assert stored.fidelity is Fidelity.INSTANT
        assert np.array_equal(stored.image, instant.image)
        transform_notices = [n for n in session.notices if n.flow == "transform"]
        assert len(transform_notices) == 1
        assert transform_notices[0].retry is not None
        assert not session.transforms.is_upgrading


@pytest.mark.integration
class TestConversationScenarios:

    @pytest.mark.asyncio
    async def test_double_submission_yields_one_turn(self, session, fake_gemini):
        release = asyncio.Event()

        async def slow_chat(model, request):
            await release.wait()
            return ChatReply("The desk lamp gives a warm pool of light.")

        fake_gemini.chat = AsyncMock(side_effect=slow_chat)

        first = asyncio.create_task(session.ask("How does the lamp look?"))
        await asyncio.sleep(0)
        await session.ask("How does the lamp look?")
        release.set()
        await first

        assert fake_gemini.chat.await_count == 1
        roles = [m.role for m in session.conversation.get_messages()]
        # Welcome, then exactly one exchange
        assert roles == [Role.ASSISTANT, Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_scan_then_shopping_question(self, session, fake_gemini):
        await session.run_detection()

        message = await session.ask("Can you recommend a rug for this room?")

        fake_gemini.chat.assert_not_called()
        assert len(message.suggestions) == 2
        assert session.status_text.startswith("2 PRODUCTS SUGGESTED")
        contents = [m.content for m in session.conversation.get_messages()]
        assert any(c.startswith("Scan Complete: found 2 objects") for c in contents)
