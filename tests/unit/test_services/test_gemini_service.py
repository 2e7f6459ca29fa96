"""Unit tests for the Gemini provider adapter.

Parsing helpers are tested directly; the service itself is tested against a
mocked google-genai client so no request leaves the process.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from scene_assistant.core.entities import ChatMessage, Impact, ObjectCategory, Role
from scene_assistant.core.exceptions import AIServiceError, ProviderError, RateLimitError
from scene_assistant.services.gemini_service import (
    ChatRequest, GeminiService, ImageRequest, SuggestionRequest, extract_grounding, extract_inline_image,
    parse_detection, parse_json_payload, parse_suggestions, strip_code_fences,
)


class FakeAPIError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


def grounded_response(text, chunks=(), queries=()):
    web_chunks = [SimpleNamespace(web=SimpleNamespace(uri=uri, title=title)) for uri, title in chunks]
    metadata = SimpleNamespace(grounding_chunks=web_chunks, web_search_queries=list(queries))
    return SimpleNamespace(text=text, candidates=[SimpleNamespace(grounding_metadata=metadata)])


def image_response(parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


class TestParsingHelpers:

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_parse_json_payload_accepts_fenced_json(self):
        assert parse_json_payload('```json\n{"objects": []}\n```') == {"objects": []}

    @pytest.mark.parametrize("text", [None, "", "   ", "not json", "[1, 2]"])
    def test_parse_json_payload_rejects_bad_output(self, text):
        with pytest.raises(ProviderError):
            parse_json_payload(text)

    def test_parse_detection_clamps_and_filters(self):
        batch = parse_detection({
            "scene": "A study",
            "mood": "calm focus",
            "color_palette": ["#1", "#2", "#3", "#4", "#5"],
            "objects": [
                {"name": "desk lamp", "bbox": [-0.1, 0.2, 0.3, 1.3], "category": "Lighting"},
                {"name": "rug", "bbox": [0.2, 0.6, 0.9, 0.95], "category": "carpet"},
                {"name": "", "bbox": [0.1, 0.1, 0.2, 0.2]},
                {"name": "ghost", "bbox": [0.5, 0.5, 0.5, 0.5]},
                "garbage",
            ],
        })

        assert [o.name for o in batch.objects] == ["desk lamp", "rug"]
        assert batch.objects[0].bbox == (0.0, 0.2, 0.3, 1.0)
        assert batch.objects[0].category is ObjectCategory.LIGHTING
        assert batch.objects[1].category is ObjectCategory.OTHER
        assert len(batch.color_palette) == 4

    def test_parse_detection_requires_objects(self):
        with pytest.raises(ProviderError):
            parse_detection({"scene": "empty"})

    def test_parse_suggestions_ignores_model_urls(self):
        batch = parse_suggestions({
            "room_summary": "Bright room",
            "suggestions": [
                {"name": "Philips Hue Go", "impact": "HIGH", "shopping_query": "Philips Hue Go portable",
                 "product_url": "https://evil.example/buy"},
                {"name": "Jute rug"},
                {"description": "nameless"},
            ],
        })

        assert [s.name for s in batch.suggestions] == ["Philips Hue Go", "Jute rug"]
        first, second = batch.suggestions
        assert first.impact is Impact.HIGH
        assert "evil.example" not in first.product_url
        assert first.product_url.endswith("q=Philips+Hue+Go+portable")
        assert second.id == 2
        assert second.shopping_query == "Jute rug"

    def test_extract_grounding_filters_empty_urls(self):
        response = grounded_response("x", chunks=[("https://a.example", "A"), ("", "blank")], queries=["lamps"])

        sources, queries = extract_grounding(response)

        assert [s.url for s in sources] == ["https://a.example"]
        assert queries == ["lamps"]

    def test_extract_inline_image_returns_bytes(self):
        response = image_response([SimpleNamespace(text="here", inline_data=None),
                                   SimpleNamespace(text=None, inline_data=SimpleNamespace(data=b"PNG"))])

        assert extract_inline_image(response) == b"PNG"

    def test_text_only_image_answer_is_failure(self):
        response = image_response([SimpleNamespace(text="I cannot draw that", inline_data=None)])

        with pytest.raises(ProviderError):
            extract_inline_image(response)


class TestGeminiService:

    @pytest.fixture
    def mock_client(self):
        with patch('scene_assistant.services.gemini_service.genai') as mock_genai:
            client = Mock()
            client.aio.models.generate_content = AsyncMock()
            client.aio.models.generate_images = AsyncMock()
            mock_genai.Client.return_value = client
            yield client

    @pytest.fixture
    def service(self, mock_client):
        service = GeminiService("test-key")
        assert service.initialize()
        return service

    def test_initialize_without_key_fails(self, mock_client):
        service = GeminiService("")

        assert service.initialize() is False
        assert service.is_configured() is False
        assert service.last_error == "API key is empty"

    @pytest.mark.asyncio
    async def test_unconfigured_call_raises(self, mock_client):
        with pytest.raises(AIServiceError):
            await GeminiService("").detect("gemini-2.5-flash", b"jpeg")

    @pytest.mark.asyncio
    async def test_detect_parses_response(self, service, mock_client):
        mock_client.aio.models.generate_content.return_value = SimpleNamespace(text=json.dumps({
            "scene": "Study", "objects": [{"name": "chair", "bbox": [0.1, 0.1, 0.5, 0.9]}],
        }))

        batch = await service.detect("gemini-2.5-flash", b"jpeg")

        assert batch.objects[0].name == "chair"
        assert mock_client.aio.models.generate_content.await_args.kwargs["model"] == "gemini-2.5-flash"

    @pytest.mark.asyncio
    async def test_quota_error_becomes_rate_limit_error(self, service, mock_client):
        mock_client.aio.models.generate_content.side_effect = FakeAPIError(
            429, "RESOURCE_EXHAUSTED. Please retry in 12.5s.")

        with patch('scene_assistant.services.gemini_service.errors', SimpleNamespace(APIError=FakeAPIError)):
            with pytest.raises(RateLimitError) as exc_info:
                await service.detect("gemini-2.5-flash", b"jpeg")

        assert exc_info.value.retry_after == 13

    @pytest.mark.asyncio
    async def test_suggest_attaches_grounding(self, service, mock_client):
        mock_client.aio.models.generate_content.return_value = grounded_response(
            json.dumps({"suggestions": [{"name": "Lamp"}]}), chunks=[("https://shop.example", "Shop")])

        batch = await service.suggest("gemini-2.5-flash", SuggestionRequest(b"jpeg", "cozy lighting"))

        assert batch.suggestions[0].name == "Lamp"
        assert batch.sources[0].url == "https://shop.example"

    @pytest.mark.asyncio
    async def test_chat_sends_history_with_model_role(self, service, mock_client):
        mock_client.aio.models.generate_content.return_value = grounded_response("Looks great.")
        history = [ChatMessage(Role.USER, "hi"), ChatMessage(Role.ASSISTANT, "hello")]

        reply = await service.chat("gemini-2.0-flash", ChatRequest(b"jpeg", "How is the light?", history, "sys"))

        assert reply.text == "Looks great."
        contents = mock_client.aio.models.generate_content.await_args.kwargs["contents"]
        assert [c.role for c in contents] == ["user", "model", "user"]

    @pytest.mark.asyncio
    async def test_empty_chat_answer_is_failure(self, service, mock_client):
        mock_client.aio.models.generate_content.return_value = grounded_response("   ")

        with pytest.raises(ProviderError):
            await service.chat("gemini-2.0-flash", ChatRequest(None, "hello"))

    @pytest.mark.asyncio
    async def test_imagen_models_use_generate_images(self, service, mock_client):
        image = SimpleNamespace(image_bytes=b"PNGDATA")
        mock_client.aio.models.generate_images.return_value = SimpleNamespace(
            generated_images=[SimpleNamespace(image=image)])

        data = await service.generate_image("imagen-3.0-generate-001", ImageRequest("a lamp", "zen"))

        assert data == b"PNGDATA"
        mock_client.aio.models.generate_content.assert_not_called()

    @pytest.mark.asyncio
    async def test_imagen_without_image_is_failure(self, service, mock_client):
        mock_client.aio.models.generate_images.return_value = SimpleNamespace(generated_images=[])

        with pytest.raises(ProviderError):
            await service.generate_image("imagen-3.0-fast-generate-001", ImageRequest("a lamp"))
