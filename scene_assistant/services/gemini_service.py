"""Gemini provider adapter for detection, suggestion, chat and image generation.

Every public coroutine takes the candidate model id as its first argument so
it can be handed straight to ``ModelInvoker.invoke``; the invoker decides which
model is tried and when. This module only knows how to talk to one model and
how to turn its answer into domain entities.

Bounding boxes, shopping links and image payloads are never trusted as-is:
boxes are clamped to [0,1], model-provided URLs are dropped, and a text-only
answer to an image request is a failure rather than a degraded success.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import errors, types

from ..core.entities import (
    ChatMessage, ChatReply, DetectedObject, DetectionBatch, GroundingSource,
    Impact, ObjectCategory, ProductSuggestion, Role, SuggestionBatch,
)
from ..core.exceptions import AIServiceError, ProviderError, RateLimitError
from ..utils.geometry import clamp_bbox
from .model_orchestrator import parse_retry_delay

logger = logging.getLogger(__name__)

JPEG_MIME = "image/jpeg"

DETECT_PROMPT = """TASK: Detect every distinct object or piece of furniture visible in this room image for a live AR overlay.

OUTPUT REQUIREMENTS: Return ONLY valid JSON:
{
  "scene": "one sentence describing the space",
  "lighting": "short lighting condition",
  "mood": "2-3 word mood of the space",
  "color_palette": ["#hex1", "#hex2", "#hex3", "#hex4"],
  "objects": [
    {"name": "object name", "bbox": [x1, y1, x2, y2],
     "description": "color, material, condition, style",
     "category": "furniture|lighting|decor|electronics|storage|textiles|plants|tech|other"}
  ]
}

RULES:
- bbox values are floats normalized to 0.0-1.0, top-left then bottom-right, x1 < x2 and y1 < y2
- include 2 to 12 distinct items; walls, floor and ceiling are not objects
- color_palette holds the 4 dominant room colors"""

SUGGEST_PROMPT = """TASK: Recommend real, currently purchasable products that would most improve the room in this image.

CONTEXT: Use Google Search to confirm each product exists and has a current price. Reference what is visible in the image when explaining each pick. Do not include any URLs.

OUTPUT REQUIREMENTS: Return ONLY valid JSON:
{
  "room_summary": "2-3 sentences on the room and its biggest opportunities",
  "mood": "mood of the space",
  "color_palette": ["#hex1", "#hex2", "#hex3", "#hex4"],
  "suggestions": [
    {"id": 1, "name": "full product name", "brand": "brand",
     "category": "lighting|furniture|decor|storage|textiles|plants|tech",
     "description": "specs from the listing", "reason": "why it fits this room",
     "placement": "where to put it", "estimated_price": "current price or range",
     "impact": "high|medium|low",
     "shopping_query": "brand + exact model + key feature",
     "style_tags": ["tag1", "tag2"]}
  ]
}

QUALITY: 4-6 products ordered by impact, mixed price ranges, each shopping_query identifying one specific product."""

IMAGE_PROMPT_TEMPLATE = """Generate a photorealistic product image: {style}{prompt}.
The image should have a clean, transparent or neutral background suitable for overlaying on room photos.
Focus on high detail, realistic textures, and professional product photography style.
The lighting should be soft and natural, matching typical indoor room lighting."""

_CODE_FENCE = re.compile(r"```(?:json)?\s*")


@dataclass(slots=True)
class ChatRequest:
    image: Optional[bytes]
    prompt: str
    history: List[ChatMessage] = field(default_factory=list)
    system_instruction: str = ""


@dataclass(slots=True)
class SuggestionRequest:
    image: bytes
    context: Optional[str] = None


@dataclass(slots=True)
class ImageRequest:
    prompt: str
    style: Optional[str] = None


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).strip()


def parse_json_payload(text: Optional[str]) -> Dict[str, Any]:
    """Parse a JSON object from model text, tolerating markdown code fences."""
    if not text or not text.strip():
        raise ProviderError("No response text received from model")
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise ProviderError(f"Model did not return valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderError("Model returned JSON that is not an object")
    return data


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def parse_detection(data: Dict[str, Any]) -> DetectionBatch:
    """Build a DetectionBatch, clamping every box and dropping unusable objects."""
    raw_objects = data.get("objects")
    if not isinstance(raw_objects, list):
        raise ProviderError("Detection response is missing the objects array")

    objects: List[DetectedObject] = []
    for raw in raw_objects:
        if not isinstance(raw, dict):
            continue
        name = str(raw.get("name") or "").strip()
        bbox = clamp_bbox(raw.get("bbox"))
        if not name or bbox is None:
            logger.debug(f"Dropping unusable detection entry: {raw!r}")
            continue
        objects.append(DetectedObject(
            name=name,
            category=ObjectCategory.parse(raw.get("category")),
            bbox=bbox,
            description=str(raw.get("description") or ""),
        ))

    return DetectionBatch(
        scene=str(data.get("scene") or ""),
        lighting=str(data.get("lighting") or ""),
        mood=str(data.get("mood") or ""),
        color_palette=_string_list(data.get("color_palette"))[:4],
        objects=objects,
    )


def parse_suggestions(data: Dict[str, Any]) -> SuggestionBatch:
    """Build a SuggestionBatch; any model-provided product or image URL is ignored."""
    raw_suggestions = data.get("suggestions")
    if not isinstance(raw_suggestions, list):
        raise ProviderError("Invalid response structure, missing suggestions array")

    suggestions: List[ProductSuggestion] = []
    for idx, raw in enumerate(raw_suggestions):
        if not isinstance(raw, dict) or not raw.get("name"):
            continue
        try:
            suggestion_id = int(raw.get("id") or idx + 1)
        except (TypeError, ValueError):
            suggestion_id = idx + 1
        suggestions.append(ProductSuggestion(
            id=suggestion_id,
            name=str(raw["name"]),
            category=str(raw.get("category") or "other"),
            description=str(raw.get("description") or ""),
            reason=str(raw.get("reason") or ""),
            placement=str(raw.get("placement") or ""),
            estimated_price=str(raw.get("estimated_price") or ""),
            impact=Impact.parse(raw.get("impact")),
            shopping_query=str(raw.get("shopping_query") or raw["name"]),
            style_tags=_string_list(raw.get("style_tags")),
            brand=str(raw.get("brand") or ""),
        ))

    return SuggestionBatch(
        room_summary=str(data.get("room_summary") or ""),
        mood=str(data.get("mood") or ""),
        color_palette=_string_list(data.get("color_palette"))[:4],
        suggestions=suggestions,
    )


def extract_grounding(response: Any) -> tuple:
    """Return (sources, search_queries) from the first candidate's grounding metadata."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return [], []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    if metadata is None:
        return [], []

    sources: List[GroundingSource] = []
    for chunk in getattr(metadata, "grounding_chunks", None) or []:
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None) if web is not None else None
        if uri:
            sources.append(GroundingSource(url=uri, title=getattr(web, "title", None) or ""))
    queries = [q for q in (getattr(metadata, "web_search_queries", None) or []) if q]
    return sources, queries


def extract_inline_image(response: Any) -> bytes:
    """Return the first inline image in a generate_content response.

    Raises:
        ProviderError: the model answered with text only, or with nothing
    """
    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None
    parts = getattr(content, "parts", None) or []
    if not parts:
        raise ProviderError("No response parts received")

    for part in parts:
        inline = getattr(part, "inline_data", None)
        if inline is not None and getattr(inline, "data", None):
            return inline.data

    text = next((p.text for p in parts if getattr(p, "text", None)), None)
    if text:
        logger.warning(f"Model returned text instead of image: {text[:120]}")
        raise ProviderError("Model returned text instead of image")
    raise ProviderError("No image or text in response")


class GeminiService:
    """Service for calling Google Gemini models through the google-genai async client."""

    def __init__(self, api_key: str, temperature: float = 0.7):
        self.api_key = api_key
        self.temperature = temperature
        self._client: Optional[genai.Client] = None
        self._initialized = False
        self._last_error: Optional[str] = None

    def initialize(self) -> bool:
        """Create the google-genai client.

        Returns:
            True if initialized successfully, False otherwise
        """
        if not self.api_key or not self.api_key.strip():
            self._last_error = "API key is empty"
            logger.error(self._last_error)
            return False
        try:
            self._client = genai.Client(api_key=self.api_key)
        except Exception as e:
            self._last_error = str(e)
            logger.error(f"Error initializing Gemini service: {e}")
            return False
        self._initialized = True
        self._last_error = None
        logger.info("Gemini service initialized")
        return True

    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def _require_client(self) -> genai.Client:
        if not self._initialized and not self.initialize():
            raise AIServiceError(f"Gemini service not configured: {self._last_error}")
        return self._client

    async def _generate(self, model: str, contents: Any, config: types.GenerateContentConfig) -> Any:
        client = self._require_client()
        try:
            return await client.aio.models.generate_content(model=model, contents=contents, config=config)
        except errors.APIError as e:
            if e.code == 429:
                raise RateLimitError(str(e), retry_after=parse_retry_delay(str(e))) from e
            raise

    async def detect(self, model: str, image: bytes) -> DetectionBatch:
        """Detect objects in an encoded still image."""
        response = await self._generate(
            model,
            [DETECT_PROMPT, types.Part.from_bytes(data=image, mime_type=JPEG_MIME)],
            types.GenerateContentConfig(response_mime_type="application/json", temperature=0.2),
        )
        return parse_detection(parse_json_payload(response.text))

    async def suggest(self, model: str, request: SuggestionRequest) -> SuggestionBatch:
        """Ask for shoppable product suggestions, grounded with Google Search."""
        prompt = SUGGEST_PROMPT
        if request.context:
            prompt += f'\n\nUser\'s specific request: "{request.context}". Prioritize suggestions that align with this.'

        response = await self._generate(
            model,
            [prompt, types.Part.from_bytes(data=request.image, mime_type=JPEG_MIME)],
            types.GenerateContentConfig(
                temperature=self.temperature,
                tools=[types.Tool(google_search=types.GoogleSearch())],
            ),
        )
        batch = parse_suggestions(parse_json_payload(response.text))
        batch.sources, batch.search_queries = extract_grounding(response)
        return batch

    async def chat(self, model: str, request: ChatRequest) -> ChatReply:
        """Free-form answer about the current frame, with rolling history."""
        contents: List[types.Content] = []
        for message in request.history:
            role = "user" if message.role is Role.USER else "model"
            contents.append(types.Content(role=role, parts=[types.Part.from_text(text=message.content)]))

        parts = [types.Part.from_text(text=request.prompt)]
        if request.image is not None:
            parts.append(types.Part.from_bytes(data=request.image, mime_type=JPEG_MIME))
        contents.append(types.Content(role="user", parts=parts))

        response = await self._generate(
            model,
            contents,
            types.GenerateContentConfig(
                system_instruction=request.system_instruction or None,
                temperature=self.temperature,
                response_mime_type="text/plain",
            ),
        )
        text = (response.text or "").strip()
        if not text:
            raise ProviderError("Empty chat response")
        sources, _ = extract_grounding(response)
        return ChatReply(text=text, sources=sources)

    async def generate_image(self, model: str, request: ImageRequest) -> bytes:
        """Generate an encoded image; Imagen models use the separate generate_images API."""
        style = f"Style: {request.style}. " if request.style else ""
        full_prompt = IMAGE_PROMPT_TEMPLATE.format(style=style, prompt=request.prompt)

        if model.startswith("imagen-"):
            client = self._require_client()
            try:
                result = await client.aio.models.generate_images(
                    model=model,
                    prompt=full_prompt,
                    config=types.GenerateImagesConfig(number_of_images=1),
                )
            except errors.APIError as e:
                if e.code == 429:
                    raise RateLimitError(str(e), retry_after=parse_retry_delay(str(e))) from e
                raise
            generated = (getattr(result, "generated_images", None) or [None])[0]
            image = getattr(generated, "image", None)
            if image is None or not getattr(image, "image_bytes", None):
                raise ProviderError("Imagen returned no image data")
            return image.image_bytes

        response = await self._generate(
            model,
            full_prompt,
            types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
        )
        return extract_inline_image(response)
