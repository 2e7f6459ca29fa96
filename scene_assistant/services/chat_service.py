"""Conversational orchestrator.

Turns utterances into chat or product-suggestion calls, owns the chat log and
the suggestion list, and escalates free-form answers that talk about
purchasable items into a background suggestion call.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from typing import Callable, Iterable, List, Optional, Set

from ..core.entities import (
    ChatMessage, DetectedObject, GroundingSource, Notice, PreviewState, ProductSuggestion, Role, SceneContext,
)
from ..core.exceptions import InputCaptureError, ProviderError, QuotaExhaustedError, UnsupportedCapabilityError
from ..core.logging_config import FlowContext
from .gemini_service import ChatRequest, GeminiService, SuggestionRequest
from .model_orchestrator import CandidateChain, ModelInvoker
from .overlay_registry import OverlayRegistry
from .speech_service import SpeechIO
from .transform_service import ImageCapability
from .webcam_service import FrameSource

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Welcome to the Live Scene Assistant. Point your camera at a room and run a scan to detect objects. "
    "Select an object to restyle it, ask me anything about the space, or ask for product suggestions."
)
DEFAULT_SUGGESTION_REQUEST = "What products would you suggest for this space?"
LIGHTING_PROMPT = "Analyze the lighting in this room. What works, what doesn't, and how could it be improved?"
RATE_LIMITED_STATUS = "All models are busy right now. Please try again in a moment."

INTENT_KEYWORDS = ("suggest", "recommend", "buy", "purchase", "product", "shop",
                   "what should i add", "what do i need")
_FIND_PRODUCTS = re.compile(r"\bfind\b.*\bproducts?\b")

_PURCHASE_WORDS = re.compile(
    r"\b(buy|buying|purchase|price[ds]?|pricing|cost[s]?|shop|shopping|store|retailer|amazon|ikea|wayfair|"
    r"product[s]?|brand[s]?|budget|affordable|on sale|available at|order online|recommend(?:ed|ing)?)\b",
    re.IGNORECASE,
)
_CURRENCY = re.compile(
    r"[$€£¥]\s?\d|\b\d+(?:[.,]\d{1,2})?\s?(?:usd|eur|gbp|dollars?|euros?|pounds?)\b",
    re.IGNORECASE,
)
_CAPITALIZED_BIGRAM = re.compile(r"\b([A-Z][a-z0-9]+)\s+([A-Z][A-Za-z0-9]+)\b")
_SENTENCE_END = re.compile(r"[.!?:]\s*$")


def mentions_purchasable_items(text: str) -> bool:
    """Heuristic: does this text talk about things one could buy?

    Signals are shopping/pricing keywords, a currency amount, or a
    brand-like pair of capitalized words that does not start a sentence.
    """
    if not text:
        return False
    if _PURCHASE_WORDS.search(text) or _CURRENCY.search(text):
        return True
    for match in _CAPITALIZED_BIGRAM.finditer(text):
        before = text[:match.start()]
        if before.strip() and not _SENTENCE_END.search(before):
            return True
    return False


def is_product_intent(utterance: str) -> bool:
    """True when the user is explicitly asking to find or shop for products."""
    lowered = utterance.lower()
    return any(keyword in lowered for keyword in INTENT_KEYWORDS) or bool(_FIND_PRODUCTS.search(lowered))


def build_system_instruction(objects: Iterable[DetectedObject], selected: Optional[DetectedObject],
                             scene: SceneContext, style: Optional[str] = None) -> str:
    lines = [
        "You are a live interior design assistant looking at the user's room through their camera.",
        "Answer concisely (2-4 sentences) and refer to the objects you can see.",
    ]
    objects = list(objects)
    if objects:
        listed = ", ".join(f"{obj.name} ({obj.category.value})" for obj in objects)
        lines.append(f"Detected objects: {listed}.")
    if selected is not None:
        detail = f": {selected.description}" if selected.description else ""
        lines.append(f"The user has selected the {selected.name}{detail}.")
    if scene.mood:
        lines.append(f"Room mood: {scene.mood}.")
    if scene.color_palette:
        lines.append(f"Color palette: {', '.join(scene.color_palette)}.")
    if style:
        lines.append(f"The user's preferred style is {style}.")
    return "\n".join(lines)


def format_suggestion_summary(room_summary: str, suggestions: List[ProductSuggestion]) -> str:
    items = "\n\n".join(
        f"{i}. {s.name} ({s.estimated_price})\n   {s.reason}" if s.estimated_price else f"{i}. {s.name}\n   {s.reason}"
        for i, s in enumerate(suggestions, 1)
    )
    header = "Product Suggestions for Your Space"
    body = f"{room_summary}\n\n{items}" if room_summary else items
    return f"{header}\n\n{body}\n\nSee the suggestions panel for previews and shopping links."


class ConversationOrchestrator:
    """Owns the chat log and suggestion list; every flow has its own busy flag."""

    def __init__(self, frame_source: FrameSource, registry: OverlayRegistry, scene: SceneContext,
                 gemini: GeminiService, invoker: ModelInvoker, chat_chain: CandidateChain,
                 suggest_chain: CandidateChain, images: ImageCapability,
                 context_turns: int = 12,
                 notify: Optional[Callable[[Notice], None]] = None,
                 speech: Optional[SpeechIO] = None, voice_enabled: bool = False,
                 speech_language: str = "en-US"):
        self.frame_source = frame_source
        self.registry = registry
        self.scene = scene
        self.gemini = gemini
        self.invoker = invoker
        self.chat_chain = chat_chain
        self.suggest_chain = suggest_chain
        self.images = images
        self.context_turns = context_turns
        self._notify = notify
        self.speech = speech
        self.voice_enabled = voice_enabled
        self.speech_language = speech_language

        self._messages: List[ChatMessage] = []
        self._suggestions: List[ProductSuggestion] = []
        self.room_summary = ""
        self.suggestion_sources: List[GroundingSource] = []
        self.search_queries: List[str] = []

        self._asking = False
        self._suggesting = False
        self._background: Set[asyncio.Task] = set()

        self.status = "STANDBY"
        self.used_model: Optional[str] = None
        self.processing_time: Optional[float] = None
        self.outbound_calls = 0

    # -- owned collections --------------------------------------------------------

    @property
    def is_asking(self) -> bool:
        return self._asking

    @property
    def is_suggesting(self) -> bool:
        return self._suggesting

    def get_messages(self) -> List[ChatMessage]:
        return [dataclasses.replace(m, suggestions=list(m.suggestions), sources=list(m.sources))
                for m in self._messages]

    def get_suggestions(self) -> List[ProductSuggestion]:
        return [dataclasses.replace(s, style_tags=list(s.style_tags)) for s in self._suggestions]

    def post_message(self, message: ChatMessage) -> None:
        self._messages.append(message)

    def post_welcome(self) -> None:
        self.post_message(ChatMessage(role=Role.ASSISTANT, content=WELCOME_MESSAGE))

    def recent_history(self) -> List[ChatMessage]:
        """The last ``context_turns`` messages, as sent with each chat call."""
        return list(self._messages[-self.context_turns:]) if self.context_turns > 0 else []

    def clear(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self._messages.clear()
        self._suggestions.clear()
        self.suggestion_sources = []
        self.search_queries = []
        self.room_summary = ""

    # -- notices and speech ---------------------------------------------------------

    def _post_notice(self, kind: str, message: str, flow: str, retry=None) -> None:
        self.status = "RATE_LIMITED" if kind == "status" else "ERROR"
        if self._notify is not None:
            self._notify(Notice(kind=kind, message=message, flow=flow, retry=retry))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _speak(self, text: str) -> None:
        try:
            await self.speech.speak(text, self.speech_language)
        except UnsupportedCapabilityError as e:
            logger.info(f"Voice output disabled: {e}")
            self.voice_enabled = False

    def _maybe_speak(self, text: str) -> None:
        if self.voice_enabled and self.speech is not None and self.speech.can_speak:
            self._spawn(self._speak(text))

    def _capture(self, flow: str) -> Optional[bytes]:
        try:
            return self.frame_source.capture_jpeg()
        except InputCaptureError as e:
            logger.warning(f"[{flow}] {e}")
            self._post_notice("error", "VISUAL_CAPTURE_FAILED: no camera frame is available.", flow)
            return None

    # -- chat ---------------------------------------------------------------------

    async def ask(self, utterance: str, active_style: Optional[str] = None) -> Optional[ChatMessage]:
        """Answer a typed or transcribed utterance about the live scene.

        Product-seeking utterances go straight to the suggestion flow. Returns
        the appended assistant message, or None if nothing was appended.
        """
        utterance = (utterance or "").strip()
        if not utterance:
            return None
        if is_product_intent(utterance):
            return await self.fetch_suggestions(utterance)
        if self._asking:
            logger.info("Chat request already in flight, ignoring duplicate submission")
            return None

        image = self._capture("chat")
        if image is None:
            return None

        self._asking = True
        try:
            history = self.recent_history()
            self._messages.append(ChatMessage(role=Role.USER, content=utterance))
            request = ChatRequest(
                image=image,
                prompt=utterance,
                history=history,
                system_instruction=build_system_instruction(
                    self.registry.get_objects(), self.registry.selected_object(), self.scene, active_style),
            )
            return await self._answer(request)
        finally:
            self._asking = False

    async def _answer(self, request: ChatRequest) -> Optional[ChatMessage]:
        self.status = "ANALYZING"
        self.outbound_calls += 1
        with FlowContext("chat"):
            try:
                result = await self.invoker.invoke(self.chat_chain, self.gemini.chat, request)
            except QuotaExhaustedError as e:
                logger.warning(f"Chat rate limited: {e}")
                self._post_notice("status", RATE_LIMITED_STATUS, "chat")
                self._maybe_speak("All systems busy. Please try again in a moment.")
                return None
            except ProviderError as e:
                self._post_notice("error", f"The assistant could not answer: {e}", "chat",
                                  retry=lambda: self._replay_answer(request))
                return None

        reply = result.output
        message = ChatMessage(role=Role.ASSISTANT, content=reply.text, sources=list(reply.sources))
        self._messages.append(message)
        self.used_model = result.model
        self.processing_time = result.elapsed
        self.status = f"VIA {result.model.upper()}"
        self._maybe_speak(reply.text)

        if mentions_purchasable_items(reply.text) or mentions_purchasable_items(request.prompt):
            logger.info("Answer mentions purchasable items, fetching suggestions in background")
            self._spawn(self.fetch_suggestions(request.prompt, announce=False))
        return message

    async def _replay_answer(self, request: ChatRequest) -> Optional[ChatMessage]:
        """Re-send a failed chat request; its user turn is already in the log."""
        if self._asking:
            logger.info("Chat request already in flight, ignoring retry")
            return None
        self._asking = True
        try:
            return await self._answer(request)
        finally:
            self._asking = False

    # -- suggestions ----------------------------------------------------------------

    async def fetch_suggestions(self, context: Optional[str] = None,
                                announce: bool = True) -> Optional[ChatMessage]:
        """Run the structured suggestion flow and replace the suggestion list.

        With ``announce`` the request and a summary are appended to the chat
        log; background escalations pass ``announce=False`` so the answer
        that triggered them is not duplicated.
        """
        if self._suggesting:
            logger.info("Suggestion request already in flight, ignoring")
            return None

        image = self._capture("suggest")
        if image is None:
            return None

        self._suggesting = True
        try:
            if announce:
                self._messages.append(ChatMessage(role=Role.USER, content=context or DEFAULT_SUGGESTION_REQUEST))
            return await self._suggest(SuggestionRequest(image, context), announce)
        finally:
            self._suggesting = False

    async def _suggest(self, request: SuggestionRequest, announce: bool) -> Optional[ChatMessage]:
        self.status = "GENERATING_SUGGESTIONS"
        self.outbound_calls += 1
        with FlowContext("suggest"):
            try:
                result = await self.invoker.invoke(self.suggest_chain, self.gemini.suggest, request)
            except QuotaExhaustedError as e:
                logger.warning(f"Suggestions rate limited: {e}")
                self._post_notice("status", RATE_LIMITED_STATUS, "suggest")
                return None
            except ProviderError as e:
                self._post_notice("error", f"Could not fetch product suggestions: {e}", "suggest",
                                  retry=lambda: self._replay_suggestions(request, announce))
                return None

        batch = result.output
        self._suggestions = list(batch.suggestions)
        self.suggestion_sources = list(batch.sources)
        self.search_queries = list(batch.search_queries)
        self.room_summary = batch.room_summary
        if batch.mood:
            self.scene.mood = batch.mood
        if batch.color_palette:
            self.scene.color_palette = list(batch.color_palette)
        self.used_model = result.model
        self.processing_time = result.elapsed
        self.status = f"{len(batch.suggestions)} PRODUCTS SUGGESTED"

        if not announce:
            return None
        message = ChatMessage(
            role=Role.ASSISTANT,
            content=format_suggestion_summary(batch.room_summary, batch.suggestions),
            suggestions=list(batch.suggestions),
            sources=list(batch.sources),
        )
        self._messages.append(message)
        self._maybe_speak(f"I found {len(batch.suggestions)} product suggestions for your space. "
                          "Check the suggestions panel for details.")
        return message

    async def _replay_suggestions(self, request: SuggestionRequest, announce: bool) -> Optional[ChatMessage]:
        """Re-send a failed suggestion request without appending the user turn again."""
        if self._suggesting:
            logger.info("Suggestion request already in flight, ignoring retry")
            return None
        self._suggesting = True
        try:
            return await self._suggest(request, announce)
        finally:
            self._suggesting = False

    async def fetch_preview(self, suggestion_id: int) -> Optional[ProductSuggestion]:
        """Generate a preview image for one suggestion.

        Each item moves none -> loading -> loaded | failed on its own; a
        second request for an item that is already loading is ignored.
        """
        item = next((s for s in self._suggestions if s.id == suggestion_id), None)
        if item is None:
            logger.warning(f"No suggestion with id {suggestion_id}")
            return None
        if item.preview_state is PreviewState.LOADING:
            logger.debug(f"Preview for '{item.name}' already loading")
            return None

        item.preview_state = PreviewState.LOADING
        prompt = f"{item.name}. {item.description}".strip()
        if item.style_tags:
            prompt += f" Style: {', '.join(item.style_tags)}."
        try:
            with FlowContext("preview"):
                image, result = await self.images.generate(prompt, "photorealistic product shot")
        except ProviderError as e:
            item.preview_state = PreviewState.FAILED
            logger.warning(f"Preview for '{item.name}' failed: {e}")
            self.status = "PREVIEW_FAILED"
            return dataclasses.replace(item)

        if not any(s is item for s in self._suggestions):
            logger.info(f"Suggestion list replaced while previewing '{item.name}', dropping result")
            return None
        item.preview_image = image
        item.preview_state = PreviewState.LOADED
        self.status = "PREVIEW_GENERATED"
        logger.info(f"Preview for '{item.name}' generated via {result.model}")
        return dataclasses.replace(item)
