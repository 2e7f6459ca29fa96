"""Domain entities (data-only structures) used across services."""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple
from urllib.parse import quote_plus
import time

NormBBox = Tuple[float, float, float, float]  # (x1,y1,x2,y2) normalized to [0,1]

SHOPPING_SEARCH_URL = "https://www.google.com/search?tbm=shop&q={query}"


class ObjectCategory(str, Enum):
    FURNITURE = "furniture"
    LIGHTING = "lighting"
    DECOR = "decor"
    ELECTRONICS = "electronics"
    STORAGE = "storage"
    TEXTILES = "textiles"
    PLANTS = "plants"
    TECH = "tech"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "ObjectCategory":
        """Map a free-form model label onto the category set, defaulting to OTHER."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class Fidelity(str, Enum):
    INSTANT = "instant"
    HIGH_DEF = "highDef"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Impact(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "Impact":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MEDIUM


class PreviewState(str, Enum):
    NONE = "none"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(slots=True)
class DetectedObject:
    name: str
    category: ObjectCategory
    bbox: NormBBox
    description: str = ""


@dataclass(slots=True)
class OverlayTransform:
    object_name: str
    image: Any  # numpy ndarray (BGR) sized to the bbox region it was made from
    bbox: NormBBox
    fidelity: Fidelity
    style: str = ""


@dataclass(slots=True)
class GroundingSource:
    """External citation link attached to a response by the provider."""
    url: str
    title: str = ""


@dataclass(slots=True)
class ProductSuggestion:
    id: int
    name: str
    category: str = "other"
    description: str = ""
    reason: str = ""
    placement: str = ""
    estimated_price: str = ""
    impact: Impact = Impact.MEDIUM
    shopping_query: str = ""
    style_tags: List[str] = field(default_factory=list)
    brand: str = ""
    preview_image: Any = None
    preview_state: PreviewState = PreviewState.NONE

    @property
    def product_url(self) -> str:
        """Shopping search link built from the query text, never from model output."""
        return SHOPPING_SEARCH_URL.format(query=quote_plus(self.shopping_query or self.name))


@dataclass(slots=True)
class ChatMessage:
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)
    suggestions: List[ProductSuggestion] = field(default_factory=list)
    sources: List[GroundingSource] = field(default_factory=list)


@dataclass(slots=True)
class SceneContext:
    """Session-scoped scene facts refreshed by every successful detection."""
    mood: str = ""
    color_palette: List[str] = field(default_factory=list)
    last_scene_description: str = ""
    lighting: str = ""

    def reset(self) -> None:
        self.mood = ""
        self.color_palette = []
        self.last_scene_description = ""
        self.lighting = ""


@dataclass(slots=True)
class DetectionBatch:
    scene: str
    lighting: str
    mood: str
    color_palette: List[str]
    objects: List[DetectedObject]


@dataclass(slots=True)
class SuggestionBatch:
    room_summary: str
    mood: str
    color_palette: List[str]
    suggestions: List[ProductSuggestion]
    sources: List[GroundingSource] = field(default_factory=list)
    search_queries: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ChatReply:
    text: str
    sources: List[GroundingSource] = field(default_factory=list)


@dataclass(slots=True)
class Notice:
    """Dismissable user-visible message; `retry` replays the exact failed action."""
    kind: str  # status|error
    message: str
    flow: str = ""
    retry: Optional[Callable[[], Awaitable[Any]]] = None
