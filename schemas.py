"""
Pydantic shapes shared by the LLM stages and the HTTP layer.

The ``*Out`` models describe what each LLM prompt asks for.  The extractor
validates parsed JSON against them, which is where malformed-but-valid JSON
(wrong types, missing required keys) gets caught instead of blowing up
further down the pipeline.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

Pace = Literal["slow_deep", "varied", "high_coverage"]
DiscoveryMode = Literal["wander", "researched", "local_led"]
SourceType = Literal["self", "ai", "friend", "influencer", "editorial", "dataset"]
TripStatus = Literal["scoping", "building", "built"]

DIMENSION_NAMES = ("formality", "density", "temporality", "sociality", "legibility")


def _clamp_unit(value: Any) -> Any:
    # Leave non-numbers alone so pydantic reports them as type errors.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    return min(1.0, max(0.0, float(value)))


def _as_list(value: Any) -> Any:
    """"museum" → ["museum"]; anything else is left for pydantic to judge."""
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


def _valid_items(model, items: Any, label: str) -> Any:
    """Keep the entries of ``items`` that validate as ``model``, drop the rest."""
    if not isinstance(items, list):
        return items
    kept = []
    for item in items:
        try:
            kept.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping invalid %s: %s", label, exc.errors()[:1])
    return kept


class LLMShape(BaseModel):
    """Base for LLM output: ``null`` on a field that has a default means the default."""

    @model_validator(mode="before")
    @classmethod
    def _nulls_to_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        fields = cls.model_fields
        return {
            key: value for key, value in data.items()
            if value is not None or key not in fields or fields[key].is_required()
        }


class Coordinates(BaseModel):
    lat: float
    lng: float


# ---------------------------------------------------------------------------
# Taste profile
# ---------------------------------------------------------------------------

class Dimensions(LLMShape):
    formality: float = 0.5
    density: float = 0.5
    temporality: float = 0.5
    sociality: float = 0.5
    legibility: float = 0.5
    materiality: List[str] = []

    @field_validator(*DIMENSION_NAMES, mode="before")
    @classmethod
    def _clamp(cls, v):
        return _clamp_unit(v)

    @field_validator("materiality", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)


class TasteProfileOut(LLMShape):
    anchors: Dict[str, Any] = {}
    dimensions: Dimensions = Field(default_factory=Dimensions)
    pace: Pace = "varied"
    meal_philosophy: str = "mixed"
    sleep_pattern: str = "flexible"
    discovery_mode: DiscoveryMode = "wander"
    hard_constraints: List[str] = []
    soft_preferences: List[str] = []
    selected_image_moods: List[str] = []
    taste_summary: str = ""

    @field_validator("hard_constraints", "soft_preferences", "selected_image_moods",
                     mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)


class OnboardingOut(LLMShape):
    taste_phrases: List[str] = []
    taste_profile: TasteProfileOut


# ---------------------------------------------------------------------------
# Scopes and itineraries
# ---------------------------------------------------------------------------

class CostRange(LLMShape):
    low: float
    high: float
    currency: str = "USD"


class ScopeOption(LLMShape):
    id: str = ""
    title: str
    tagline: str = ""
    duration_days: int = Field(gt=0)
    city_count: Optional[int] = None
    cities: List[str] = Field(min_length=1)
    pace: Pace = "varied"
    estimated_cost: Optional[CostRange] = None
    tradeoffs: str = ""
    highlights: List[str] = []

    @field_validator("cities", "highlights", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)


class ItineraryPlace(LLMShape):
    name: str = Field(min_length=1)
    address: str = ""
    category: List[str] = []
    time_of_day: str = "afternoon"
    duration_minutes: int = Field(default=60, ge=0)
    fit: str = ""
    booking_required: bool = False
    source_url: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)


class ItineraryDay(LLMShape):
    day: int = Field(ge=1)
    theme: str = ""
    places: List[ItineraryPlace] = []

    @field_validator("places", mode="before")
    @classmethod
    def _drop_invalid(cls, v):
        return _valid_items(ItineraryPlace, v, "itinerary place")


class ItineraryOut(LLMShape):
    title: str
    days: List[ItineraryDay] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Research plans
# ---------------------------------------------------------------------------

class ResearchPlace(LLMShape):
    name: str = Field(min_length=1)
    address: str = ""
    why: str = ""
    category: List[str] = []
    source_url: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    formatted_address: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)


class ResearchTheme(LLMShape):
    id: str = ""
    name: str
    description: str = ""
    places: List[ResearchPlace] = []

    @field_validator("places", mode="before")
    @classmethod
    def _drop_invalid(cls, v):
        return _valid_items(ResearchPlace, v, "research place")


class ResearchPlan(LLMShape):
    title: str = ""
    summary: str = ""
    intent: str = "custom"
    themes: List[ResearchTheme] = []
    query: str = ""
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Co-planner suggestions
# ---------------------------------------------------------------------------

class SuggestedPlace(LLMShape):
    name: str = Field(min_length=1)
    address: str = ""
    category: List[str] = []
    notes: str = ""
    confidence: float = 0.8
    estimated_duration_minutes: int = Field(default=60, ge=0)

    @field_validator("category", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v):
        return _clamp_unit(v)


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

class SourceAttribution(BaseModel):
    type: SourceType = "self"
    source_id: Optional[str] = None
    source_name: Optional[str] = None
    source_url: Optional[str] = None
    confidence: Optional[float] = None


class LocationIn(BaseModel):
    id: Optional[str] = None
    name: str
    coordinates: Optional[Coordinates] = None
    category: List[str] = []
    notes: str = ""
    source: SourceAttribution = Field(default_factory=SourceAttribution)
    enrichment: Dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class IntakeAnswer(BaseModel):
    question_id: str = ""
    question: str = ""
    answer: str


class IntakeRequest(BaseModel):
    answers: List[IntakeAnswer] = []


class BuildRequest(BaseModel):
    trip_intent_id: str
    scope_id: Optional[str] = None


class ResearchRequest(BaseModel):
    query: str


class RefineRequest(BaseModel):
    plan: ResearchPlan
    instruction: str


class AcceptRequest(BaseModel):
    plan: ResearchPlan
    excluded: List[str] = []


class SegmentIn(BaseModel):
    origin_city: str
    destination_city: str
    date: str  # YYYY-MM-DD
    origin_iata: Optional[str] = None
    destination_iata: Optional[str] = None
    passengers: int = 1


class FlightsRequest(BaseModel):
    blueprint_id: str
    segments: List[SegmentIn] = []


class OnboardingRequest(BaseModel):
    image_selections: List[str] = []
    anchor_text: str = ""
    bucket_list_trip: str = ""
    hard_constraint: str = ""


class SuggestRequest(BaseModel):
    intent: str = ""
    day_structure: str = ""
