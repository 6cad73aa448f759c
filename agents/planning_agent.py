"""
Trip-mode LLM stages (litellm, one round-trip each):

  1. Taste profile   intake answers → TasteProfileOut          (fatal on failure)
  2. Scope options   profile + destination → 0-3 ScopeOption   (degrades to [])
  3. Itinerary       profile + scope → day-by-day places       (fatal on failure)

Each stage is a prompt builder plus a call through ``extract()``; the
orchestrator in ``pipeline.py`` owns sequencing, geocoding and persistence.
"""

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from agents.llm import extract, unwrap_list
from errors import FatalParseError, ParseError, SchemaError
from places import dedupe
from schemas import ItineraryOut, ItineraryPlace, ScopeOption, TasteProfileOut

logger = logging.getLogger(__name__)

MAX_SCOPES = 3

DIMENSION_GUIDE = """Dimension scoring guide (0.0 to 1.0):
- formality: 0=raw/underground/unmarked, 1=refined/institutional/celebrated
- density: 0=sparse/minimal/quiet, 1=layered/maximalist/busy
- temporality: 0=ancient/patinated/historical, 1=contemporary/new/cutting-edge
- sociality: 0=solitary/intimate/private, 1=communal/convivial/social
- legibility: 0=hidden/local-only/unmarked, 1=famous/well-reviewed/on-every-list"""

PROFILE_SHAPE = """{
  "anchors": {
    "restaurants": ["extracted restaurant names"],
    "artists": ["extracted artist/musician/filmmaker/writer names"],
    "spaces": ["any spaces, hotels, or environments mentioned"],
    "anti_patterns": ["places or experiences they explicitly dislike"]
  },
  "dimensions": {
    "formality": 0.0,
    "density": 0.0,
    "temporality": 0.0,
    "sociality": 0.0,
    "legibility": 0.0,
    "materiality": ["material/texture words that emerged"]
  },
  "pace": "slow_deep|varied|high_coverage",
  "meal_philosophy": "counter|table|street|mixed",
  "sleep_pattern": "early_light|night_owl|flexible",
  "discovery_mode": "wander|researched|local_led",
  "hard_constraints": ["things they explicitly don't want"],
  "soft_preferences": ["things they seem to prefer based on signals"],
  "taste_summary": "2-3 sentence first-person narrative about who this traveler is"
}"""


def _answer_field(answer: Any, key: str) -> str:
    if isinstance(answer, dict):
        return str(answer.get(key) or "")
    return str(getattr(answer, key, "") or "")


def find_destination(answers: list) -> str:
    for a in answers:
        if _answer_field(a, "question_id") == "destination":
            return _answer_field(a, "answer").strip() or "unknown"
    return "unknown"


def format_answers(answers: list) -> str:
    return "\n\n".join(
        f"Q: {_answer_field(a, 'question') or _answer_field(a, 'question_id')}\n"
        f"A: {_answer_field(a, 'answer')}"
        for a in answers
    )


# ---------------------------------------------------------------------------
# 1. Taste profile
# ---------------------------------------------------------------------------

def profile_prompt(answers: list) -> str:
    return f"""You are a cultural analyst building a traveler's taste profile.

Analyze these intake answers and extract a rich semantic profile.

ANSWERS:
{format_answers(answers)}

Return a JSON object with this exact shape:
{PROFILE_SHAPE}

Write the taste_summary as if you're briefing a brilliant local fixer about
who's arriving. Be specific and cultural, not generic.

{DIMENSION_GUIDE}

Return ONLY valid JSON."""


async def extract_profile(llm, answers: list) -> TasteProfileOut:
    """Raises FatalParseError: everything downstream depends on the profile."""
    result = await extract(llm, profile_prompt(answers), TasteProfileOut, max_tokens=2000)
    if isinstance(result, ParseError):
        logger.warning("Taste profile extraction failed (%s): %s", result.kind, result.reason)
        raise FatalParseError("taste profile", result)
    return result


# ---------------------------------------------------------------------------
# 2. Scope options
# ---------------------------------------------------------------------------

def scope_prompt(profile: dict, destination: str) -> str:
    return f"""You are planning a trip to {destination} for someone with this profile:

{profile.get("taste_summary") or "A curious, independent traveler."}

Constraints: {json.dumps(profile.get("hard_constraints") or [])}
Preferences: {json.dumps(profile.get("soft_preferences") or [])}
Pace: {profile.get("pace") or "varied"}

Generate exactly 3 distinct trip scope options. Each should be a genuinely
different shape of the trip, not just duration variations but philosophically
different approaches.

Return JSON array:
[{{
  "id": "scope_1",
  "title": "Short evocative title (e.g. 'The Deep Cut')",
  "tagline": "One sentence that captures the spirit of this scope",
  "duration_days": 7,
  "city_count": 1,
  "cities": ["Tokyo"],
  "pace": "slow_deep|varied|high_coverage",
  "estimated_cost": {{ "low": 2000, "high": 3500, "currency": "USD" }},
  "tradeoffs": "What you gain and what you give up in one sentence",
  "highlights": ["3-4 specific things that define this scope, not generic activities"]
}}]

Make the options genuinely different. One could be a single city deep dive.
One could span regions. One could be structured around a theme (food,
architecture, nature). Return ONLY valid JSON array."""


def normalize_scopes(data: Any) -> list[ScopeOption]:
    """Validate options one at a time, fix ids, keep at most three.

    An invalid option is dropped on its own; missing or repeated ids become
    ``scope_<n>`` (n = 1-based position in the kept list).  Never padded.
    """
    scopes: list[ScopeOption] = []
    seen_ids: set[str] = set()
    for item in unwrap_list(data):
        try:
            scope = ScopeOption.model_validate(item)
        except ValidationError as exc:
            logger.warning("Dropping invalid scope option: %s", exc.errors()[:1])
            continue
        if not scope.id or scope.id in seen_ids:
            scope.id = f"scope_{len(scopes) + 1}"
            while scope.id in seen_ids:
                scope.id += "_"
        if scope.city_count is None:
            scope.city_count = len(scope.cities)
        seen_ids.add(scope.id)
        scopes.append(scope)
        if len(scopes) == MAX_SCOPES:
            break
    return scopes


async def generate_scopes(llm, profile: dict, destination: str) -> list[ScopeOption]:
    """Degrades to ``[]`` so the intake still records the trip intent."""
    result = await extract(llm, scope_prompt(profile, destination), Any, max_tokens=2000)
    if isinstance(result, ParseError):
        logger.warning("Scope generation degraded to empty (%s): %s", result.kind, result.reason)
        return []
    scopes = normalize_scopes(result)
    if not scopes:
        logger.warning("Scope generation returned no usable options for %s", destination)
    return scopes


# ---------------------------------------------------------------------------
# 3. Itinerary
# ---------------------------------------------------------------------------

def itinerary_prompt(profile: Optional[dict], trip_intent: dict, scope: dict) -> str:
    profile = profile or {}
    return f"""You are building a precise, personalized travel itinerary.

TRAVELER PROFILE:
{profile.get("taste_summary") or "A curious, independent traveler."}

Aesthetic dimensions: {json.dumps(profile.get("dimensions") or {})}
Anchors: {json.dumps(profile.get("anchors") or {})}
Pace: {profile.get("pace") or "varied"}
Meal philosophy: {profile.get("meal_philosophy") or "mixed"}
Discovery mode: {profile.get("discovery_mode") or "wander"}
Constraints: {json.dumps(trip_intent.get("hard_constraints") or [])}
Preferences: {json.dumps(trip_intent.get("soft_preferences") or [])}

TRIP SCOPE: {scope.get("title", "")}
Destination: {trip_intent.get("destination", "")}
Duration: {scope.get("duration_days", "")} days
Cities: {", ".join(scope.get("cities") or [])}
Scope highlights: {", ".join(scope.get("highlights") or [])}

Build a day-by-day itinerary. Each day has 3-5 places. Every place must be:
- A real, specific named location (not generic)
- Genuinely matched to this traveler's taste profile; explain WHY in the "fit" field
- Timed realistically (not 8 places in one day)

Return JSON:
{{
  "title": "Trip title that captures the spirit",
  "days": [
    {{
      "day": 1,
      "theme": "Arrival day theme (e.g. 'Landing and orienting')",
      "places": [
        {{
          "name": "Specific place name",
          "address": "Full address with city and country",
          "category": ["restaurant", "coffee"],
          "time_of_day": "morning|afternoon|evening|night",
          "duration_minutes": 90,
          "fit": "1-2 sentences on why this place is right for this specific traveler",
          "booking_required": false,
          "source_url": "https://..."
        }}
      ]
    }}
  ]
}}

Return ONLY valid JSON. Be specific, not generic. Avoid tourist traps unless
the traveler's profile suggests they want them."""


async def build_itinerary(llm, profile: Optional[dict], trip_intent: dict,
                          scope: dict) -> ItineraryOut:
    """Invalid places are dropped one at a time; FatalParseError when none is left."""
    result = await extract(llm, itinerary_prompt(profile, trip_intent, scope),
                           ItineraryOut, max_tokens=6000)
    if isinstance(result, ParseError):
        logger.warning("Itinerary generation failed (%s): %s", result.kind, result.reason)
        raise FatalParseError("itinerary", result)
    if not any(day.places for day in result.days):
        raise FatalParseError("itinerary", SchemaError("itinerary has no places"))
    return result


def flatten_itinerary(itinerary: ItineraryOut) -> list[tuple[int, ItineraryPlace]]:
    """(day, place) pairs ordered by day index, in-day order kept, repeats dropped."""
    pairs = [
        (day.day, place)
        for day in sorted(itinerary.days, key=lambda d: d.day)
        for place in day.places
    ]
    kept = {id(p) for p in dedupe(place for _, place in pairs)}
    return [(day, place) for day, place in pairs if id(place) in kept]
