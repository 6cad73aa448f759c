"""
Co-planner: suggest a few more places for an existing blueprint.

One LLM round-trip.  Suggestions repeating a place the blueprint already has
(or each other) are dropped, the rest are geocoded best effort, and nothing
is written: the caller adds the ones it likes through the location upsert.
A bad LLM response degrades to no suggestions.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from agents.llm import extract, unwrap_list
from errors import ParseError
from places import place_key
from schemas import SuggestedPlace

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5
SOURCE_NAME = "Co-Planner"


def coplanner_prompt(destination: str, existing_names: list[str], intent: str = "",
                     day_structure: str = "") -> str:
    return f"""You are a travel co-planner. Suggest 3-5 specific places to add to a map.

Destination: {destination}
Intent: {intent or "general exploration"}
Already planned: {", ".join(existing_names) or "nothing yet"}
Day structure: {day_structure or "flexible"}

Do not repeat anything already planned.

Return a JSON array:
[{{
  "name": "Specific real place name",
  "address": "Full address with city and country",
  "category": ["cafe", "breakfast"],
  "notes": "1 sentence on why it fits",
  "confidence": 0.8,
  "estimated_duration_minutes": 60
}}]

Return ONLY the JSON array."""


def day_structure(locations: list[dict]) -> str:
    """'Day 1: A, B; Day 2: C' from located rows; empty when no day is set."""
    days: dict[int, list[str]] = {}
    for loc in locations:
        day = (loc.get("enrichment") or {}).get("day")
        if isinstance(day, int):
            days.setdefault(day, []).append(loc.get("name") or "")
    return "; ".join(f"Day {d}: {', '.join(names)}" for d, names in sorted(days.items()))


def normalize_suggestions(data: Any, existing_names: list[str]) -> list[SuggestedPlace]:
    """Valid, not-yet-planned suggestions in model order, at most five."""
    taken = {place_key(name) for name in existing_names}
    suggestions: list[SuggestedPlace] = []
    for item in unwrap_list(data):
        try:
            suggestion = SuggestedPlace.model_validate(item)
        except ValidationError as exc:
            logger.warning("Dropping invalid suggestion: %s", exc.errors()[:1])
            continue
        key = place_key(suggestion.name)
        if key in taken:
            continue
        taken.add(key)
        suggestions.append(suggestion)
        if len(suggestions) == MAX_SUGGESTIONS:
            break
    return suggestions


def suggestion_view(suggestion: SuggestedPlace, hit) -> dict:
    """Shaped like a location body, ready to send back to the upsert."""
    return {
        "name": suggestion.name,
        "coordinates": hit.coordinates() if hit else None,
        "category": suggestion.category,
        "notes": suggestion.notes,
        "source": {
            "type": "ai",
            "source_name": SOURCE_NAME,
            "confidence": suggestion.confidence,
        },
        "enrichment": {
            "formatted_address": hit.formatted_address if hit else suggestion.address,
            "estimated_duration_minutes": suggestion.estimated_duration_minutes,
            "geocoded": hit is not None,
        },
    }


async def suggest(llm, geocoder, destination: str, existing_names: list[str],
                  intent: str = "", structure: str = "",
                  concurrency: Optional[int] = None) -> list[dict]:
    prompt = coplanner_prompt(destination, existing_names, intent, structure)
    result = await extract(llm, prompt, Any, max_tokens=1500)
    if isinstance(result, ParseError):
        logger.warning("Co-planner degraded to no suggestions (%s): %s",
                       result.kind, result.reason)
        return []

    suggestions = normalize_suggestions(result, existing_names)
    if geocoder is not None and suggestions:
        hits = await geocoder.geocode_many(
            [(s.name, s.address) for s in suggestions], concurrency=concurrency
        )
    else:
        hits = [None] * len(suggestions)

    logger.info("Co-planner for %s: %d suggestions (%d geocoded)", destination,
                len(suggestions), sum(1 for h in hits if h is not None))
    return [suggestion_view(s, hit) for s, hit in zip(suggestions, hits)]
