"""
Research mode: a free-text query → theme-grouped place suggestions.

Lighter than the itinerary builder: 2-4 themes of 3-5 places, no day or
time binding, nothing written to the store.  Places are geocoded best
effort; an unresolved place keeps ``coordinates: null``.  Acceptance into a
blueprint happens later, per place, in ``pipeline.accept_research``.
"""

import logging
from typing import Optional

from agents.llm import extract
from errors import ParseError
from places import place_key
from schemas import Coordinates, ResearchPlan

logger = logging.getLogger(__name__)


def research_prompt(query: str) -> str:
    return f"""You are a travel research assistant. A user typed: "{query}"

Interpret what they want and return a structured trip plan as JSON.

Return this exact shape:
{{
  "title": "Short evocative title for this map (e.g. 'Tokyo Weekend Ramen Run')",
  "summary": "1-2 sentence description of what this map is about",
  "intent": "weekend_trip" | "day_trip" | "food_tour" | "nature" | "culture" | "nightlife" | "shopping" | "custom",
  "themes": [
    {{
      "id": "theme_1",
      "name": "Theme name (e.g. 'Morning Coffee', 'Day 1', 'Hidden Bars')",
      "description": "What this theme covers in 1 sentence",
      "places": [
        {{
          "name": "Specific real place name",
          "address": "Full address with city and country",
          "why": "1 sentence on why this place fits",
          "category": ["tag1", "tag2"],
          "source_url": "https://..."
        }}
      ]
    }}
  ]
}}

Rules:
- 2-4 themes max
- 3-5 places per theme
- All places must be real, specific, named locations
- Return ONLY valid JSON, no markdown, no explanation"""


def _tidy(plan: ResearchPlan) -> ResearchPlan:
    """Drop repeat places across themes, then themes left empty; fill theme ids."""
    seen: set[str] = set()
    themes = []
    for theme in plan.themes:
        places = []
        for place in theme.places:
            key = place_key(place.name)
            if key in seen:
                continue
            seen.add(key)
            places.append(place)
        if not places:
            continue
        theme.places = places
        theme.id = theme.id or f"theme_{len(themes) + 1}"
        themes.append(theme)
    plan.themes = themes
    return plan


async def plan(llm, geocoder, query: str, concurrency: Optional[int] = None) -> ResearchPlan:
    """Never raises for a bad LLM response: returns an empty plan with ``error`` set."""
    result = await extract(llm, research_prompt(query), ResearchPlan, max_tokens=4000)
    if isinstance(result, ParseError):
        logger.warning("Research plan degraded to empty (%s): %s", result.kind, result.reason)
        return ResearchPlan(query=query, error=f"Failed to generate plan: {result.reason}")

    research = _tidy(result)
    research.query = query
    research.error = None

    places = [p for theme in research.themes for p in theme.places]
    if geocoder is not None and places:
        resolved = await geocoder.geocode_many(
            [(p.name, p.address) for p in places], concurrency=concurrency
        )
        unresolved = 0
        for place, hit in zip(places, resolved):
            if hit is None:
                unresolved += 1
                place.coordinates = None
                place.formatted_address = place.address
            else:
                place.coordinates = Coordinates(**hit.coordinates())
                place.formatted_address = hit.formatted_address
        if unresolved:
            logger.warning("%d/%d research places left without coordinates",
                           unresolved, len(places))
    else:
        for place in places:
            place.formatted_address = place.formatted_address or place.address

    logger.info("Research plan %r: %d themes, %d places",
                research.title, len(research.themes), len(places))
    return research


def refined_query(existing: ResearchPlan, instruction: str) -> str:
    base = existing.query or existing.title
    return f"{base}\n\nRefinement: {instruction.strip()}"


async def refine(llm, geocoder, existing: ResearchPlan, instruction: str,
                 concurrency: Optional[int] = None) -> ResearchPlan:
    """Full regeneration from the original query plus the instruction."""
    return await plan(llm, geocoder, refined_query(existing, instruction), concurrency)
