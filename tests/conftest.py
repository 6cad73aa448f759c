import asyncio
import json
import os
import sys

import pytest

# Project root, so tests import modules by name (pipeline, database, agents.*)
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _root not in sys.path:
    sys.path.insert(0, _root)

from agents.ArtifactAgent import MetArtifact
from agents.GeoAgent import GeocodeResult
from database import get_store
from FlightSegment import FlightOffer


def run(coro):
    """Drive a coroutine from a synchronous test."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Canned LLM outputs
# ---------------------------------------------------------------------------

PROFILE = {
    "anchors": {"restaurants": ["Cervejaria Ramiro"], "artists": ["Fernando Pessoa"], "spaces": []},
    "dimensions": {"formality": 0.3, "density": 0.6, "temporality": 0.2,
                   "sociality": 0.7, "legibility": 0.4, "materiality": ["tile", "stone"]},
    "pace": "slow_deep",
    "meal_philosophy": "counter",
    "sleep_pattern": "night_owl",
    "discovery_mode": "wander",
    "hard_constraints": ["no tour groups"],
    "soft_preferences": ["late dinners"],
    "taste_summary": "I want the city as locals live it: tiled stairways and long lunches.",
}

SCOPES = [
    {"id": "scope_1", "title": "The Deep Cut", "tagline": "One city, slowly",
     "duration_days": 5, "city_count": 1, "cities": ["Lisbon"], "pace": "slow_deep",
     "estimated_cost": {"low": 1500, "high": 2500, "currency": "EUR"},
     "tradeoffs": "Depth over breadth", "highlights": ["Alfama at dawn"]},
    {"id": "scope_2", "title": "Coast and Capital", "tagline": "Lisbon then the sea",
     "duration_days": 7, "city_count": 2, "cities": ["Lisbon", "Porto"], "pace": "varied",
     "estimated_cost": {"low": 2000, "high": 3200, "currency": "EUR"},
     "tradeoffs": "More moving", "highlights": ["Douro light"]},
    {"id": "scope_3", "title": "Tile Pilgrimage", "tagline": "Azulejo everywhere",
     "duration_days": 4, "city_count": 1, "cities": ["Lisbon"], "pace": "high_coverage",
     "estimated_cost": {"low": 1200, "high": 1800, "currency": "EUR"},
     "tradeoffs": "Narrow theme", "highlights": ["Museu do Azulejo"]},
]

ITINERARY = {
    "title": "Lisbon, Slowly",
    "days": [
        {"day": 1, "theme": "Landing", "places": [
            {"name": "Cervejaria Ramiro", "address": "Av. Alm. Reis 1, 1150-007 Lisboa, Portugal",
             "category": ["restaurant"], "time_of_day": "evening", "duration_minutes": 120,
             "fit": "Counter seafood, loud and local.", "booking_required": False},
            {"name": "Miradouro da Graça", "address": "Largo da Graça, 1170-165 Lisboa, Portugal",
             "category": ["viewpoint"], "time_of_day": "night", "duration_minutes": 45,
             "fit": "Quiet view after dinner.", "booking_required": False},
        ]},
        {"day": 2, "theme": "Tiles", "places": [
            {"name": "Museu Nacional do Azulejo", "address": "R. Me. Deus 4, 1900-312 Lisboa, Portugal",
             "category": ["museum"], "time_of_day": "morning", "duration_minutes": 120,
             "fit": "Tile history in a convent.", "booking_required": False},
            {"name": "A Vida Portuguesa", "address": "R. Anchieta 11, 1200-023 Lisboa, Portugal",
             "category": ["shop"], "time_of_day": "afternoon", "duration_minutes": 40,
             "fit": "Old Portuguese brands.", "booking_required": False},
            {"name": "Tasca do Chico", "address": "R. do Diário de Notícias 39, 1200-141 Lisboa, Portugal",
             "category": ["bar"], "time_of_day": "night", "duration_minutes": 90,
             "fit": "Fado without the show.", "booking_required": True},
        ]},
    ],
}

RESEARCH = {
    "title": "Lisbon Tascas",
    "summary": "Small family restaurants.",
    "intent": "food_tour",
    "themes": [
        {"id": "theme_1", "name": "Lunch", "description": "Midday plates", "places": [
            {"name": "Zé da Mouraria", "address": "R. João do Outeiro 24, Lisboa",
             "why": "Huge portions", "category": ["restaurant"]},
            {"name": "O Trevo", "address": "Praça Luís de Camões 48, Lisboa",
             "why": "Bifana counter", "category": ["restaurant"]},
        ]},
        {"id": "theme_2", "name": "Dinner", "description": "Evening", "places": [
            {"name": "o trevo", "address": "Praça Luís de Camões 48, Lisboa",
             "why": "Repeat", "category": ["restaurant"]},
            {"name": "Taberna da Rua das Flores", "address": "R. das Flores 103, Lisboa",
             "why": "Chalkboard menu", "category": ["restaurant"]},
        ]},
    ],
}

ONBOARDING = {
    "taste_phrases": ["You want somewhere that hasn't been optimized.",
                      "Mornings matter more than nights.",
                      "The counter, not the table.",
                      "Density, but with exits."],
    "taste_profile": {
        "anchors": {"cultural": "In the Mood for Love"},
        "dimensions": {"formality": 0.2, "density": 0.5, "temporality": 0.3,
                       "sociality": 0.4, "legibility": 0.2},
        "pace": "slow_deep",
        "discovery_mode": "wander",
        "taste_summary": "Quiet corners and old stone.",
    },
}

SUGGESTIONS = [
    {"name": "Pastéis de Belém", "address": "R. de Belém 84-92, 1300-085 Lisboa, Portugal",
     "category": ["cafe"], "notes": "The original custard tart.", "confidence": 0.9,
     "estimated_duration_minutes": 30},
    {"name": "cervejaria ramiro", "address": "Av. Alm. Reis 1, Lisboa", "category": ["restaurant"]},
    {"name": "LX Factory", "address": "R. Rodrigues de Faria 103, 1300-501 Lisboa, Portugal",
     "category": "market", "notes": None},
    {"name": "", "address": "Lisboa"},
    {"name": "Feira da Ladra", "address": "Campo de Santa Clara, 1100-472 Lisboa, Portugal",
     "category": ["market"], "notes": "Flea market on Tuesdays and Saturdays."},
]

ANSWERS = [
    {"question_id": "destination", "question": "Where to?", "answer": "Lisbon"},
    {"question_id": "anchor", "question": "A restaurant you love?", "answer": "A loud seafood counter"},
    {"question_id": "pace", "question": "How do you move?", "answer": "Slowly"},
    {"question_id": "never", "question": "Never again?", "answer": "Tour groups"},
    {"question_id": "mornings", "question": "Mornings?", "answer": "Late coffee, long walks"},
]

# Substrings that identify each prompt
PROFILE_PROMPT = "cultural analyst"
SCOPE_PROMPT = "distinct trip scope options"
ITINERARY_PROMPT = "personalized travel itinerary"
RESEARCH_PROMPT = "travel research assistant"
ONBOARDING_PROMPT = "mirror phrases"
COPLANNER_PROMPT = "travel co-planner"


class FakeLLM:
    """Scripted LLM: the first marker found in the prompt picks the reply.

    A reply may be a str (returned verbatim), any JSON-able value (dumped),
    or an Exception instance (raised).
    """

    def __init__(self, replies=None):
        self.replies = dict(replies or {})
        self.prompts = []

    async def complete(self, prompt, max_tokens=2000, system=None, temperature=None):
        self.prompts.append(prompt)
        for marker, reply in self.replies.items():
            if marker in prompt:
                if isinstance(reply, Exception):
                    raise reply
                return reply if isinstance(reply, str) else json.dumps(reply)
        raise AssertionError(f"unexpected prompt: {prompt[:80]!r}")

    def calls(self, marker):
        return sum(1 for p in self.prompts if marker in p)


class FakeGeocoder:
    """Resolves every place to a fixed point unless its name is in ``fail_on``."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.queries = []

    async def geocode_many(self, places, concurrency=None, limit=None):
        out = []
        for i, (name, address) in enumerate(places):
            self.queries.append(name)
            if name in self.fail_on:
                out.append(None)
            else:
                out.append(GeocodeResult(lat=38.7 + i * 0.01, lng=-9.1,
                                         formatted_address=f"{name}, 1100-000 Lisbon, Portugal"))
        return out


class FakeArtifacts:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []

    async def lookup(self, culture, category):
        self.calls.append((culture, category))
        if category in self.fail_on:
            raise RuntimeError("museum down")
        return MetArtifact(objectID=1, title=f"{category} bowl", objectName="Bowl",
                           imageUrl="https://images.example/1.jpg",
                           metUrl="https://www.metmuseum.org/art/collection/search/1")


class FakeFlightSearch:
    provider = "amadeus"

    def __init__(self, configured=True, prices=None, fail_routes=()):
        self.configured = configured
        self.prices = prices or {}
        self.fail_routes = set(fail_routes)
        self.calls = []

    async def search(self, origin, destination, departure_date, passengers=1):
        self.calls.append((origin, destination, departure_date, passengers))
        if (origin, destination) in self.fail_routes:
            raise TimeoutError("provider timeout")
        return [
            FlightOffer(id=f"{origin}{destination}{i}", total_amount=price, currency="USD",
                        carrier="TP", carrier_name="TAP", flight_number=f"TP{100 + i}",
                        origin=origin, destination=destination,
                        departing_at=f"{departure_date}T08:00:00",
                        arriving_at=f"{departure_date}T10:00:00")
            for i, price in enumerate(self.prices.get((origin, destination), [250.0]))
        ]

    def build_deep_link(self, offer):
        return f"https://flights.example/{offer.id}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    return get_store("sqlite://")


@pytest.fixture
def llm():
    return FakeLLM({
        PROFILE_PROMPT: PROFILE,
        SCOPE_PROMPT: SCOPES,
        ITINERARY_PROMPT: ITINERARY,
        RESEARCH_PROMPT: RESEARCH,
        ONBOARDING_PROMPT: ONBOARDING,
        COPLANNER_PROMPT: SUGGESTIONS,
    })


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def artifacts():
    return FakeArtifacts()


@pytest.fixture
def flight_search():
    return FakeFlightSearch()
