"""
Itinerary pipeline orchestrator.

Trip mode, one planning session:

    INTAKE_RECEIVED → PROFILE_EXTRACTED → SCOPES_GENERATED
        → SCOPE_SELECTED → ITINERARY_BUILT → PERSISTED

Research mode calls the research planner directly and writes nothing until
the user accepts a selection.

Failure policy:
  * profile / itinerary / onboarding parse failure → FatalParseError, and
    nothing is written for that request
  * scope / research / co-planner parse failure → empty result, logged
  * geocode / artifact / flight-segment failure → null field or
    ``status="unavailable"`` on that one item; the batch carries on
  * directions failure → straight-line route estimate

Builds are not idempotent: every ``select_scope`` call creates a new
Blueprint.  Callers gate repeats.
"""

import asyncio
import logging
import os
from datetime import date
from enum import Enum
from typing import Optional

from agents import CoPlannerAgent, FlightAgent, ResearchAgent, RouteAgent, planning_agent
from errors import InvalidRequest, PersistenceError, PrereqMissing, Unauthorized
from FlightSegment import SegmentRequest
from onboarding import run_onboarding
from places import dedupe, place_key
from schemas import LocationIn, ResearchPlan, ScopeOption, TasteProfileOut

logger = logging.getLogger(__name__)

TRIP_SOURCE_NAME = "Trip Builder"
TRIP_CONFIDENCE = 0.88
RESEARCH_SOURCE_NAME = "Research Planner"
RESEARCH_CONFIDENCE = 0.85


class Stage(str, Enum):
    INTAKE_RECEIVED = "intake_received"
    PROFILE_EXTRACTED = "profile_extracted"
    SCOPES_GENERATED = "scopes_generated"
    SCOPE_SELECTED = "scope_selected"
    ITINERARY_BUILT = "itinerary_built"
    PERSISTED = "persisted"


def _default_concurrency() -> int:
    return int(os.getenv("PIPELINE_CONCURRENCY", "10"))


# ---------------------------------------------------------------------------
# Row views
# ---------------------------------------------------------------------------

def location_view(row: dict) -> dict:
    """Store row → API shape: ``coordinates`` is null when geocoding failed."""
    has_coords = row.get("lat") is not None and row.get("lng") is not None
    return {
        "id": row["id"],
        "blueprint_id": row.get("blueprint_id"),
        "name": row.get("name"),
        "coordinates": {"lat": row["lat"], "lng": row["lng"]} if has_coords else None,
        "category": row.get("category") or [],
        "notes": row.get("notes") or "",
        "source": {
            "type": row.get("source_type") or "self",
            "source_id": row.get("source_id"),
            "source_name": row.get("source_name"),
            "source_url": row.get("source_url"),
            "confidence": row.get("confidence"),
        },
        "enrichment": row.get("enrichment") or {},
        "position": row.get("position", 0),
        "created_at": row.get("created_at"),
    }


def _location_order(view: dict):
    day = view["enrichment"].get("day")
    has_day = isinstance(day, int)
    return (not has_day, day if has_day else 0, view.get("position") or 0)


def primary_category(category: list) -> str:
    return (category or ["landmark"])[0] or "landmark"


class TripPipeline:
    """Caller-facing operations.  Every method takes the current user id first."""

    def __init__(self, store, llm=None, geocoder=None, artifacts=None,
                 flight_search=None, router=None, concurrency: Optional[int] = None):
        self.store = store
        self.llm = llm
        self.geocoder = geocoder
        self.artifacts = artifacts
        self.flight_search = flight_search
        # Without a directions key every route is a straight-line estimate
        self.router = router if router is not None else RouteAgent.RouteFinder(api_key="")
        self.concurrency = concurrency or _default_concurrency()

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _require_user(user_id: Optional[str]) -> str:
        if not user_id:
            raise Unauthorized()
        return user_id

    @staticmethod
    def _stage(stage: Stage, ref: str = "-", **extra):
        details = " ".join(f"{k}={v}" for k, v in extra.items())
        logger.info("[%s] %s %s", ref, stage.value, details)

    async def _owned_trip(self, user_id: str, trip_intent_id: str) -> dict:
        trip = await self.store.select_one(
            "trip_intents", {"id": trip_intent_id, "owner_id": user_id}
        )
        if trip is None:
            raise PrereqMissing("Trip intent not found")
        return trip

    async def _owned_blueprint(self, user_id: str, blueprint_id: str) -> dict:
        blueprint = await self.store.select_one(
            "blueprints", {"id": blueprint_id, "owner_id": user_id}
        )
        if blueprint is None:
            raise PrereqMissing("Blueprint not found")
        return blueprint

    async def _upsert_profile(self, user_id: str, profile: TasteProfileOut,
                              raw_answers, **extra) -> dict:
        fields = {
            "user_id": user_id,
            "anchors": profile.anchors,
            "dimensions": profile.dimensions.model_dump(),
            "pace": profile.pace,
            "meal_philosophy": profile.meal_philosophy,
            "sleep_pattern": profile.sleep_pattern,
            "discovery_mode": profile.discovery_mode,
            "hard_constraints": profile.hard_constraints,
            "soft_preferences": profile.soft_preferences,
            "selected_image_moods": profile.selected_image_moods,
            "taste_summary": profile.taste_summary,
            "raw_answers": raw_answers,
        }
        fields.update(extra)
        return await self.store.upsert("taste_profiles", fields, conflict_key="user_id")

    async def _create_blueprint(self, fields: dict) -> dict:
        try:
            return await self.store.insert("blueprints", fields)
        except Exception as exc:
            logger.error("Blueprint creation failed: %s", exc)
            raise PersistenceError("Failed to create blueprint") from exc

    async def _insert_locations(self, blueprint_id: str, rows: list[dict]) -> list[dict]:
        try:
            return await self.store.insert_many("locations", rows)
        except Exception as exc:
            # Blueprint stays with zero locations; re-running the build recovers.
            logger.error("Location insert failed for blueprint %s: %s", blueprint_id, exc)
            raise PersistenceError("Failed to save locations") from exc

    async def _lookup_artifacts(self, culture: str, categories: list[str],
                                limit: Optional[asyncio.Semaphore] = None) -> list:
        """One artifact (or None) per category, aligned with the input.

        Each distinct category is looked up once and shared by every place
        that carries it.
        """
        if self.artifacts is None:
            return [None] * len(categories)
        if limit is None:
            limit = asyncio.Semaphore(self.concurrency)
        unique = list(dict.fromkeys(categories))

        async def _one(category: str):
            async with limit:
                return await self.artifacts.lookup(culture, category)

        results = await asyncio.gather(*(_one(c) for c in unique), return_exceptions=True)
        by_category = {}
        for category, result in zip(unique, results):
            if isinstance(result, BaseException):
                logger.warning("Artifact lookup for %s/%s failed: %s", culture, category, result)
                result = None
            by_category[category] = result
        return [by_category[c] for c in categories]

    async def _geocode_and_enrich(self, places: list[tuple[str, str]], culture: str,
                                  categories: list[str]):
        """Geocode and artifact lookups for every place under one concurrency cap."""
        limit = asyncio.Semaphore(self.concurrency)

        async def _geocode():
            if self.geocoder is None:
                return [None] * len(places)
            return await self.geocoder.geocode_many(places, limit=limit)

        return await asyncio.gather(_geocode(), self._lookup_artifacts(culture, categories, limit))

    # -- taste profile -----------------------------------------------------

    async def get_profile(self, user_id: Optional[str]) -> Optional[dict]:
        user_id = self._require_user(user_id)
        return await self.store.select_one("taste_profiles", {"user_id": user_id})

    async def submit_onboarding(self, user_id: Optional[str], image_selections: list[str],
                                anchor_text: str = "", bucket_list_trip: str = "",
                                hard_constraint: str = "") -> dict:
        user_id = self._require_user(user_id)
        result = await run_onboarding(self.llm, image_selections, anchor_text,
                                      bucket_list_trip, hard_constraint)
        await self._upsert_profile(
            user_id,
            result.taste_profile,
            raw_answers={
                "image_selections": image_selections,
                "anchor_text": anchor_text,
                "bucket_list_trip": bucket_list_trip,
                "hard_constraint": hard_constraint,
            },
            onboarding_completed=True,
            image_selections=image_selections,
        )
        logger.info("Onboarding complete for %s (%d moods)", user_id,
                    len(result.taste_profile.selected_image_moods))
        return {
            "taste_phrases": result.taste_phrases,
            "taste_profile": result.taste_profile.model_dump(),
        }

    # -- trip mode ---------------------------------------------------------

    async def submit_intake(self, user_id: Optional[str], answers: list) -> dict:
        user_id = self._require_user(user_id)
        if not answers:
            raise InvalidRequest("No answers provided")
        answers = [a.model_dump() if hasattr(a, "model_dump") else dict(a) for a in answers]
        destination = planning_agent.find_destination(answers)
        self._stage(Stage.INTAKE_RECEIVED, user_id, destination=destination, answers=len(answers))

        profile = await planning_agent.extract_profile(self.llm, answers)
        profile_row = await self._upsert_profile(user_id, profile, raw_answers=answers)
        self._stage(Stage.PROFILE_EXTRACTED, user_id, profile=profile_row["id"])

        scopes = await planning_agent.generate_scopes(self.llm, profile.model_dump(), destination)

        trip = await self.store.insert("trip_intents", {
            "owner_id": user_id,
            "destination": destination,
            "travelers": [{"user_id": user_id, "is_owner": True,
                           "taste_profile_id": profile_row["id"]}],
            "scope_options": [s.model_dump() for s in scopes],
            "hard_constraints": profile.hard_constraints,
            "soft_preferences": profile.soft_preferences,
            "status": "scoping",
        })
        self._stage(Stage.SCOPES_GENERATED, trip["id"], scopes=len(scopes))

        return {
            "trip_intent_id": trip["id"],
            "taste_profile": profile.model_dump(),
            "scope_options": trip["scope_options"],
            "destination": destination,
        }

    async def get_trip_intent(self, user_id: Optional[str], trip_intent_id: str) -> dict:
        user_id = self._require_user(user_id)
        return await self._owned_trip(user_id, trip_intent_id)

    @staticmethod
    def _pick_scope(trip: dict, scope_id: Optional[str]) -> dict:
        options = trip.get("scope_options") or []
        if scope_id:
            for option in options:
                if option.get("id") == scope_id:
                    return option
            raise PrereqMissing("Scope not found")
        wanted = trip.get("selected_scope_id")
        for option in options:
            if wanted and option.get("id") == wanted:
                return option
        if not options:
            raise PrereqMissing("Scope not found")
        return options[0]

    async def select_scope(self, user_id: Optional[str], trip_intent_id: str,
                           scope_id: Optional[str] = None) -> dict:
        user_id = self._require_user(user_id)
        if not trip_intent_id:
            raise InvalidRequest("trip_intent_id required")
        trip = await self._owned_trip(user_id, trip_intent_id)
        scope = ScopeOption.model_validate(self._pick_scope(trip, scope_id)).model_dump()
        self._stage(Stage.SCOPE_SELECTED, trip_intent_id, scope=scope["id"])

        profile = await self.store.select_one("taste_profiles", {"user_id": user_id})
        itinerary = await planning_agent.build_itinerary(self.llm, profile, trip, scope)
        pairs = planning_agent.flatten_itinerary(itinerary)
        self._stage(Stage.ITINERARY_BUILT, trip_intent_id,
                    days=len(itinerary.days), places=len(pairs))

        culture = trip.get("destination") or "European"
        geo, artifacts = await self._geocode_and_enrich(
            [(p.name, p.address) for _, p in pairs],
            culture,
            [primary_category(p.category) for _, p in pairs],
        )
        unresolved = sum(1 for g in geo if g is None)
        if unresolved:
            logger.warning("[%s] %d/%d places left without coordinates",
                           trip_intent_id, unresolved, len(pairs))

        blueprint = await self._create_blueprint({
            "owner_id": user_id,
            "story_intent": "travel",
            "title": itinerary.title,
            "bounding_context": {},
            "metadata": {
                "title": itinerary.title,
                "is_public": False,
                "tags": [trip.get("destination")],
                "artifact_type": "trip_itinerary",
                "trip_intent_id": trip_intent_id,
                "scope_id": scope["id"],
                "destination": trip.get("destination"),
            },
        })

        rows = []
        for position, ((day, place), hit, artifact) in enumerate(zip(pairs, geo, artifacts)):
            rows.append({
                "blueprint_id": blueprint["id"],
                "name": place.name,
                "lat": hit.lat if hit else None,
                "lng": hit.lng if hit else None,
                "category": place.category,
                "notes": place.fit,
                "source_type": "ai",
                "source_name": TRIP_SOURCE_NAME,
                "source_url": place.source_url,
                "confidence": TRIP_CONFIDENCE,
                "position": position,
                "enrichment": {
                    "formatted_address": hit.formatted_address if hit else place.address,
                    "day": day,
                    "time_of_day": place.time_of_day,
                    "duration_minutes": place.duration_minutes,
                    "booking_required": place.booking_required,
                    "source_url": place.source_url,
                    "fit": place.fit,
                    "geocoded": hit is not None,
                    "artifact": artifact.overlay() if artifact else None,
                },
            })
        locations = await self._insert_locations(blueprint["id"], rows)

        await self.store.update("trip_intents", trip_intent_id, {
            "blueprint_id": blueprint["id"],
            "selected_scope_id": scope["id"],
            "status": "building",
        })
        self._stage(Stage.PERSISTED, trip_intent_id,
                    blueprint=blueprint["id"], locations=len(locations))

        return {
            "blueprint_id": blueprint["id"],
            "title": itinerary.title,
            "days": len(itinerary.days),
            "total_places": len(locations),
            "locations": [location_view(row) for row in locations],
        }

    # -- research mode -----------------------------------------------------

    async def run_research(self, user_id: Optional[str], query: str) -> dict:
        self._require_user(user_id)
        if not (query or "").strip():
            raise InvalidRequest("Query is required")
        plan = await ResearchAgent.plan(self.llm, self.geocoder, query.strip(),
                                        concurrency=self.concurrency)
        return {"plan": plan.model_dump()}

    async def refine_research(self, user_id: Optional[str], plan: ResearchPlan,
                              instruction: str) -> dict:
        self._require_user(user_id)
        if not (instruction or "").strip():
            raise InvalidRequest("Instruction is required")
        refined = await ResearchAgent.refine(self.llm, self.geocoder, plan, instruction,
                                             concurrency=self.concurrency)
        return {"plan": refined.model_dump()}

    async def accept_research(self, user_id: Optional[str], plan: ResearchPlan,
                              excluded: Optional[list[str]] = None) -> dict:
        """Write the places the user kept into a new discovery blueprint.

        ``excluded`` holds place keys: a normalized name, or ``theme_id::name``.
        """
        user_id = self._require_user(user_id)
        excluded = set(excluded or [])
        excluded_names = {place_key(k) for k in excluded}

        kept = []
        for theme in plan.themes:
            for place in theme.places:
                if f"{theme.id}::{place.name}" in excluded or place_key(place.name) in excluded_names:
                    continue
                kept.append((theme, place))
        kept_places = {id(p) for p in dedupe(place for _, place in kept)}
        kept = [(t, p) for t, p in kept if id(p) in kept_places]
        if not kept:
            raise InvalidRequest("No places selected")

        title = plan.title or plan.query or "Untitled map"
        blueprint = await self._create_blueprint({
            "owner_id": user_id,
            "story_intent": "discovery",
            "title": title,
            "bounding_context": {},
            "metadata": {
                "title": title,
                "is_public": False,
                "tags": [plan.intent],
                "artifact_type": "research_map",
                "summary": plan.summary,
                "query": plan.query,
            },
        })
        rows = [{
            "blueprint_id": blueprint["id"],
            "name": place.name,
            "lat": place.coordinates.lat if place.coordinates else None,
            "lng": place.coordinates.lng if place.coordinates else None,
            "category": place.category,
            "notes": place.why,
            "source_type": "ai",
            "source_name": RESEARCH_SOURCE_NAME,
            "source_url": place.source_url,
            "confidence": RESEARCH_CONFIDENCE,
            "position": position,
            "enrichment": {
                "formatted_address": place.formatted_address or place.address,
                "theme": theme.name,
                "geocoded": place.coordinates is not None,
            },
        } for position, (theme, place) in enumerate(kept)]
        locations = await self._insert_locations(blueprint["id"], rows)
        logger.info("Research plan %r accepted as blueprint %s (%d places)",
                    title, blueprint["id"], len(locations))
        return {"blueprint_id": blueprint["id"], "total_places": len(locations)}

    # -- flights -----------------------------------------------------------

    async def resolve_flights(self, user_id: Optional[str], blueprint_id: str,
                              segments: list) -> dict:
        user_id = self._require_user(user_id)
        if not blueprint_id or not segments:
            raise InvalidRequest("blueprint_id and segments required")
        await self._owned_blueprint(user_id, blueprint_id)

        requests = [
            s if isinstance(s, SegmentRequest)
            else SegmentRequest.from_dict(s.model_dump() if hasattr(s, "model_dump") else s)
            for s in segments
        ]
        resolved = await FlightAgent.resolve_segments(requests, self.flight_search,
                                                      concurrency=self.concurrency)

        configured = self.flight_search is not None and self.flight_search.configured
        for segment in resolved:
            try:
                row = await self.store.insert("connections", {
                    "blueprint_id": blueprint_id,
                    "connection_type": "flight",
                    "status": segment.status if configured else "suggested",
                    "provider": getattr(self.flight_search, "provider", None) if configured else None,
                    "provider_ref_id": segment.cheapest_offer.id if segment.cheapest_offer else None,
                    "data": segment.connection_data(),
                    "deep_link_url": segment.deep_link_url,
                })
                segment.connection_id = row["id"]
            except Exception as exc:
                logger.warning("Could not persist segment %s: %s", segment.route_label(), exc)

        available = sum(1 for s in resolved if s.status == "available")
        logger.info("Flights for %s: %d/%d segments available",
                    blueprint_id, available, len(resolved))
        return {"segments": [s.to_dict() for s in resolved]}

    async def suggest_segments(self, user_id: Optional[str], blueprint_id: str,
                               start_date: Optional[date] = None) -> dict:
        user_id = self._require_user(user_id)
        await self._owned_blueprint(user_id, blueprint_id)
        locations = await self._locations(blueprint_id)
        segments = FlightAgent.suggest_segments(locations, start_date)
        return {"segments": [s.to_dict() for s in segments]}

    # -- co-planner and routes ---------------------------------------------

    async def suggest_places(self, user_id: Optional[str], blueprint_id: str,
                             intent: str = "", day_structure: str = "") -> dict:
        """3-5 new places for a blueprint, skipping the ones it already has.

        Nothing is written; suggestions are shaped like location bodies.
        """
        user_id = self._require_user(user_id)
        blueprint = await self._owned_blueprint(user_id, blueprint_id)
        locations = await self._locations(blueprint_id)
        metadata = blueprint.get("metadata") or {}
        destination = metadata.get("destination") or blueprint.get("title") or "unknown"
        suggestions = await CoPlannerAgent.suggest(
            self.llm, self.geocoder, destination,
            [loc["name"] for loc in locations],
            intent=intent,
            structure=day_structure or CoPlannerAgent.day_structure(locations),
            concurrency=self.concurrency,
        )
        return {"destination": destination, "suggestions": suggestions}

    async def compute_route(self, user_id: Optional[str], blueprint_id: str,
                            day: Optional[int] = None, mode: str = "walking") -> dict:
        """Route through the blueprint's mapped locations in itinerary order.

        Locations without coordinates are left out and listed in ``skipped``.
        """
        user_id = self._require_user(user_id)
        if mode not in RouteAgent.TRAVEL_SPEEDS:
            raise InvalidRequest(f"Unsupported travel mode: {mode}")
        await self._owned_blueprint(user_id, blueprint_id)
        locations = await self._locations(blueprint_id)
        if day is not None:
            locations = [loc for loc in locations if loc["enrichment"].get("day") == day]

        on_map = [loc for loc in locations if loc["coordinates"] is not None]
        skipped = [loc["id"] for loc in locations if loc["coordinates"] is None]
        if len(on_map) < 2:
            raise InvalidRequest("Need at least 2 locations with coordinates")
        if len(on_map) > RouteAgent.MAX_WAYPOINTS:
            raise InvalidRequest(
                f"Too many locations for one route (max {RouteAgent.MAX_WAYPOINTS})"
            )

        waypoints = [{**loc["coordinates"], "name": loc["name"]} for loc in on_map]
        route = await self.router.route(waypoints, mode)
        if skipped:
            logger.info("Route for %s skipped %d unmapped locations", blueprint_id, len(skipped))
        return {
            "route": route.to_dict(),
            "location_ids": [loc["id"] for loc in on_map],
            "skipped": skipped,
        }

    # -- blueprints and locations -----------------------------------------

    async def _locations(self, blueprint_id: str) -> list[dict]:
        rows = await self.store.select_many("locations", {"blueprint_id": blueprint_id},
                                            order=["position", "created_at"])
        return sorted((location_view(r) for r in rows), key=_location_order)

    async def list_blueprints(self, user_id: Optional[str]) -> list[dict]:
        user_id = self._require_user(user_id)
        return await self.store.select_many("blueprints", {"owner_id": user_id},
                                            order="-updated_at")

    async def get_blueprint(self, user_id: Optional[str], blueprint_id: str) -> dict:
        user_id = self._require_user(user_id)
        blueprint = await self._owned_blueprint(user_id, blueprint_id)
        return {**blueprint, "locations": await self._locations(blueprint_id)}

    async def list_locations(self, user_id: Optional[str], blueprint_id: str) -> list[dict]:
        user_id = self._require_user(user_id)
        await self._owned_blueprint(user_id, blueprint_id)
        return await self._locations(blueprint_id)

    async def upsert_location(self, user_id: Optional[str], blueprint_id: str,
                              location: LocationIn) -> dict:
        user_id = self._require_user(user_id)
        await self._owned_blueprint(user_id, blueprint_id)
        fields = {
            "blueprint_id": blueprint_id,
            "name": location.name,
            "lat": location.coordinates.lat if location.coordinates else None,
            "lng": location.coordinates.lng if location.coordinates else None,
            "category": location.category,
            "notes": location.notes,
            "source_type": location.source.type,
            "source_id": location.source.source_id,
            "source_name": location.source.source_name,
            "source_url": location.source.source_url,
            "confidence": location.source.confidence,
            "enrichment": location.enrichment,
        }
        if location.id:
            existing = await self.store.select_one("locations", {"id": location.id})
            if existing is not None:
                if existing.get("blueprint_id") != blueprint_id:
                    raise InvalidRequest("Location belongs to another blueprint")
                row = await self.store.update("locations", location.id, fields)
                return location_view(row)
            fields["id"] = location.id

        current = await self.store.select_many("locations", {"blueprint_id": blueprint_id})
        fields["position"] = max((r.get("position") or 0 for r in current), default=-1) + 1
        row = await self.store.insert("locations", fields)
        return location_view(row)

    async def delete_location(self, user_id: Optional[str], blueprint_id: str,
                              location_id: str) -> dict:
        user_id = self._require_user(user_id)
        if not location_id:
            raise InvalidRequest("location_id required")
        await self._owned_blueprint(user_id, blueprint_id)
        deleted = await self.store.delete(
            "locations", {"id": location_id, "blueprint_id": blueprint_id}
        )
        if not deleted:
            raise PrereqMissing("Location not found")
        return {"ok": True}
