"""FastAPI backend for the itinerary pipeline."""
import os
import logging
from datetime import date
from typing import Optional

# Load .env before anything else
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agents.ArtifactAgent import ArtifactLookup
from agents.FlightAgent import FlightSearch
from agents.GeoAgent import Geocoder
from agents.llm import LLMClient, _llm_name
from agents.RouteAgent import RouteFinder
from cache import StoreCache
from database import get_store
from errors import PipelineError, Unauthorized
from pipeline import TripPipeline
from schemas import (
    AcceptRequest, BuildRequest, FlightsRequest, IntakeRequest, LocationIn,
    OnboardingRequest, RefineRequest, ResearchRequest, SuggestRequest,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Trip Itinerary Pipeline API",
    description="Taste profile → trip scopes → geocoded day-by-day itinerary",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_pipeline: Optional[TripPipeline] = None


def build_pipeline() -> TripPipeline:
    store = get_store()
    cache = StoreCache(store)
    return TripPipeline(
        store,
        llm=LLMClient(),
        geocoder=Geocoder(cache=cache),
        artifacts=ArtifactLookup(cache=cache),
        flight_search=FlightSearch(),
        router=RouteFinder(cache=cache),
    )


def get_pipeline() -> TripPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def current_user_id(user_id: Optional[str] = Query(None)) -> str:
    """Opaque identity: the caller's user id.  Missing → 401 before anything runs."""
    if not user_id:
        raise Unauthorized()
    return user_id


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# ---------------------------------------------------------------------------
# Trip mode
# ---------------------------------------------------------------------------

@app.post("/trips/intake")
async def submit_intake(body: IntakeRequest, user_id: str = Depends(current_user_id),
                        pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.submit_intake(user_id, body.answers)


@app.post("/trips/build")
async def build_trip(body: BuildRequest, user_id: str = Depends(current_user_id),
                     pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.select_scope(user_id, body.trip_intent_id, body.scope_id)


@app.get("/trips/{trip_intent_id}")
async def get_trip_intent(trip_intent_id: str, user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.get_trip_intent(user_id, trip_intent_id)


# ---------------------------------------------------------------------------
# Research mode
# ---------------------------------------------------------------------------

@app.post("/research")
async def run_research(body: ResearchRequest, user_id: str = Depends(current_user_id),
                       pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.run_research(user_id, body.query)


@app.post("/research/refine")
async def refine_research(body: RefineRequest, user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.refine_research(user_id, body.plan, body.instruction)


@app.post("/research/accept", status_code=201)
async def accept_research(body: AcceptRequest, user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.accept_research(user_id, body.plan, body.excluded)


# ---------------------------------------------------------------------------
# Flights
# ---------------------------------------------------------------------------

@app.post("/connections/flights")
async def resolve_flights(body: FlightsRequest, user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.resolve_flights(user_id, body.blueprint_id, body.segments)


@app.get("/blueprints/{blueprint_id}/flight-segments")
async def suggest_flight_segments(blueprint_id: str, start_date: Optional[date] = None,
                                  user_id: str = Depends(current_user_id),
                                  pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.suggest_segments(user_id, blueprint_id, start_date)


# ---------------------------------------------------------------------------
# Profile / onboarding
# ---------------------------------------------------------------------------

@app.get("/profile")
async def get_profile(user_id: str = Depends(current_user_id),
                      pipeline: TripPipeline = Depends(get_pipeline)):
    return {"profile": await pipeline.get_profile(user_id)}


@app.post("/onboarding")
async def submit_onboarding(body: OnboardingRequest, user_id: str = Depends(current_user_id),
                            pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.submit_onboarding(
        user_id, body.image_selections, body.anchor_text,
        body.bucket_list_trip, body.hard_constraint,
    )


# ---------------------------------------------------------------------------
# Blueprints and locations
# ---------------------------------------------------------------------------

@app.get("/blueprints")
async def list_blueprints(user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.list_blueprints(user_id)


@app.get("/blueprints/{blueprint_id}")
async def get_blueprint(blueprint_id: str, user_id: str = Depends(current_user_id),
                        pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.get_blueprint(user_id, blueprint_id)


@app.get("/blueprints/{blueprint_id}/locations")
async def list_locations(blueprint_id: str, user_id: str = Depends(current_user_id),
                         pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.list_locations(user_id, blueprint_id)


@app.post("/blueprints/{blueprint_id}/locations", status_code=201)
async def upsert_location(blueprint_id: str, body: LocationIn,
                          user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.upsert_location(user_id, blueprint_id, body)


@app.delete("/blueprints/{blueprint_id}/locations")
async def delete_location(blueprint_id: str, location_id: Optional[str] = None,
                          user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.delete_location(user_id, blueprint_id, location_id)


# ---------------------------------------------------------------------------
# Co-planner and routes
# ---------------------------------------------------------------------------

@app.post("/blueprints/{blueprint_id}/suggestions")
async def suggest_places(blueprint_id: str, body: SuggestRequest,
                         user_id: str = Depends(current_user_id),
                         pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.suggest_places(user_id, blueprint_id, body.intent, body.day_structure)


@app.get("/blueprints/{blueprint_id}/route")
async def blueprint_route(blueprint_id: str, day: Optional[int] = None, mode: str = "walking",
                          user_id: str = Depends(current_user_id),
                          pipeline: TripPipeline = Depends(get_pipeline)):
    return await pipeline.compute_route(user_id, blueprint_id, day, mode)


@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "version": app.version,
        "llm": _llm_name(),
        "geocoding": bool(os.getenv("GOOGLE_GEOCODING_KEY") or os.getenv("GOOGLE_MAPS_API_KEY")),
        "flights": FlightSearch().configured,
        "directions": bool(RouteFinder().api_key),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
