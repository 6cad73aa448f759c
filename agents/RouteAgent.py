"""
Google Directions API integration for blueprint routes.

Computes the legs and an overview polyline through an ordered list of
waypoints.  Falls back to a straight-line estimate when no directions key is
set or the provider returns no route, so the map always gets a line to draw.

Usage (from pipeline):
    router = RouteFinder(cache=cache)
    route = await router.route([{"lat": 38.71, "lng": -9.13, "name": "..."}, ...])
    route.to_dict()  # legs, polyline ([lng, lat] pairs), totals
"""

import logging
import math
import os
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from dataclasses_json import dataclass_json

from cache import MISSING

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"
_CACHE_TTL = 60 * 60 * 24

# Origin + destination + 23 intermediate points
MAX_WAYPOINTS = 25

# Average speeds (km/h) for straight-line estimates
TRAVEL_SPEEDS = {
    "walking": 5.0,
    "bicycling": 15.0,
    "transit": 25.0,
    "driving": 40.0,
}


def _get_directions_key() -> str:
    """Read the API key lazily so that dotenv has loaded by the time we need it."""
    return os.getenv("GOOGLE_DIRECTIONS_KEY") or os.getenv("GOOGLE_MAPS_API_KEY", "")


@dataclass_json
@dataclass
class RouteLeg:
    start_address: str
    end_address: str
    distance_meters: int
    duration_seconds: int
    distance_text: str = ""
    duration_text: str = ""


@dataclass_json
@dataclass
class Route:
    mode: str
    legs: List[RouteLeg] = field(default_factory=list)
    polyline: List[List[float]] = field(default_factory=list)  # [lng, lat]
    total_distance_meters: int = 0
    total_duration_seconds: int = 0
    estimated: bool = False


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------

def decode_polyline(encoded: str) -> List[List[float]]:
    """Google encoded polyline → ``[lng, lat]`` pairs (map-renderer order)."""
    points = []
    index = lat = lng = 0
    while index < len(encoded):
        deltas = []
        for _ in range(2):
            shift = result = 0
            while True:
                byte = ord(encoded[index]) - 63
                index += 1
                result |= (byte & 0x1F) << shift
                shift += 5
                if byte < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lng += deltas[1]
        points.append([lng / 1e5, lat / 1e5])
    return points


def haversine_meters(a: dict, b: dict) -> float:
    radius = 6371000.0
    lat1, lat2 = math.radians(a["lat"]), math.radians(b["lat"])
    d_lat = lat2 - lat1
    d_lng = math.radians(b["lng"] - a["lng"])
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * radius * math.asin(math.sqrt(h))


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{int(round(meters))} m"
    return f"{meters / 1000:.1f} km"


def format_duration(seconds: float) -> str:
    minutes = max(1, int(round(seconds / 60)))
    if minutes < 60:
        return f"{minutes} mins"
    return f"{minutes // 60} h {minutes % 60} mins"


def _label(waypoint: dict, index: int) -> str:
    return waypoint.get("name") or f"Point {index + 1}"


def estimate_route(waypoints: List[dict], mode: str = "walking") -> Route:
    """Straight lines between consecutive waypoints at the mode's average speed."""
    speed = TRAVEL_SPEEDS.get(mode, TRAVEL_SPEEDS["walking"]) * 1000 / 3600  # m/s
    legs = []
    for i, (start, end) in enumerate(zip(waypoints, waypoints[1:])):
        meters = haversine_meters(start, end)
        seconds = meters / speed
        legs.append(RouteLeg(
            start_address=_label(start, i),
            end_address=_label(end, i + 1),
            distance_meters=int(round(meters)),
            duration_seconds=int(round(seconds)),
            distance_text=format_distance(meters),
            duration_text=format_duration(seconds),
        ))
    return Route(
        mode=mode,
        legs=legs,
        polyline=[[w["lng"], w["lat"]] for w in waypoints],
        total_distance_meters=sum(leg.distance_meters for leg in legs),
        total_duration_seconds=sum(leg.duration_seconds for leg in legs),
        estimated=True,
    )


def parse_directions(data: dict, mode: str) -> Optional[Route]:
    """Directions API body → Route, or ``None`` when it holds no route."""
    if data.get("status") != "OK" or not data.get("routes"):
        return None
    top = data["routes"][0]
    legs = [
        RouteLeg(
            start_address=leg.get("start_address", ""),
            end_address=leg.get("end_address", ""),
            distance_meters=int(leg["distance"]["value"]),
            duration_seconds=int(leg["duration"]["value"]),
            distance_text=leg["distance"].get("text", ""),
            duration_text=leg["duration"].get("text", ""),
        )
        for leg in top.get("legs") or []
    ]
    return Route(
        mode=mode,
        legs=legs,
        polyline=decode_polyline(top["overview_polyline"]["points"]),
        total_distance_meters=sum(leg.distance_meters for leg in legs),
        total_duration_seconds=sum(leg.duration_seconds for leg in legs),
    )


# ---------------------------------------------------------------------------
# Route capability
# ---------------------------------------------------------------------------

def _point(waypoint: dict) -> str:
    return f"{waypoint['lat']},{waypoint['lng']}"


class RouteFinder:
    """Async Google directions with an optional injected cache."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache=None,
        timeout: float = 10.0,
    ):
        self._api_key = api_key
        self._client = client
        self.cache = cache
        self.timeout = timeout

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else _get_directions_key()

    async def _get(self, params: dict) -> dict:
        if self._client is not None:
            resp = await self._client.get(_DIRECTIONS_URL, params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(_DIRECTIONS_URL, params=params)
            resp.raise_for_status()
            return resp.json()

    async def route(self, waypoints: List[dict], mode: str = "walking") -> Route:
        """Route through ``waypoints`` in order.  Never raises for provider errors."""
        if len(waypoints) < 2:
            raise ValueError("Need at least 2 waypoints")
        api_key = self.api_key
        if not api_key:
            return estimate_route(waypoints, mode)

        cache_key = f"route|{mode}|" + ";".join(_point(w) for w in waypoints)
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not MISSING:
                return Route.from_dict(cached)

        params = {
            "origin": _point(waypoints[0]),
            "destination": _point(waypoints[-1]),
            "mode": mode,
            "key": api_key,
        }
        if len(waypoints) > 2:
            params["waypoints"] = "|".join(_point(w) for w in waypoints[1:-1])

        try:
            route = parse_directions(await self._get(params), mode)
        except Exception as exc:
            log.warning("Directions request failed (%s, %d points): %s",
                        mode, len(waypoints), exc)
            route = None

        if route is None:
            log.info("No %s route from provider, using straight-line estimate", mode)
            return estimate_route(waypoints, mode)

        if self.cache is not None:
            await self.cache.set(cache_key, route.to_dict(), ttl_seconds=_CACHE_TTL)
        return route
