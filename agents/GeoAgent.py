"""
Google Geocoding API integration for itinerary and research places.

Resolves a free-text place (name + address) to coordinates and a canonical
address.  Never raises: provider errors, rate limits, zero results and a
missing GOOGLE_GEOCODING_KEY all come back as ``None`` ("unresolved"), and
the caller keeps the place with null coordinates.

Usage (from pipeline / ResearchAgent):
    geocoder = Geocoder()
    results = await geocoder.geocode_many([(name, address), ...])
    # results[i] is a GeocodeResult or None, aligned with the input
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx
from dataclasses_json import dataclass_json

from cache import MISSING

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
_CACHE_TTL = 60 * 60 * 24 * 7


def _get_geocoding_key() -> str:
    """Read the API key lazily so that dotenv has loaded by the time we need it."""
    return os.getenv("GOOGLE_GEOCODING_KEY") or os.getenv("GOOGLE_MAPS_API_KEY", "")


def _default_concurrency() -> int:
    return int(os.getenv("PIPELINE_CONCURRENCY", "10"))


@dataclass_json
@dataclass
class GeocodeResult:
    lat: float
    lng: float
    formatted_address: str

    def coordinates(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}


def build_query(name: str, address: str) -> str:
    """One free-text query from name + address (better hit rate than separate fields)."""
    name = (name or "").strip()
    address = (address or "").strip()
    if address and name and name.lower() not in address.lower():
        return f"{name} {address}"
    return address or name


class Geocoder:
    """Async Google geocoder with an optional injected cache."""

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
        return self._api_key if self._api_key is not None else _get_geocoding_key()

    async def _get(self, params: dict) -> dict:
        if self._client is not None:
            resp = await self._client.get(_GEOCODE_URL, params=params, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(_GEOCODE_URL, params=params)
            resp.raise_for_status()
            return resp.json()

    async def lookup(self, query: str) -> Optional[GeocodeResult]:
        """Geocoding capability: ``query -> {lat, lng, formatted_address} | None``."""
        api_key = self.api_key
        if not api_key or not query:
            return None

        cache_key = f"geocode|{query.strip().lower()}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not MISSING:
                return GeocodeResult.from_dict(cached) if cached else None

        try:
            data = await self._get({"address": query, "key": api_key})
        except Exception as exc:
            log.warning("Geocode request failed for %r: %s", query, exc)
            return None

        status = data.get("status")
        if status != "OK" or not data.get("results"):
            # Rate limits and denials are not cached; a later request may succeed.
            if status == "ZERO_RESULTS" and self.cache is not None:
                await self.cache.set(cache_key, None, ttl_seconds=_CACHE_TTL)
            log.info("Geocode unresolved for %r (status=%s)", query, status)
            return None

        try:
            top = data["results"][0]
            loc = top["geometry"]["location"]
            result = GeocodeResult(
                lat=float(loc["lat"]),
                lng=float(loc["lng"]),
                formatted_address=top.get("formatted_address") or query,
            )
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("Malformed geocode response for %r: %s", query, exc)
            return None

        if self.cache is not None:
            await self.cache.set(cache_key, result.to_dict(), ttl_seconds=_CACHE_TTL)
        return result

    async def geocode(self, name: str, address: str) -> Optional[GeocodeResult]:
        try:
            return await self.lookup(build_query(name, address))
        except Exception as exc:
            log.warning("Geocode failed for %r: %s", name, exc)
            return None

    async def geocode_many(
        self,
        places: list[tuple[str, str]],
        concurrency: Optional[int] = None,
        limit: Optional[asyncio.Semaphore] = None,
    ) -> list[Optional[GeocodeResult]]:
        """Geocode (name, address) pairs concurrently, one lookup per distinct query.

        ``limit`` lets a caller share one semaphore across several batches;
        otherwise a fresh one of size ``concurrency`` is used.  Output is
        aligned with the input; unresolved entries are ``None``.
        """
        if limit is None:
            limit = asyncio.Semaphore(max(1, concurrency or _default_concurrency()))
        queries = [build_query(name, address) for name, address in places]
        unique = list(dict.fromkeys(q for q in queries if q))

        async def _one(query: str):
            async with limit:
                return await self.geocode(query, "")

        resolved = await asyncio.gather(*(_one(q) for q in unique), return_exceptions=True)
        by_query = {
            q: (None if isinstance(r, BaseException) else r)
            for q, r in zip(unique, resolved)
        }
        return [by_query.get(q) for q in queries]
