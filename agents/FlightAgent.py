"""
Flight-segment resolution: city names → IATA codes → cheapest Amadeus offer.

Best effort per segment.  The output list always has one FlightSegment per
input segment, in input order; anything that goes wrong on one leg (unknown
city, unconfigured provider, search error) turns into ``status="unavailable"``
on that leg only, with a generic Google Flights link.
"""

import asyncio
import logging
import os
import re
from datetime import date, timedelta
from typing import Optional

from amadeus import Client, ResponseError

from FlightSegment import GENERIC_FLIGHTS_URL, FlightOffer, FlightSegment, SegmentRequest

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# City → airport lookup
# ---------------------------------------------------------------------------

CITY_IATA: dict[str, str] = {
    # North America
    "new york": "JFK", "nyc": "JFK", "manhattan": "JFK",
    "los angeles": "LAX", "la": "LAX",
    "chicago": "ORD",
    "san francisco": "SFO", "sf": "SFO",
    "miami": "MIA", "boston": "BOS",
    "washington": "DCA", "dc": "DCA",
    "seattle": "SEA", "atlanta": "ATL", "denver": "DEN",
    "las vegas": "LAS", "honolulu": "HNL", "san diego": "SAN",
    "toronto": "YYZ", "montreal": "YUL", "vancouver": "YVR",
    "mexico city": "MEX", "cancun": "CUN",
    # Europe
    "london": "LHR", "paris": "CDG", "amsterdam": "AMS", "berlin": "BER",
    "munich": "MUC", "hamburg": "HAM",
    "madrid": "MAD", "barcelona": "BCN", "seville": "SVQ", "malaga": "AGP",
    "rome": "FCO", "milan": "MXP", "florence": "FLR", "venice": "VCE", "naples": "NAP",
    "nice": "NCE", "lyon": "LYS",
    "lisbon": "LIS", "porto": "OPO",
    "athens": "ATH", "istanbul": "IST",
    "prague": "PRG", "vienna": "VIE", "budapest": "BUD", "warsaw": "WAW",
    "zurich": "ZRH", "geneva": "GVA",
    "stockholm": "ARN", "copenhagen": "CPH", "oslo": "OSL", "helsinki": "HEL",
    "dublin": "DUB", "edinburgh": "EDI", "brussels": "BRU",
    # Local spellings, as they appear in Google formatted addresses
    "lisboa": "LIS", "roma": "FCO", "milano": "MXP", "firenze": "FLR",
    "venezia": "VCE", "napoli": "NAP", "münchen": "MUC", "muenchen": "MUC",
    "wien": "VIE", "praha": "PRG", "warszawa": "WAW", "sevilla": "SVQ",
    "málaga": "AGP", "zürich": "ZRH", "genève": "GVA", "bruxelles": "BRU",
    "brussel": "BRU", "københavn": "CPH", "athina": "ATH",
    "ciudad de méxico": "MEX", "são paulo": "GRU", "bogotá": "BOG",
    # Asia-Pacific
    "tokyo": "NRT", "tokyo narita": "NRT",
    "osaka": "KIX", "kyoto": "KIX",  # Kyoto is served by Kansai
    "seoul": "ICN", "beijing": "PEK", "shanghai": "PVG", "hong kong": "HKG",
    "singapore": "SIN", "bangkok": "BKK", "chiang mai": "CNX", "phuket": "HKT",
    "taipei": "TPE", "hanoi": "HAN", "ho chi minh city": "SGN",
    "sydney": "SYD", "melbourne": "MEL", "auckland": "AKL",
    "bali": "DPS", "denpasar": "DPS", "jakarta": "CGK", "kuala lumpur": "KUL",
    "mumbai": "BOM", "delhi": "DEL",
    # Middle East & Africa
    "dubai": "DXB", "abu dhabi": "AUH", "tel aviv": "TLV",
    "cairo": "CAI", "marrakech": "RAK", "nairobi": "NBO",
    "cape town": "CPT", "johannesburg": "JNB",
    # South America
    "buenos aires": "EZE", "rio de janeiro": "GIG", "rio": "GIG",
    "sao paulo": "GRU", "bogota": "BOG", "lima": "LIM", "santiago": "SCL",
}

# Longest names first so "tokyo narita" wins over "tokyo" and "rio de janeiro" over "rio"
_KEYS_LONGEST_FIRST = sorted(CITY_IATA, key=len, reverse=True)


def city_to_iata(city: Optional[str]) -> Optional[str]:
    """Resolve a free-text city to an airport code, or ``None``.

    Exact match first, then a table name at the start of the text
    ("Paris, France", "Paris 75001"), then a table name anywhere as a whole
    word ("Old Town, Lisbon").  Names only match on word boundaries, so
    "Nowhereland" does not resolve through "la".
    """
    normalized = (city or "").lower().strip()
    if not normalized:
        return None
    if normalized in CITY_IATA:
        return CITY_IATA[normalized]
    for key in _KEYS_LONGEST_FIRST:
        if re.match(rf"{re.escape(key)}\b", normalized):
            return CITY_IATA[key]
    for key in _KEYS_LONGEST_FIRST:
        if re.search(rf"\b{re.escape(key)}\b", normalized):
            return CITY_IATA[key]
    return None


# ---------------------------------------------------------------------------
# Amadeus flight-search capability
# ---------------------------------------------------------------------------

def _parse_iso_duration(iso: str) -> int:
    """'PT14H15M' → 855 minutes."""
    m = re.match(r"PT(?:(\d+)H)?(?:(\d+)M)?", iso or "")
    if not m:
        return 0
    return int(m.group(1) or 0) * 60 + int(m.group(2) or 0)


def normalize_offer(offer: dict, carriers: Optional[dict] = None) -> Optional[FlightOffer]:
    """Amadeus FlightOffer (outbound itinerary only) → FlightOffer."""
    itineraries = offer.get("itineraries") or []
    if not itineraries or not itineraries[0].get("segments"):
        return None
    itin = itineraries[0]
    first_seg, last_seg = itin["segments"][0], itin["segments"][-1]
    price = offer.get("price", {})
    carrier = first_seg.get("carrierCode", "")
    return FlightOffer(
        id=str(offer.get("id", "")),
        total_amount=float(price.get("grandTotal", price.get("total", 0))),
        currency=price.get("currency", "USD"),
        carrier=carrier,
        carrier_name=(carriers or {}).get(carrier, carrier),
        flight_number=f"{carrier}{first_seg.get('number', '')}",
        origin=first_seg.get("departure", {}).get("iataCode", ""),
        destination=last_seg.get("arrival", {}).get("iataCode", ""),
        departing_at=first_seg.get("departure", {}).get("at", ""),
        arriving_at=last_seg.get("arrival", {}).get("at", ""),
        duration_minutes=_parse_iso_duration(itin.get("duration", "")),
    )


def cheapest_offer(offers: list[FlightOffer]) -> Optional[FlightOffer]:
    ranked = sorted(offers, key=lambda o: o.total_amount)
    return ranked[0] if ranked else None


def build_deep_link(offer: Optional[FlightOffer]) -> str:
    if offer is None or not offer.origin or not offer.destination:
        return GENERIC_FLIGHTS_URL
    return (
        f"{GENERIC_FLIGHTS_URL}?q=Flights+from+{offer.origin}+to+{offer.destination}"
        f"+on+{offer.departing_at[:10]}"
    )


class FlightSearch:
    """``search(origin_iata, dest_iata, date, passengers) -> [FlightOffer]`` over Amadeus.

    The SDK is synchronous; calls run in a worker thread.  Credentials are
    read when first needed so a late ``load_dotenv`` is honoured.
    """

    provider = "amadeus"

    def __init__(self, client: Optional[Client] = None, max_results: int = 10):
        self._client = client
        self.max_results = max_results

    @property
    def configured(self) -> bool:
        if self._client is not None:
            return True
        return bool(os.getenv("AMADEUS_CLIENT_ID") and os.getenv("AMADEUS_CLIENT_SECRET"))

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(
                client_id=os.getenv("AMADEUS_CLIENT_ID", ""),
                client_secret=os.getenv("AMADEUS_CLIENT_SECRET", ""),
            )
        return self._client

    def _search_sync(self, origin: str, destination: str, departure_date: str,
                     passengers: int) -> list[FlightOffer]:
        response = self.client.shopping.flight_offers_search.get(
            originLocationCode=origin,
            destinationLocationCode=destination,
            departureDate=departure_date,
            adults=passengers,
            currencyCode="USD",
            max=self.max_results,
        )
        result = response.result if isinstance(response.result, dict) else {}
        carriers = result.get("dictionaries", {}).get("carriers", {})
        offers = [normalize_offer(o, carriers) for o in (response.data or [])]
        return [o for o in offers if o is not None]

    async def search(self, origin: str, destination: str, departure_date: str,
                     passengers: int = 1) -> list[FlightOffer]:
        try:
            return await asyncio.to_thread(
                self._search_sync, origin, destination, departure_date, passengers
            )
        except ResponseError as exc:
            logger.warning("Amadeus error for %s→%s on %s: %s",
                           origin, destination, departure_date, exc)
            raise

    def build_deep_link(self, offer: Optional[FlightOffer]) -> str:
        return build_deep_link(offer)


# ---------------------------------------------------------------------------
# Segment resolution
# ---------------------------------------------------------------------------

def _default_concurrency() -> int:
    return int(os.getenv("PIPELINE_CONCURRENCY", "10"))


async def _resolve_one(req: SegmentRequest, search: Optional[FlightSearch]) -> FlightSegment:
    segment = FlightSegment.from_request(
        req,
        origin_iata=req.origin_iata or city_to_iata(req.origin_city),
        destination_iata=req.destination_iata or city_to_iata(req.destination_city),
        status="unavailable",
    )
    if not segment.is_resolved():
        segment.error = "Unknown airport for " + (
            req.origin_city if not segment.origin_iata else req.destination_city
        )
        return segment
    if search is None or not search.configured:
        segment.error = "Flight search not configured"
        return segment

    try:
        offers = await search.search(
            segment.origin_iata, segment.destination_iata, req.date, req.passengers
        )
    except Exception as exc:
        logger.warning("Flight search failed for %s: %s", segment.route_label(), exc)
        segment.error = str(exc)
        return segment

    offer = cheapest_offer(offers)
    if offer is None:
        segment.error = "No routes found"
        return segment
    segment.cheapest_offer = offer
    segment.deep_link_url = search.build_deep_link(offer)
    segment.status = "available"
    return segment


async def resolve_segments(
    segments: list[SegmentRequest],
    search: Optional[FlightSearch] = None,
    concurrency: Optional[int] = None,
) -> list[FlightSegment]:
    """Resolve every segment concurrently; ``len(result) == len(segments)``."""
    limit = asyncio.Semaphore(max(1, concurrency or _default_concurrency()))

    async def _bounded(req: SegmentRequest) -> FlightSegment:
        async with limit:
            return await _resolve_one(req, search)

    results = await asyncio.gather(*(_bounded(s) for s in segments), return_exceptions=True)

    resolved: list[FlightSegment] = []
    for req, result in zip(segments, results):
        if isinstance(result, BaseException):
            logger.warning("Segment %s→%s failed: %s", req.origin_city, req.destination_city, result)
            result = FlightSegment.from_request(
                req, origin_iata=None, destination_iata=None,
                status="unavailable", error=str(result),
            )
        resolved.append(result)
    return resolved


# ---------------------------------------------------------------------------
# Segment suggestion from a blueprint's locations
# ---------------------------------------------------------------------------

def extract_city(address: str) -> str:
    """City token from a formatted address.

    "5 Av. Anatole France, 75007 Paris, France" → "Paris" (second-to-last
    comma segment with postal codes stripped); otherwise the first segment.
    """
    parts = [p.strip() for p in (address or "").split(",")]
    if len(parts) >= 2:
        city = re.sub(r"\d{4,6}(?:-\d{3,4})?\s*", "", parts[-2]).strip()
        if len(city) > 1:
            return city
    return parts[0] if parts else ""


def _on_map(location: dict) -> bool:
    coords = location.get("coordinates")
    if coords is not None:
        return coords.get("lat") is not None and coords.get("lng") is not None
    return location.get("lat") is not None and location.get("lng") is not None


def _day(location: dict) -> int:
    day = (location.get("enrichment") or {}).get("day")
    return day if isinstance(day, int) else 0


def city_sequence(locations: list[dict]) -> list[str]:
    """Cities visited in day order, repeats collapsed, first-seen order kept.

    Locations without coordinates are not on the map and are skipped.
    """
    seen: set[str] = set()
    cities: list[str] = []
    for loc in sorted((l for l in locations if _on_map(l)), key=_day):
        enrichment = loc.get("enrichment") or {}
        address = enrichment.get("formatted_address") or loc.get("notes") or ""
        city = extract_city(address)
        if city and city.lower() not in seen:
            seen.add(city.lower())
            cities.append(city)
    return cities


def suggest_segments(locations: list[dict], start_date: Optional[date] = None,
                     passengers: int = 1) -> list[FlightSegment]:
    """City-to-city legs plus the return leg, three days per stop."""
    cities = city_sequence(locations)
    if len(cities) < 2:
        return []
    start = start_date or (date.today() + timedelta(days=30))
    legs = list(zip(cities, cities[1:])) + [(cities[-1], cities[0])]
    return [
        FlightSegment(
            origin_city=origin,
            destination_city=destination,
            date=(start + timedelta(days=3 * i)).isoformat(),
            origin_iata=city_to_iata(origin),
            destination_iata=city_to_iata(destination),
            status="suggested",
            passengers=passengers,
        )
        for i, (origin, destination) in enumerate(legs)
    ]
