"""
Met Museum Open Access lookups for the floating map artifacts.

Each itinerary location gets one public-domain object picked by
(destination culture, primary place category).  No API key required.
Best effort throughout: any failure returns ``None`` and is cached as such,
so a flaky museum API never blocks an itinerary from being persisted.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx
from dataclasses_json import dataclass_json

from cache import MISSING, MemoryCache

log = logging.getLogger(__name__)

_MET_BASE = "https://collectionapi.metmuseum.org/public/collection/v1"
_CACHE_TTL = 60 * 60 * 24

# category -> (Met department id, search terms)
CATEGORY_MAP: dict[str, tuple[int, str]] = {
    "restaurant":    (6,  "vessel bowl ceramic"),
    "bar":           (6,  "vessel cup drinking"),
    "cafe":          (6,  "vessel cup tea"),
    "coffee":        (6,  "vessel cup tea"),
    "architecture":  (13, "architectural fragment column capital"),
    "landmark":      (13, "relief monument sculpture"),
    "museum":        (11, "painting interior gallery"),
    "gallery":       (11, "painting frame"),
    "temple":        (14, "religious object altar ceremonial"),
    "church":        (15, "religious sculpture icon"),
    "market":        (20, "textile weaving pattern"),
    "shop":          (12, "decorative object craft"),
    "hotel":         (12, "furniture domestic chair table"),
    "accommodation": (12, "furniture bed chamber"),
    "park":          (3,  "botanical garden plant flower"),
    "garden":        (6,  "garden landscape nature ceramic"),
    "nightlife":     (17, "musical instrument performance"),
    "transport":     (5,  "armor vehicle weapon"),
    "beach":         (8,  "oceanic vessel canoe boat"),
    "viewpoint":     (13, "landscape horizon vista sculpture"),
}
_DEFAULT_CATEGORY = (13, "object artifact")

_CULTURE_TERMS: dict[str, str] = {
    "italian": "Roman Italian", "italy": "Roman Italian", "rome": "Roman",
    "french": "French", "france": "French", "paris": "French",
    "japanese": "Japanese", "japan": "Japanese", "tokyo": "Japanese", "kyoto": "Japanese",
    "chinese": "Chinese", "china": "Chinese",
    "greek": "Greek ancient", "greece": "Greek ancient", "athens": "Greek ancient",
    "egyptian": "Egyptian ancient", "egypt": "Egyptian ancient", "cairo": "Egyptian ancient",
    "spanish": "Spanish", "spain": "Spanish",
    "portuguese": "Portuguese", "portugal": "Portuguese", "lisbon": "Portuguese",
    "indian": "Indian", "india": "Indian",
    "thai": "Thai Southeast Asian", "thailand": "Thai Southeast Asian",
    "moroccan": "Moroccan Islamic", "morocco": "Moroccan Islamic",
    "turkish": "Turkish Ottoman", "turkey": "Turkish Ottoman", "istanbul": "Turkish Ottoman",
    "dutch": "Dutch Flemish", "netherlands": "Dutch Flemish", "amsterdam": "Dutch Flemish",
    "american": "American",
    "british": "British English", "london": "British English",
}


@dataclass_json
@dataclass
class MetArtifact:
    objectID: int
    title: str
    objectName: str
    imageUrl: str
    culture: str = ""
    period: str = ""
    medium: str = ""
    date: str = ""
    metUrl: str = ""

    def overlay(self) -> dict:
        """The subset stored on a location for the floating map overlay."""
        return {
            "objectID": self.objectID,
            "imageUrl": self.imageUrl,
            "title": self.title,
            "objectName": self.objectName,
            "metUrl": self.metUrl,
        }


def category_config(category: str) -> tuple[int, str]:
    normalized = re.sub(r"[^a-z]", "_", (category or "").lower())
    return CATEGORY_MAP.get(normalized, _DEFAULT_CATEGORY)


def culture_term(culture: str) -> str:
    lower = (culture or "").lower()
    for key, term in _CULTURE_TERMS.items():
        if key in lower:
            return term
    return culture


class ArtifactLookup:
    """Enrichment capability: ``lookup(culture, category) -> MetArtifact | None``."""

    def __init__(self, cache=None, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0, max_candidates: int = 15):
        self.cache = cache if cache is not None else MemoryCache()
        self._client = client
        self.timeout = timeout
        self.max_candidates = max_candidates

    async def _get_json(self, client: httpx.AsyncClient, path: str, params=None):
        resp = await client.get(f"{_MET_BASE}{path}", params=params, timeout=self.timeout)
        if resp.status_code != 200:
            return None
        return resp.json()

    async def _search(self, client, q: str, department: int, limit: int) -> list[int]:
        data = await self._get_json(client, "/search", {
            "q": q,
            "departmentId": department,
            "hasImages": "true",
            "isPublicDomain": "true",
        })
        return list((data or {}).get("objectIDs") or [])[:limit]

    async def _object(self, client, object_id: int) -> Optional[MetArtifact]:
        obj = await self._get_json(client, f"/objects/{object_id}")
        if not obj or not obj.get("primaryImage") or not obj.get("isPublicDomain"):
            return None
        return MetArtifact(
            objectID=obj["objectID"],
            title=obj.get("title") or "Untitled",
            objectName=obj.get("objectName") or "",
            imageUrl=obj["primaryImage"],
            culture=obj.get("culture") or "",
            period=obj.get("period") or "",
            medium=obj.get("medium") or "",
            date=obj.get("objectDate") or "",
            metUrl=obj.get("objectURL")
            or f"https://www.metmuseum.org/art/collection/search/{obj['objectID']}",
        )

    async def _first_with_image(self, client, q: str, department: int, limit: int):
        for object_id in await self._search(client, q, department, limit):
            artifact = await self._object(client, object_id)
            if artifact is not None:
                return artifact
        return None

    async def _find(self, client, culture: str, category: str) -> Optional[MetArtifact]:
        department, base_q = category_config(category)
        term = culture_term(culture)
        artifact = await self._first_with_image(client, f"{term} {base_q}", department,
                                                self.max_candidates)
        if artifact is None:
            # Culture alone, same department
            artifact = await self._first_with_image(client, term, department, 10)
        return artifact

    async def lookup(self, culture: str, category: str) -> Optional[MetArtifact]:
        cache_key = f"artifact|{(culture or '').lower()}|{(category or '').lower()}"
        cached = await self.cache.get(cache_key)
        if cached is not MISSING:
            return MetArtifact.from_dict(cached) if cached else None

        try:
            if self._client is not None:
                artifact = await self._find(self._client, culture, category)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    artifact = await self._find(client, culture, category)
        except Exception as exc:
            # Not cached: the museum may be back on the next request.
            log.warning("Artifact lookup failed (%s): %s", cache_key, exc)
            return None

        await self.cache.set(cache_key, artifact.to_dict() if artifact else None,
                             ttl_seconds=_CACHE_TTL)
        return artifact
