"""Place-list helpers: name normalization and first-seen deduplication."""

from typing import Any, Iterable, List


def place_name(place: Any) -> str:
    """Name of a place given as a dict, a pydantic model, or any object with ``.name``."""
    if isinstance(place, dict):
        return str(place.get("name") or "")
    return str(getattr(place, "name", "") or "")


def place_key(name: str) -> str:
    """Lowercased name with all whitespace removed: 'Cafe A' and 'cafe  a' collide."""
    return "".join((name or "").lower().split())


def dedupe(places: Iterable[Any]) -> List[Any]:
    """Drop places whose normalized name was already seen, keeping input order.

    Exact-normalized-name matching only; 'Café A' and 'Cafe A' stay distinct.
    """
    seen: set[str] = set()
    out = []
    for place in places:
        key = place_key(place_name(place))
        if key in seen:
            continue
        seen.add(key)
        out.append(place)
    return out
