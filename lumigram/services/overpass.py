from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
import orjson

from lumigram.core.contracts import BBox4, Coordinate, PlaceOfWorship, PoiCategory
from lumigram.core.errors import MalformedResponse, TransportFailure
from lumigram.core.keying import stable_id
from lumigram.core.settings import settings

logger = logging.getLogger(__name__)

UNNAMED = "Neimenovano"

_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded;charset=UTF-8"}

_WORSHIP_FILTER = '["amenity"="place_of_worship"]["religion"]'


# ──────────────────────────────────────────────────────────────
# Classification
# ──────────────────────────────────────────────────────────────

def classify_category(tags: Optional[Dict[str, Any]]) -> PoiCategory:
    """
    Ordered rule chain. A cross marker beats chapel/church building tags,
    which beat monastery tags; everything else that matched the query is
    a generic place of worship.
    """
    tags = tags or {}
    mm = tags.get("man_made")
    hi = tags.get("historic")
    b = tags.get("building")
    a = tags.get("amenity")

    if mm == "cross" or hi == "wayside_cross":
        return "cross"
    if b == "chapel" or a == "chapel":
        return "chapel"
    if b in ("church", "cathedral"):
        return "church"
    if a == "monastery" or b == "monastery" or hi == "monastery":
        return "monastery"
    return "place_of_worship"


_CATEGORY_LABELS: Dict[str, str] = {
    "cross": "Wayside cross",
    "chapel": "Chapel",
    "church": "Church",
    "monastery": "Monastery",
    "place_of_worship": "Place of worship",
}


def category_label(category: str) -> str:
    return _CATEGORY_LABELS.get(category, category.replace("_", " ").capitalize())


def pick_name(tags: Optional[Dict[str, Any]]) -> str:
    if not tags:
        return UNNAMED
    return tags.get("name:sl") or tags.get("name:en") or tags.get("name") or UNNAMED


# ──────────────────────────────────────────────────────────────
# Element mapping
# ──────────────────────────────────────────────────────────────

def _num(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def element_to_place(el: Dict[str, Any]) -> Optional[PlaceOfWorship]:
    lat = _num(el.get("lat"))
    lon = _num(el.get("lon"))
    if lat is None or lon is None:
        center = el.get("center")
        if not isinstance(center, dict):
            return None
        lat = _num(center.get("lat"))
        lon = _num(center.get("lon"))
        if lat is None or lon is None:
            return None

    sid = stable_id(el.get("type"), el.get("id"))
    if sid is None:
        return None

    raw_tags = el.get("tags")
    tags = {str(k): str(v) for k, v in raw_tags.items()} if isinstance(raw_tags, dict) else {}
    category = classify_category(tags)

    try:
        coord = Coordinate(latitude=lat, longitude=lon)
    except ValueError:
        return None

    return PlaceOfWorship(
        stable_id=sid,
        display_name=pick_name(tags),
        coordinate=coord,
        category=category,
        category_label=category_label(category),
        source_tags=tags,
    )


def dedupe_places(places: Iterable[PlaceOfWorship]) -> List[PlaceOfWorship]:
    """Collapse by stable id, keeping the first-seen instance and its position."""
    seen: set[str] = set()
    out: List[PlaceOfWorship] = []
    for p in places:
        if p.stable_id in seen:
            continue
        seen.add(p.stable_id)
        out.append(p)
    return out


def elements_to_places(elements: Sequence[Any]) -> List[PlaceOfWorship]:
    mapped = (element_to_place(el) for el in elements if isinstance(el, dict))
    return dedupe_places(p for p in mapped if p is not None)


# ──────────────────────────────────────────────────────────────
# Query building
# ──────────────────────────────────────────────────────────────

def _wrap(parts: List[str]) -> str:
    timeout_s = int(getattr(settings, "overpass_query_timeout_s", 20))
    return (
        f"[out:json][timeout:{timeout_s}];"
        f"("
        f"{''.join(parts)}"
        f");"
        f"out center;"
    )


def build_bbox_ql(bbox: BBox4) -> str:
    area = f"({bbox.south},{bbox.west},{bbox.north},{bbox.east})"
    return _wrap([f"{kind}{_WORSHIP_FILTER}{area};" for kind in ("node", "way", "relation")])


def build_around_ql(center: Coordinate, radius_m: float) -> str:
    area = f"(around:{radius_m:.0f},{center.latitude:.6f},{center.longitude:.6f})"
    return _wrap([f"{kind}{_WORSHIP_FILTER}{area};" for kind in ("node", "way", "relation")])


# ──────────────────────────────────────────────────────────────
# Fetching
# ──────────────────────────────────────────────────────────────

async def _fetch_one(client: httpx.AsyncClient, url: str, ql: str) -> List[PlaceOfWorship]:
    try:
        r = await client.post(url, data={"data": ql}, headers=_FORM_HEADERS)
    except httpx.HTTPError as e:
        raise TransportFailure(f"{url} -> {e.__class__.__name__}: {e}") from e

    if r.status_code < 200 or r.status_code >= 300:
        raise TransportFailure(f"{url} -> HTTP {r.status_code}")

    try:
        data = orjson.loads(r.content)
    except orjson.JSONDecodeError as e:
        raise MalformedResponse(f"{url} -> invalid JSON") from e
    if not isinstance(data, dict):
        raise MalformedResponse(f"{url} -> expected a JSON object")

    elements = data.get("elements")
    if not isinstance(elements, list):
        elements = []
    return elements_to_places(elements)


async def fetch_overpass(
    ql: str,
    *,
    client: httpx.AsyncClient,
    endpoints: Optional[Sequence[str]] = None,
) -> List[PlaceOfWorship]:
    """
    Run one query against each endpoint in order until one answers.
    Raises the last endpoint error once all are exhausted.
    """
    urls = list(endpoints) if endpoints is not None else settings.overpass_endpoint_list()
    if not urls:
        raise TransportFailure("No Overpass endpoints configured")

    last_exc: Optional[TransportFailure] = None
    for url in urls:
        try:
            places = await _fetch_one(client, url, ql)
            logger.debug("[Overpass] %s ok: %d places", url, len(places))
            return places
        except TransportFailure as e:
            logger.warning("[Overpass] endpoint failed: %s", e)
            last_exc = e

    assert last_exc is not None
    raise last_exc


class OverpassExecutor:
    """
    Builds cache-miss executors bound to one query. The cache key is only
    used for bookkeeping; the area is baked into the query text.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        endpoints: Optional[Sequence[str]] = None,
    ):
        self.client = client
        self.endpoints = list(endpoints) if endpoints is not None else settings.overpass_endpoint_list()

    def for_bbox(self, bbox: BBox4):
        ql = build_bbox_ql(bbox)

        async def run(_key: str) -> List[PlaceOfWorship]:
            return await fetch_overpass(ql, client=self.client, endpoints=self.endpoints)

        return run

    def for_radius(self, center: Coordinate, radius_m: float):
        ql = build_around_ql(center, radius_m)

        async def run(_key: str) -> List[PlaceOfWorship]:
            return await fetch_overpass(ql, client=self.client, endpoints=self.endpoints)

        return run
