from __future__ import annotations

import re
from typing import Any

from lumigram.core.contracts import BBox4, Coordinate

# 4 decimal places ≈ 11 m: collapses jitter between near-identical viewports
# while keeping distinct viewports at MIN_FETCH_ZOOM apart.
KEY_PRECISION = 4

_OSM_ID_PATTERN = re.compile(r"(node|way|relation)/(\d+)", re.IGNORECASE)


def _q(x: float) -> str:
    return f"{x:.{KEY_PRECISION}f}"


def bbox_key(bbox: BBox4) -> str:
    return f"{_q(bbox.south)},{_q(bbox.west)},{_q(bbox.north)},{_q(bbox.east)}"


def radius_key(center: Coordinate, radius_km: float) -> str:
    return f"r:{_q(center.latitude)},{_q(center.longitude)},{float(radius_km):g}"


def stable_id(osm_type: Any, osm_id: Any) -> str | None:
    """
    Deterministic id for an upstream OSM entity: "<type>/<numeric id>".
    Returns None when the pair cannot identify an entity.
    """
    t = str(osm_type or "").strip().lower()
    if t not in ("node", "way", "relation"):
        return None
    if isinstance(osm_id, bool):
        return None
    if isinstance(osm_id, int):
        n = osm_id
    elif isinstance(osm_id, str) and osm_id.isdigit():
        n = int(osm_id)
    else:
        return None
    return f"{t}/{n}"


def stamp_id_from_osm_url(osm_url: str) -> str:
    """
    "https://www.openstreetmap.org/Way/42" -> "way/42".
    URLs without an OSM identity are used verbatim.
    """
    m = _OSM_ID_PATTERN.search(osm_url or "")
    if m:
        return f"{m.group(1).lower()}/{m.group(2)}"
    return osm_url
