from __future__ import annotations

import logging
from typing import Dict, List, Optional
from urllib.parse import urlencode, urljoin

import httpx
import orjson
from pydantic import ValidationError

from lumigram.core.contracts import (
    ApiErrorPayload,
    ClosestPoiResponse,
    Coordinate,
    PlaceOfWorship,
    RadiusSearchSummary,
)
from lumigram.core.errors import BackendError, MalformedResponse, TransportFailure
from lumigram.core.keying import stamp_id_from_osm_url
from lumigram.core.settings import settings
from lumigram.services.overpass import classify_category

logger = logging.getLogger(__name__)

API_PATH = "/api/closest-poi"
DEFAULT_ERROR = "Unable to retrieve nearby places of worship."


def get_api_base_url() -> str:
    """Base the client will talk to, for diagnostics."""
    configured = (settings.api_base_url or "").strip()
    if configured:
        return configured
    return (settings.host_origin or "").strip() or settings.fallback_origin


def resolve_api_url(params: dict) -> str:
    """
    Configured base wins (relative join, so a base path is kept); otherwise
    the API path is rooted at the host origin, then the fallback origin.
    """
    query = urlencode(params)
    configured = (settings.api_base_url or "").strip()
    if configured:
        base = configured if configured.endswith("/") else f"{configured}/"
        return f"{urljoin(base, API_PATH.lstrip('/'))}?{query}"

    origin = (settings.host_origin or "").strip() or settings.fallback_origin
    return f"{urljoin(origin, API_PATH)}?{query}"


async def fetch_closest_poi(
    *,
    client: httpx.AsyncClient,
    lat: float,
    lon: float,
    radius_km: float,
) -> ClosestPoiResponse:
    url = resolve_api_url({"lat": str(lat), "lon": str(lon), "radiusKm": _num_str(radius_km)})

    try:
        r = await client.get(url)
    except httpx.HTTPError as e:
        raise TransportFailure(f"{url} -> {e.__class__.__name__}: {e}") from e

    if r.status_code < 200 or r.status_code >= 300:
        message = DEFAULT_ERROR
        try:
            body = ApiErrorPayload.model_validate(orjson.loads(r.content))
            if body.message:
                message = body.message
        except (orjson.JSONDecodeError, ValidationError):
            pass
        logger.warning("[ClosestPoi] %s -> HTTP %d: %s", url, r.status_code, message)
        raise BackendError(message, status_code=r.status_code, target=url)

    try:
        return ClosestPoiResponse.model_validate(orjson.loads(r.content))
    except (orjson.JSONDecodeError, ValidationError) as e:
        raise MalformedResponse(f"{url} -> unexpected payload") from e


def response_to_places(resp: ClosestPoiResponse) -> List[PlaceOfWorship]:
    out: List[PlaceOfWorship] = []
    for it in resp.items:
        try:
            coord = Coordinate(latitude=it.coordinates.latitude, longitude=it.coordinates.longitude)
        except ValueError:
            continue
        out.append(
            PlaceOfWorship(
                stable_id=stamp_id_from_osm_url(it.osmUrl),
                display_name=it.name,
                coordinate=coord,
                category=classify_category(it.tags),
                category_label=it.category.label,
                distance_from_origin_m=it.distanceMeters,
                source_tags=dict(it.tags),
            )
        )
    return out


class ClosestPoiExecutor:
    """Builds cache-miss executors for point+radius queries against the backend."""

    def __init__(self, *, client: httpx.AsyncClient):
        self.client = client
        self._summaries: Dict[str, RadiusSearchSummary] = {}

    def for_radius(self, center: Coordinate, radius_km: float):
        async def run(key: str) -> List[PlaceOfWorship]:
            resp = await fetch_closest_poi(
                client=self.client,
                lat=center.latitude,
                lon=center.longitude,
                radius_km=radius_km,
            )
            self._summaries[key] = RadiusSearchSummary(count=resp.count, radius_m=resp.radiusMeters)
            return response_to_places(resp)

        return run

    def summary(self, key: str) -> Optional[RadiusSearchSummary]:
        """Backend totals from the last fetch of ``key``, kept across cache hits."""
        return self._summaries.get(key)


def _num_str(x: float) -> str:
    f = float(x)
    return str(int(f)) if f.is_integer() else str(f)
