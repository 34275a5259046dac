from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
# Shared
# ──────────────────────────────────────────────────────────────

class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class BBox4(BaseModel):
    """Map viewport rectangle in south/west/north/east order."""
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    south: float = Field(ge=-90.0, le=90.0)
    west: float = Field(ge=-180.0, le=180.0)
    north: float = Field(ge=-90.0, le=90.0)
    east: float = Field(ge=-180.0, le=180.0)


# ──────────────────────────────────────────────────────────────
# Places of worship
# ──────────────────────────────────────────────────────────────
# Closed category set, highest priority first:
#   cross             man_made=cross / historic=wayside_cross
#   chapel, church    building (or amenity) tags
#   monastery         amenity / building / historic monastery
#   place_of_worship  generic fallback for any matched element

PoiCategory = Literal["cross", "chapel", "church", "monastery", "place_of_worship"]

OsmType = Literal["node", "way", "relation"]


class PlaceOfWorship(BaseModel):
    model_config = ConfigDict(frozen=True)

    stable_id: str
    display_name: str
    coordinate: Coordinate
    category: PoiCategory = "place_of_worship"
    category_label: Optional[str] = None
    distance_from_origin_m: Optional[float] = None
    source_tags: Dict[str, str] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    key: str
    items: List[PlaceOfWorship] = Field(default_factory=list)
    fetched_at: str

    def snapshot(self) -> "CacheEntry":
        return self.model_copy(deep=True)


# ──────────────────────────────────────────────────────────────
# Backend closest-POI payloads
# ──────────────────────────────────────────────────────────────

class ApiCoordinates(BaseModel):
    latitude: float
    longitude: float


class ApiCategoryRef(BaseModel):
    key: str
    value: str
    label: str


class ApiCategory(ApiCategoryRef):
    count: int = 0


class ApiPlaceItem(BaseModel):
    name: str
    distanceMeters: float
    coordinates: ApiCoordinates
    osmUrl: str
    tags: Dict[str, str] = Field(default_factory=dict)
    category: ApiCategoryRef


class ClosestPoiResponse(BaseModel):
    radiusMeters: float
    count: int
    source: str = "openstreetmap-overpass"
    categories: List[ApiCategory] = Field(default_factory=list)
    items: List[ApiPlaceItem] = Field(default_factory=list)


class RadiusSearchSummary(BaseModel):
    """Totals the backend reported for one point+radius search."""
    count: int
    radius_m: float


class ApiErrorPayload(BaseModel):
    statusCode: Optional[int] = None
    message: Optional[str] = None


# ──────────────────────────────────────────────────────────────
# Check-in
# ──────────────────────────────────────────────────────────────

class CheckInState(str, Enum):
    IDLE = "idle"
    AWAITING_LOCATION = "awaiting_location"
    OUT_OF_RANGE = "out_of_range"
    IN_RANGE = "in_range"
    HOLDING = "holding"
    COLLECTED = "collected"


class ProximitySnapshot(BaseModel):
    state: CheckInState = CheckInState.IDLE
    target_id: Optional[str] = None
    origin: Optional[Coordinate] = None
    distance_m: Optional[float] = None
    hold_progress: float = 0.0
    location_error: Optional[str] = None
    using_map_center: bool = False
    collected_count: int = 0


class CheckInEvent(BaseModel):
    target_id: str
    collected_at: str


# ──────────────────────────────────────────────────────────────
# Explorer / HTTP surface
# ──────────────────────────────────────────────────────────────

StatusTone = Literal["info", "success", "error"]


class StatusText(BaseModel):
    tone: StatusTone = "info"
    text: str


class CheckInButton(BaseModel):
    title: str
    subtitle: str
    tone: Literal["locked", "ready", "stamped"] = "locked"
    can_stamp: bool = False
    holding: bool = False
    hold_progress: float = 0.0
    distance_label: Optional[str] = None
    distance_progress: Optional[float] = None


class ViewportStatus(BaseModel):
    fetching: bool = False
    error: Optional[str] = None
    count: int = 0


class ExplorerView(BaseModel):
    radius_km: float
    status: StatusText
    busy: bool = False
    button_label: str
    api_target: str
    origin: Optional[Coordinate] = None
    map_center: Optional[Coordinate] = None
    use_map_center: bool = False
    places: List[PlaceOfWorship] = Field(default_factory=list)
    stamped_ids: List[str] = Field(default_factory=list)
    selected_id: Optional[str] = None
    check_in: CheckInButton
    proximity: ProximitySnapshot


class RadiusRequest(BaseModel):
    radius_km: float


class SelectRequest(BaseModel):
    stable_id: str


class ToggleRequest(BaseModel):
    enabled: bool


class ViewportRequest(BaseModel):
    bbox: BBox4
    zoom: int
    trigger: Literal["move", "zoom"] = "move"


class ViewportView(BaseModel):
    status: ViewportStatus
    places: List[PlaceOfWorship] = Field(default_factory=list)
