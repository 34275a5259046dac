from __future__ import annotations

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore", populate_by_name=True)

    # Paths
    state_db_path: str = Field(default="lumigram/data/lumigram_state.db", alias="STATE_DB_PATH")

    # Server
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    # ──────────────────────────────────────────────────────────────
    # Overpass (viewport POI queries)
    # Equivalent public mirrors, tried in order for every query.
    # ──────────────────────────────────────────────────────────────

    overpass_endpoints: str = Field(
        default=(
            "https://overpass-api.de/api/interpreter,"
            "https://overpass.kumi.systems/api/interpreter,"
            "https://lz4.overpass-api.de/api/interpreter"
        ),
        alias="OVERPASS_ENDPOINTS",
    )
    overpass_query_timeout_s: int = Field(default=20, alias="OVERPASS_QUERY_TIMEOUT_S")
    request_timeout_s: float = Field(default=8.0, alias="REQUEST_TIMEOUT_S")

    # Viewport loading
    viewport_move_debounce_s: float = Field(default=0.35, alias="VIEWPORT_MOVE_DEBOUNCE_S")
    viewport_zoom_debounce_s: float = Field(default=0.15, alias="VIEWPORT_ZOOM_DEBOUNCE_S")
    min_fetch_zoom: int = Field(default=11, alias="MIN_FETCH_ZOOM")
    spatial_cache_max_entries: int = Field(default=256, alias="SPATIAL_CACHE_MAX_ENTRIES")

    # ──────────────────────────────────────────────────────────────
    # Backend closest-POI API
    # ──────────────────────────────────────────────────────────────

    api_base_url: str | None = Field(default=None, alias="API_BASE_URL")
    host_origin: str | None = Field(default=None, alias="HOST_ORIGIN")
    fallback_origin: str = Field(default="http://localhost:3000", alias="FALLBACK_ORIGIN")

    default_radius_km: float = Field(default=10.0, alias="DEFAULT_RADIUS_KM")
    min_radius_km: float = Field(default=0.0, alias="MIN_RADIUS_KM")
    max_radius_km: float = Field(default=100.0, alias="MAX_RADIUS_KM")

    # ──────────────────────────────────────────────────────────────
    # Check-in
    # 15 m sits close to consumer GPS horizontal error; hysteresis stays
    # off unless CHECKIN_HYSTERESIS_M is set.
    # ──────────────────────────────────────────────────────────────

    checkin_radius_m: float = Field(default=15.0, alias="CHECKIN_RADIUS_M")
    checkin_hysteresis_m: float = Field(default=0.0, alias="CHECKIN_HYSTERESIS_M")
    hold_duration_s: float = Field(default=3.0, alias="HOLD_DURATION_S")
    hold_tick_s: float = Field(default=1.0 / 60.0, alias="HOLD_TICK_S")

    # ──────────────────────────────────────────────────────────────
    # Location providers
    # ──────────────────────────────────────────────────────────────

    location_native_timeout_s: float = Field(default=10.0, alias="LOCATION_NATIVE_TIMEOUT_S")
    location_legacy_timeout_s: float = Field(default=10.0, alias="LOCATION_LEGACY_TIMEOUT_S")
    location_browser_timeout_s: float = Field(default=12.0, alias="LOCATION_BROWSER_TIMEOUT_S")
    location_maximum_age_s: float = Field(default=30.0, alias="LOCATION_MAXIMUM_AGE_S")
    location_high_accuracy: bool = Field(default=True, alias="LOCATION_HIGH_ACCURACY")
    location_poll_interval_s: float = Field(default=2.0, alias="LOCATION_POLL_INTERVAL_S")

    # Fixed origin for headless deployments (both must be set)
    static_latitude: float | None = Field(default=None, alias="STATIC_LATITUDE")
    static_longitude: float | None = Field(default=None, alias="STATIC_LONGITUDE")

    def overpass_endpoint_list(self) -> List[str]:
        return [u.strip() for u in self.overpass_endpoints.split(",") if u.strip()]


settings = Settings()
