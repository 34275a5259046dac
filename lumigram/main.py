# lumigram/main.py
from __future__ import annotations

import logging
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

# Load <repo>/.env (main.py is <repo>/lumigram/main.py)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from lumigram.core.contracts import Coordinate
from lumigram.core.settings import settings
from lumigram.core.storage import SqliteKeyValueStore, connect_sqlite
from lumigram.api import api_router

from lumigram.services.closest_poi import ClosestPoiExecutor
from lumigram.services.explorer import Explorer
from lumigram.services.location import LocationResolver, PushLocationProvider, StaticLocationProvider
from lumigram.services.overpass import OverpassExecutor
from lumigram.services.proximity import ProximityEngine
from lumigram.services.spatial_cache import SpatialQueryCache
from lumigram.services.stamps import CollectedSet
from lumigram.services.viewport import ViewportLoader

logger = logging.getLogger(__name__)

app = FastAPI(title="Lumigram", version="1.0.0")

# ── Compression (must be added before CORS) ──
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        # Telegram mini-app / local web dev
        "https://web.telegram.org",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ──────────────────────────────────────────────────────────────
# State + shared clients
# ──────────────────────────────────────────────────────────────

_state_conn = connect_sqlite(settings.state_db_path)
_store = SqliteKeyValueStore(_state_conn)
_collected = CollectedSet(_store)

_http = httpx.AsyncClient(headers={"User-Agent": "lumigram/1.0"})

# ──────────────────────────────────────────────────────────────
# Location providers (priority order)
# ──────────────────────────────────────────────────────────────

_static_origin: Coordinate | None = None
if settings.static_latitude is not None and settings.static_longitude is not None:
    _static_origin = Coordinate(latitude=settings.static_latitude, longitude=settings.static_longitude)

_push = PushLocationProvider(
    timeout_s=settings.location_browser_timeout_s,
    poll_interval_s=settings.location_poll_interval_s,
)
_resolver = LocationResolver(
    [
        StaticLocationProvider(_static_origin, timeout_s=settings.location_native_timeout_s),
        _push,
    ]
)

# ──────────────────────────────────────────────────────────────
# Services
# ──────────────────────────────────────────────────────────────

_engine = ProximityEngine(collected=_collected, resolver=_resolver)

_explorer = Explorer(
    resolver=_resolver,
    engine=_engine,
    cache=SpatialQueryCache(),
    executor=ClosestPoiExecutor(client=_http),
    push=_push,
)

_viewport = ViewportLoader(
    cache=SpatialQueryCache(),
    executor=OverpassExecutor(client=_http),
)

# ──────────────────────────────────────────────────────────────
# Dependency providers
# ──────────────────────────────────────────────────────────────

def provide_explorer_service() -> Explorer:
    return _explorer


def provide_viewport_loader() -> ViewportLoader:
    return _viewport


# ──────────────────────────────────────────────────────────────
# Dependency overrides
# ──────────────────────────────────────────────────────────────

from lumigram.api import session as session_api
from lumigram.api import viewport as viewport_api

app.dependency_overrides[session_api.get_explorer_service] = provide_explorer_service
app.dependency_overrides[viewport_api.get_viewport_loader] = provide_viewport_loader

# Routes
app.include_router(api_router)

# ──────────────────────────────────────────────────────────────
# Shutdown
# ──────────────────────────────────────────────────────────────

@app.on_event("shutdown")
async def shutdown():
    logger.info("[app] Shutting down, closing connections")
    await _explorer.aclose()
    _viewport.close()
    try:
        await _http.aclose()
    except Exception as e:
        logger.warning(f"[app] Error closing HTTP client: {e}")
    try:
        _state_conn.close()
    except Exception as e:
        logger.warning(f"[app] Error closing state DB: {e}")
