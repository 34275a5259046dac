from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from lumigram.core.contracts import (
    Coordinate,
    ExplorerView,
    RadiusRequest,
    SelectRequest,
    ToggleRequest,
)
from lumigram.core.errors import ProviderUnavailable, bad_request, conflict, not_found
from lumigram.services.explorer import Explorer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/session")


def get_explorer_service() -> Explorer:
    raise RuntimeError("Explorer must be provided by app dependency override")


@router.get("", response_model=ExplorerView)
async def session_view(explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    return explorer.view()


@router.post("/radius", response_model=ExplorerView)
async def session_radius(req: RadiusRequest, explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    try:
        explorer.set_radius(req.radius_km)
    except ValueError as e:
        bad_request("bad_radius", str(e))
    return explorer.view()


@router.post("/find", response_model=ExplorerView)
async def session_find(explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    return await explorer.find_places()


# ──────────────────────────────────────────────────────────────
# Target selection
# ──────────────────────────────────────────────────────────────

@router.post("/select", response_model=ExplorerView)
async def session_select(req: SelectRequest, explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    try:
        explorer.select(req.stable_id)
    except KeyError:
        not_found("place_missing", f"{req.stable_id} is not in the current results")
    return explorer.view()


@router.post("/deselect", response_model=ExplorerView)
async def session_deselect(explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    explorer.deselect()
    return explorer.view()


# ──────────────────────────────────────────────────────────────
# Origin
# ──────────────────────────────────────────────────────────────

@router.post("/location", response_model=ExplorerView)
async def session_location(coord: Coordinate, explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    try:
        explorer.push_location(coord)
    except ProviderUnavailable as e:
        conflict("push_disabled", e.message)
    return explorer.view()


@router.post("/map-center", response_model=ExplorerView)
async def session_map_center(coord: Coordinate, explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    explorer.set_map_center(coord)
    return explorer.view()


@router.post("/use-map-center", response_model=ExplorerView)
async def session_use_map_center(
    req: ToggleRequest,
    explorer: Explorer = Depends(get_explorer_service),
) -> ExplorerView:
    explorer.set_use_map_center(req.enabled)
    return explorer.view()


# ──────────────────────────────────────────────────────────────
# Hold-to-stamp
# ──────────────────────────────────────────────────────────────

@router.post("/hold/start", response_model=ExplorerView)
async def session_hold_start(explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    if not explorer.start_hold():
        conflict("not_in_range", explorer.check_in_button().title)
    return explorer.view()


@router.post("/hold/release", response_model=ExplorerView)
async def session_hold_release(explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    explorer.release_hold()
    return explorer.view()


@router.post("/stamps/clear", response_model=ExplorerView)
async def session_clear_stamps(explorer: Explorer = Depends(get_explorer_service)) -> ExplorerView:
    explorer.clear_stamps()
    logger.info("[app] stamps cleared")
    return explorer.view()
