from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from lumigram.core.contracts import ViewportRequest, ViewportView
from lumigram.services.viewport import ViewportLoader

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/viewport")


def get_viewport_loader() -> ViewportLoader:
    raise RuntimeError("ViewportLoader must be provided by app dependency override")


@router.get("", response_model=ViewportView)
async def viewport_get(loader: ViewportLoader = Depends(get_viewport_loader)) -> ViewportView:
    return loader.view()


@router.post("", response_model=ViewportView)
async def viewport_changed(
    req: ViewportRequest,
    immediate: bool = False,
    loader: ViewportLoader = Depends(get_viewport_loader),
) -> ViewportView:
    # Map clients post every moveend/zoomend; only the settled one is fetched.
    if immediate:
        return await loader.load_now(req.bbox, req.zoom)
    loader.on_view_changed(req.bbox, req.zoom, req.trigger)
    return loader.view()
