from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from typing import Callable, List, Optional

from lumigram.core.contracts import BBox4, PlaceOfWorship, ViewportStatus, ViewportView
from lumigram.core.errors import Cancelled, LumigramError, user_message
from lumigram.core.keying import bbox_key
from lumigram.core.settings import settings
from lumigram.services.overpass import OverpassExecutor
from lumigram.services.spatial_cache import SpatialQueryCache, Trigger

logger = logging.getLogger(__name__)

DEFAULT_ERROR = "Error fetching data"


class ViewportLoader:
    """
    Map-layer driver: every settled viewport becomes a bbox query through
    the shared cache. Below ``min_fetch_zoom`` nothing is fetched and the
    layer is cleared.
    """

    def __init__(
        self,
        *,
        cache: SpatialQueryCache,
        executor: OverpassExecutor,
        min_fetch_zoom: Optional[int] = None,
        on_status: Optional[Callable[[ViewportStatus], None]] = None,
    ):
        self.cache = cache
        self.executor = executor
        self.min_fetch_zoom = int(min_fetch_zoom if min_fetch_zoom is not None else settings.min_fetch_zoom)
        self.on_status = on_status

        self.places: List[PlaceOfWorship] = []
        self.status = ViewportStatus()
        self.bbox: Optional[BBox4] = None
        self.zoom: Optional[int] = None

        self._tokens = itertools.count(1)
        self._current = 0

    def view(self) -> ViewportView:
        return ViewportView(status=self.status, places=list(self.places))

    # ──────────────────────────────────────────────────────────
    # Triggers
    # ──────────────────────────────────────────────────────────

    def on_view_changed(self, bbox: BBox4, zoom: int, trigger: Trigger = "move") -> Optional[asyncio.Future]:
        """Debounced path used for pan/zoom events. Returns the intent's future."""
        token = self._begin(bbox, zoom)
        if token is None:
            return None

        key = bbox_key(bbox)
        fut = self.cache.schedule(key, self.executor.for_bbox(bbox), trigger=trigger)
        if key not in self.cache:
            self._set_status(ViewportStatus(fetching=True, count=len(self.places)))
        fut.add_done_callback(functools.partial(self._settled, token))
        return fut

    async def load_now(self, bbox: BBox4, zoom: int) -> ViewportView:
        """Undebounced path (initial load, explicit refresh)."""
        token = self._begin(bbox, zoom)
        if token is None:
            return self.view()

        self.cache.cancel_pending()
        key = bbox_key(bbox)
        if key not in self.cache:
            self._set_status(ViewportStatus(fetching=True, count=len(self.places)))

        try:
            entry = await self.cache.query(key, self.executor.for_bbox(bbox))
        except Cancelled:
            return self.view()
        except LumigramError as e:
            if token == self._current:
                self._fail(e)
            return self.view()

        if token == self._current:
            self._apply(entry.items)
        return self.view()

    def close(self) -> None:
        self._current = next(self._tokens)
        self.cache.close()

    # ──────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────

    def _begin(self, bbox: BBox4, zoom: int) -> Optional[int]:
        self.bbox = bbox
        self.zoom = int(zoom)
        self._current = next(self._tokens)

        if self.zoom < self.min_fetch_zoom:
            self.cache.cancel_pending()
            self.cache.cancel_inflight()
            self.places = []
            self._set_status(ViewportStatus())
            logger.debug("[Viewport] zoom %d below %d, layer cleared", self.zoom, self.min_fetch_zoom)
            return None
        return self._current

    def _settled(self, token: int, fut: asyncio.Future) -> None:
        if fut.cancelled() or token != self._current:
            return
        exc = fut.exception()
        if exc is None:
            self._apply(fut.result().items)
        elif not isinstance(exc, Cancelled):
            self._fail(exc)

    def _apply(self, items: List[PlaceOfWorship]) -> None:
        self.places = list(items)
        self._set_status(ViewportStatus(fetching=False, error=None, count=len(self.places)))

    def _fail(self, exc: BaseException) -> None:
        logger.warning("[Viewport] fetch failed: %s", exc)
        self.places = []
        self._set_status(ViewportStatus(fetching=False, error=user_message(exc, DEFAULT_ERROR), count=0))

    def _set_status(self, status: ViewportStatus) -> None:
        self.status = status
        if self.on_status is not None:
            self.on_status(status)
