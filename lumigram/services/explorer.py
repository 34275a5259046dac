from __future__ import annotations

import asyncio
import logging
import math
from typing import List, Optional

from lumigram.core.contracts import (
    CheckInButton,
    CheckInState,
    Coordinate,
    ExplorerView,
    PlaceOfWorship,
    StatusText,
    StatusTone,
)
from lumigram.core.errors import Cancelled, LumigramError, ProviderUnavailable, user_message
from lumigram.core.geo import format_distance
from lumigram.core.keying import radius_key
from lumigram.core.settings import settings
from lumigram.services.closest_poi import ClosestPoiExecutor, get_api_base_url
from lumigram.services.location import LocationResolver, PushLocationProvider
from lumigram.services.proximity import ProximityEngine
from lumigram.services.spatial_cache import SpatialQueryCache

logger = logging.getLogger(__name__)

INITIAL_STATUS = "Pick a radius and tap “Find places” to load nearby points of worship."
SEARCH_ERROR = "Something went wrong while searching for places."


def clamp_radius(radius_km: float) -> float:
    r = float(radius_km)
    if not math.isfinite(r):
        raise ValueError("radius must be a finite number")
    return max(settings.min_radius_km, min(settings.max_radius_km, r))


class Explorer:
    """
    Session state behind the places screen: radius search around the user
    (or the map centre), target selection, and the hold-to-stamp button.
    """

    def __init__(
        self,
        *,
        resolver: LocationResolver,
        engine: ProximityEngine,
        cache: SpatialQueryCache,
        executor: ClosestPoiExecutor,
        push: Optional[PushLocationProvider] = None,
        radius_km: Optional[float] = None,
    ):
        self.resolver = resolver
        self.engine = engine
        self.cache = cache
        self.executor = executor
        self.push = push

        self.radius_km = clamp_radius(radius_km if radius_km is not None else settings.default_radius_km)
        self.status = StatusText(tone="info", text=INITIAL_STATUS)
        self.places: List[PlaceOfWorship] = []
        self.origin: Optional[Coordinate] = None
        self.locating = False
        self.fetching = False

        self._search: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def busy(self) -> bool:
        return self.locating or self.fetching

    # ──────────────────────────────────────────────────────────
    # Search
    # ──────────────────────────────────────────────────────────

    def set_radius(self, radius_km: float) -> float:
        self.radius_km = clamp_radius(radius_km)
        return self.radius_km

    async def find_places(self) -> ExplorerView:
        """Start a new search, aborting any previous one, and wait for it."""
        self.abort_search()
        self._generation += 1
        task = asyncio.ensure_future(self._find(self._generation))
        self._search = task
        try:
            await task
        except asyncio.CancelledError:
            if self._search is task:
                raise
        return self.view()

    def abort_search(self) -> None:
        task, self._search = self._search, None
        if task is not None and not task.done():
            task.cancel()
        self._generation += 1
        self.locating = False
        self.fetching = False

    async def _find(self, gen: int) -> None:
        using_map_center = self.engine.map_center_active
        self._set_status("info", "Using map center as origin…" if using_map_center else "Requesting your location…")
        self.locating = not using_map_center
        self.fetching = False

        try:
            if using_map_center:
                origin = self.engine.map_center
                assert origin is not None
            else:
                origin = await self.resolver.resolve_once()
                if gen != self._generation:
                    return
                self.engine.update_origin(origin)

            self.origin = origin
            if self.engine.map_center is None:
                self.engine.set_map_center(origin)

            radius_km = self.radius_km
            self.locating = False
            self.fetching = True
            self._set_status("info", "Searching for nearby places of worship…")

            key = radius_key(origin, radius_km)
            entry = await self.cache.query(key, self.executor.for_radius(origin, radius_km))
            if gen != self._generation:
                return

            self.places = entry.items
            self.engine.sync_results(self.places)

            count, shown_km = len(self.places), radius_km
            summary = self.executor.summary(key)
            if summary is not None:
                count, shown_km = summary.count, summary.radius_m / 1000.0
            self._set_status("success", f"Found {count} places within {shown_km:.1f} km.")
            logger.info("[Explorer] %d places within %.1f km", count, shown_km)
        except Cancelled:
            return
        except LumigramError as e:
            if gen != self._generation:
                return
            if self.locating:
                self.engine.report_location_error(e)
            self._set_status("error", user_message(e, SEARCH_ERROR))
            logger.warning("[Explorer] search failed: %s", e)
        finally:
            if gen == self._generation:
                self.locating = False
                self.fetching = False

    def _set_status(self, tone: StatusTone, text: str) -> None:
        self.status = StatusText(tone=tone, text=text)

    # ──────────────────────────────────────────────────────────
    # Selection / origin
    # ──────────────────────────────────────────────────────────

    def find_place(self, stable_id: str) -> Optional[PlaceOfWorship]:
        for p in self.places:
            if p.stable_id == stable_id:
                return p
        return None

    def select(self, stable_id: str) -> CheckInState:
        place = self.find_place(stable_id)
        if place is None:
            raise KeyError(stable_id)
        return self.engine.select(place)

    def deselect(self) -> None:
        self.engine.deselect()

    def push_location(self, coord: Coordinate) -> None:
        if self.push is None:
            raise ProviderUnavailable("Location push is not enabled")
        self.push.push(coord)

    def set_map_center(self, coord: Coordinate) -> None:
        self.engine.set_map_center(coord)

    def set_use_map_center(self, enabled: bool) -> None:
        self.engine.set_use_map_center(enabled)

    # ──────────────────────────────────────────────────────────
    # Check-in
    # ──────────────────────────────────────────────────────────

    def start_hold(self) -> bool:
        return self.engine.press_start()

    def release_hold(self) -> None:
        self.engine.release()

    def clear_stamps(self) -> None:
        self.engine.clear_collected()

    def check_in_button(self) -> CheckInButton:
        eng = self.engine
        target = eng.target
        state = eng.state
        d = eng.distance_m

        if target is None:
            return CheckInButton(title="Select a place", subtitle="Tap a marker on the map")
        if state is CheckInState.COLLECTED:
            return CheckInButton(
                title="Already stamped",
                subtitle="You have collected this place.",
                tone="stamped",
                hold_progress=1.0,
            )
        if eng.location_error:
            return CheckInButton(
                title="Map center not ready" if eng.use_map_center else "Enable GPS",
                subtitle=eng.location_error,
            )
        if d is None:
            if eng.use_map_center:
                return CheckInButton(title="Pick a map center", subtitle="Pan the map to set the center.")
            return CheckInButton(title="Locating…", subtitle="Waiting for GPS signal.")
        if state is CheckInState.OUT_OF_RANGE:
            label = format_distance(d)
            threshold = eng.threshold_m
            return CheckInButton(
                title="Move closer",
                subtitle=f"Distance: {label}",
                distance_label=label,
                distance_progress=min(1.0, threshold / max(d, threshold)) if threshold > 0 else 0.0,
            )
        return CheckInButton(
            title=f"Hold {eng.hold.duration_s:g}s to stamp",
            subtitle=f"Within {eng.threshold_m:g} m",
            tone="ready",
            can_stamp=eng.can_stamp,
            holding=state is CheckInState.HOLDING,
            hold_progress=eng.hold_progress,
        )

    # ──────────────────────────────────────────────────────────
    # View
    # ──────────────────────────────────────────────────────────

    def button_label(self) -> str:
        if self.locating:
            return "Requesting location…"
        if self.fetching:
            return "Searching…"
        return "Find places"

    def view(self) -> ExplorerView:
        eng = self.engine
        return ExplorerView(
            radius_km=self.radius_km,
            status=self.status,
            busy=self.busy,
            button_label=self.button_label(),
            api_target=get_api_base_url(),
            origin=self.origin,
            map_center=eng.map_center,
            use_map_center=eng.use_map_center,
            places=list(self.places),
            stamped_ids=list(eng.collected),
            selected_id=eng.target.stable_id if eng.target else None,
            check_in=self.check_in_button(),
            proximity=eng.snapshot(),
        )

    async def aclose(self) -> None:
        self.abort_search()
        self.cache.close()
        self.engine.dispose()
