from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from lumigram.core.contracts import (
    CheckInEvent,
    CheckInState,
    Coordinate,
    PlaceOfWorship,
    ProximitySnapshot,
)
from lumigram.core.errors import is_user_visible, user_message
from lumigram.core.geo import haversine_m, same_point
from lumigram.core.settings import settings
from lumigram.core.time import utc_now_iso
from lumigram.services.location import LocationResolver, LocationSubscription
from lumigram.services.stamps import CollectedSet

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class HoldTimer:
    """Hold progress as a pure function of elapsed time on a monotonic clock."""

    def __init__(self, duration_s: float, clock: Clock = time.monotonic):
        self.duration_s = float(duration_s)
        self.clock = clock
        self.started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self.started_at is not None

    def start(self) -> None:
        self.started_at = self.clock()

    def stop(self) -> None:
        self.started_at = None

    def progress(self, now: Optional[float] = None) -> float:
        if self.started_at is None:
            return 0.0
        if self.duration_s <= 0:
            return 1.0
        t = self.clock() if now is None else now
        return max(0.0, min(1.0, (t - self.started_at) / self.duration_s))


class ProximityEngine:
    """
    Check-in state machine for the selected target.

    IDLE -> AWAITING_LOCATION -> OUT_OF_RANGE <-> IN_RANGE -> HOLDING -> COLLECTED

    Distance is re-derived on every origin change. HOLDING survives origin
    updates only while the target stays in range; leaving range, a location
    error, or release() drops back with progress reset to 0.
    """

    def __init__(
        self,
        *,
        collected: CollectedSet,
        resolver: Optional[LocationResolver] = None,
        threshold_m: Optional[float] = None,
        hysteresis_m: Optional[float] = None,
        hold_duration_s: Optional[float] = None,
        tick_s: Optional[float] = None,
        clock: Clock = time.monotonic,
        auto_tick: bool = True,
        haptics: Optional[Callable[[str], None]] = None,
        on_change: Optional[Callable[[ProximitySnapshot], None]] = None,
        on_check_in: Optional[Callable[[CheckInEvent], None]] = None,
    ):
        self.collected = collected
        self.resolver = resolver
        self.threshold_m = float(threshold_m if threshold_m is not None else settings.checkin_radius_m)
        self.hysteresis_m = max(0.0, float(hysteresis_m if hysteresis_m is not None else settings.checkin_hysteresis_m))
        self.tick_s = float(tick_s if tick_s is not None else settings.hold_tick_s)
        self.hold = HoldTimer(
            hold_duration_s if hold_duration_s is not None else settings.hold_duration_s,
            clock,
        )
        self.auto_tick = auto_tick
        self.haptics = haptics
        self.on_change = on_change
        self.on_check_in = on_check_in

        self.target: Optional[PlaceOfWorship] = None
        self.origin: Optional[Coordinate] = None
        self.map_center: Optional[Coordinate] = None
        self.use_map_center = False
        self.location_error: Optional[str] = None
        self.distance_m: Optional[float] = None
        self.hold_progress = 0.0

        self._state = CheckInState.IDLE
        self._subscription: Optional[LocationSubscription] = None
        self._ticker: Optional[asyncio.Task] = None

    # ──────────────────────────────────────────────────────────
    # Read side
    # ──────────────────────────────────────────────────────────

    @property
    def state(self) -> CheckInState:
        return self._state

    @property
    def map_center_active(self) -> bool:
        return self.use_map_center and self.map_center is not None

    @property
    def effective_origin(self) -> Optional[Coordinate]:
        if self.map_center_active:
            return self.map_center
        return self.origin

    @property
    def can_stamp(self) -> bool:
        return self._state in (CheckInState.IN_RANGE, CheckInState.HOLDING) and self.location_error is None

    @property
    def tracking(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def snapshot(self) -> ProximitySnapshot:
        return ProximitySnapshot(
            state=self._state,
            target_id=self.target.stable_id if self.target else None,
            origin=self.effective_origin,
            distance_m=self.distance_m,
            hold_progress=self.hold_progress,
            location_error=self.location_error,
            using_map_center=self.map_center_active,
            collected_count=len(self.collected),
        )

    # ──────────────────────────────────────────────────────────
    # Target selection
    # ──────────────────────────────────────────────────────────

    def select(self, target: PlaceOfWorship) -> CheckInState:
        if self.target is not None and self.target.stable_id == target.stable_id:
            self.target = target
            self._evaluate()
            self._emit()
            return self._state

        self._teardown()
        self.target = target
        self.location_error = None
        self.hold_progress = 0.0
        self._state = CheckInState.AWAITING_LOCATION
        self._evaluate()
        self._sync_tracking()
        logger.debug("[CheckIn] selected %s -> %s", target.stable_id, self._state.value)
        self._emit()
        return self._state

    def deselect(self) -> None:
        if self.target is None:
            return
        self._teardown()
        self.target = None
        self.origin = None
        self.location_error = None
        self.distance_m = None
        self.hold_progress = 0.0
        self._state = CheckInState.IDLE
        self._emit()

    def sync_results(self, items: Iterable[PlaceOfWorship]) -> None:
        """Drop the target once it is missing from the latest result set."""
        if self.target is None:
            return
        ids = {p.stable_id for p in items}
        if self.target.stable_id not in ids:
            logger.debug("[CheckIn] %s no longer in results", self.target.stable_id)
            self.deselect()

    # ──────────────────────────────────────────────────────────
    # Origin
    # ──────────────────────────────────────────────────────────

    def update_origin(self, coord: Coordinate) -> None:
        self.origin = coord
        self.location_error = None
        if self.target is None:
            return
        self._evaluate()
        self._emit()

    def report_location_error(self, exc: BaseException) -> None:
        if not is_user_visible(exc):
            return
        self.location_error = user_message(exc, "Unable to retrieve location.")
        if self._state is CheckInState.HOLDING:
            self._cancel_hold()
            self._evaluate()
        self._emit()

    def set_map_center(self, coord: Coordinate) -> None:
        if same_point(self.map_center, coord):
            return
        self.map_center = coord
        if self.map_center_active and self.target is not None:
            self._evaluate()
            self._emit()

    def set_use_map_center(self, enabled: bool) -> None:
        self.use_map_center = bool(enabled)
        if self.map_center_active:
            self.location_error = None
        if self.target is not None:
            self._evaluate()
            self._sync_tracking()
        self._emit()

    # ──────────────────────────────────────────────────────────
    # Hold gesture
    # ──────────────────────────────────────────────────────────

    def press_start(self) -> bool:
        if self._state is not CheckInState.IN_RANGE or self.location_error is not None:
            return False
        self._state = CheckInState.HOLDING
        self.hold.start()
        self.hold_progress = 0.0
        self._start_ticker()
        self._emit()
        return True

    def release(self) -> None:
        if self._state is not CheckInState.HOLDING:
            return
        self._cancel_hold()
        self._state = CheckInState.IN_RANGE
        self._evaluate()
        self._emit()

    def tick(self, now: Optional[float] = None) -> float:
        if self._state is not CheckInState.HOLDING:
            return self.hold_progress
        self.hold_progress = self.hold.progress(now)
        if self.hold_progress >= 1.0:
            self._complete()
        self._emit()
        return self.hold_progress

    def _complete(self) -> None:
        assert self.target is not None
        sid = self.target.stable_id
        self.hold.stop()
        self._stop_ticker()
        added = self.collected.add(sid)
        self._state = CheckInState.COLLECTED
        self.hold_progress = 1.0
        self._stop_tracking()
        logger.info("[CheckIn] collected %s (new=%s)", sid, added)

        if self.haptics is not None:
            try:
                self.haptics("success")
            except Exception as e:
                logger.debug("[CheckIn] haptics failed: %r", e)
        if self.on_check_in is not None:
            self.on_check_in(CheckInEvent(target_id=sid, collected_at=utc_now_iso()))

    def _cancel_hold(self) -> None:
        self.hold.stop()
        self._stop_ticker()
        self.hold_progress = 0.0

    # ──────────────────────────────────────────────────────────
    # Collected set
    # ──────────────────────────────────────────────────────────

    def clear_collected(self) -> None:
        self.collected.clear()
        if self.target is not None:
            self.hold_progress = 0.0
            self._evaluate()
            self._sync_tracking()
        self._emit()

    def dispose(self) -> None:
        self._teardown()
        self.target = None
        self._state = CheckInState.IDLE

    # ──────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────

    def _in_range(self, d: float) -> bool:
        if self._state in (CheckInState.IN_RANGE, CheckInState.HOLDING):
            return d <= self.threshold_m + self.hysteresis_m
        return d <= self.threshold_m

    def _evaluate(self) -> None:
        target = self.target
        if target is None:
            self.distance_m = None
            self._state = CheckInState.IDLE
            return

        origin = self.effective_origin
        self.distance_m = haversine_m(origin, target.coordinate) if origin is not None else None

        if target.stable_id in self.collected:
            if self._state is CheckInState.HOLDING:
                self._cancel_hold()
            self._state = CheckInState.COLLECTED
            return
        if self._state is CheckInState.COLLECTED:
            self._state = CheckInState.AWAITING_LOCATION

        if self.distance_m is None:
            if self._state is CheckInState.HOLDING:
                self._cancel_hold()
            self._state = CheckInState.AWAITING_LOCATION
            return

        in_range = self._in_range(self.distance_m)
        if self._state is CheckInState.HOLDING:
            if in_range and self.location_error is None:
                return
            self._cancel_hold()
        self._state = CheckInState.IN_RANGE if in_range else CheckInState.OUT_OF_RANGE

    def _sync_tracking(self) -> None:
        wants = (
            self.target is not None
            and self._state is not CheckInState.COLLECTED
            and not self.map_center_active
            and self.resolver is not None
        )
        if wants:
            self._start_tracking()
        else:
            self._stop_tracking()

    def _start_tracking(self) -> None:
        if self.tracking or self.resolver is None:
            return
        self._subscription = self.resolver.subscribe(self.update_origin, self.report_location_error)

    def _stop_tracking(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.cancel()

    def _start_ticker(self) -> None:
        if not self.auto_tick:
            return
        self._stop_ticker()
        self._ticker = asyncio.ensure_future(self._run_ticker())

    async def _run_ticker(self) -> None:
        while self._state is CheckInState.HOLDING:
            await asyncio.sleep(self.tick_s)
            self.tick()

    def _stop_ticker(self) -> None:
        task, self._ticker = self._ticker, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _teardown(self) -> None:
        self._cancel_hold()
        self._stop_tracking()

    def _emit(self) -> None:
        if self.on_change is not None:
            self.on_change(self.snapshot())
