"""
Spatial query cache.

Read order for a key:
  0) cached entry (returned without touching the network)
  1) in-flight fetch for the same key (shared, never duplicated)
  2) new fetch through the caller's executor

Only the most recently started fetch may write. Starting a fetch for a
different key (or serving a hit for one) cancels the in-flight fetch, and a
late result from a superseded fetch is dropped by a generation check.

Entries are bounded by an LRU of ``max_entries`` (SPATIAL_CACHE_MAX_ENTRIES,
default 256 viewports); 0 disables eviction.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Literal, Optional

from lumigram.core.contracts import CacheEntry, PlaceOfWorship
from lumigram.core.errors import Cancelled, RequestTimeout
from lumigram.core.settings import settings
from lumigram.core.time import utc_now_iso
from lumigram.services.overpass import dedupe_places

logger = logging.getLogger(__name__)

Executor = Callable[[str], Awaitable[List[PlaceOfWorship]]]
Trigger = Literal["move", "zoom"]


@dataclass
class _Flight:
    key: str
    generation: int
    task: Optional[asyncio.Task] = None


@dataclass
class PendingIntent:
    """A debounced fetch request. Replaced wholesale by the next trigger."""

    key: str
    token: int
    trigger: str
    future: asyncio.Future
    handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None
        if not self.future.done():
            self.future.cancel()


class SpatialQueryCache:
    def __init__(
        self,
        *,
        timeout_s: Optional[float] = None,
        move_debounce_s: Optional[float] = None,
        zoom_debounce_s: Optional[float] = None,
        max_entries: Optional[int] = None,
    ):
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.request_timeout_s)
        self.move_debounce_s = float(
            move_debounce_s if move_debounce_s is not None else settings.viewport_move_debounce_s
        )
        self.zoom_debounce_s = float(
            zoom_debounce_s if zoom_debounce_s is not None else settings.viewport_zoom_debounce_s
        )
        self.max_entries = int(max_entries if max_entries is not None else settings.spatial_cache_max_entries)

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Optional[_Flight] = None
        self._generation = 0
        self._pending: Optional[PendingIntent] = None
        self._tokens = itertools.count(1)

    # ──────────────────────────────────────────────────────────
    # Entries
    # ──────────────────────────────────────────────────────────

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        return entry.snapshot() if entry is not None else None

    def _store(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        if self.max_entries > 0:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("[SpatialCache] evicted %s", evicted)

    # ──────────────────────────────────────────────────────────
    # Query
    # ──────────────────────────────────────────────────────────

    @property
    def inflight_key(self) -> Optional[str]:
        return self._inflight.key if self._inflight is not None else None

    async def query(self, key: str, executor: Executor) -> CacheEntry:
        hit = self._entries.get(key)
        if hit is not None:
            self._entries.move_to_end(key)
            if self._inflight is not None:
                self.cancel_inflight()
            return hit.snapshot()

        flight = self._inflight
        if flight is None or flight.key != key:
            if flight is not None:
                self.cancel_inflight()
            flight = self._start_flight(key, executor)
        return await self._await_flight(flight)

    def _start_flight(self, key: str, executor: Executor) -> _Flight:
        self._generation += 1
        flight = _Flight(key=key, generation=self._generation)
        flight.task = asyncio.ensure_future(self._run(flight, executor))
        self._inflight = flight
        logger.debug("[SpatialCache] fetch %s (gen=%d)", key, flight.generation)
        return flight

    async def _run(self, flight: _Flight, executor: Executor) -> CacheEntry:
        try:
            try:
                items = await asyncio.wait_for(executor(flight.key), timeout=self.timeout_s)
            except asyncio.TimeoutError as e:
                raise RequestTimeout(self.timeout_s) from e

            if flight.generation != self._generation:
                raise Cancelled(f"superseded fetch for {flight.key}")

            entry = CacheEntry(
                key=flight.key,
                items=[p.model_copy(deep=True) for p in dedupe_places(items)],
                fetched_at=utc_now_iso(),
            )
            self._store(entry)
            return entry
        finally:
            if self._inflight is flight:
                self._inflight = None

    async def _await_flight(self, flight: _Flight) -> CacheEntry:
        assert flight.task is not None
        try:
            entry = await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            if flight.task.cancelled():
                raise Cancelled(f"superseded fetch for {flight.key}") from None
            raise
        return entry.snapshot()

    def cancel_inflight(self) -> None:
        flight, self._inflight = self._inflight, None
        if flight is None:
            return
        self._generation += 1
        if flight.task is not None and not flight.task.done():
            flight.task.cancel()
        logger.debug("[SpatialCache] superseded %s", flight.key)

    # ──────────────────────────────────────────────────────────
    # Debounce
    # ──────────────────────────────────────────────────────────

    @property
    def pending(self) -> Optional[PendingIntent]:
        return self._pending

    def schedule(self, key: str, executor: Executor, *, trigger: Trigger = "move") -> asyncio.Future:
        """
        Coalesce bursts of key changes: only the intent still current when
        its delay expires is queried. Replaced intents resolve as cancelled
        futures.
        """
        loop = asyncio.get_running_loop()
        self.cancel_pending()

        delay = self.zoom_debounce_s if trigger == "zoom" else self.move_debounce_s
        intent = PendingIntent(
            key=key,
            token=next(self._tokens),
            trigger=trigger,
            future=loop.create_future(),
        )
        intent.handle = loop.call_later(delay, self._fire, intent, executor)
        self._pending = intent
        return intent.future

    def _fire(self, intent: PendingIntent, executor: Executor) -> None:
        if self._pending is not intent:
            return
        self._pending = None
        intent.handle = None
        task = asyncio.ensure_future(self.query(intent.key, executor))
        task.add_done_callback(lambda t: _settle(intent.future, t))

    def cancel_pending(self) -> None:
        intent, self._pending = self._pending, None
        if intent is not None:
            intent.cancel()

    def close(self) -> None:
        self.cancel_pending()
        self.cancel_inflight()


def _settle(future: asyncio.Future, task: asyncio.Task) -> None:
    if task.cancelled():
        if not future.done():
            future.cancel()
        return
    exc = task.exception()
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(task.result())
