"""
Location resolution over an ordered chain of providers.

Providers are tried in priority order, each gated by a cheap synchronous
``is_usable()`` check and bounded by its own timeout. A provider is never
retried within one resolution. Continuous tracking keeps the first provider
that produces a fix and does not migrate afterwards.

Host adapters (native location manager, legacy in-host API, standards
geolocation) are thin wrappers over objects supplied by the embedding shell.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence

from lumigram.core.contracts import Coordinate
from lumigram.core.errors import (
    AllProvidersFailed,
    Cancelled,
    NoProviderAvailable,
    ProviderUnavailable,
    RequestTimeout,
    TransportFailure,
)
from lumigram.core.settings import settings

logger = logging.getLogger(__name__)

OnUpdate = Callable[[Coordinate], None]
OnError = Callable[[BaseException], None]
StopFn = Callable[[], None]


def coordinate_from_fix(fix: Any) -> Coordinate:
    """Accept a mapping or object exposing numeric latitude/longitude."""
    if isinstance(fix, Mapping):
        lat, lon = fix.get("latitude"), fix.get("longitude")
    else:
        lat, lon = getattr(fix, "latitude", None), getattr(fix, "longitude", None)
    if isinstance(lat, bool) or isinstance(lon, bool):
        raise TransportFailure("Location fix has no coordinates")
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        raise TransportFailure("Location fix has no coordinates")
    try:
        return Coordinate(latitude=float(lat), longitude=float(lon))
    except ValueError as e:
        raise TransportFailure(f"Location fix out of range: {lat},{lon}") from e


# ──────────────────────────────────────────────────────────────
# Provider capability
# ──────────────────────────────────────────────────────────────

class LocationProvider(ABC):
    name = "provider"

    def __init__(self, *, timeout_s: float = 10.0, poll_interval_s: Optional[float] = None):
        self.timeout_s = float(timeout_s)
        self.poll_interval_s = float(
            poll_interval_s if poll_interval_s is not None else settings.location_poll_interval_s
        )

    @abstractmethod
    def is_usable(self) -> bool:
        ...

    @abstractmethod
    async def request_once(self) -> Coordinate:
        ...

    def release(self) -> None:
        """Stop any platform-level session opened by request_once()."""

    def watch(self, on_update: OnUpdate, on_error: OnError) -> StopFn:
        """
        Continuous updates. The default polls request_once(); providers with
        a native watch override this. The returned stop function is
        synchronous and silences callbacks before returning.
        """
        state = {"active": True}

        async def _poll() -> None:
            while state["active"]:
                try:
                    coord = await self.request_once()
                except Exception as e:
                    if state["active"]:
                        on_error(e)
                else:
                    if state["active"]:
                        on_update(coord)
                await asyncio.sleep(self.poll_interval_s)

        task = asyncio.ensure_future(_poll())

        def stop() -> None:
            state["active"] = False
            task.cancel()
            self.release()

        return stop


# ──────────────────────────────────────────────────────────────
# Host interfaces
# ──────────────────────────────────────────────────────────────

class LocationManagerHost(Protocol):
    def is_supported(self) -> bool: ...

    def can_mount(self) -> bool: ...

    async def mount(self) -> None: ...

    def unmount(self) -> None: ...

    def can_request(self) -> bool: ...

    async def request_location(self) -> Any: ...

    def open_settings(self) -> None: ...


class LegacyLocationHost(Protocol):
    def has_request_location(self) -> bool: ...

    async def request_location(self) -> Any: ...


@dataclass(frozen=True)
class PositionOptions:
    enable_high_accuracy: bool = True
    timeout_s: float = 12.0
    maximum_age_s: float = 30.0


class GeolocationHost(Protocol):
    def get_current_position(
        self, success: Callable[[Any], None], error: Callable[[Any], None], options: PositionOptions
    ) -> None: ...

    def watch_position(
        self, success: Callable[[Any], None], error: Callable[[Any], None], options: PositionOptions
    ) -> int: ...

    def clear_watch(self, watch_id: int) -> None: ...


def _coords(pos: Any) -> Any:
    if isinstance(pos, Mapping):
        return pos.get("coords", pos)
    return getattr(pos, "coords", pos)


def _host_error(err: Any, default: str = "Unable to retrieve location.") -> TransportFailure:
    if isinstance(err, TransportFailure):
        return err
    msg = getattr(err, "message", None) or (str(err) if err else "") or default
    return TransportFailure(str(msg))


# ──────────────────────────────────────────────────────────────
# Providers
# ──────────────────────────────────────────────────────────────

class NativeLocationProvider(LocationProvider):
    name = "native"

    def __init__(self, host: Optional[LocationManagerHost], **kw: Any):
        kw.setdefault("timeout_s", settings.location_native_timeout_s)
        super().__init__(**kw)
        self.host = host
        self._mounted = False

    def is_usable(self) -> bool:
        if self.host is None:
            return False
        try:
            return bool(self.host.is_supported())
        except Exception:
            return False

    async def request_once(self) -> Coordinate:
        host = self.host
        if host is None or not host.can_mount():
            raise ProviderUnavailable("Location manager cannot be mounted")
        if not self._mounted:
            try:
                await host.mount()
            except Exception as e:
                raise ProviderUnavailable(f"Location manager mount failed: {e}") from e
            self._mounted = True
        if not host.can_request():
            raise ProviderUnavailable("Location manager is not available")
        return coordinate_from_fix(await host.request_location())

    def release(self) -> None:
        if not self._mounted or self.host is None:
            return
        self._mounted = False
        try:
            self.host.unmount()
        except Exception as e:
            logger.debug("[Location] unmount failed: %r", e)

    def open_settings(self) -> None:
        if self.host is not None:
            self.host.open_settings()


class LegacyHostProvider(LocationProvider):
    name = "legacy"

    def __init__(self, host: Optional[LegacyLocationHost], **kw: Any):
        kw.setdefault("timeout_s", settings.location_legacy_timeout_s)
        super().__init__(**kw)
        self.host = host

    def is_usable(self) -> bool:
        if self.host is None:
            return False
        try:
            return bool(self.host.has_request_location())
        except Exception:
            return False

    async def request_once(self) -> Coordinate:
        if self.host is None:
            raise ProviderUnavailable("Legacy location API is not available")
        return coordinate_from_fix(await self.host.request_location())


class GeolocationProvider(LocationProvider):
    name = "geolocation"

    def __init__(self, host: Optional[GeolocationHost], *, options: Optional[PositionOptions] = None, **kw: Any):
        self.options = options or PositionOptions(
            enable_high_accuracy=settings.location_high_accuracy,
            timeout_s=settings.location_browser_timeout_s,
            maximum_age_s=settings.location_maximum_age_s,
        )
        kw.setdefault("timeout_s", self.options.timeout_s)
        super().__init__(**kw)
        self.host = host

    def is_usable(self) -> bool:
        return self.host is not None

    async def request_once(self) -> Coordinate:
        if self.host is None:
            raise ProviderUnavailable("Geolocation is not supported in this environment.")
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Coordinate] = loop.create_future()

        def _ok(pos: Any) -> None:
            if fut.done():
                return
            try:
                fut.set_result(coordinate_from_fix(_coords(pos)))
            except TransportFailure as e:
                fut.set_exception(e)

        def _err(err: Any) -> None:
            if not fut.done():
                fut.set_exception(_host_error(err))

        self.host.get_current_position(_ok, _err, self.options)
        return await fut

    def watch(self, on_update: OnUpdate, on_error: OnError) -> StopFn:
        if self.host is None:
            raise ProviderUnavailable("Geolocation is not supported in this environment.")
        state = {"active": True}

        def _ok(pos: Any) -> None:
            if not state["active"]:
                return
            try:
                coord = coordinate_from_fix(_coords(pos))
            except TransportFailure as e:
                on_error(e)
                return
            on_update(coord)

        def _err(err: Any) -> None:
            if state["active"]:
                on_error(_host_error(err))

        host = self.host
        watch_id = host.watch_position(_ok, _err, self.options)

        def stop() -> None:
            if not state["active"]:
                return
            state["active"] = False
            host.clear_watch(watch_id)

        return stop


class StaticLocationProvider(LocationProvider):
    name = "static"

    def __init__(self, coordinate: Optional[Coordinate], **kw: Any):
        super().__init__(**kw)
        self.coordinate = coordinate

    def is_usable(self) -> bool:
        return self.coordinate is not None

    async def request_once(self) -> Coordinate:
        if self.coordinate is None:
            raise ProviderUnavailable("No fixed location configured")
        return self.coordinate


class PushLocationProvider(LocationProvider):
    """Fixes pushed in by the host shell (e.g. over the HTTP surface)."""

    name = "push"

    def __init__(self, **kw: Any):
        super().__init__(**kw)
        self.latest: Optional[Coordinate] = None
        self._listeners: List[OnUpdate] = []
        self._waiters: List[asyncio.Future] = []

    def is_usable(self) -> bool:
        return True

    def push(self, coord: Coordinate) -> None:
        self.latest = coord
        waiters, self._waiters = self._waiters, []
        for w in waiters:
            if not w.done():
                w.set_result(coord)
        for cb in list(self._listeners):
            cb(coord)

    async def request_once(self) -> Coordinate:
        if self.latest is not None:
            return self.latest
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            return await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)

    def watch(self, on_update: OnUpdate, on_error: OnError) -> StopFn:
        self._listeners.append(on_update)
        if self.latest is not None:
            on_update(self.latest)

        def stop() -> None:
            if on_update in self._listeners:
                self._listeners.remove(on_update)

        return stop


# ──────────────────────────────────────────────────────────────
# Handles
# ──────────────────────────────────────────────────────────────

class ResolveHandle:
    """One in-flight resolution. cancel() is synchronous and final."""

    def __init__(self, resolver: "LocationResolver"):
        self._resolver = resolver
        self.task: Optional[asyncio.Task] = None
        self.cancelled = False
        self.current: Optional[LocationProvider] = None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self.current is not None:
            self.current.release()
            self.current = None
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def result(self) -> Coordinate:
        assert self.task is not None
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.cancelled:
                raise Cancelled("location resolution cancelled") from None
            raise


class LocationSubscription:
    def __init__(self) -> None:
        self.active = True
        self.provider: Optional[str] = None
        self._stop: Optional[StopFn] = None
        self._task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._stop is not None:
            self._stop()
            self._stop = None
        if self._task is not None and not self._task.done():
            self._task.cancel()


# ──────────────────────────────────────────────────────────────
# Resolver
# ──────────────────────────────────────────────────────────────

class LocationResolver:
    def __init__(self, providers: Sequence[LocationProvider]):
        self.providers: List[LocationProvider] = list(providers)

    def usable_providers(self) -> List[LocationProvider]:
        out = []
        for p in self.providers:
            try:
                if p.is_usable():
                    out.append(p)
            except Exception as e:
                logger.warning("[Location] %s availability check failed: %r", p.name, e)
        return out

    async def resolve_once(self) -> Coordinate:
        handle = self.resolve()
        try:
            return await handle.result()
        except asyncio.CancelledError:
            handle.cancel()
            raise

    def resolve(
        self,
        on_result: Optional[OnUpdate] = None,
        on_error: Optional[OnError] = None,
    ) -> ResolveHandle:
        handle = ResolveHandle(self)
        handle.task = asyncio.ensure_future(self._resolve(handle))

        def _done(task: asyncio.Task) -> None:
            if handle.cancelled or task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                if on_error is not None:
                    on_error(exc)
            elif on_result is not None:
                on_result(task.result())

        handle.task.add_done_callback(_done)
        return handle

    async def _resolve(self, handle: ResolveHandle) -> Coordinate:
        usable = self.usable_providers()
        if not usable:
            raise NoProviderAvailable()

        last_exc: Optional[BaseException] = None
        for provider in usable:
            handle.current = provider
            try:
                coord = await asyncio.wait_for(provider.request_once(), timeout=provider.timeout_s)
            except asyncio.TimeoutError:
                last_exc = RequestTimeout(provider.timeout_s)
                logger.warning("[Location] %s timed out after %.1fs", provider.name, provider.timeout_s)
                provider.release()
                continue
            except Exception as e:
                last_exc = e
                logger.warning("[Location] %s failed: %r", provider.name, e)
                provider.release()
                continue
            finally:
                handle.current = None
            logger.info("[Location] resolved via %s", provider.name)
            return coord

        raise AllProvidersFailed(last_exc)

    def subscribe(self, on_update: OnUpdate, on_error: Optional[OnError] = None) -> LocationSubscription:
        sub = LocationSubscription()
        sub._task = asyncio.ensure_future(self._track(sub, on_update, on_error))
        return sub

    async def _track(self, sub: LocationSubscription, on_update: OnUpdate, on_error: Optional[OnError]) -> None:
        def _report(exc: BaseException) -> None:
            if sub.active and on_error is not None:
                on_error(exc)

        usable = self.usable_providers()
        if not usable:
            _report(NoProviderAvailable())
            return

        loop = asyncio.get_running_loop()
        last_exc: Optional[BaseException] = None

        for provider in usable:
            if not sub.active:
                return
            first_fix: asyncio.Future = loop.create_future()
            attempt = {"live": True}

            def _update(coord: Coordinate, attempt=attempt, first_fix=first_fix) -> None:
                if not (sub.active and attempt["live"]):
                    return
                if not first_fix.done():
                    first_fix.set_result(coord)
                on_update(coord)

            def _error(exc: BaseException, attempt=attempt, first_fix=first_fix) -> None:
                if not (sub.active and attempt["live"]):
                    return
                if not first_fix.done():
                    first_fix.set_exception(exc)
                else:
                    _report(exc)

            try:
                stop = provider.watch(_update, _error)
            except Exception as e:
                last_exc = e
                logger.warning("[Location] %s watch unavailable: %r", provider.name, e)
                continue
            sub._stop = stop

            try:
                await asyncio.wait_for(asyncio.shield(first_fix), timeout=provider.timeout_s)
            except asyncio.TimeoutError:
                last_exc = RequestTimeout(provider.timeout_s)
            except asyncio.CancelledError:
                attempt["live"] = False
                raise
            except Exception as e:
                last_exc = e
            else:
                sub.provider = provider.name
                logger.info("[Location] tracking via %s", provider.name)
                return

            attempt["live"] = False
            if not first_fix.done():
                first_fix.cancel()
            sub._stop = None
            stop()
            logger.warning("[Location] %s tracking failed: %r", provider.name, last_exc)

        _report(AllProvidersFailed(last_exc))
