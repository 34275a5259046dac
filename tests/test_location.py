import asyncio
from types import SimpleNamespace

import pytest

from lumigram.core.contracts import Coordinate
from lumigram.core.errors import (
    AllProvidersFailed,
    Cancelled,
    NoProviderAvailable,
    ProviderUnavailable,
    RequestTimeout,
    TransportFailure,
)
from lumigram.services.location import (
    GeolocationProvider,
    LegacyHostProvider,
    LocationProvider,
    LocationResolver,
    NativeLocationProvider,
    PushLocationProvider,
    StaticLocationProvider,
    coordinate_from_fix,
)

HERE = Coordinate(latitude=46.05, longitude=14.50)
THERE = Coordinate(latitude=46.06, longitude=14.51)


class FakeProvider(LocationProvider):
    def __init__(self, name, *, usable=True, result=None, error=None, gate=None, timeout_s=1.0):
        super().__init__(timeout_s=timeout_s, poll_interval_s=0.01)
        self.name = name
        self.usable = usable
        self.result = result
        self.error = error
        self.gate = gate
        self.requests = 0
        self.released = 0

    def is_usable(self):
        return self.usable

    async def request_once(self):
        self.requests += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result

    def release(self):
        self.released += 1


# ──────────────────────────────────────────────────────────────
# resolve_once
# ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_falls_through_chain_in_priority_order():
    skipped = FakeProvider("native", usable=False, result=THERE)
    failing = FakeProvider("legacy", error=ProviderUnavailable("denied"))
    working = FakeProvider("browser", result=HERE)

    coord = await LocationResolver([skipped, failing, working]).resolve_once()

    assert coord == HERE
    assert skipped.requests == 0
    assert failing.requests == 1
    assert failing.released == 1
    assert working.requests == 1


@pytest.mark.asyncio
async def test_no_usable_provider():
    with pytest.raises(NoProviderAvailable):
        await LocationResolver([FakeProvider("x", usable=False)]).resolve_once()


@pytest.mark.asyncio
async def test_timeout_advances_and_exhaustion_carries_last_error():
    hanging = FakeProvider("native", gate=asyncio.Event(), timeout_s=0.02)
    broken = FakeProvider("browser", error=TransportFailure("Permission denied"))

    with pytest.raises(AllProvidersFailed) as ei:
        await LocationResolver([hanging, broken]).resolve_once()

    assert hanging.released == 1
    assert broken.requests == 1
    assert ei.value.message == "Permission denied"


@pytest.mark.asyncio
async def test_timeout_alone_reports_request_timeout():
    hanging = FakeProvider("native", gate=asyncio.Event(), timeout_s=0.02)

    with pytest.raises(AllProvidersFailed) as ei:
        await LocationResolver([hanging]).resolve_once()

    assert isinstance(ei.value.last_error, RequestTimeout)


@pytest.mark.asyncio
async def test_cancelled_resolution_never_reports():
    gate = asyncio.Event()
    provider = FakeProvider("native", result=HERE, gate=gate)
    results, errors = [], []

    handle = LocationResolver([provider]).resolve(results.append, errors.append)
    await asyncio.sleep(0.01)
    handle.cancel()

    assert provider.released == 1

    gate.set()
    await asyncio.sleep(0.01)

    assert results == []
    assert errors == []
    with pytest.raises(Cancelled):
        await handle.result()


@pytest.mark.asyncio
async def test_static_provider():
    assert await LocationResolver([StaticLocationProvider(HERE)]).resolve_once() == HERE
    assert not StaticLocationProvider(None).is_usable()


@pytest.mark.asyncio
async def test_push_provider_waits_for_first_fix():
    push = PushLocationProvider(timeout_s=1.0)
    task = asyncio.ensure_future(LocationResolver([push]).resolve_once())
    await asyncio.sleep(0.01)

    push.push(HERE)

    assert await task == HERE


# ──────────────────────────────────────────────────────────────
# subscribe
# ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_subscription_streams_until_cancelled():
    push = PushLocationProvider(timeout_s=1.0)
    updates, errors = [], []

    sub = LocationResolver([push]).subscribe(updates.append, errors.append)
    await asyncio.sleep(0)
    push.push(HERE)
    await asyncio.sleep(0)
    push.push(THERE)
    await asyncio.sleep(0.01)

    assert updates == [HERE, THERE]
    assert sub.provider == "push"

    sub.cancel()
    push.push(HERE)

    assert updates == [HERE, THERE]
    assert errors == []
    assert not sub.active


@pytest.mark.asyncio
async def test_subscription_falls_back_before_first_fix():
    failing = FakeProvider("native", error=TransportFailure("no fix"))
    push = PushLocationProvider(timeout_s=1.0)
    updates = []

    sub = LocationResolver([failing, push]).subscribe(updates.append)
    await asyncio.sleep(0.05)
    push.push(HERE)
    await asyncio.sleep(0.01)

    assert updates == [HERE]
    assert sub.provider == "push"
    assert failing.released >= 1
    sub.cancel()


@pytest.mark.asyncio
async def test_subscription_reports_exhaustion():
    errors = []
    sub = LocationResolver([FakeProvider("native", error=TransportFailure("no fix"))]).subscribe(
        lambda c: None, errors.append
    )
    await asyncio.sleep(0.05)

    assert len(errors) == 1
    assert isinstance(errors[0], AllProvidersFailed)
    sub.cancel()


# ──────────────────────────────────────────────────────────────
# Host adapters
# ──────────────────────────────────────────────────────────────

class FakeGeolocation:
    def __init__(self):
        self.watches = {}
        self.cleared = []
        self._next = 0

    def get_current_position(self, success, error, options):
        success({"coords": {"latitude": HERE.latitude, "longitude": HERE.longitude}})

    def watch_position(self, success, error, options):
        self._next += 1
        self.watches[self._next] = success
        return self._next

    def clear_watch(self, watch_id):
        self.cleared.append(watch_id)
        self.watches.pop(watch_id, None)


@pytest.mark.asyncio
async def test_geolocation_watch_is_cleared_on_cancel():
    host = FakeGeolocation()
    provider = GeolocationProvider(host, timeout_s=1.0)
    updates = []

    sub = LocationResolver([provider]).subscribe(updates.append)
    await asyncio.sleep(0)
    (watch_id, success), = host.watches.items()
    success({"coords": {"latitude": THERE.latitude, "longitude": THERE.longitude}})
    await asyncio.sleep(0)

    sub.cancel()

    assert updates == [THERE]
    assert host.cleared == [watch_id]


class FakeLocationManager:
    def __init__(self, *, supported=True, hang=False):
        self.supported = supported
        self.hang = hang
        self.mounts = 0
        self.unmounts = 0
        self.settings_opened = 0

    def is_supported(self):
        return self.supported

    def can_mount(self):
        return True

    async def mount(self):
        self.mounts += 1

    def unmount(self):
        self.unmounts += 1

    def can_request(self):
        return True

    async def request_location(self):
        if self.hang:
            await asyncio.Event().wait()
        return {"latitude": HERE.latitude, "longitude": HERE.longitude}

    def open_settings(self):
        self.settings_opened += 1


class FakeLegacyHost:
    def has_request_location(self):
        return True

    async def request_location(self):
        return SimpleNamespace(latitude=THERE.latitude, longitude=THERE.longitude)


@pytest.mark.asyncio
async def test_native_provider_mounts_once():
    host = FakeLocationManager()
    provider = NativeLocationProvider(host, timeout_s=1.0)

    assert await provider.request_once() == HERE
    assert await provider.request_once() == HERE
    assert host.mounts == 1

    provider.open_settings()
    assert host.settings_opened == 1


@pytest.mark.asyncio
async def test_native_timeout_unmounts_and_falls_back_to_legacy():
    host = FakeLocationManager(hang=True)
    resolver = LocationResolver([
        NativeLocationProvider(host, timeout_s=0.05),
        LegacyHostProvider(FakeLegacyHost(), timeout_s=1.0),
    ])

    assert await resolver.resolve_once() == THERE
    assert host.mounts == 1
    assert host.unmounts == 1


def test_host_providers_without_host_are_unusable():
    assert not NativeLocationProvider(None).is_usable()
    assert not NativeLocationProvider(FakeLocationManager(supported=False)).is_usable()
    assert not LegacyHostProvider(None).is_usable()
    assert LegacyHostProvider(FakeLegacyHost()).is_usable()


def test_coordinate_from_fix():
    assert coordinate_from_fix({"latitude": 46.05, "longitude": 14.5}) == HERE
    with pytest.raises(TransportFailure):
        coordinate_from_fix({"latitude": None, "longitude": 14.5})
    with pytest.raises(TransportFailure):
        coordinate_from_fix({"latitude": 95.0, "longitude": 14.5})
