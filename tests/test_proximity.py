import asyncio

import pytest

from lumigram.core.contracts import CheckInState
from lumigram.core.errors import Cancelled, TransportFailure
from lumigram.services.location import LocationResolver, PushLocationProvider
from lumigram.services.proximity import HoldTimer, ProximityEngine


def _engine(collected, clock, **kw):
    kw.setdefault("threshold_m", 15.0)
    kw.setdefault("hysteresis_m", 0.0)
    kw.setdefault("hold_duration_s", 3.0)
    kw.setdefault("auto_tick", False)
    return ProximityEngine(collected=collected, clock=clock, **kw)


def test_hold_timer_progress_is_clamped(clock):
    timer = HoldTimer(3.0, clock)
    assert timer.progress() == 0.0

    timer.start()
    clock.t += 1.5
    assert timer.progress() == pytest.approx(0.5)
    clock.t += 10
    assert timer.progress() == 1.0

    timer.stop()
    assert not timer.running
    assert timer.progress() == 0.0


def test_select_without_origin_awaits_location(collected, clock, make_place, origin):
    eng = _engine(collected, clock)
    assert eng.state is CheckInState.IDLE

    assert eng.select(make_place("node/1", origin)) is CheckInState.AWAITING_LOCATION
    assert eng.distance_m is None


def test_origin_update_moves_between_out_of_range_and_in_range(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock)
    target = make_place("node/1", origin)

    eng.update_origin(offset(origin, 20))
    assert eng.select(target) is CheckInState.OUT_OF_RANGE
    assert eng.distance_m == pytest.approx(20.0, abs=1e-6)

    eng.update_origin(offset(origin, 10))
    assert eng.state is CheckInState.IN_RANGE

    eng.update_origin(offset(origin, 15.5))
    assert eng.state is CheckInState.OUT_OF_RANGE


def test_partial_hold_resets_and_leaves_uncollected(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock)
    eng.update_origin(offset(origin, 5))
    eng.select(make_place("node/1", origin))

    assert eng.press_start()
    assert eng.state is CheckInState.HOLDING

    clock.t += 1.5
    assert eng.tick() == pytest.approx(0.5)

    eng.release()
    assert eng.state is CheckInState.IN_RANGE
    assert eng.hold_progress == 0.0
    assert "node/1" not in collected


def test_released_hold_can_be_pressed_again(collected, clock, make_place, origin):
    eng = _engine(collected, clock)
    eng.update_origin(origin)
    eng.select(make_place("node/1", origin))

    eng.press_start()
    clock.t += 1.5
    eng.tick()
    eng.release()

    clock.t += 10
    assert eng.tick() == 0.0
    assert eng.state is CheckInState.IN_RANGE
    assert "node/1" not in collected

    assert eng.press_start()
    clock.t += 3.0
    eng.tick()
    assert eng.state is CheckInState.COLLECTED
    assert "node/1" in collected


def test_release_inside_band_stays_in_range(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock, hysteresis_m=5.0)
    eng.update_origin(offset(origin, 10))
    eng.select(make_place("node/1", origin))
    eng.press_start()

    eng.update_origin(offset(origin, 17))
    assert eng.state is CheckInState.HOLDING

    eng.release()
    assert eng.state is CheckInState.IN_RANGE
    assert eng.hold_progress == 0.0


def test_full_hold_collects_exactly_once(collected, clock, make_place, origin, offset):
    signals, events = [], []
    eng = _engine(collected, clock, haptics=signals.append, on_check_in=events.append)
    eng.update_origin(offset(origin, 5))
    eng.select(make_place("node/1", origin))

    eng.press_start()
    clock.t += 3.0
    eng.tick()

    assert eng.state is CheckInState.COLLECTED
    assert eng.hold_progress == 1.0
    assert collected.ids() == {"node/1"}
    assert signals == ["success"]
    assert [e.target_id for e in events] == ["node/1"]

    assert eng.press_start() is False
    assert eng.state is CheckInState.COLLECTED
    assert len(collected) == 1
    assert len(events) == 1


def test_leaving_range_while_holding_cancels(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock)
    eng.update_origin(offset(origin, 5))
    eng.select(make_place("node/1", origin))
    eng.press_start()
    clock.t += 2.0
    eng.tick()

    eng.update_origin(offset(origin, 40))

    assert eng.state is CheckInState.OUT_OF_RANGE
    assert eng.hold_progress == 0.0
    clock.t += 5.0
    eng.tick()
    assert "node/1" not in collected


def test_origin_jitter_inside_range_keeps_holding(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock)
    eng.update_origin(offset(origin, 5))
    eng.select(make_place("node/1", origin))
    eng.press_start()

    eng.update_origin(offset(origin, 8))

    assert eng.state is CheckInState.HOLDING


def test_press_start_requires_in_range(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock)
    assert eng.press_start() is False

    eng.update_origin(offset(origin, 100))
    eng.select(make_place("node/1", origin))
    assert eng.press_start() is False
    assert eng.state is CheckInState.OUT_OF_RANGE


def test_hysteresis_band(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock, hysteresis_m=5.0)
    eng.update_origin(offset(origin, 10))
    eng.select(make_place("node/1", origin))
    assert eng.state is CheckInState.IN_RANGE

    eng.update_origin(offset(origin, 17))
    assert eng.state is CheckInState.IN_RANGE

    eng.update_origin(offset(origin, 21))
    assert eng.state is CheckInState.OUT_OF_RANGE

    eng.update_origin(offset(origin, 17))
    assert eng.state is CheckInState.OUT_OF_RANGE

    eng.update_origin(offset(origin, 14))
    assert eng.state is CheckInState.IN_RANGE


def test_new_target_does_not_inherit_band(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock, hysteresis_m=5.0)
    eng.update_origin(origin)
    eng.select(make_place("node/1", origin))
    assert eng.state is CheckInState.IN_RANGE

    assert eng.select(make_place("node/2", offset(origin, 17))) is CheckInState.OUT_OF_RANGE


def test_already_collected_target(collected, clock, make_place, origin):
    collected.add("node/1")
    eng = _engine(collected, clock)

    assert eng.select(make_place("node/1", origin)) is CheckInState.COLLECTED


def test_clear_collected_reopens_target(collected, clock, make_place, origin):
    collected.add("node/1")
    eng = _engine(collected, clock)
    eng.update_origin(origin)
    eng.select(make_place("node/1", origin))

    eng.clear_collected()

    assert eng.state is CheckInState.IN_RANGE
    assert len(collected) == 0


def test_missing_from_results_returns_to_idle(collected, clock, make_place, origin):
    eng = _engine(collected, clock)
    eng.update_origin(origin)
    target = make_place("node/1", origin)
    eng.select(target)

    eng.sync_results([target, make_place("node/2", origin)])
    assert eng.state is CheckInState.IN_RANGE

    eng.sync_results([make_place("node/2", origin)])
    assert eng.state is CheckInState.IDLE
    assert eng.target is None


def test_map_center_substitutes_origin(collected, clock, make_place, origin, offset):
    eng = _engine(collected, clock)
    eng.update_origin(offset(origin, 500))
    eng.select(make_place("node/1", origin))
    assert eng.state is CheckInState.OUT_OF_RANGE

    eng.set_map_center(offset(origin, 3))
    assert eng.state is CheckInState.OUT_OF_RANGE

    eng.set_use_map_center(True)
    assert eng.state is CheckInState.IN_RANGE
    assert eng.snapshot().using_map_center

    eng.set_use_map_center(False)
    assert eng.state is CheckInState.OUT_OF_RANGE


def test_location_error_blocks_stamping(collected, clock, make_place, origin):
    eng = _engine(collected, clock)
    eng.update_origin(origin)
    eng.select(make_place("node/1", origin))
    eng.press_start()

    eng.report_location_error(TransportFailure("Permission denied"))

    assert eng.state is CheckInState.IN_RANGE
    assert eng.hold_progress == 0.0
    assert eng.location_error == "Permission denied"
    assert not eng.can_stamp
    assert eng.press_start() is False

    eng.update_origin(origin)
    assert eng.location_error is None
    assert eng.can_stamp


def test_cancellation_is_not_reported(collected, clock, make_place, origin):
    eng = _engine(collected, clock)
    eng.select(make_place("node/1", origin))

    eng.report_location_error(Cancelled())

    assert eng.location_error is None


def test_on_change_receives_snapshots(collected, clock, make_place, origin):
    snaps = []
    eng = _engine(collected, clock, on_change=snaps.append)
    eng.update_origin(origin)
    eng.select(make_place("node/1", origin))

    assert snaps[-1].state is CheckInState.IN_RANGE
    assert snaps[-1].target_id == "node/1"
    assert snaps[-1].distance_m == 0.0


# ──────────────────────────────────────────────────────────────
# Live tracking + real ticker
# ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_live_tracking_follows_target_lifetime(collected, clock, make_place, origin, offset):
    push = PushLocationProvider(timeout_s=1.0)
    eng = _engine(collected, clock, resolver=LocationResolver([push]))

    eng.select(make_place("node/1", origin))
    assert eng.tracking
    await asyncio.sleep(0)

    push.push(offset(origin, 30))
    assert eng.state is CheckInState.OUT_OF_RANGE
    push.push(offset(origin, 4))
    assert eng.state is CheckInState.IN_RANGE

    eng.deselect()
    assert not eng.tracking
    push.push(origin)
    assert eng.state is CheckInState.IDLE


@pytest.mark.asyncio
async def test_map_center_mode_disables_tracking(collected, clock, make_place, origin):
    eng = _engine(collected, clock, resolver=LocationResolver([PushLocationProvider()]))
    eng.set_map_center(origin)
    eng.set_use_map_center(True)

    eng.select(make_place("node/1", origin))

    assert not eng.tracking
    assert eng.state is CheckInState.IN_RANGE


@pytest.mark.asyncio
async def test_ticker_completes_hold(collected, make_place, origin):
    eng = ProximityEngine(
        collected=collected,
        threshold_m=15.0,
        hold_duration_s=0.05,
        tick_s=0.005,
    )
    eng.update_origin(origin)
    eng.select(make_place("node/1", origin))
    eng.press_start()

    await asyncio.sleep(0.2)

    assert eng.state is CheckInState.COLLECTED
    assert "node/1" in collected
    eng.dispose()
