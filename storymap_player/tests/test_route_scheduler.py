"""
Tests for RouteAnimationScheduler.

Covers the time-anchored state machine, chained playback, idempotent
scheduling per anchor, cancellation on reset and the skip rules for
non-playable routes. All timing runs on FakeClock.

Run with: python -m pytest storymap_player/tests/test_route_scheduler.py -v
"""

import logging
from unittest.mock import AsyncMock

import pytest

from storymap_player.timeline.exceptions import DataFetchFailure
from storymap_player.timeline.marker_chains import MarkerChainCache
from storymap_player.timeline.models import CameraState, CameraStyle, Location
from storymap_player.timeline.route_scheduler import RouteAnimationScheduler, ScheduleOptions
from storymap_player.timeline.timing import route_required_ms
from storymap_player.tests.fakes import make_route, make_segment

pytestmark = pytest.mark.asyncio

AFTER_CAMERA = {"center": [106.8, 10.9], "zoom": 14}
BEFORE_CAMERA = {"center": [106.6, 10.7], "zoom": 11}


@pytest.fixture()
def lookup():
    return AsyncMock(return_value=Location(location_id="loc-1", title="Ben Thanh Market"))


@pytest.fixture()
def scheduler(gateway, settings, clock, lookup):
    return RouteAnimationScheduler(gateway, settings, clock, location_lookup=lookup)


def _record_states(scheduler, clock):
    events = []

    def on_change(index, route, state):
        events.append((route.route_animation_id, state.is_playing, state.has_completed, clock.now_ms()))

    scheduler.set_callbacks(on_route_state_change=on_change)
    return events


# ===========================================================================
# Time-anchored routes
# ===========================================================================


class TestTimeAnchored:
    """Routes with an explicit start time run on the poll state machine."""

    async def test_route_plays_for_its_window(self, scheduler, clock):
        """startTimeMs=0, durationMs=2000: playing over [0, 2000), completed at 2000."""
        scheduler.schedule([make_route("r1", start=0, duration=2000)], clock.now_ms())

        await clock.advance(0)
        assert scheduler.get_play_state(0).is_playing

        await clock.advance(1999)
        assert scheduler.get_play_state(0).is_playing

        await clock.advance(1)
        state = scheduler.get_play_state(0)
        assert not state.is_playing
        assert state.has_completed

    async def test_arrival_effects_fire_once_at_completion(self, scheduler, gateway, clock, lookup):
        """Post-camera and arrival info fire exactly once, at the end of the window."""
        route = make_route(
            "r1", start=0, duration=2000,
            camera_state_after=AFTER_CAMERA,
            show_location_info_on_arrival=True,
            to_location_id="loc-1",
            location_info_display_duration_ms=3000,
        )
        scheduler.schedule([route], clock.now_ms())

        await clock.advance(1999)
        assert gateway.calls_named("apply_camera") == []
        assert gateway.calls_named("show_location_info") == []

        await clock.advance(1)
        cameras = gateway.calls_named("apply_camera")
        assert len(cameras) == 1
        target, options = cameras[0][2]
        assert target.center == (106.8, 10.9)
        assert options.camera_style == CameraStyle.FLY
        assert options.camera_duration_ms == 1000
        assert len(gateway.calls_named("show_location_info")) == 1
        lookup.assert_awaited_once_with("loc-1")

        await clock.advance(3000)
        assert [c[2] for c in gateway.calls_named("hide_location_info")] == [("loc-1",)]

        await clock.advance(10_000)
        assert len(gateway.calls_named("apply_camera")) == 1
        assert len(gateway.calls_named("show_location_info")) == 1

    async def test_pre_camera_applies_once_at_start(self, scheduler, gateway, clock):
        route = make_route("r1", start=500, duration=1000, camera_state_before=BEFORE_CAMERA)
        scheduler.schedule([route], clock.now_ms())

        await clock.advance(400)
        assert gateway.calls_named("apply_camera") == []

        await clock.advance(100)
        assert len(gateway.calls_named("apply_camera")) == 1

        await clock.advance(5000)
        assert len(gateway.calls_named("apply_camera")) == 1

    async def test_overlapping_routes_play_in_parallel(self, scheduler, clock):
        """Starts at 0 and 500, both 1000ms long: both playing over [500, 1000)."""
        routes = [make_route("a", start=0, duration=1000), make_route("b", start=500, duration=1000)]
        scheduler.schedule(routes, clock.now_ms())

        await clock.advance(0)
        assert scheduler.is_playing(0)
        assert not scheduler.is_playing(1)

        await clock.advance(500)
        assert scheduler.is_playing(0) and scheduler.is_playing(1)

        await clock.advance(499)
        assert scheduler.is_playing(0) and scheduler.is_playing(1)

        await clock.advance(1)
        assert not scheduler.is_playing(0)
        assert scheduler.is_playing(1)

        await clock.advance(500)
        assert scheduler.all_completed

    async def test_end_time_holds_completion(self, scheduler, gateway, clock):
        """The marker stops at start+duration; completion waits for endTimeMs."""
        route = make_route("r1", start=0, duration=1000, end_time_ms=3000, camera_state_after=AFTER_CAMERA)
        scheduler.schedule([route], clock.now_ms())

        await clock.advance(1000)
        state = scheduler.get_play_state(0)
        assert not state.is_playing
        assert state.has_started
        assert not state.has_completed
        assert gateway.calls_named("apply_camera") == []

        await clock.advance(2000)
        assert scheduler.get_play_state(0).has_completed
        assert len(gateway.calls_named("apply_camera")) == 1

    async def test_route_seen_after_its_window_walks_all_states_once(self, scheduler, gateway, clock):
        events = _record_states(scheduler, clock)
        route = make_route("r1", start=0, duration=1000, camera_state_after=AFTER_CAMERA)
        scheduler.schedule([route], clock.now_ms() - 5000)

        await clock.advance(0)
        assert [(e[1], e[2]) for e in events] == [(True, False), (False, False), (False, True)]
        assert len(gateway.calls_named("apply_camera")) == 1

    async def test_polling_stops_when_all_complete(self, scheduler, clock):
        scheduler.schedule([make_route("r1", start=0, duration=300)], clock.now_ms())
        await clock.advance(300)
        assert scheduler._poll_task.done()

    async def test_suppressed_post_camera(self, scheduler, gateway, clock):
        route = make_route("r1", start=0, duration=1000, camera_state_after=AFTER_CAMERA)
        scheduler.schedule([route], clock.now_ms(), ScheduleOptions(suppress_post_camera=True))

        await clock.advance(2000)
        assert scheduler.get_play_state(0).has_completed
        assert gateway.calls_named("apply_camera") == []


# ===========================================================================
# Chained routes
# ===========================================================================


class TestChained:
    """Routes without a start time play one after another."""

    async def test_three_routes_run_in_display_order(self, scheduler, clock):
        """1000/1500/2000ms with 500ms settles: 6000ms total, strictly ordered."""
        events = _record_states(scheduler, clock)
        anchor = clock.now_ms()
        routes = [
            make_route("third", duration=2000, order=2),
            make_route("first", duration=1000, order=0),
            make_route("second", duration=1500, order=1),
        ]
        scheduler.schedule(routes, anchor)

        await clock.advance(0)
        assert scheduler.current_index == 0
        assert scheduler.routes[0].route_animation_id == "first"

        await clock.advance(999)
        assert scheduler.is_playing(0)

        await clock.advance(1)
        assert scheduler.current_index is None
        assert not any(scheduler.is_playing(i) for i in range(3))

        await clock.advance(500)
        assert scheduler.current_index == 1

        await clock.advance(4000)
        assert scheduler.all_completed
        assert not scheduler._chain_task.done()

        await clock.advance(500)
        assert scheduler._chain_task.done()

        starts = [(e[0], e[3] - anchor) for e in events if e[1]]
        assert starts == [("first", 0), ("second", 1500), ("third", 3500)]
        assert route_required_ms(routes) == 6000

    async def test_only_active_route_reports_playing(self, scheduler, clock):
        routes = [make_route("a", duration=1000, order=0), make_route("b", duration=1000, order=1)]
        scheduler.schedule(routes, clock.now_ms())

        await clock.advance(200)
        assert scheduler.play_states[0].is_playing
        assert not scheduler.play_states[1].is_playing
        assert not scheduler.play_states[1].has_started

    async def test_start_delay_precedes_playing(self, scheduler, gateway, clock):
        route = make_route("a", duration=1000, start_delay_ms=400, camera_state_before=BEFORE_CAMERA)
        scheduler.schedule([route], clock.now_ms())

        await clock.advance(0)
        assert len(gateway.calls_named("apply_camera")) == 1
        assert not scheduler.is_playing(0)

        await clock.advance(400)
        assert scheduler.is_playing(0)

    async def test_settle_uses_arrival_info_duration(self, scheduler, clock):
        routes = [
            make_route(
                "a", duration=1000, order=0,
                show_location_info_on_arrival=True, to_location_id="loc-1",
                location_info_display_duration_ms=2000,
            ),
            make_route("b", duration=1000, order=1),
        ]
        scheduler.schedule(routes, clock.now_ms())

        await clock.advance(2999)
        assert not scheduler.is_playing(1)
        await clock.advance(1)
        assert scheduler.is_playing(1)

    async def test_mixed_modes_run_side_by_side(self, scheduler, clock):
        routes = [make_route("timed", start=0, duration=1500), make_route("chained", duration=1000, order=1)]
        scheduler.schedule(routes, clock.now_ms())

        await clock.advance(100)
        assert all(scheduler.is_playing(i) for i in range(2))


# ===========================================================================
# Idempotence and reset
# ===========================================================================


class TestScheduling:
    """Anchor latch, reset and cancellation."""

    async def test_same_anchor_does_not_double_fire(self, scheduler, gateway, clock, lookup):
        route = make_route(
            "r1", start=0, duration=1000,
            camera_state_after=AFTER_CAMERA,
            show_location_info_on_arrival=True, to_location_id="loc-1",
        )
        anchor = clock.now_ms()
        assert scheduler.schedule([route], anchor) is True

        await clock.advance(500)
        assert scheduler.schedule([route], anchor) is False
        assert scheduler.schedule([route], anchor + 200) is False
        assert scheduler.is_playing(0)

        await clock.advance(2000)
        assert scheduler.schedule([route], anchor) is False
        await clock.advance(2000)
        assert len(gateway.calls_named("apply_camera")) == 1
        assert len(gateway.calls_named("show_location_info")) == 1
        assert lookup.await_count == 1

    async def test_new_anchor_resets(self, scheduler, clock):
        route = make_route("r1", start=0, duration=1000)
        scheduler.schedule([route], clock.now_ms())
        await clock.advance(1500)
        assert scheduler.get_play_state(0).has_completed

        assert scheduler.schedule([route], clock.now_ms()) is True
        await clock.advance(0)
        state = scheduler.get_play_state(0)
        assert state.is_playing
        assert not state.has_completed

    async def test_reset_cancels_chain(self, scheduler, clock):
        events = _record_states(scheduler, clock)
        routes = [make_route("a", duration=1000, order=0), make_route("b", duration=1000, order=1)]
        scheduler.schedule(routes, clock.now_ms())
        await clock.advance(500)

        scheduler.reset()
        recorded = len(events)
        await clock.advance(10_000)

        assert len(events) == recorded
        assert scheduler.play_states == {}
        assert scheduler.anchor_ms is None

    async def test_reset_dismisses_visible_arrival_info(self, scheduler, gateway, clock):
        route = make_route(
            "r1", start=0, duration=100,
            show_location_info_on_arrival=True, to_location_id="loc-1",
            location_info_display_duration_ms=5000,
        )
        scheduler.schedule([route], clock.now_ms())
        await clock.advance(100)
        assert len(gateway.calls_named("show_location_info")) == 1

        scheduler.reset()
        await clock.advance(0)
        assert [c[2] for c in gateway.calls_named("hide_location_info")] == [("loc-1",)]


# ===========================================================================
# Skipped routes and failures
# ===========================================================================


class TestSkipsAndFailures:
    """Non-playable routes and collaborator failures never block siblings."""

    async def test_auto_play_false_never_plays(self, scheduler, clock):
        routes = [
            make_route("manual", start=0, duration=1000, auto_play=False),
            make_route("manual-chain", duration=1000, order=0, auto_play=False),
            make_route("next", duration=1000, order=1),
        ]
        scheduler.schedule(routes, clock.now_ms())

        for _ in range(30):
            await clock.advance(100)
            assert not scheduler.play_states[0].is_playing
            assert not scheduler.play_states[1].is_playing
        assert scheduler.routes[2].route_animation_id == "next"
        assert scheduler.get_play_state(2).has_completed

    async def test_chain_skips_manual_route_instantly(self, scheduler, clock):
        routes = [
            make_route("manual", duration=5000, order=0, auto_play=False),
            make_route("auto", duration=1000, order=1),
        ]
        scheduler.schedule(routes, clock.now_ms())
        await clock.advance(0)
        assert scheduler.is_playing(1)

    async def test_route_without_geometry_is_skipped(self, scheduler, clock, caplog):
        broken = make_route("broken", start=0, duration=1000, from_lat=None, route_path=None)
        routes = [broken, make_route("ok", start=0, duration=1000)]

        with caplog.at_level(logging.WARNING):
            scheduler.schedule(routes, clock.now_ms())
            await clock.advance(0)

        assert "no geometry" in caplog.text
        states = {scheduler.routes[i].route_animation_id: s for i, s in scheduler.play_states.items()}
        assert not states["broken"].is_playing
        assert states["ok"].is_playing

        await clock.advance(1000)
        assert scheduler.all_completed

    async def test_invalid_camera_descriptor_skips_only_camera(self, scheduler, gateway, clock, caplog):
        route = make_route("r1", start=0, duration=1000, camera_state_before="{not json")

        with caplog.at_level(logging.WARNING):
            scheduler.schedule([route], clock.now_ms())
            await clock.advance(0)

        assert "invalid camera descriptor" in caplog.text
        assert gateway.calls_named("apply_camera") == []
        assert scheduler.is_playing(0)

    async def test_location_lookup_failure_skips_popup(self, scheduler, gateway, clock, lookup):
        lookup.side_effect = DataFetchFailure("api down")
        route = make_route(
            "r1", start=0, duration=1000,
            camera_state_after=AFTER_CAMERA,
            show_location_info_on_arrival=True, to_location_id="loc-1",
        )
        scheduler.schedule([route], clock.now_ms())
        await clock.advance(1000)

        assert scheduler.get_play_state(0).has_completed
        assert gateway.calls_named("show_location_info") == []
        assert len(gateway.calls_named("apply_camera")) == 1

    async def test_camera_failure_is_absorbed(self, scheduler, gateway, clock):
        gateway.fail_camera = True
        route = make_route("r1", start=0, duration=1000, camera_state_before=BEFORE_CAMERA)
        scheduler.schedule([route], clock.now_ms())

        await clock.advance(1000)
        assert scheduler.get_play_state(0).has_completed


# ===========================================================================
# Shared markers
# ===========================================================================


class TestMarkerChains:

    async def test_chain_marked_animating_while_route_moves(self, scheduler, clock):
        first = make_route("leg-1", start=0, duration=1000)
        second = make_route(
            "leg-2", start=1000, duration=1000,
            from_lat=10.5, from_lng=106.5, to_lat=11.0, to_lng=107.0,
        )
        with MarkerChainCache([make_segment("s1", routes=[first, second])]) as cache:
            scheduler.marker_chains = cache
            chain_id = cache.chain_id("leg-1")
            assert chain_id == cache.chain_id("leg-2")

            scheduler.schedule([first, second], clock.now_ms())
            await clock.advance(0)
            assert cache.is_animating(chain_id)

            await clock.advance(2000)
            assert not cache.is_animating(chain_id)
            assert cache.position(chain_id) == (11.0, 107.0)
