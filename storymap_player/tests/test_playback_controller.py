"""
Tests for PlaybackController: loading, the three playback modes and
status reporting.

Run with: python -m pytest storymap_player/tests/test_playback_controller.py -v
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from storymap_player.timeline.data_store import JsonTimelineStore
from storymap_player.timeline.exceptions import DataFetchFailure
from storymap_player.timeline.models import Location
from storymap_player.timeline.playback_controller import PlaybackController, PlaybackMode
from storymap_player.timeline.segment_sequencer import PlaybackState
from storymap_player.tests.fakes import make_route, make_segment, make_transition

pytestmark = pytest.mark.asyncio


@pytest.fixture()
def controller(gateway, settings, clock):
    return PlaybackController(gateway, settings=settings, clock=clock)


def _three_segments():
    return [make_segment("s1", 1000), make_segment("s2", 1000), make_segment("s3", 1000)]


def _mock_store(segments, routes=None, transitions=None):
    store = MagicMock()
    store.fetch_segments = AsyncMock(return_value=segments)
    store.fetch_transitions = AsyncMock(return_value=transitions or [])
    store.fetch_route_animations = AsyncMock(return_value=routes or [])
    store.fetch_location_by_id = AsyncMock(return_value=None)
    return store


# ===========================================================================
# Loading
# ===========================================================================


class TestLoad:

    async def test_load_from_store_sorts_routes(self, gateway, settings, clock):
        segment = make_segment("s1")
        segment.route_animations = None
        routes = [make_route("late", order=2), make_route("early", order=1)]
        store = _mock_store([segment], routes=routes)
        controller = PlaybackController(gateway, store, settings, clock)

        count = await controller.load("tl-1")

        assert count == 1
        store.fetch_route_animations.assert_awaited_once_with("tl-1", "s1")
        assert [r.route_animation_id for r in controller.segments[0].route_animations] == ["early", "late"]
        assert controller.marker_chains is not None

    async def test_failed_fetch_counts_as_empty(self, gateway, settings, clock):
        store = _mock_store(_three_segments())
        store.fetch_transitions = AsyncMock(side_effect=DataFetchFailure("503 from API"))
        controller = PlaybackController(gateway, store, settings, clock)

        assert await controller.load("tl-1") == 3
        assert len(controller.sequencer.resolver) == 0

    async def test_malformed_store_document_loads_empty(self, gateway, settings, clock, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps({"timelineId": "tl-1", "segments": ["s1"], "transitions": [7]}), encoding="utf-8")
        controller = PlaybackController(gateway, JsonTimelineStore(str(path)), settings, clock)

        assert await controller.load("tl-1") == 0
        assert len(controller.sequencer.resolver) == 0
        assert controller.play_from_start() is False

    async def test_preloaded_routes_are_not_refetched(self, gateway, settings, clock):
        store = _mock_store([make_segment("s1", routes=[make_route("r1", start=0)])])
        controller = PlaybackController(gateway, store, settings, clock)

        await controller.load("tl-1")
        store.fetch_route_animations.assert_not_awaited()

    async def test_load_passed_segments_without_store(self, controller):
        assert await controller.load(segments=_three_segments(), transitions=[]) == 3
        assert controller.get_status()["segment_count"] == 3

    async def test_location_lookup_prefers_segment_locations(self, gateway, settings, clock):
        pier = Location(location_id="loc-1", title="Pier")
        store = _mock_store([make_segment("s1", locations=[pier])])
        controller = PlaybackController(gateway, store, settings, clock)
        await controller.load("tl-1")

        assert await controller._lookup_location("loc-1") is pier
        store.fetch_location_by_id.assert_not_awaited()

        await controller._lookup_location("loc-2")
        store.fetch_location_by_id.assert_awaited_once_with("tl-1", "loc-2")


# ===========================================================================
# Timeline mode
# ===========================================================================


class TestTimelineMode:

    async def test_play_from_start_reaches_idle(self, controller, clock):
        await controller.load(segments=_three_segments())
        assert controller.play_from_start() is True
        assert controller.mode == PlaybackMode.TIMELINE

        waiter = asyncio.create_task(controller.wait_until_idle())
        await clock.advance(2999)
        assert not waiter.done()

        await clock.advance(1)
        assert waiter.done()
        assert controller.mode is None
        assert controller.is_idle

    async def test_play_out_of_range_fails(self, controller):
        await controller.load(segments=_three_segments())
        assert controller.play_from_index(7) is False
        assert controller.mode is None
        assert controller.is_idle

    async def test_continue_after_gate(self, controller, clock):
        await controller.load(
            segments=_three_segments(),
            transitions=[make_transition("s1", "s2", require_user_action=True)],
        )
        controller.play_from_start()
        await clock.advance(1000)
        assert controller.sequencer.state == PlaybackState.WAITING_FOR_USER_ACTION

        assert controller.continue_after_user_action() is True
        await clock.advance(0)
        assert controller.sequencer.session.current_index == 2

    async def test_play_from_index_honours_incoming_gate(self, controller, clock):
        await controller.load(
            segments=_three_segments(),
            transitions=[make_transition("s1", "s2", require_user_action=True)],
        )
        controller.play_from_index(1)
        await clock.advance(5000)

        assert controller.sequencer.state == PlaybackState.WAITING_FOR_USER_ACTION
        assert controller.sequencer.session.current_index == 1
        assert controller.continue_after_user_action() is True

    async def test_continue_ignored_outside_timeline_mode(self, controller):
        await controller.load(segments=_three_segments())
        assert controller.continue_after_user_action() is False

    async def test_stop_resets(self, controller, clock):
        await controller.load(segments=_three_segments())
        controller.play_from_index(1)
        await clock.advance(0)

        controller.stop()
        assert controller.is_idle
        assert controller.sequencer.session.current_index == 0


# ===========================================================================
# Special modes
# ===========================================================================


class TestSpecialModes:

    async def test_single_segment_restores_prior_index(self, controller, gateway, clock):
        await controller.load(segments=_three_segments())
        controller.play_from_index(1)
        await clock.advance(0)

        assert controller.play_single_segment("s3") is True
        assert controller.mode == PlaybackMode.SINGLE_SEGMENT
        await clock.advance(0)
        assert gateway.calls_named("render_segment")[-1][2][0].segment_id == "s3"

        await clock.advance(1000)
        assert controller.mode is None
        assert controller.sequencer.state == PlaybackState.IDLE
        assert controller.sequencer.session.current_index == 1
        assert controller.get_status()["segment_start_ms"] is None

    async def test_single_segment_renders_without_transition(self, controller, gateway, clock):
        await controller.load(
            segments=_three_segments(),
            transitions=[make_transition("s1", "s2", transition_type="Linear", duration_ms=2000)],
        )
        controller.play_single_segment("s2")
        await clock.advance(0)

        options = gateway.calls_named("render_segment")[-1][2][1]
        assert options.transition_style is None

    async def test_unknown_segment(self, controller):
        await controller.load(segments=_three_segments())
        assert controller.play_single_segment("nope") is False
        assert controller.play_route_animation_only("nope") is False
        assert controller.mode is None

    async def test_route_only_skips_camera(self, controller, gateway, clock):
        route = make_route("r1", start=0, duration=2000)
        await controller.load(segments=[make_segment("s1", 500, routes=[route]), make_segment("s2")])

        assert controller.play_route_animation_only("s1") is True
        await clock.advance(1000)
        assert controller.mode == PlaybackMode.ROUTE_ONLY
        assert controller.route_play_states[0].is_playing

        await clock.advance(1000)
        assert controller.mode is None
        assert gateway.calls_named("apply_camera") == []
        assert gateway.calls_named("fit_bounds") == []

    async def test_modes_are_mutually_exclusive(self, controller, clock):
        await controller.load(segments=[make_segment("s1", 5000), make_segment("s2", 1000)])
        controller.play_single_segment("s2")
        await clock.advance(0)

        controller.play_route_animation_only("s1")
        assert controller.mode == PlaybackMode.ROUTE_ONLY

        controller.play_from_start()
        await clock.advance(1500)
        assert controller.mode == PlaybackMode.TIMELINE
        assert controller.sequencer.state == PlaybackState.PLAYING
        assert controller.sequencer.session.current_index == 0

    async def test_pause_cancels_special_mode(self, controller, clock):
        await controller.load(segments=_three_segments())
        controller.play_single_segment("s2")
        await clock.advance(0)

        assert controller.pause() is True
        assert controller.mode is None
        await clock.advance(5000)
        assert controller.is_idle


# ===========================================================================
# Status
# ===========================================================================


class TestStatus:

    async def test_status_callback_includes_mode(self, controller, clock):
        statuses = []
        controller.set_callbacks(on_status_change=statuses.append)
        await controller.load("tl-9", segments=_three_segments(), transitions=[])

        controller.play_from_start()
        await clock.advance(0)

        assert statuses[-1]["mode"] == "timeline"
        assert statuses[-1]["timeline_id"] == "tl-9"
        assert statuses[-1]["segment_id"] == "s1"

    async def test_status_reports_route_states(self, controller, clock):
        route = make_route("r1", start=0, duration=2000)
        await controller.load(segments=[make_segment("s1", 3000, routes=[route])])
        controller.play_from_start()
        await clock.advance(500)

        status = controller.get_status()
        assert status["route_states"]["0"]["isPlaying"] is True

    async def test_close_releases_marker_chains(self, controller):
        await controller.load(segments=_three_segments())
        await controller.close()
        assert controller.marker_chains is None
        assert controller.is_idle
