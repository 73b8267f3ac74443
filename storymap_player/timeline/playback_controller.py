"""
User-facing playback control.

Wraps the SegmentSequencer with the three mutually exclusive playback
modes: the whole timeline, a single segment, or one segment's routes only.
Starting any mode cancels whichever special mode was running.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import PlayerSettings, get_settings
from .clock import CancellationToken, Clock, SegmentEpoch, SystemClock, cancel_task
from .exceptions import DataFetchFailure
from .marker_chains import MarkerChainCache
from .models import Location, RouteAnimation, RoutePlayState, Segment, Transition, sort_route_animations
from .render_gateway import RenderGateway
from .route_scheduler import RouteAnimationScheduler
from .segment_sequencer import PlaybackState, SegmentSequencer
from .timing import effective_segment_duration, route_required_ms

logger = logging.getLogger(__name__)


class PlaybackMode(Enum):
    TIMELINE = "timeline"
    SINGLE_SEGMENT = "single_segment"
    ROUTE_ONLY = "route_only"


class PlaybackController:
    """
    Facade over the sequencer and scheduler.

    Usage:
        controller = PlaybackController(gateway, store)
        await controller.load("timeline-id")
        controller.play_from_start()
        await controller.wait_until_idle()
    """

    def __init__(
        self,
        gateway: Optional[RenderGateway],
        store=None,
        settings: Optional[PlayerSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock or SystemClock()

        self.scheduler = RouteAnimationScheduler(
            gateway, self.settings, self._clock, location_lookup=self._lookup_location
        )
        self.sequencer = SegmentSequencer(gateway, self.scheduler, self.settings, self._clock)
        self.sequencer.set_callbacks(
            on_state_change=self._handle_state_change,
            on_segment_change=self._handle_segment_change,
        )
        self.scheduler.set_callbacks(on_route_state_change=self._handle_route_state_change)

        self.timeline_id: Optional[str] = None
        self.mode: Optional[PlaybackMode] = None
        self.marker_chains: Optional[MarkerChainCache] = None

        self._mode_epoch = SegmentEpoch()
        self._mode_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

        self._on_status_change: Optional[Callable[[Dict[str, Any]], None]] = None

    def set_callbacks(self, on_status_change: Optional[Callable[[Dict[str, Any]], None]] = None):
        """Set the callback fired with get_status() whenever playback changes."""
        self._on_status_change = on_status_change

    @property
    def segments(self) -> List[Segment]:
        return self.sequencer.segments

    # === Loading ===

    async def load(
        self,
        timeline_id: Optional[str] = None,
        segments: Optional[List[Segment]] = None,
        transitions: Optional[List[Transition]] = None,
    ) -> int:
        """
        Load a timeline. Anything not passed in is fetched from the store;
        a failed fetch counts as empty.

        Returns:
            Number of segments loaded
        """
        self.stop()
        self.timeline_id = timeline_id

        if segments is None:
            segments = await self._fetch("segments", lambda: self.store.fetch_segments(timeline_id))
        if transitions is None:
            transitions = await self._fetch("transitions", lambda: self.store.fetch_transitions(timeline_id))

        for segment in segments:
            if segment.route_animations is None:
                segment.route_animations = await self._fetch(
                    f"routes for segment {segment.segment_id}",
                    lambda: self.store.fetch_route_animations(timeline_id, segment.segment_id),
                )
            segment.route_animations = sort_route_animations(segment.route_animations)

        if self.marker_chains:
            self.marker_chains.close()
        self.marker_chains = MarkerChainCache(segments)
        self.sequencer.marker_chains = self.marker_chains
        self.scheduler.marker_chains = self.marker_chains

        self.sequencer.load(segments, transitions)
        self._notify_status()
        return len(segments)

    async def _fetch(self, what: str, fetch) -> list:
        if self.store is None or self.timeline_id is None:
            return []
        try:
            return list(await fetch())
        except DataFetchFailure as e:
            logger.warning(f"Could not load {what}, continuing without: {e}")
            return []

    async def _lookup_location(self, location_id: str) -> Optional[Location]:
        for segment in self.segments:
            for location in segment.locations:
                if location.location_id == location_id:
                    return location
        if self.store is None or self.timeline_id is None:
            return None
        return await self.store.fetch_location_by_id(self.timeline_id, location_id)

    # === Timeline mode ===

    def play_from_start(self) -> bool:
        return self.play_from_index(0)

    def play_from_index(self, index: Optional[int] = None) -> bool:
        """Play the timeline from ``index``; None resumes at the current index."""
        self._cancel_mode()
        self.mode = PlaybackMode.TIMELINE
        self._idle.clear()
        if not self.sequencer.start(index):
            self.mode = None
            self._update_idle()
            return False
        return True

    def play(self, index: Optional[int] = None) -> bool:
        return self.play_from_index(index)

    def pause(self) -> bool:
        if self.mode in (PlaybackMode.SINGLE_SEGMENT, PlaybackMode.ROUTE_ONLY):
            self._cancel_mode()
            self._update_idle()
            self._notify_status()
            return True
        return self.sequencer.pause()

    def stop(self):
        """Stop everything and reset to the first segment."""
        self._cancel_mode()
        self.sequencer.stop()
        self.mode = None
        self._update_idle()
        self._notify_status()

    def continue_after_user_action(self) -> bool:
        if self.mode != PlaybackMode.TIMELINE:
            logger.warning("Continue ignored, timeline is not playing")
            return False
        return self.sequencer.on_user_continue()

    # === Special modes ===

    def play_single_segment(self, segment_id: str) -> bool:
        """Play one segment without a transition, then restore the timeline position."""
        return self._start_special(segment_id, PlaybackMode.SINGLE_SEGMENT)

    def play_route_animation_only(self, segment_id: str) -> bool:
        """Show one segment without moving the camera and run its routes."""
        return self._start_special(segment_id, PlaybackMode.ROUTE_ONLY)

    def _start_special(self, segment_id: str, mode: PlaybackMode) -> bool:
        index = self._index_of(segment_id)
        if index is None:
            logger.warning(f"Segment {segment_id} not found")
            return False

        prior_index = self.sequencer.session.current_index
        self._cancel_mode()
        self.sequencer.stop()
        self.mode = mode
        self._idle.clear()

        token = self._mode_epoch.token()
        self._mode_task = asyncio.create_task(self._run_special(index, prior_index, mode, token))
        logger.info(f"Started {mode.value} playback of segment {segment_id}")
        self._notify_status()
        return True

    async def _run_special(self, index: int, prior_index: int, mode: PlaybackMode, token: CancellationToken):
        segment = self.segments[index]
        routes = segment.route_animations or []
        options = self.sequencer.resolver.render_options(None)
        if mode == PlaybackMode.ROUTE_ONLY:
            options.skip_camera = True
            wait_ms = route_required_ms(routes, self.settings.sequential_settle_ms)
        else:
            wait_ms = effective_segment_duration(segment, routes, self.settings)

        await self.sequencer.show_segment(segment, options)
        if token.cancelled:
            return
        await self._clock.sleep(wait_ms)
        if token.cancelled:
            return

        self.scheduler.reset()
        self.sequencer.seek(prior_index)
        self.sequencer.session.segment_start_ms = None
        self.mode = None
        logger.info(f"Finished {mode.value} playback of segment {segment.segment_id}")
        self._update_idle()
        self._notify_status()

    def _cancel_mode(self):
        self._mode_epoch.advance()
        cancel_task(self._mode_task)
        self._mode_task = None
        if self.mode in (PlaybackMode.SINGLE_SEGMENT, PlaybackMode.ROUTE_ONLY):
            self.scheduler.reset()
            self.sequencer.session.segment_start_ms = None
            self.mode = None

    def _index_of(self, segment_id: str) -> Optional[int]:
        for i, segment in enumerate(self.segments):
            if segment.segment_id == segment_id:
                return i
        return None

    # === Status ===

    def get_status(self) -> Dict[str, Any]:
        status = self.sequencer.get_status()
        status["mode"] = self.mode.value if self.mode else None
        status["timeline_id"] = self.timeline_id
        return status

    @property
    def route_play_states(self) -> Dict[int, RoutePlayState]:
        return self.scheduler.play_states

    @property
    def is_idle(self) -> bool:
        return self.mode is None and self.sequencer.state == PlaybackState.IDLE

    async def wait_until_idle(self):
        """Wait until no mode is running."""
        while not self.is_idle:
            self._idle.clear()
            await self._idle.wait()

    async def close(self):
        self.stop()
        if self.marker_chains:
            self.marker_chains.close()
            self.marker_chains = None

    def _handle_state_change(self, state: PlaybackState):
        if state == PlaybackState.IDLE and self.mode == PlaybackMode.TIMELINE:
            self.mode = None
        self._update_idle()
        self._notify_status()

    def _handle_segment_change(self, index: int, segment: Segment):
        self._notify_status()

    def _handle_route_state_change(self, index: int, route: RouteAnimation, state: RoutePlayState):
        self._notify_status()

    def _update_idle(self):
        if self.is_idle:
            self._idle.set()
        else:
            self._idle.clear()

    def _notify_status(self):
        if self._on_status_change:
            self._on_status_change(self.get_status())
