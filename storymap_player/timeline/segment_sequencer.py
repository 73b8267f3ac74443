"""
Segment sequencing for timeline playback.

Presents one segment at a time: resolves the transition into it, renders it,
arms the route scheduler against an anchor taken before the render started,
then waits out the segment's effective duration (or a user action) before
moving on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import PlayerSettings
from .clock import CancellationToken, Clock, SegmentEpoch, SystemClock, cancel_task
from .marker_chains import MarkerChainCache
from .models import RoutePlayState, Segment, Transition, sort_route_animations
from .render_gateway import RenderGateway, RenderOptions, RenderResult
from .route_scheduler import RouteAnimationScheduler, ScheduleOptions
from .timing import base_duration_ms, effective_segment_duration, route_required_ms
from .transitions import TransitionResolver

logger = logging.getLogger(__name__)


class PlaybackState(Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    WAITING_FOR_USER_ACTION = "waiting_for_user_action"


@dataclass
class PlaybackSession:
    """Ephemeral state of one play pass. Never persisted."""
    current_index: int = 0
    is_playing: bool = False
    segment_start_ms: Optional[float] = None
    waiting_for_user_action: bool = False
    active_transition: Optional[Transition] = None
    route_states: Dict[int, RoutePlayState] = field(default_factory=dict)

    def reset(self):
        self.current_index = 0
        self.is_playing = False
        self.segment_start_ms = None
        self.waiting_for_user_action = False
        self.active_transition = None
        self.route_states = {}

    def to_dict(self) -> dict:
        return {
            "current_index": self.current_index,
            "is_playing": self.is_playing,
            "segment_start_ms": self.segment_start_ms,
            "waiting_for_user_action": self.waiting_for_user_action,
            "active_transition": self.active_transition.to_dict() if self.active_transition else None,
            "route_states": {str(i): s.to_dict() for i, s in self.route_states.items()},
        }


class SegmentSequencer:
    """
    Drives ordered traversal of a timeline's segments.

    start/pause/stop/on_user_continue return immediately; presentation and
    the advance timer run as asyncio tasks guarded by a segment epoch.
    """

    def __init__(
        self,
        gateway: Optional[RenderGateway],
        scheduler: Optional[RouteAnimationScheduler] = None,
        settings: Optional[PlayerSettings] = None,
        clock: Optional[Clock] = None,
        marker_chains: Optional[MarkerChainCache] = None,
    ):
        self.gateway = gateway
        self.settings = settings or PlayerSettings()
        self._clock = clock or SystemClock()
        self.scheduler = scheduler or RouteAnimationScheduler(gateway, self.settings, self._clock)
        self.marker_chains = marker_chains

        self.segments: List[Segment] = []
        self.resolver = TransitionResolver((), self.settings)
        self.session = PlaybackSession()
        self.state = PlaybackState.IDLE
        self.segment_duration_ms: float = 0

        self._epoch = SegmentEpoch()
        self._present_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._camera_task: Optional[asyncio.Task] = None
        self._fade_task: Optional[asyncio.Task] = None
        self._fade_done = asyncio.Event()
        self._fade_done.set()
        self._layers: List[Any] = []

        # Callbacks
        self._on_state_change: Optional[Callable[[PlaybackState], None]] = None
        self._on_segment_change: Optional[Callable[[int, Segment], None]] = None

    def set_callbacks(
        self,
        on_state_change: Optional[Callable[[PlaybackState], None]] = None,
        on_segment_change: Optional[Callable[[int, Segment], None]] = None,
    ):
        """Set callback functions for playback events."""
        self._on_state_change = on_state_change
        self._on_segment_change = on_segment_change

    def load(self, segments: List[Segment], transitions: Optional[List[Transition]] = None):
        """Load segments (in play order) and the transitions between them."""
        self.stop()
        self.segments = list(segments)
        self.resolver = TransitionResolver(transitions or [], self.settings)
        logger.info(f"Loaded {len(self.segments)} segments, {len(self.resolver)} transitions")

    @property
    def current_segment(self) -> Optional[Segment]:
        if 0 <= self.session.current_index < len(self.segments):
            return self.segments[self.session.current_index]
        return None

    @property
    def is_playing(self) -> bool:
        return self.state == PlaybackState.PLAYING

    # === Control ===

    def start(self, from_index: Optional[int] = None) -> bool:
        """
        Begin playback at ``from_index``, or resume at the current index.

        Returns:
            True if playback is running afterwards
        """
        if not self.segments:
            logger.warning("No segments loaded")
            return False

        if from_index is None:
            if self.state == PlaybackState.PLAYING:
                return True
            index = self.session.current_index
        else:
            index = from_index

        if index < 0 or index >= len(self.segments):
            logger.warning(f"Segment index {index} out of range, stopping")
            self.stop()
            return False

        self._cancel_pending()
        self.scheduler.reset()
        self.session.current_index = index
        self.session.is_playing = True
        self.session.waiting_for_user_action = False
        self.session.active_transition = None
        self._set_state(PlaybackState.PLAYING)

        logger.info(f"Playing from segment {index}")
        self._present_task = asyncio.create_task(self._present(index, self._epoch.token()))
        return True

    def advance(self):
        """Move to the next segment; past the last one playback stops."""
        if self.state != PlaybackState.PLAYING:
            return

        next_index = self.session.current_index + 1
        if next_index >= len(self.segments):
            logger.info("Playback complete")
            self.stop()
            return

        self._cancel_pending()
        self.scheduler.reset()
        self.session.current_index = next_index
        self._present_task = asyncio.create_task(self._present(next_index, self._epoch.token()))

    def pause(self) -> bool:
        """Halt the advance timer, keeping the current index."""
        if self.state not in (PlaybackState.PLAYING, PlaybackState.WAITING_FOR_USER_ACTION):
            return False

        self._cancel_pending()
        self.scheduler.reset()
        self.session.is_playing = False
        self.session.segment_start_ms = None
        self.session.waiting_for_user_action = False
        self.session.route_states = {}

        logger.info(f"Paused at segment {self.session.current_index}")
        self._set_state(PlaybackState.PAUSED)
        return True

    def stop(self):
        """Stop playback and reset to the first segment."""
        self._cancel_pending()
        self.scheduler.reset()
        self.session.reset()
        self.segment_duration_ms = 0

        if self.state != PlaybackState.IDLE:
            logger.info("Stopped")
            self._set_state(PlaybackState.IDLE)

    def on_user_continue(self) -> bool:
        """Release a user-action gate and move on."""
        if self.state != PlaybackState.WAITING_FOR_USER_ACTION:
            logger.warning("Continue ignored, not waiting for user action")
            return False

        self.session.waiting_for_user_action = False
        self.session.active_transition = None
        self.session.is_playing = True
        self._set_state(PlaybackState.PLAYING)
        self.advance()
        return True

    def seek(self, index: int) -> bool:
        """Set the position without playing. Ignored while playing."""
        if self.state in (PlaybackState.PLAYING, PlaybackState.WAITING_FOR_USER_ACTION):
            return False
        if not self.segments:
            return False
        self.session.current_index = max(0, min(index, len(self.segments) - 1))
        return True

    # === Presentation ===

    async def _present(self, index: int, token: CancellationToken):
        segment = self.segments[index]
        try:
            await self._present_segment(index, segment, token)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                f"Presenting segment {index} failed, keeping base pacing",
                extra={"segment_id": segment.segment_id, "epoch": token.epoch},
            )
            if token.cancelled or self.state != PlaybackState.PLAYING:
                return
            self.segment_duration_ms = base_duration_ms(segment, self.settings)
            self._timer_task = asyncio.create_task(self._advance_after(self.segment_duration_ms, token))

    async def _present_segment(self, index: int, segment: Segment, token: CancellationToken):
        # The transition into a segment is always the one from its predecessor in play order
        previous_id = self.segments[index - 1].segment_id if index > 0 else None
        transition = self.resolver.resolve(previous_id, segment.segment_id)
        options = self.resolver.render_options(transition)
        routes = sort_route_animations(segment.route_animations or [])
        schedule_options = ScheduleOptions(suppress_post_camera=self._suppress_post_camera(index, routes))

        self.session.active_transition = transition
        logger.info(
            f"Presenting segment {index} '{segment.name or segment.segment_id}'",
            extra={"segment_id": segment.segment_id, "epoch": token.epoch},
        )
        if self._on_segment_change:
            self._on_segment_change(index, segment)

        await self.show_segment(segment, options, schedule_options=schedule_options, token=token)
        if token.cancelled:
            return

        self.segment_duration_ms = effective_segment_duration(segment, routes, self.settings)

        if transition is not None and transition.require_user_action:
            self.session.waiting_for_user_action = True
            logger.info(f"Waiting for user action after segment {index}")
            self._set_state(PlaybackState.WAITING_FOR_USER_ACTION)
            return

        self._timer_task = asyncio.create_task(self._advance_after(self.segment_duration_ms, token))

    async def show_segment(
        self,
        segment: Segment,
        options: RenderOptions,
        anchor: Optional[float] = None,
        schedule_options: Optional[ScheduleOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[float]:
        """
        Render ``segment`` and start its routes.

        The route anchor is taken right before the render call (after any
        pending cross-fade) so render latency never shifts route timing.
        Returns the anchor, or None if superseded.
        """
        token = token or self._epoch.token()
        if options.marker_chains is None:
            options.marker_chains = self.marker_chains
        routes = sort_route_animations(segment.route_animations or [])

        await self._wait_for_fade()
        if token.cancelled:
            return None

        if anchor is None:
            anchor = self._clock.now_ms()
        self.session.segment_start_ms = anchor

        result: Optional[RenderResult] = None
        if self.gateway is None or not self.gateway.surface_available:
            logger.warning(f"No render surface, skipping render of segment {segment.segment_id}")
        else:
            try:
                result = await self.gateway.render_segment(segment, options)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Rendering segment {segment.segment_id} failed: {e}",
                    extra={"segment_id": segment.segment_id},
                )
        if token.cancelled:
            return None

        self.scheduler.schedule(routes, anchor, schedule_options)

        if result is not None:
            self._camera_task = asyncio.create_task(self._apply_camera(segment, result, options, token))
            old_layers, self._layers = self._layers, list(result.layers)
            self._fade_done.clear()
            self._fade_task = asyncio.create_task(self._cross_fade(old_layers, self._layers, options))

        return anchor

    async def _apply_camera(
        self,
        segment: Segment,
        result: RenderResult,
        options: RenderOptions,
        token: CancellationToken,
    ):
        if options.skip_camera:
            return
        # Let route pre-cameras land first
        await self._clock.sleep(self.settings.camera_settle_delay_ms)
        if token.cancelled:
            return

        try:
            if segment.camera_state is not None:
                await self.gateway.apply_camera(segment.camera_state, options)
            elif result.bounds is not None:
                await self.gateway.fit_bounds(result.bounds, options)
            else:
                logger.info(f"Segment {segment.segment_id} has no camera or bounded content, camera unchanged")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Camera move for segment {segment.segment_id} failed: {e}")

    async def _cross_fade(self, old_layers: List[Any], new_layers: List[Any], options: RenderOptions):
        try:
            await self.gateway.cross_fade_layers(old_layers, new_layers, options, self._fade_done.set)
        except asyncio.CancelledError:
            self._fade_done.set()
            raise
        except Exception as e:
            logger.error(f"Layer cross-fade failed: {e}")
            self._fade_done.set()

    async def _wait_for_fade(self):
        """Wait for the previous cross-fade, giving up after fade_wait_timeout_ms."""
        if self._fade_done.is_set():
            return
        waiter = asyncio.create_task(self._fade_done.wait())
        timeout = asyncio.create_task(self._clock.sleep(self.settings.fade_wait_timeout_ms))
        try:
            await asyncio.wait({waiter, timeout}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            timeout.cancel()
        if not self._fade_done.is_set():
            logger.warning("Previous cross-fade did not complete in time, continuing")
            self._fade_done.set()

    async def _advance_after(self, duration_ms: float, token: CancellationToken):
        await self._clock.sleep(duration_ms)
        # Let route ticks due at the same instant land first
        await self._clock.sleep(0)
        if token.cancelled:
            return
        self.advance()

    # === Helpers ===

    def _suppress_post_camera(self, index: int, routes) -> bool:
        """Skip route post-cameras when the routes end the segment and the next one moves the camera."""
        if index + 1 >= len(self.segments):
            return False
        if self.segments[index + 1].camera_state is None:
            return False
        segment = self.segments[index]
        required = route_required_ms(routes, self.settings.sequential_settle_ms)
        return required > 0 and required >= base_duration_ms(segment, self.settings)

    def _cancel_pending(self):
        self._epoch.advance()
        cancel_task(self._timer_task)
        cancel_task(self._present_task)
        cancel_task(self._camera_task)
        self._timer_task = None
        self._present_task = None
        self._camera_task = None

    def _set_state(self, state: PlaybackState):
        self.state = state
        if self._on_state_change:
            self._on_state_change(state)

    def get_status(self) -> Dict[str, Any]:
        """Current playback status for the UI."""
        self.session.route_states = self.scheduler.play_states
        segment = self.current_segment
        transition = self.session.active_transition
        return {
            "state": self.state.value,
            "is_playing": self.session.is_playing,
            "current_index": self.session.current_index,
            "segment_count": len(self.segments),
            "segment_id": segment.segment_id if segment else None,
            "segment_name": segment.name if segment else None,
            "segment_start_ms": self.session.segment_start_ms,
            "effective_duration_ms": self.segment_duration_ms,
            "waiting_for_user_action": self.session.waiting_for_user_action,
            "active_transition": transition.to_dict() if transition else None,
            "trigger_button_text": transition.trigger_button_text if transition else None,
            "route_states": {str(i): s.to_dict() for i, s in self.session.route_states.items()},
        }
