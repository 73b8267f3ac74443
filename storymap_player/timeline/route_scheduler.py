"""
Route animation scheduling for the active segment.

Each route is dispatched on its RouteSchedule:

- TimeAnchored routes are polled on a fixed interval and walk
  NOT_STARTED -> STARTED -> STOPPED -> COMPLETED against the time elapsed
  since the segment anchor. Overlapping windows play in parallel.
- Chained routes play one at a time in display order with a settle pause
  after each.

Both kinds can run side by side in one segment. Every async step holds a
CancellationToken from the scheduler's epoch; reset() bumps the epoch so
stale chains stop before touching state.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config import PlayerSettings
from .clock import CancellationToken, Clock, SegmentEpoch, SystemClock, cancel_task
from .marker_chains import MarkerChainCache
from .models import (
    CameraState,
    CameraStyle,
    Chained,
    Location,
    RouteAnimation,
    RoutePhase,
    RoutePlayState,
    TimeAnchored,
    sort_route_animations,
)
from .render_gateway import RenderGateway, RenderOptions

logger = logging.getLogger(__name__)

LocationLookup = Callable[[str], Awaitable[Optional[Location]]]


@dataclass
class ScheduleOptions:
    # Set when the next segment will move the camera right away
    suppress_post_camera: bool = False


class RouteAnimationScheduler:
    """
    Runs a segment's route animations to completion.

    schedule() is idempotent for the same anchor (within
    ``anchor_tolerance_ms``); a different anchor resets everything first.
    """

    def __init__(
        self,
        gateway: Optional[RenderGateway] = None,
        settings: Optional[PlayerSettings] = None,
        clock: Optional[Clock] = None,
        location_lookup: Optional[LocationLookup] = None,
        marker_chains: Optional[MarkerChainCache] = None,
    ):
        self.gateway = gateway
        self.settings = settings or PlayerSettings()
        self._clock = clock or SystemClock()
        self.location_lookup = location_lookup
        self.marker_chains = marker_chains

        self._epoch = SegmentEpoch()
        self._routes: List[RouteAnimation] = []
        self._phases: Dict[int, RoutePhase] = {}
        self._options = ScheduleOptions()
        self._anchor_ms: Optional[float] = None
        self._started = False              # latch: a run exists for this anchor
        self._current_index: Optional[int] = None

        self._poll_task: Optional[asyncio.Task] = None
        self._chain_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._arrival_shown: Optional[Location] = None

        # Callbacks
        self._on_route_state_change: Optional[Callable[[int, RouteAnimation, RoutePlayState], None]] = None
        self._on_arrival_info: Optional[Callable[[RouteAnimation, Location], None]] = None
        self._on_arrival_info_dismissed: Optional[Callable[[RouteAnimation, Location], None]] = None

    def set_callbacks(
        self,
        on_route_state_change: Optional[Callable[[int, RouteAnimation, RoutePlayState], None]] = None,
        on_arrival_info: Optional[Callable[[RouteAnimation, Location], None]] = None,
        on_arrival_info_dismissed: Optional[Callable[[RouteAnimation, Location], None]] = None,
    ):
        """Set callback functions for route events."""
        self._on_route_state_change = on_route_state_change
        self._on_arrival_info = on_arrival_info
        self._on_arrival_info_dismissed = on_arrival_info_dismissed

    # === Queries ===

    @property
    def routes(self) -> List[RouteAnimation]:
        return list(self._routes)

    @property
    def anchor_ms(self) -> Optional[float]:
        return self._anchor_ms

    @property
    def epoch(self) -> int:
        return self._epoch.current

    @property
    def current_index(self) -> Optional[int]:
        """Index of the chained route currently moving, if any."""
        return self._current_index

    def get_play_state(self, index: int) -> RoutePlayState:
        return RoutePlayState.for_phase(self._phases.get(index, RoutePhase.NOT_STARTED))

    def is_playing(self, index: int) -> bool:
        return self._phases.get(index) == RoutePhase.STARTED

    @property
    def play_states(self) -> Dict[int, RoutePlayState]:
        return {i: self.get_play_state(i) for i in range(len(self._routes))}

    @property
    def all_completed(self) -> bool:
        """True once every playable route has completed."""
        return all(
            self._phases.get(i) == RoutePhase.COMPLETED
            for i, route in enumerate(self._routes)
            if self._playable(route)
        )

    # === Control ===

    def schedule(
        self,
        routes: List[RouteAnimation],
        anchor_ms: float,
        options: Optional[ScheduleOptions] = None,
    ) -> bool:
        """
        Start running ``routes`` against ``anchor_ms`` (epoch ms).

        Returns:
            True if a new run started, False if this anchor is already running
        """
        if (
            self._started
            and self._anchor_ms is not None
            and abs(anchor_ms - self._anchor_ms) <= self.settings.anchor_tolerance_ms
        ):
            logger.debug(f"Routes already scheduled for anchor {self._anchor_ms:.0f}, ignoring")
            return False

        self.reset()
        self._routes = sort_route_animations(list(routes))
        self._phases = {i: RoutePhase.NOT_STARTED for i in range(len(self._routes))}
        self._options = options or ScheduleOptions()
        self._anchor_ms = anchor_ms
        self._started = True
        token = self._epoch.token()

        timed: List[int] = []
        chained: List[int] = []
        for i, route in enumerate(self._routes):
            if not route.has_geometry:
                logger.warning(
                    f"Route {route.route_animation_id} has no geometry, skipping",
                    extra={"route_id": route.route_animation_id, "epoch": token.epoch},
                )
                continue
            if not route.has_valid_timing:
                logger.warning(
                    f"Route {route.route_animation_id} has non-numeric timing, skipping",
                    extra={"route_id": route.route_animation_id, "epoch": token.epoch},
                )
                continue
            if isinstance(route.schedule, TimeAnchored):
                timed.append(i)
            elif isinstance(route.schedule, Chained):
                chained.append(i)

        if any(self._playable(self._routes[i]) for i in timed):
            self._poll_task = asyncio.create_task(self._poll(timed, token))
        if chained:
            self._chain_task = asyncio.create_task(self._run_chain(chained, token))

        logger.info(
            f"Scheduled {len(self._routes)} routes ({len(timed)} timed, {len(chained)} chained) "
            f"at epoch {token.epoch}"
        )
        return True

    def reset(self):
        """Cancel every pending chain and forget all route state."""
        self._epoch.advance()
        cancel_task(self._poll_task)
        cancel_task(self._chain_task)
        for task in list(self._tasks):
            cancel_task(task)
        self._tasks.clear()
        self._poll_task = None
        self._chain_task = None

        if self._arrival_shown is not None and self.gateway:
            self._spawn(self._hide_location(self._arrival_shown.location_id))
        self._arrival_shown = None

        if self.marker_chains and not self.marker_chains.closed:
            for route in self._routes:
                chain_id = self.marker_chains.chain_id(route.route_animation_id)
                if chain_id:
                    self.marker_chains.set_animating(chain_id, route.route_animation_id, False)

        self._routes = []
        self._phases = {}
        self._anchor_ms = None
        self._started = False
        self._current_index = None

    # === Time-anchored routes ===

    async def _poll(self, indices: List[int], token: CancellationToken):
        interval = self.settings.route_poll_interval_ms
        while not token.cancelled:
            if self._tick(indices, token):
                logger.debug(f"All timed routes completed (epoch {token.epoch})")
                return
            await self._clock.sleep(interval)

    def _tick(self, indices: List[int], token: CancellationToken) -> bool:
        """Advance each timed route's state machine. Returns True when all are done."""
        elapsed = self._clock.now_ms() - self._anchor_ms
        done = True

        for i in indices:
            if token.cancelled:
                return True
            route = self._routes[i]
            if not self._playable(route):
                continue
            window: TimeAnchored = route.schedule

            # A route first seen after its window walks every state in one tick
            if self._phases[i] == RoutePhase.NOT_STARTED and elapsed >= window.start_ms:
                self._set_phase(i, RoutePhase.STARTED)
                self._spawn(self._apply_route_camera(route, route.camera_state_before, token))

            if self._phases[i] == RoutePhase.STARTED and elapsed >= window.animation_end_ms:
                self._set_phase(i, RoutePhase.STOPPED)

            if self._phases[i] == RoutePhase.STOPPED and elapsed >= window.end_ms:
                self._set_phase(i, RoutePhase.COMPLETED)
                self._complete_effects(route, token)

            if self._phases[i] != RoutePhase.COMPLETED:
                done = False

        return done

    # === Chained routes ===

    async def _run_chain(self, indices: List[int], token: CancellationToken):
        for i in indices:
            if token.cancelled:
                return
            route = self._routes[i]
            if not route.auto_play:
                logger.debug(f"Route {route.route_animation_id} is not auto-play, skipping")
                continue

            self._spawn(self._apply_route_camera(route, route.camera_state_before, token))

            if route.start_delay_ms:
                await self._clock.sleep(route.start_delay_ms)
                if token.cancelled:
                    return

            self._current_index = i
            self._set_phase(i, RoutePhase.STARTED)

            await self._clock.sleep(route.duration_ms)
            if token.cancelled:
                return

            self._current_index = None
            self._set_phase(i, RoutePhase.STOPPED)
            self._set_phase(i, RoutePhase.COMPLETED)
            self._complete_effects(route, token)

            await self._clock.sleep(route.arrival_info_ms or self.settings.sequential_settle_ms)

        if not token.cancelled:
            logger.debug(f"Chained routes finished (epoch {token.epoch})")

    # === Effects ===

    def _complete_effects(self, route: RouteAnimation, token: CancellationToken):
        if not self._options.suppress_post_camera:
            self._spawn(self._apply_route_camera(route, route.camera_state_after, token))
        if route.show_location_info_on_arrival and route.to_location_id:
            self._spawn(self._show_arrival_info(route, token))

    async def _apply_route_camera(self, route: RouteAnimation, raw: Any, token: CancellationToken):
        if raw is None or raw == "":
            return
        camera = CameraState.from_value(raw)
        if camera is None:
            logger.warning(
                f"Route {route.route_animation_id} has an invalid camera descriptor, skipping camera",
                extra={"route_id": route.route_animation_id},
            )
            return
        if token.cancelled or not self.gateway:
            return

        options = RenderOptions(
            camera_style=CameraStyle.FLY,
            camera_duration_ms=self.settings.route_camera_duration_ms,
        )
        try:
            await self.gateway.apply_camera(camera, options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Camera move for route {route.route_animation_id} failed: {e}")

    async def _show_arrival_info(self, route: RouteAnimation, token: CancellationToken):
        location: Optional[Location] = None
        if self.location_lookup:
            try:
                location = await self.location_lookup(route.to_location_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Location {route.to_location_id} lookup failed: {e}")
                return
        if location is None:
            logger.info(f"Location {route.to_location_id} not found, no arrival info")
            return
        if token.cancelled:
            return

        self._arrival_shown = location
        if self.gateway:
            try:
                await self.gateway.show_location_info(location, route)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Showing arrival info for {location.location_id} failed: {e}")
        if self._on_arrival_info:
            self._on_arrival_info(route, location)

        if not route.location_info_display_duration_ms:
            return
        await self._clock.sleep(route.location_info_display_duration_ms)
        if token.cancelled:
            return

        self._arrival_shown = None
        await self._hide_location(location.location_id)
        if self._on_arrival_info_dismissed:
            self._on_arrival_info_dismissed(route, location)

    async def _hide_location(self, location_id: str):
        try:
            await self.gateway.hide_location_info(location_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Dismissing arrival info for {location_id} failed: {e}")

    # === Helpers ===

    @staticmethod
    def _playable(route: RouteAnimation) -> bool:
        return route.auto_play and route.has_geometry and route.has_valid_timing

    def _set_phase(self, index: int, phase: RoutePhase):
        self._phases[index] = phase
        route = self._routes[index]

        if self.marker_chains and not self.marker_chains.closed:
            chain_id = self.marker_chains.chain_id(route.route_animation_id)
            if chain_id:
                self.marker_chains.set_animating(chain_id, route.route_animation_id, phase == RoutePhase.STARTED)
                if phase == RoutePhase.STOPPED and route.to_lat is not None and route.to_lng is not None:
                    self.marker_chains.update_position(chain_id, route.to_lat, route.to_lng)

        logger.debug(f"Route {route.route_animation_id} -> {phase.value}")
        if self._on_route_state_change:
            self._on_route_state_change(index, route, RoutePlayState.for_phase(phase))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
