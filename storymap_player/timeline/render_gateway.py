"""
Render boundary for timeline playback.

The sequencer and scheduler decide when things happen and with which
parameters; a RenderGateway does the drawing. Implementations raise
RenderFailure (or anything else) on errors, and the core absorbs them.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .clock import Clock, SystemClock
from .marker_chains import MarkerChainCache
from .models import CameraState, CameraStyle, Location, RouteAnimation, Segment, TransitionStyle

logger = logging.getLogger(__name__)


# Easing functions for layer cross-fades
def _ease_linear(t: float) -> float:
    return t


def _ease_in_quad(t: float) -> float:
    return t * t


def _ease_out_quad(t: float) -> float:
    return t * (2 - t)


def _ease_in_out_quad(t: float) -> float:
    return 2 * t * t if t < 0.5 else -1 + (4 - 2 * t) * t


def _ease_in_out_sine(t: float) -> float:
    return 0.5 * (1 - math.cos(math.pi * t))


EASING_FUNCTIONS: Dict[TransitionStyle, Callable[[float], float]] = {
    TransitionStyle.LINEAR: _ease_linear,
    TransitionStyle.EASE: _ease_in_out_sine,
    TransitionStyle.EASE_IN: _ease_in_quad,
    TransitionStyle.EASE_OUT: _ease_out_quad,
    TransitionStyle.EASE_IN_OUT: _ease_in_out_quad,
}


def fades(style: Optional[TransitionStyle]) -> bool:
    """Whether a style cross-fades at all (Jump and no style swap layers at once)."""
    return style is not None and style != TransitionStyle.JUMP


@dataclass
class Bounds:
    south: float
    west: float
    north: float
    east: float

    def union(self, other: Optional['Bounds']) -> 'Bounds':
        if other is None:
            return self
        return Bounds(
            south=min(self.south, other.south),
            west=min(self.west, other.west),
            north=max(self.north, other.north),
            east=max(self.east, other.east),
        )

    @classmethod
    def around(cls, lat: float, lng: float, span: float = 0.0) -> 'Bounds':
        half = span / 2
        return cls(south=lat - half, west=lng - half, north=lat + half, east=lng + half)

    def to_dict(self) -> dict:
        return {"south": self.south, "west": self.west, "north": self.north, "east": self.east}


@dataclass
class RenderOptions:
    """Parameters handed to the gateway for one segment presentation."""
    transition_style: Optional[TransitionStyle] = None   # None = no fade
    duration_ms: int = 800
    camera_style: CameraStyle = CameraStyle.FLY
    camera_duration_ms: int = 1500
    skip_camera: bool = False
    disable_two_phase_fly: bool = False
    marker_chains: Optional[MarkerChainCache] = None

    def to_dict(self) -> dict:
        return {
            "transition_style": self.transition_style.value if self.transition_style else None,
            "duration_ms": self.duration_ms,
            "camera_style": self.camera_style.value,
            "camera_duration_ms": self.camera_duration_ms,
            "skip_camera": self.skip_camera,
            "disable_two_phase_fly": self.disable_two_phase_fly,
        }


@dataclass
class RenderResult:
    layers: List[Any] = field(default_factory=list)
    bounds: Optional[Bounds] = None


class RenderGateway(ABC):
    """Drawing surface consumed by the playback core."""

    @property
    def surface_available(self) -> bool:
        return True

    @abstractmethod
    async def render_segment(self, segment: Segment, options: RenderOptions) -> RenderResult:
        """Draw the segment's layers and return them with their bounds."""

    @abstractmethod
    async def apply_camera(self, target: CameraState, options: RenderOptions) -> None:
        """Move the camera to ``target``."""

    @abstractmethod
    async def fit_bounds(self, bounds: Bounds, options: RenderOptions) -> None:
        """Frame ``bounds``."""

    @abstractmethod
    async def cross_fade_layers(
        self,
        old_layers: List[Any],
        new_layers: List[Any],
        options: RenderOptions,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        """Fade old layers out and new layers in, then call ``on_complete``."""

    async def show_location_info(self, location: Location, route: RouteAnimation) -> None:
        """Show arrival info for ``location``. Optional."""

    async def hide_location_info(self, location_id: str) -> None:
        """Dismiss arrival info. Optional."""


class CrossFade:
    """Progress of one layer cross-fade measured against a clock."""

    def __init__(self, style: Optional[TransitionStyle], duration_ms: float, clock: Optional[Clock] = None):
        self.style = style
        self.duration_ms = max(1, duration_ms)
        self._clock = clock or SystemClock()
        self._easing_fn = EASING_FUNCTIONS.get(style, _ease_linear)
        self.start_ms = self._clock.now_ms()

    @property
    def progress(self) -> float:
        """0.0 = only old layers visible, 1.0 = only new layers visible."""
        if not fades(self.style):
            return 1.0
        elapsed = self._clock.now_ms() - self.start_ms
        return self._easing_fn(min(1.0, max(0.0, elapsed / self.duration_ms)))

    @property
    def is_complete(self) -> bool:
        if not fades(self.style):
            return True
        return self._clock.now_ms() - self.start_ms >= self.duration_ms

    def opacities(self) -> Dict[str, float]:
        t = self.progress
        return {"old": 1.0 - t, "new": t}


def _zoom_span(zoom: float) -> float:
    """Rough visible span in degrees at a web-mercator zoom level."""
    return 360.0 / (2 ** max(0.0, float(zoom)))


class LoggingRenderGateway(RenderGateway):
    """
    Headless gateway: logs every call instead of drawing.

    Used by the command-line player. Layers are plain dicts; cross-fades
    step opacity on the clock so pacing matches a real surface.
    """

    def __init__(self, clock: Optional[Clock] = None, fade_step_ms: float = 100):
        self._clock = clock or SystemClock()
        self.fade_step_ms = fade_step_ms
        self.camera: Optional[CameraState] = None
        self.visible_layers: List[Any] = []
        self.location_info: Optional[str] = None

    async def render_segment(self, segment: Segment, options: RenderOptions) -> RenderResult:
        layers: List[Any] = []
        for layer in segment.layers:
            layers.append({"kind": "layer", "segment_id": segment.segment_id, "data": layer})
        for zone in segment.zones:
            layers.append({"kind": "zone", "segment_id": segment.segment_id, "data": zone})
        for location in segment.locations:
            layers.append({"kind": "location", "segment_id": segment.segment_id, "id": location.location_id})

        routes = segment.route_animations or []
        for route in routes:
            chain_id = options.marker_chains.chain_id(route.route_animation_id) if options.marker_chains else None
            layers.append({
                "kind": "route",
                "segment_id": segment.segment_id,
                "id": route.route_animation_id,
                "chain": chain_id,
            })

        bounds = self._segment_bounds(segment)
        logger.info(
            f"Rendered segment '{segment.name or segment.segment_id}' "
            f"({len(layers)} layers, transition={options.transition_style.value if options.transition_style else 'none'})"
        )
        return RenderResult(layers=layers, bounds=bounds)

    async def apply_camera(self, target: CameraState, options: RenderOptions) -> None:
        if options.skip_camera:
            return
        self.camera = target
        logger.info(
            f"Camera {options.camera_style.value} to ({target.lat:.5f}, {target.lng:.5f}) "
            f"zoom {target.zoom} over {options.camera_duration_ms}ms"
        )

    async def fit_bounds(self, bounds: Bounds, options: RenderOptions) -> None:
        if options.skip_camera:
            return
        logger.info(f"Fit bounds {bounds.to_dict()} over {options.camera_duration_ms}ms")

    async def cross_fade_layers(
        self,
        old_layers: List[Any],
        new_layers: List[Any],
        options: RenderOptions,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        try:
            if old_layers and fades(options.transition_style):
                fade = CrossFade(options.transition_style, options.duration_ms, self._clock)
                while not fade.is_complete:
                    await self._clock.sleep(min(self.fade_step_ms, fade.duration_ms))
                    logger.debug(f"Cross-fade opacities {fade.opacities()}")
            self.visible_layers = list(new_layers)
            logger.debug(f"Swapped {len(old_layers)} layers for {len(new_layers)}")
        finally:
            if on_complete:
                on_complete()

    async def show_location_info(self, location: Location, route: RouteAnimation) -> None:
        self.location_info = location.location_id
        logger.info(f"Arrival info: {location.title or location.location_id}")

    async def hide_location_info(self, location_id: str) -> None:
        if self.location_info == location_id:
            self.location_info = None
        logger.debug(f"Dismissed arrival info {location_id}")

    def _segment_bounds(self, segment: Segment) -> Optional[Bounds]:
        bounds: Optional[Bounds] = None
        if segment.camera_state:
            cam = segment.camera_state
            bounds = Bounds.around(cam.lat, cam.lng, _zoom_span(cam.zoom))
        for route in segment.route_animations or []:
            if route.from_lat is None or route.to_lat is None:
                continue
            if route.from_lng is None or route.to_lng is None:
                continue
            box = Bounds.around(route.from_lat, route.from_lng).union(Bounds.around(route.to_lat, route.to_lng))
            bounds = box.union(bounds)
        return bounds

