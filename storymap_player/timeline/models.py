"""
Data models for the timeline system.

Payloads arrive from the storymap backend in camelCase; every ``from_dict``
also accepts the snake_case spelling so documents written by ``to_dict``
round-trip.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .exceptions import InvalidDescriptor

logger = logging.getLogger(__name__)


def _get(data: dict, camel: str, snake: str, default: Any = None) -> Any:
    """Read a field under its camelCase or snake_case key."""
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(data: dict, camel: str, snake: str, default: Any = None) -> Any:
    """Read a numeric field; numeric strings are accepted, anything else is InvalidDescriptor."""
    value = _get(data, camel, snake, default)
    if value is None or value == "":
        return default
    if is_number(value):
        return value
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            pass
        else:
            return int(number) if number.is_integer() else number
    raise InvalidDescriptor(f"{camel} must be a number, got {value!r}")


def _require_dict(data: Any, kind: str) -> dict:
    if not isinstance(data, dict):
        raise InvalidDescriptor(f"{kind} must be an object, got {type(data).__name__}")
    return data


class TransitionStyle(Enum):
    JUMP = "Jump"
    LINEAR = "Linear"
    EASE = "Ease"
    EASE_IN = "EaseIn"
    EASE_OUT = "EaseOut"
    EASE_IN_OUT = "EaseInOut"


class CameraStyle(Enum):
    JUMP = "Jump"
    EASE = "Ease"
    FLY = "Fly"


@dataclass
class CameraState:
    """Camera target. ``center`` is (lng, lat), matching the backend."""
    center: Tuple[float, float] = (0.0, 0.0)
    zoom: float = 10
    bearing: float = 0
    pitch: float = 0

    @property
    def lat(self) -> float:
        return self.center[1]

    @property
    def lng(self) -> float:
        return self.center[0]

    def to_dict(self) -> dict:
        return {
            "center": [self.center[0], self.center[1]],
            "zoom": self.zoom,
            "bearing": self.bearing,
            "pitch": self.pitch,
        }

    @classmethod
    def from_value(cls, value: Any, strict: bool = False) -> Optional['CameraState']:
        """
        Parse a camera descriptor from a dict, a JSON string or a CameraState.

        Returns None for a missing or malformed descriptor, or raises
        InvalidDescriptor when ``strict`` is set and the value is malformed.
        """
        if value is None or value == "":
            return None
        if isinstance(value, CameraState):
            return value

        try:
            data = json.loads(value) if isinstance(value, str) else value
            if not isinstance(data, dict):
                raise InvalidDescriptor(f"camera state must be an object, got {type(data).__name__}")
            center = data.get("center")
            if (
                not isinstance(center, (list, tuple))
                or len(center) < 2
                or not is_number(center[0])
                or not is_number(center[1])
            ):
                raise InvalidDescriptor(f"invalid camera center: {center!r}")
            zoom = data.get("zoom") or 10
            if not is_number(zoom):
                raise InvalidDescriptor(f"invalid camera zoom: {zoom!r}")
            return cls(
                center=(float(center[0]), float(center[1])),
                zoom=zoom,
                bearing=data.get("bearing") or 0,
                pitch=data.get("pitch") or 0,
            )
        except (InvalidDescriptor, json.JSONDecodeError, TypeError) as e:
            if strict:
                if isinstance(e, InvalidDescriptor):
                    raise
                raise InvalidDescriptor(f"unparseable camera state: {e}") from e
            return None


@dataclass
class Location:
    """A point of interest shown as arrival info when a route reaches it."""
    location_id: str = ""
    title: str = ""
    subtitle: Optional[str] = None
    description: Optional[str] = None
    marker_geometry: Optional[str] = None
    popup_content: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "locationId": self.location_id,
            "title": self.title,
            "subtitle": self.subtitle,
            "description": self.description,
            "markerGeometry": self.marker_geometry,
            "popupContent": self.popup_content,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Location':
        _require_dict(data, "location")
        return cls(
            location_id=str(_get(data, "locationId", "location_id", "") or _get(data, "poiId", "poi_id", "")),
            title=data.get("title") or "",
            subtitle=data.get("subtitle"),
            description=data.get("description"),
            marker_geometry=_get(data, "markerGeometry", "marker_geometry"),
            popup_content=_get(data, "popupContent", "popup_content"),
        )


@dataclass
class Transition:
    """Rule for moving from one segment to the next."""
    from_segment_id: str = ""
    to_segment_id: str = ""
    transition_id: str = ""
    transition_name: Optional[str] = None
    duration_ms: int = 0
    transition_type: str = "Ease"     # free-form; normalized by TransitionResolver
    animate_camera: bool = False
    camera_animation_type: str = "Fly"
    camera_animation_duration_ms: Optional[int] = None
    require_user_action: bool = False
    trigger_button_text: Optional[str] = None
    show_overlay: bool = False
    overlay_content: Optional[str] = None
    auto_trigger: bool = True

    @property
    def key(self) -> Tuple[str, str]:
        return (self.from_segment_id, self.to_segment_id)

    @property
    def style(self) -> TransitionStyle:
        """Transition style as the editor reads it (unrecognized -> Ease)."""
        from .transitions import EDITOR_STYLE_FALLBACK, normalize_transition_style
        return normalize_transition_style(self.transition_type, EDITOR_STYLE_FALLBACK)

    def to_dict(self) -> dict:
        return {
            "timelineTransitionId": self.transition_id,
            "fromSegmentId": self.from_segment_id,
            "toSegmentId": self.to_segment_id,
            "transitionName": self.transition_name,
            "durationMs": self.duration_ms,
            "transitionType": self.transition_type,
            "animateCamera": self.animate_camera,
            "cameraAnimationType": self.camera_animation_type,
            "cameraAnimationDurationMs": self.camera_animation_duration_ms,
            "requireUserAction": self.require_user_action,
            "triggerButtonText": self.trigger_button_text,
            "showOverlay": self.show_overlay,
            "overlayContent": self.overlay_content,
            "autoTrigger": self.auto_trigger,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Transition':
        _require_dict(data, "transition")
        return cls(
            transition_id=str(_get(data, "timelineTransitionId", "transition_id", "") or ""),
            from_segment_id=str(_get(data, "fromSegmentId", "from_segment_id", "")),
            to_segment_id=str(_get(data, "toSegmentId", "to_segment_id", "")),
            transition_name=_get(data, "transitionName", "transition_name"),
            duration_ms=_number(data, "durationMs", "duration_ms", 0) or 0,
            transition_type=_get(data, "transitionType", "transition_type", "Ease") or "Ease",
            animate_camera=bool(_get(data, "animateCamera", "animate_camera", False)),
            camera_animation_type=_get(data, "cameraAnimationType", "camera_animation_type", "Fly") or "Fly",
            camera_animation_duration_ms=_number(data, "cameraAnimationDurationMs", "camera_animation_duration_ms"),
            require_user_action=bool(_get(data, "requireUserAction", "require_user_action", False)),
            trigger_button_text=_get(data, "triggerButtonText", "trigger_button_text"),
            show_overlay=bool(_get(data, "showOverlay", "show_overlay", False)),
            overlay_content=_get(data, "overlayContent", "overlay_content"),
            auto_trigger=bool(_get(data, "autoTrigger", "auto_trigger", True)),
        )


@dataclass(frozen=True)
class TimeAnchored:
    """Route timed against the segment anchor."""
    start_ms: float
    animation_end_ms: float   # marker stops moving here
    end_ms: float             # completion effects fire here (>= animation_end_ms)


@dataclass(frozen=True)
class Chained:
    """Route played one after another in display order."""
    order: int


RouteSchedule = Union[TimeAnchored, Chained]


@dataclass
class RouteAnimation:
    """A marker moving along a path during a segment."""
    route_animation_id: str = ""
    segment_id: str = ""
    map_id: str = ""
    from_lat: Optional[float] = None
    from_lng: Optional[float] = None
    from_name: Optional[str] = None
    to_lat: Optional[float] = None
    to_lng: Optional[float] = None
    to_name: Optional[str] = None
    to_location_id: Optional[str] = None
    route_path: Optional[str] = None   # GeoJSON LineString
    icon_type: str = "car"
    duration_ms: int = 0
    start_delay_ms: int = 0
    easing: str = "linear"
    auto_play: bool = True
    loop: bool = False
    is_visible: bool = True
    z_index: int = 0
    display_order: int = 0
    start_time_ms: Optional[float] = None
    end_time_ms: Optional[float] = None
    camera_state_before: Any = None
    camera_state_after: Any = None
    show_location_info_on_arrival: bool = False
    location_info_display_duration_ms: Optional[int] = None
    follow_camera: bool = False
    follow_camera_zoom: Optional[float] = None
    created_at: str = ""

    @property
    def has_geometry(self) -> bool:
        if self.route_path and str(self.route_path).strip():
            return True
        return all(is_number(v) for v in (self.from_lat, self.from_lng, self.to_lat, self.to_lng))

    @property
    def has_valid_timing(self) -> bool:
        if not (is_number(self.duration_ms) and is_number(self.start_delay_ms)):
            return False
        return all(v is None or is_number(v) for v in (self.start_time_ms, self.end_time_ms))

    @property
    def schedule(self) -> RouteSchedule:
        if not self.has_valid_timing:
            raise InvalidDescriptor(f"route {self.route_animation_id} has non-numeric timing")
        if self.start_time_ms is None:
            return Chained(order=self.display_order)
        animation_end = self.start_time_ms + self.duration_ms
        end = animation_end
        if self.end_time_ms is not None:
            end = max(animation_end, self.end_time_ms)
        return TimeAnchored(start_ms=self.start_time_ms, animation_end_ms=animation_end, end_ms=end)

    @property
    def arrival_info_ms(self) -> int:
        """How long arrival info is held, 0 when none is configured."""
        duration = self.location_info_display_duration_ms
        if self.show_location_info_on_arrival and is_number(duration) and duration > 0:
            return duration
        return 0

    def to_dict(self) -> dict:
        return {
            "routeAnimationId": self.route_animation_id,
            "segmentId": self.segment_id,
            "mapId": self.map_id,
            "fromLat": self.from_lat,
            "fromLng": self.from_lng,
            "fromName": self.from_name,
            "toLat": self.to_lat,
            "toLng": self.to_lng,
            "toName": self.to_name,
            "toLocationId": self.to_location_id,
            "routePath": self.route_path,
            "iconType": self.icon_type,
            "durationMs": self.duration_ms,
            "startDelayMs": self.start_delay_ms,
            "easing": self.easing,
            "autoPlay": self.auto_play,
            "loop": self.loop,
            "isVisible": self.is_visible,
            "zIndex": self.z_index,
            "displayOrder": self.display_order,
            "startTimeMs": self.start_time_ms,
            "endTimeMs": self.end_time_ms,
            "cameraStateBefore": self.camera_state_before,
            "cameraStateAfter": self.camera_state_after,
            "showLocationInfoOnArrival": self.show_location_info_on_arrival,
            "locationInfoDisplayDurationMs": self.location_info_display_duration_ms,
            "followCamera": self.follow_camera,
            "followCameraZoom": self.follow_camera_zoom,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RouteAnimation':
        _require_dict(data, "route animation")
        auto_play = _get(data, "autoPlay", "auto_play", True)
        return cls(
            route_animation_id=str(_get(data, "routeAnimationId", "route_animation_id", "")),
            segment_id=str(_get(data, "segmentId", "segment_id", "") or ""),
            map_id=str(_get(data, "mapId", "map_id", "") or ""),
            from_lat=_number(data, "fromLat", "from_lat"),
            from_lng=_number(data, "fromLng", "from_lng"),
            from_name=_get(data, "fromName", "from_name"),
            to_lat=_number(data, "toLat", "to_lat"),
            to_lng=_number(data, "toLng", "to_lng"),
            to_name=_get(data, "toName", "to_name"),
            to_location_id=_get(data, "toLocationId", "to_location_id"),
            route_path=_get(data, "routePath", "route_path"),
            icon_type=_get(data, "iconType", "icon_type", "car") or "car",
            duration_ms=_number(data, "durationMs", "duration_ms", 0) or 0,
            start_delay_ms=_number(data, "startDelayMs", "start_delay_ms", 0) or 0,
            easing=data.get("easing") or "linear",
            auto_play=auto_play is not False,
            loop=bool(data.get("loop", False)),
            is_visible=_get(data, "isVisible", "is_visible", True) is not False,
            z_index=_number(data, "zIndex", "z_index", 0) or 0,
            display_order=_number(data, "displayOrder", "display_order", 0) or 0,
            start_time_ms=_number(data, "startTimeMs", "start_time_ms"),
            end_time_ms=_number(data, "endTimeMs", "end_time_ms"),
            camera_state_before=_get(data, "cameraStateBefore", "camera_state_before"),
            camera_state_after=_get(data, "cameraStateAfter", "camera_state_after"),
            show_location_info_on_arrival=bool(
                _get(data, "showLocationInfoOnArrival", "show_location_info_on_arrival", False)
            ),
            location_info_display_duration_ms=_number(
                data, "locationInfoDisplayDurationMs", "location_info_display_duration_ms"
            ),
            follow_camera=bool(_get(data, "followCamera", "follow_camera", False)),
            follow_camera_zoom=_number(data, "followCameraZoom", "follow_camera_zoom"),
            created_at=_get(data, "createdAt", "created_at", "") or "",
        )


def sort_route_animations(routes: List[RouteAnimation]) -> List[RouteAnimation]:
    """
    Order routes for playback: display order, then explicit start time
    (timed routes before untimed ones), then creation time, then input order.
    """
    def key(item: Tuple[int, RouteAnimation]):
        position, route = item
        start = route.start_time_ms if is_number(route.start_time_ms) else None
        return (
            route.display_order if is_number(route.display_order) else 0,
            start is None,
            start if start is not None else 0,
            str(route.created_at or ""),
            position,
        )

    return [route for _, route in sorted(enumerate(routes), key=key)]


def parse_route_animations(items: Any, segment_id: str = "") -> List[RouteAnimation]:
    """Build routes from raw payloads, skipping (and logging) malformed ones."""
    if not isinstance(items, list):
        logger.warning(f"Route animations for segment {segment_id or '?'} are not a list, ignoring them")
        return []
    routes: List[RouteAnimation] = []
    for raw in items:
        try:
            routes.append(RouteAnimation.from_dict(raw))
        except InvalidDescriptor as e:
            logger.warning(f"Skipping malformed route animation in segment {segment_id or '?'}: {e}")
    return routes


class RoutePhase(Enum):
    NOT_STARTED = "not_started"
    STARTED = "started"       # marker moving
    STOPPED = "stopped"       # marker at rest, completion held back
    COMPLETED = "completed"


@dataclass(frozen=True)
class RoutePlayState:
    """Per-route motion state exposed to the UI."""
    is_playing: bool = False
    has_started: bool = False
    has_completed: bool = False

    @classmethod
    def for_phase(cls, phase: RoutePhase) -> 'RoutePlayState':
        return cls(
            is_playing=phase == RoutePhase.STARTED,
            has_started=phase != RoutePhase.NOT_STARTED,
            has_completed=phase == RoutePhase.COMPLETED,
        )

    def to_dict(self) -> dict:
        return {
            "isPlaying": self.is_playing,
            "hasStarted": self.has_started,
            "hasCompleted": self.has_completed,
        }


@dataclass
class Segment:
    """A single stop on the timeline."""
    segment_id: str = ""
    name: str = ""
    map_id: str = ""
    description: Optional[str] = None
    display_order: int = 0
    camera_state: Optional[CameraState] = None
    duration_ms: int = 0
    auto_advance: bool = True
    require_user_action: bool = False
    zones: List[Dict[str, Any]] = field(default_factory=list)
    layers: List[Dict[str, Any]] = field(default_factory=list)
    locations: List[Location] = field(default_factory=list)
    route_animations: Optional[List[RouteAnimation]] = None   # None = not loaded yet

    def to_dict(self) -> dict:
        result = {
            "segmentId": self.segment_id,
            "name": self.name,
            "mapId": self.map_id,
            "description": self.description,
            "displayOrder": self.display_order,
            "cameraState": self.camera_state.to_dict() if self.camera_state else None,
            "durationMs": self.duration_ms,
            "autoAdvance": self.auto_advance,
            "requireUserAction": self.require_user_action,
            "zones": self.zones,
            "layers": self.layers,
            "locations": [loc.to_dict() for loc in self.locations],
        }
        if self.route_animations is not None:
            result["routeAnimations"] = [r.to_dict() for r in self.route_animations]
        return result

    @classmethod
    def from_dict(cls, data: dict) -> 'Segment':
        _require_dict(data, "segment")
        routes = _get(data, "routeAnimations", "route_animations")
        segment_id = str(_get(data, "segmentId", "segment_id", ""))
        raw_camera = _get(data, "cameraState", "camera_state")
        camera = CameraState.from_value(raw_camera)
        if raw_camera and camera is None:
            logger.warning(f"Segment {_get(data, 'segmentId', 'segment_id', '?')} has an invalid camera state, ignoring it")
        return cls(
            segment_id=segment_id,
            name=data.get("name") or "",
            map_id=str(_get(data, "mapId", "map_id", "") or ""),
            description=data.get("description"),
            display_order=_number(data, "displayOrder", "display_order", 0) or 0,
            camera_state=camera,
            duration_ms=_number(data, "durationMs", "duration_ms", 0) or 0,
            auto_advance=_get(data, "autoAdvance", "auto_advance", True) is not False,
            require_user_action=bool(_get(data, "requireUserAction", "require_user_action", False)),
            zones=list(data.get("zones") or []),
            layers=list(data.get("layers") or []),
            locations=[Location.from_dict(loc) for loc in data.get("locations") or []],
            route_animations=(
                parse_route_animations(routes, segment_id) if routes is not None else None
            ),
        )
