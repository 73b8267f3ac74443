"""
Effective-duration arithmetic.

A segment stays on screen for its base duration, extended as needed so
every auto-playing route animation can finish.
"""

from typing import Dict, Iterable, List, Optional

from ..config import PlayerSettings
from .models import Chained, RouteAnimation, Segment, TimeAnchored, is_number


def _plays(route: RouteAnimation) -> bool:
    return route.auto_play and route.has_geometry and route.has_valid_timing


def route_required_ms(routes: Iterable[RouteAnimation], settle_ms: float = 500) -> float:
    """
    Time needed for all playable routes to finish, measured from the anchor.

    Time-anchored routes run in parallel, so they need the latest end among
    them. Chained routes run back to back with a settle pause after each one.
    """
    timed_end = 0.0
    chain_total = 0.0

    for route in routes:
        if not _plays(route):
            continue
        schedule = route.schedule
        if isinstance(schedule, TimeAnchored):
            timed_end = max(timed_end, schedule.end_ms)
        elif isinstance(schedule, Chained):
            settle = route.arrival_info_ms or settle_ms
            chain_total += route.start_delay_ms + route.duration_ms + settle

    return max(timed_end, chain_total)


def base_duration_ms(segment: Segment, settings: Optional[PlayerSettings] = None) -> float:
    settings = settings or PlayerSettings()
    if is_number(segment.duration_ms) and segment.duration_ms > 0:
        return segment.duration_ms
    return settings.default_segment_duration_ms


def effective_segment_duration(
    segment: Segment,
    routes: Optional[Iterable[RouteAnimation]] = None,
    settings: Optional[PlayerSettings] = None,
) -> float:
    """max(base duration, time required by the segment's routes)."""
    settings = settings or PlayerSettings()
    if routes is None:
        routes = segment.route_animations or []
    return max(
        base_duration_ms(segment, settings),
        route_required_ms(routes, settings.sequential_settle_ms),
    )


def route_extension_ms(
    segment: Segment,
    routes: Optional[Iterable[RouteAnimation]] = None,
    settings: Optional[PlayerSettings] = None,
) -> float:
    """How far the routes run past the base duration (0 when they fit)."""
    settings = settings or PlayerSettings()
    return max(
        0.0,
        effective_segment_duration(segment, routes, settings) - base_duration_ms(segment, settings),
    )


def total_timeline_duration(
    segments: List[Segment],
    routes_by_segment: Optional[Dict[str, List[RouteAnimation]]] = None,
    settings: Optional[PlayerSettings] = None,
) -> float:
    """Sum of effective durations, ignoring any user-action waits."""
    settings = settings or PlayerSettings()
    routes_by_segment = routes_by_segment or {}
    total = 0.0
    for segment in segments:
        routes = routes_by_segment.get(segment.segment_id)
        total += effective_segment_duration(segment, routes, settings)
    return total
