"""
Shared route markers.

Consecutive routes where one ends where the next begins, with the same icon,
form a chain and share one marker, so the marker travels on across segments
instead of being recreated. The cache holding those markers is owned by
whoever built it and is closed explicitly.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .models import RouteAnimation, Segment, is_number, sort_route_animations

logger = logging.getLogger(__name__)

COORDINATE_TOLERANCE = 1e-6


def chain_identity(route_ids: List[str]) -> str:
    """Deterministic id for a chain, derived from its first route."""
    if not route_ids:
        raise ValueError("a chain needs at least one route")
    return f"chain-{route_ids[0]}"


def _endpoints(route: RouteAnimation) -> Optional[Tuple[float, float, float, float]]:
    values = (route.from_lat, route.from_lng, route.to_lat, route.to_lng)
    if not all(is_number(v) for v in values):
        return None
    return tuple(float(v) for v in values)


def _connects(tail: RouteAnimation, route: RouteAnimation) -> bool:
    tail_points = _endpoints(tail)
    points = _endpoints(route)
    if tail_points is None or points is None:
        return False
    return (
        abs(tail_points[2] - points[0]) <= COORDINATE_TOLERANCE
        and abs(tail_points[3] - points[1]) <= COORDINATE_TOLERANCE
    )


def detect_route_chains(segments: Iterable[Segment]) -> Dict[str, List[str]]:
    """
    Group routes into chains.

    Segments are walked in the given order and routes in playback order. A
    route joins the first open chain whose last route ends at its start with
    the same icon type; otherwise it opens a new chain.

    Returns:
        chain id -> route ids in chain order
    """
    chains: List[List[RouteAnimation]] = []

    for segment in segments:
        for route in sort_route_animations(segment.route_animations or []):
            for chain in chains:
                tail = chain[-1]
                if tail.icon_type == route.icon_type and _connects(tail, route):
                    chain.append(route)
                    break
            else:
                chains.append([route])

    result: Dict[str, List[str]] = {}
    for chain in chains:
        ids = [r.route_animation_id for r in chain]
        result[chain_identity(ids)] = ids
    return result


@dataclass
class MarkerState:
    marker: Any = None
    position: Optional[Tuple[float, float]] = None   # (lat, lng)
    animating: bool = False
    current_route: Optional[str] = None


class MarkerChainCache:
    """
    Markers keyed by chain id.

    Build it from the segments being played, hand it to the render boundary
    through RenderOptions.marker_chains, and close it when playback is done.
    """

    def __init__(self, segments: Iterable[Segment] = ()):
        self._chains: Dict[str, List[str]] = {}
        self._route_to_chain: Dict[str, str] = {}
        self._markers: Dict[str, MarkerState] = {}
        self._on_remove: Optional[Callable[[Any], None]] = None
        self.closed = False
        self.rebuild(segments)

    def __enter__(self) -> 'MarkerChainCache':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def set_remove_handler(self, handler: Optional[Callable[[Any], None]]):
        """Called with each marker object dropped from the cache."""
        self._on_remove = handler

    def rebuild(self, segments: Iterable[Segment]):
        """Recompute chains; markers for chains that no longer exist are dropped."""
        self._chains = detect_route_chains(segments)
        self._route_to_chain = {
            route_id: chain_id
            for chain_id, route_ids in self._chains.items()
            for route_id in route_ids
        }
        for chain_id in list(self._markers):
            if chain_id not in self._chains:
                self.remove(chain_id)
        linked = sum(1 for ids in self._chains.values() if len(ids) > 1)
        logger.debug(f"Detected {len(self._chains)} route chains ({linked} linked)")

    @property
    def chains(self) -> Dict[str, List[str]]:
        return dict(self._chains)

    def chain_id(self, route_id: str) -> Optional[str]:
        return self._route_to_chain.get(route_id)

    def is_part_of_chain(self, route_id: str) -> bool:
        chain_id = self._route_to_chain.get(route_id)
        return chain_id is not None and len(self._chains.get(chain_id, [])) > 1

    def marker_for(self, chain_id: str, factory: Callable[[], Any]) -> Any:
        """Return the chain's marker, creating it with ``factory`` the first time."""
        if self.closed:
            raise RuntimeError("marker cache is closed")
        state = self._markers.get(chain_id)
        if state is None:
            state = MarkerState(marker=factory())
            self._markers[chain_id] = state
        return state.marker

    def update_position(self, chain_id: str, lat: float, lng: float):
        state = self._markers.get(chain_id)
        if state:
            state.position = (lat, lng)

    def position(self, chain_id: str) -> Optional[Tuple[float, float]]:
        state = self._markers.get(chain_id)
        return state.position if state else None

    def set_animating(self, chain_id: str, route_id: str, animating: bool):
        state = self._markers.get(chain_id)
        if state is None:
            if not animating or self.closed:
                return
            state = MarkerState()
            self._markers[chain_id] = state
        state.animating = animating
        state.current_route = route_id if animating else None

    def is_animating(self, chain_id: str) -> bool:
        state = self._markers.get(chain_id)
        return state.animating if state else False

    def remove(self, chain_id: str):
        state = self._markers.pop(chain_id, None)
        if state and state.marker is not None and self._on_remove:
            self._on_remove(state.marker)

    def close(self):
        """Drop every marker. Idempotent."""
        if self.closed:
            return
        for chain_id in list(self._markers):
            self.remove(chain_id)
        self.closed = True
        logger.debug("Marker chain cache closed")

    def __len__(self) -> int:
        return len(self._markers)
