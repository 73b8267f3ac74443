"""
Timeline data sources.

Stores load segments, transitions, route animations and locations for a
timeline. Every failure is raised as DataFetchFailure; the playback core
treats a failed fetch as an empty result.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from .exceptions import DataFetchFailure
from .models import Location, RouteAnimation, Segment, Transition, parse_route_animations

logger = logging.getLogger(__name__)


def _build(kind: str, build: Callable[[Any], Any], items: Any) -> List[Any]:
    """Build models from raw payloads; any malformed entry fails the whole fetch."""
    try:
        return [build(item) for item in items]
    except (AttributeError, TypeError, ValueError) as e:
        raise DataFetchFailure(f"Malformed {kind} payload: {e}") from e


class TimelineDataStore(ABC):
    """Read access to one or more timelines."""

    @abstractmethod
    async def fetch_segments(self, timeline_id: str) -> List[Segment]:
        ...

    @abstractmethod
    async def fetch_transitions(self, timeline_id: str) -> List[Transition]:
        ...

    @abstractmethod
    async def fetch_route_animations(self, timeline_id: str, segment_id: str) -> List[RouteAnimation]:
        """Routes for one segment, in whatever order the source keeps them."""

    @abstractmethod
    async def fetch_location_by_id(self, timeline_id: str, location_id: str) -> Optional[Location]:
        ...

    async def aclose(self):
        pass


class JsonTimelineStore(TimelineDataStore):
    """
    A timeline kept in a single JSON document.

    Layout: ``{timelineId, segments[], transitions[], locations[]}``. Routes
    live inside each segment under ``routeAnimations`` or in a top-level
    ``routeAnimations`` list whose entries carry ``segmentId``.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._document: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._document is None:
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise DataFetchFailure(f"Error loading {self.path}: {e}") from e
            if not isinstance(data, dict):
                raise DataFetchFailure(f"{self.path} does not contain a timeline document")
            self._document = data
            logger.info(f"Loaded timeline document: {self.path}")
        return self._document

    @property
    def timeline_id(self) -> str:
        data = self._load()
        return str(data.get("timelineId") or data.get("timeline_id") or self.path.stem)

    def _check_timeline(self, timeline_id: Optional[str]):
        if timeline_id and timeline_id != self.timeline_id:
            raise DataFetchFailure(f"Timeline {timeline_id} not found in {self.path}")

    async def fetch_segments(self, timeline_id: str) -> List[Segment]:
        self._check_timeline(timeline_id)
        segments = _build("segment", Segment.from_dict, self._load().get("segments") or [])
        segments.sort(key=lambda s: s.display_order)
        return segments

    async def fetch_transitions(self, timeline_id: str) -> List[Transition]:
        self._check_timeline(timeline_id)
        return _build("transition", Transition.from_dict, self._load().get("transitions") or [])

    async def fetch_route_animations(self, timeline_id: str, segment_id: str) -> List[RouteAnimation]:
        self._check_timeline(timeline_id)
        data = self._load()
        for raw in data.get("segments") or []:
            if not isinstance(raw, dict):
                continue
            if str(raw.get("segmentId") or raw.get("segment_id") or "") == segment_id:
                embedded = raw.get("routeAnimations") or raw.get("route_animations")
                if embedded:
                    return parse_route_animations(embedded, segment_id)
        routes = parse_route_animations(data.get("routeAnimations") or [], segment_id)
        return [r for r in routes if r.segment_id == segment_id]

    async def fetch_location_by_id(self, timeline_id: str, location_id: str) -> Optional[Location]:
        self._check_timeline(timeline_id)
        data = self._load()
        candidates = list(data.get("locations") or [])
        for raw in data.get("segments") or []:
            if isinstance(raw, dict):
                candidates.extend(raw.get("locations") or [])
        for location in _build("location", Location.from_dict, candidates):
            if location.location_id == location_id:
                return location
        return None

    def save(self, document: Dict[str, Any], path: Optional[str] = None) -> str:
        """
        Write a timeline document to disk.

        Args:
            document: Timeline document (see class docstring)
            path: Target file, defaults to this store's path

        Returns:
            Path to saved file
        """
        filepath = Path(path) if path else self.path
        filepath.parent.mkdir(parents=True, exist_ok=True)
        document = dict(document)
        document["modifiedAt"] = time.time()

        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(document, f, indent=2)

        if filepath == self.path:
            self._document = document
        logger.info(f"Saved timeline: {filepath}")
        return str(filepath)

    @staticmethod
    def build_document(
        timeline_id: str,
        segments: List[Segment],
        transitions: List[Transition],
        locations: Optional[List[Location]] = None,
    ) -> Dict[str, Any]:
        return {
            "timelineId": timeline_id,
            "segments": [s.to_dict() for s in segments],
            "transitions": [t.to_dict() for t in transitions],
            "locations": [loc.to_dict() for loc in locations or []],
        }


def _items(payload: Any) -> List[Dict[str, Any]]:
    """Accept a bare list or a wrapped ``{"items"|"data": [...]}`` response."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("items", "data", "results"):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise DataFetchFailure(f"Unexpected response shape: {type(payload).__name__}")


class HttpTimelineStore(TimelineDataStore):
    """Storymap REST API client."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url and client is None:
            raise ValueError("base_url is required")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )
        self._locations: Dict[str, Dict[str, Location]] = {}

    async def __aenter__(self) -> 'HttpTimelineStore':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str) -> Any:
        try:
            resp = await self._client.get(path)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise DataFetchFailure(f"GET {path} failed: {e}") from e
        except ValueError as e:
            raise DataFetchFailure(f"GET {path} returned invalid JSON: {e}") from e

    async def fetch_segments(self, timeline_id: str) -> List[Segment]:
        payload = await self._get_json(f"/storymaps/{timeline_id}/segments")
        segments = _build("segment", Segment.from_dict, _items(payload))
        segments.sort(key=lambda s: s.display_order)
        return segments

    async def fetch_transitions(self, timeline_id: str) -> List[Transition]:
        payload = await self._get_json(f"/storymaps/{timeline_id}/timeline-transitions")
        return _build("transition", Transition.from_dict, _items(payload))

    async def fetch_route_animations(self, timeline_id: str, segment_id: str) -> List[RouteAnimation]:
        payload = await self._get_json(f"/storymaps/{timeline_id}/segments/{segment_id}/route-animations")
        return parse_route_animations(_items(payload), segment_id)

    async def fetch_location_by_id(self, timeline_id: str, location_id: str) -> Optional[Location]:
        locations = self._locations.get(timeline_id)
        if locations is None:
            payload = await self._get_json(f"/storymaps/{timeline_id}/locations")
            locations = {}
            for location in _build("location", Location.from_dict, _items(payload)):
                locations[location.location_id] = location
            self._locations[timeline_id] = locations
            logger.debug(f"Cached {len(locations)} locations for timeline {timeline_id}")
        return locations.get(location_id)
