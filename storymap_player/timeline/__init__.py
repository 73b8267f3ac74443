"""
Timeline module for storymap playback.
Provides segment sequencing, transition resolution and route scheduling.
"""

from .playback_controller import PlaybackController, PlaybackMode
from .segment_sequencer import SegmentSequencer, PlaybackState, PlaybackSession
from .route_scheduler import RouteAnimationScheduler, ScheduleOptions
from .transitions import TransitionResolver
from .render_gateway import RenderGateway, RenderOptions, RenderResult, Bounds, LoggingRenderGateway
from .marker_chains import MarkerChainCache, chain_identity, detect_route_chains
from .data_store import TimelineDataStore, JsonTimelineStore, HttpTimelineStore
from .models import Segment, Transition, RouteAnimation, CameraState, Location, RoutePlayState

__all__ = [
    'PlaybackController',
    'PlaybackMode',
    'SegmentSequencer',
    'PlaybackState',
    'PlaybackSession',
    'RouteAnimationScheduler',
    'ScheduleOptions',
    'TransitionResolver',
    'RenderGateway',
    'RenderOptions',
    'RenderResult',
    'Bounds',
    'LoggingRenderGateway',
    'MarkerChainCache',
    'chain_identity',
    'detect_route_chains',
    'TimelineDataStore',
    'JsonTimelineStore',
    'HttpTimelineStore',
    'Segment',
    'Transition',
    'RouteAnimation',
    'CameraState',
    'Location',
    'RoutePlayState',
]
