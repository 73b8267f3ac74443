"""
Storymap Player - timeline playback for map-based storytelling.

Sequences timeline segments, resolves transitions between them and
schedules each segment's route animations against wall-clock anchors.
"""

from .config import PlayerSettings, get_settings
from .timeline import (
    PlaybackController,
    PlaybackMode,
    PlaybackState,
    RouteAnimationScheduler,
    SegmentSequencer,
    TransitionResolver,
)

__version__ = "0.1.0"

__all__ = [
    "PlaybackController",
    "PlaybackMode",
    "PlaybackState",
    "PlayerSettings",
    "RouteAnimationScheduler",
    "SegmentSequencer",
    "TransitionResolver",
    "get_settings",
]
