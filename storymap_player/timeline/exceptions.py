"""
Error taxonomy for timeline playback.

None of these escape the public playback operations; they are raised by
collaborators (gateways, data stores, descriptor parsing) and absorbed by
the core, which logs them and keeps pacing.
"""


class PlaybackError(Exception):
    """Base class for playback errors."""


class RenderFailure(PlaybackError):
    """The render surface failed to draw, move the camera or fade layers."""


class DataFetchFailure(PlaybackError):
    """Segments, transitions, routes or locations could not be loaded."""


class InvalidDescriptor(PlaybackError, ValueError):
    """A camera or route descriptor is malformed."""
