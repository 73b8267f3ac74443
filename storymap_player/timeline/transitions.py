"""
Transition lookup and normalization.

Maps the free-form style strings stored with a transition onto the closed
TransitionStyle / CameraStyle enumerations and turns a transition into the
render options handed to the gateway.
"""

import logging
from typing import Dict, Iterable, Optional, Tuple

from ..config import PlayerSettings
from .models import CameraStyle, Transition, TransitionStyle
from .render_gateway import RenderOptions

logger = logging.getLogger(__name__)

# Unrecognized styles fall back differently depending on who reads them:
# the editor treats unknown/missing values as Ease, playback as Linear.
EDITOR_STYLE_FALLBACK = TransitionStyle.EASE
PLAYBACK_STYLE_FALLBACK = TransitionStyle.LINEAR

_TRANSITION_STYLES = {
    "jump": TransitionStyle.JUMP,
    "linear": TransitionStyle.LINEAR,
    "ease": TransitionStyle.EASE,
    "easein": TransitionStyle.EASE_IN,
    "easeout": TransitionStyle.EASE_OUT,
    "easeinout": TransitionStyle.EASE_IN_OUT,
}

_CAMERA_STYLES = {
    "jump": CameraStyle.JUMP,
    "ease": CameraStyle.EASE,
    "fly": CameraStyle.FLY,
}


def _style_key(value: str) -> str:
    return "".join(c for c in value.lower() if c.isalnum())


def normalize_transition_style(
    value: Optional[str],
    fallback: TransitionStyle = PLAYBACK_STYLE_FALLBACK,
) -> TransitionStyle:
    """Case-insensitive parse ("ease-in", "EASE_IN", "easeIn" are all EaseIn)."""
    if isinstance(value, TransitionStyle):
        return value
    if not value:
        return fallback
    return _TRANSITION_STYLES.get(_style_key(str(value)), fallback)


def normalize_camera_style(value: Optional[str]) -> CameraStyle:
    """Case-insensitive parse; anything unrecognized flies."""
    if isinstance(value, CameraStyle):
        return value
    if not value:
        return CameraStyle.FLY
    return _CAMERA_STYLES.get(_style_key(str(value)), CameraStyle.FLY)


class TransitionResolver:
    """
    Lookup of the transition governing movement between two segments.

    Built once per transition set; lookups are pure, so one resolver can be
    shared by everything playing the same timeline.
    """

    def __init__(self, transitions: Iterable[Transition] = (), settings: Optional[PlayerSettings] = None):
        self._settings = settings or PlayerSettings()
        self._by_pair: Dict[Tuple[str, str], Transition] = {}

        for transition in transitions:
            if transition.key in self._by_pair:
                # At most one transition per ordered pair; keep the first on record
                logger.warning(
                    f"Duplicate transition {transition.from_segment_id} -> "
                    f"{transition.to_segment_id} ignored"
                )
                continue
            self._by_pair[transition.key] = transition

    def __len__(self) -> int:
        return len(self._by_pair)

    def resolve(self, from_id: Optional[str], to_id: Optional[str]) -> Optional[Transition]:
        """Return the transition for (from_id, to_id), or None."""
        if not from_id or not to_id:
            return None
        return self._by_pair.get((from_id, to_id))

    def render_options(self, transition: Optional[Transition]) -> RenderOptions:
        """Map a transition (or its absence) onto gateway render options."""
        settings = self._settings
        if transition is None:
            return RenderOptions(
                transition_style=None,
                duration_ms=settings.default_layer_fade_ms,
                camera_style=CameraStyle.FLY,
                camera_duration_ms=settings.default_camera_duration_ms,
            )

        if transition.animate_camera:
            camera_style = normalize_camera_style(transition.camera_animation_type)
            camera_duration = transition.camera_animation_duration_ms or settings.default_camera_duration_ms
        else:
            camera_style = CameraStyle.JUMP
            camera_duration = settings.default_camera_duration_ms

        return RenderOptions(
            transition_style=normalize_transition_style(transition.transition_type, PLAYBACK_STYLE_FALLBACK),
            duration_ms=transition.duration_ms or settings.default_layer_fade_ms,
            camera_style=camera_style,
            camera_duration_ms=camera_duration,
        )

    def options_between(self, from_id: Optional[str], to_id: Optional[str]) -> Tuple[Optional[Transition], RenderOptions]:
        transition = self.resolve(from_id, to_id)
        return transition, self.render_options(transition)
