"""Player configuration via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlayerSettings(BaseSettings):
    """Playback settings loaded from environment variables.

    All variables are prefixed with ``STORYMAP_`` (e.g.
    ``STORYMAP_DEFAULT_SEGMENT_DURATION_MS``). Durations are milliseconds.
    """

    # Segment pacing
    default_segment_duration_ms: int = Field(default=5000, ge=0)
    default_camera_duration_ms: int = Field(default=1500, ge=0)
    default_layer_fade_ms: int = Field(default=800, ge=0)

    # Route scheduling
    route_poll_interval_ms: int = Field(default=100, gt=0)
    sequential_settle_ms: int = Field(default=500, ge=0)
    route_camera_duration_ms: int = Field(default=1000, ge=0)
    anchor_tolerance_ms: int = Field(default=500, ge=0)

    # Render surface coordination
    camera_settle_delay_ms: int = Field(default=100, ge=0)
    fade_wait_timeout_ms: int = Field(default=3000, ge=0)

    # REST data source
    api_base_url: str = ""
    api_token: str = ""
    request_timeout_s: float = Field(default=10.0, gt=0)

    # Status broadcast (websocket)
    broadcast_host: str = "0.0.0.0"
    broadcast_port: int = Field(default=8767, ge=1, le=65535)

    model_config = SettingsConfigDict(
        env_prefix="STORYMAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> PlayerSettings:
    """Return a cached ``PlayerSettings`` instance."""
    return PlayerSettings()
