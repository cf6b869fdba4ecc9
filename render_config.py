"""
Render configuration.

RenderConfig is the configuration surface consumed by the renderer. Invalid
values fail validation here, before any track is read or tile fetched.
"""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from constants import (
    MIN_ZOOM, MAX_ZOOM, MAX_LATITUDE,
    DEFAULT_WIDTH, DEFAULT_HEIGHT, DEFAULT_ZOOM, DEFAULT_TINT, DEFAULT_OUTPUT,
    DEFAULT_FRAME_RATE, DEFAULT_VIDEO_FPS, DEFAULT_HEAT_CAP, DEFAULT_SEGMENT_WEIGHT,
    DEFAULT_TRACK_WORKERS, DEFAULT_FETCH_WORKERS, DEFAULT_MAX_TILES,
    DEFAULT_TILE_URL, FETCH_MAX_ATTEMPTS, FETCH_TIMEOUT,
)
from heat_accumulator import HeatmapKind
from heat_styles import HeatStyle, HeatStyleName, get_heat_style
from projection import GeoPoint, Viewport

MAX_DIMENSION = 16384


class RenderConfig(BaseModel):
    """All knobs of one heatmap render."""

    # Viewport
    lat: float = Field(ge=-MAX_LATITUDE, le=MAX_LATITUDE, description="Center latitude in degrees")
    lon: float = Field(ge=-180.0, le=180.0, description="Center longitude in degrees")
    zoom: int = Field(default=DEFAULT_ZOOM, ge=MIN_ZOOM, le=MAX_ZOOM)
    width: int = Field(default=DEFAULT_WIDTH, ge=1, le=MAX_DIMENSION)
    height: int = Field(default=DEFAULT_HEIGHT, ge=1, le=MAX_DIMENSION)

    # Look
    tint: float = Field(default=DEFAULT_TINT, ge=0.0, le=1.0, description="Heat blend strength")
    heat_style: HeatStyleName = HeatStyleName.RED
    heatmap_kind: HeatmapKind = HeatmapKind.PIXEL
    heat_cap: float = Field(default=DEFAULT_HEAT_CAP, gt=0.0)
    segment_weight: float = Field(default=DEFAULT_SEGMENT_WEIGHT, gt=0.0)

    # Streaming
    stream: bool = False
    frame_rate: int = Field(default=DEFAULT_FRAME_RATE, ge=1, description="Tile updates per streamed frame")
    video: Optional[str] = Field(default=None, description="Encode streamed frames to this file with ffmpeg")
    video_fps: float = Field(default=DEFAULT_VIDEO_FPS, gt=0.0)
    render_title: bool = False
    render_date: bool = False

    # Resources
    workers: int = Field(default=DEFAULT_TRACK_WORKERS, ge=1)
    fetch_workers: int = Field(default=DEFAULT_FETCH_WORKERS, ge=1)
    max_tiles: int = Field(default=DEFAULT_MAX_TILES, ge=1)
    fetch_attempts: int = Field(default=FETCH_MAX_ATTEMPTS, ge=1)
    fetch_timeout: float = Field(default=FETCH_TIMEOUT, gt=0.0)

    # Files
    tile_url: str = DEFAULT_TILE_URL
    cache_dir: Optional[Path] = None
    output: str = DEFAULT_OUTPUT

    @field_validator("tile_url")
    @classmethod
    def _check_tile_url(cls, v: str) -> str:
        missing = [p for p in ("{z}", "{x}", "{y}") if p not in v]
        if missing:
            raise ValueError(f"tile URL must contain {', '.join(missing)}")
        return v

    @model_validator(mode="after")
    def _check_streaming(self) -> "RenderConfig":
        if self.video and not self.stream:
            raise ValueError("video output requires streaming mode")
        return self

    @property
    def style(self) -> HeatStyle:
        return get_heat_style(self.heat_style)

    @property
    def has_captions(self) -> bool:
        """Captions are only drawn on streamed frames."""
        return self.stream and (self.render_title or self.render_date)

    def viewport(self) -> Viewport:
        return Viewport(GeoPoint(self.lat, self.lon), self.zoom, self.width, self.height)
