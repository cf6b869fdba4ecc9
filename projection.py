"""
Web Mercator projection helpers for the heatmap renderer.

Maps geographic coordinates onto the standard power-of-two slippy-map tile
grid and from there onto the pixel grid of a fixed-size viewport.

Coordinate spaces used throughout the renderer:
- geographic: (latitude, longitude) in degrees
- tile space: continuous (x, y) in [0, 2^zoom), one unit per tile
- global pixels: tile space multiplied by TILE_SIZE, integer once floored
- viewport pixels: global pixels minus the viewport origin
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, NamedTuple, Optional, Set, Tuple

import numpy as np

from constants import TILE_SIZE, MIN_ZOOM, MAX_ZOOM, MAX_LATITUDE, MIN_LATITUDE


def validate_zoom(zoom: int) -> int:
    """Return zoom unchanged, raising ValueError if it is not a usable zoom level."""
    if isinstance(zoom, bool) or not isinstance(zoom, (int, np.integer)):
        raise ValueError(f"Zoom level must be an integer, got {zoom!r}")
    if not MIN_ZOOM <= zoom <= MAX_ZOOM:
        raise ValueError(f"Zoom level {zoom} outside supported range [{MIN_ZOOM}, {MAX_ZOOM}]")
    return int(zoom)


def wrap_longitude(lon: float) -> float:
    """Wrap a longitude into [-180, 180)."""
    return (lon + 180.0) % 360.0 - 180.0


def clamp_latitude(lat: float) -> float:
    """Clamp a latitude to the range covered by the square Mercator map."""
    return min(max(lat, MIN_LATITUDE), MAX_LATITUDE)


@dataclass(frozen=True)
class GeoPoint:
    """A geographic coordinate in degrees, optionally timestamped."""
    lat: float
    lon: float
    timestamp: Optional[datetime] = None


class TileKey(NamedTuple):
    """Identity of one map tile: (zoom, x, y) in the power-of-two grid."""
    zoom: int
    x: int
    y: int

    @classmethod
    def normalized(cls, zoom: int, x: int, y: int) -> "TileKey":
        """Build a key with x wrapped around the globe and y clamped to the grid."""
        n = 1 << zoom
        return cls(zoom, x % n, min(max(y, 0), n - 1))


class TilePlacement(NamedTuple):
    """Where a tile's top-left pixel lands inside the viewport (may be negative)."""
    key: TileKey
    offset_x: int
    offset_y: int


def to_tile(lat: float, lon: float, zoom: int) -> Tuple[float, float]:
    """Convert lat/lon to continuous tile coordinates at the given zoom level.

    Longitude is wrapped and latitude clamped first, so the result is always
    finite and lies in [0, 2^zoom).
    """
    n = float(1 << validate_zoom(zoom))
    lon = wrap_longitude(lon)
    lat_rad = math.radians(clamp_latitude(lat))
    x = (lon + 180.0) / 360.0 * n
    y = (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n
    return x, y


def from_tile(x: float, y: float, zoom: int) -> GeoPoint:
    """Convert continuous tile coordinates back to a GeoPoint (inverse of to_tile)."""
    n = float(1 << validate_zoom(zoom))
    lon = x / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))
    return GeoPoint(lat, lon)


def project_to_pixels(lats: np.ndarray, lons: np.ndarray, zoom: int) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorized lat/lon -> global pixel coordinates (float64) at the given zoom."""
    scale = float(1 << validate_zoom(zoom)) * TILE_SIZE
    lons = (np.asarray(lons, dtype=np.float64) + 180.0) % 360.0 - 180.0
    lats = np.clip(np.asarray(lats, dtype=np.float64), MIN_LATITUDE, MAX_LATITUDE)
    px = (lons + 180.0) / 360.0 * scale
    py = (1.0 - np.arcsinh(np.tan(np.radians(lats))) / np.pi) / 2.0 * scale
    return px, py


@dataclass(frozen=True)
class Viewport:
    """Fixed rectangular pixel region centered on a geographic coordinate.

    The viewport origin is snapped to the integer global pixel grid so that
    every tile pixel maps onto exactly one viewport pixel.
    """
    center: GeoPoint
    zoom: int
    width: int
    height: int

    def __post_init__(self):
        validate_zoom(self.zoom)
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Viewport size must be positive, got {self.width}x{self.height}")
        if not (math.isfinite(self.center.lat) and math.isfinite(self.center.lon)):
            raise ValueError(f"Viewport center must be finite, got {self.center}")

    @property
    def tiles_per_side(self) -> int:
        return 1 << self.zoom

    @property
    def world_pixels(self) -> int:
        """Width (and height) of the whole world map in pixels at this zoom."""
        return self.tiles_per_side * TILE_SIZE

    @property
    def center_pixel(self) -> Tuple[float, float]:
        x, y = to_tile(self.center.lat, self.center.lon, self.zoom)
        return x * TILE_SIZE, y * TILE_SIZE

    @property
    def origin(self) -> Tuple[int, int]:
        """Global pixel coordinate of the viewport's top-left pixel."""
        cx, cy = self.center_pixel
        return math.floor(cx - self.width / 2.0), math.floor(cy - self.height / 2.0)

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def column_range(self) -> range:
        """Unwrapped tile columns intersecting the viewport."""
        ox, _ = self.origin
        return range(ox // TILE_SIZE, (ox + self.width - 1) // TILE_SIZE + 1)

    def row_range(self) -> range:
        """Tile rows intersecting the viewport, limited to the map's vertical extent."""
        _, oy = self.origin
        first = max(oy // TILE_SIZE, 0)
        last = min((oy + self.height - 1) // TILE_SIZE, self.tiles_per_side - 1)
        return range(first, last + 1)

    def visible_tiles(self) -> List[TilePlacement]:
        """Every tile intersecting the viewport with its pixel offset, row-major.

        Columns wrap around the antimeridian, so at low zoom levels the same
        TileKey can appear in more than one placement.
        """
        ox, oy = self.origin
        placements = []
        for ty in self.row_range():
            for tx in self.column_range():
                key = TileKey(self.zoom, tx % self.tiles_per_side, ty)
                placements.append(TilePlacement(key, tx * TILE_SIZE - ox, ty * TILE_SIZE - oy))
        return placements

    def tile_keys(self) -> Set[TileKey]:
        """Distinct visible tile keys."""
        return {p.key for p in self.visible_tiles()}

    def pixel_bounds(self) -> Tuple[int, int, int, int]:
        """Global pixel box (x0, y0, x1, y1), exclusive end, covered by the visible tiles."""
        cols, rows = self.column_range(), self.row_range()
        if len(rows) == 0:
            return 0, 0, 0, 0
        return (cols.start * TILE_SIZE, rows.start * TILE_SIZE,
                cols.stop * TILE_SIZE, rows.stop * TILE_SIZE)

    def unwrap_x(self, px: np.ndarray) -> np.ndarray:
        """Shift global x coordinates by whole worlds so they lie nearest the viewport center."""
        cx, _ = self.center_pixel
        world = float(self.world_pixels)
        return px - world * np.round((px - cx) / world)

    def project(self, lats: np.ndarray, lons: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Project coordinates to integer global pixels, unwrapped around the viewport."""
        px, py = project_to_pixels(lats, lons, self.zoom)
        px = self.unwrap_x(px)
        return np.floor(px).astype(np.int64), np.floor(py).astype(np.int64)

    def locate(self, point: GeoPoint) -> Optional[Tuple[TileKey, int, int]]:
        """Return (tile key, x, y) of the pixel containing point, or None if off-screen."""
        gx, gy = self.project(np.array([point.lat]), np.array([point.lon]))
        gx, gy = int(gx[0]), int(gy[0])
        ox, oy = self.origin
        if not (ox <= gx < ox + self.width and oy <= gy < oy + self.height):
            return None
        tx, ty = gx // TILE_SIZE, gy // TILE_SIZE
        key = TileKey(self.zoom, tx % self.tiles_per_side, ty)
        return key, gx - tx * TILE_SIZE, gy - ty * TILE_SIZE

    def to_viewport(self, point: GeoPoint) -> Optional[Tuple[int, int]]:
        """Viewport pixel (x, y) of a point, or None if it falls outside the viewport."""
        gx, gy = self.project(np.array([point.lat]), np.array([point.lon]))
        ox, oy = self.origin
        x, y = int(gx[0]) - ox, int(gy[0]) - oy
        if 0 <= x < self.width and 0 <= y < self.height:
            return x, y
        return None
