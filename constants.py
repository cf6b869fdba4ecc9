"""
Constants for the activity heatmap renderer.

Centralized definitions for tile geometry, projection limits, heat
accumulation and the defaults used by the configuration layer.
"""

from typing import Tuple
from dataclasses import dataclass


# =============================================================================
# Tile Geometry
# =============================================================================

TILE_SIZE = 256  # Edge length of a slippy-map tile in pixels
MIN_ZOOM = 0
MAX_ZOOM = 19


# =============================================================================
# Web Mercator Limits
# =============================================================================

# atan(sinh(pi)) in degrees: the latitude where the square world map ends
MAX_LATITUDE = 85.0511287798
MIN_LATITUDE = -MAX_LATITUDE


# =============================================================================
# Colors (RGBA)
# =============================================================================

@dataclass(frozen=True)
class Colors:
    """Common colors in RGBA format."""
    TRANSPARENT: Tuple[int, int, int, int] = (0, 0, 0, 0)
    BLACK: Tuple[int, int, int, int] = (0, 0, 0, 255)
    WHITE: Tuple[int, int, int, int] = (255, 255, 255, 255)


COLORS = Colors()


# =============================================================================
# Heat Accumulation
# =============================================================================

DEFAULT_HEAT_CAP = 64.0       # Saturation ceiling for a single grid cell
DEFAULT_SEGMENT_WEIGHT = 1.0  # Added to every cell a segment passes through

# Coarse tile zoom levels for the "visited tiles" heatmap kinds
SQUADRAT_ZOOM = 14
SQUADRATINO_ZOOM = 17


# =============================================================================
# Rendering Defaults
# =============================================================================

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080
DEFAULT_ZOOM = 10
DEFAULT_TINT = 0.8
DEFAULT_HEAT_STYLE = "red"
DEFAULT_OUTPUT = "heatmap.png"

# Streaming: emit a frame every N tile updates
DEFAULT_FRAME_RATE = 1500

# Video sink frame rate (frames per second handed to ffmpeg)
DEFAULT_VIDEO_FPS = 30.0

# Caption text height as a fraction of the frame height
CAPTION_HEIGHT_FRACTION = 1.0 / 15.0
CAPTION_MARGIN = 20


# =============================================================================
# Concurrency
# =============================================================================

DEFAULT_TRACK_WORKERS = 4
DEFAULT_FETCH_WORKERS = 8
DEFAULT_MAX_TILES = 512

# Bounded channel between accumulator workers and the frame emitter
EVENT_QUEUE_SIZE = 4096

# Seconds to wait for outstanding tile fetches before the final frame
FINAL_FETCH_TIMEOUT = 60.0


# =============================================================================
# Tile Provider
# =============================================================================

DEFAULT_TILE_URL = "https://tile.openstreetmap.org/{z}/{x}/{y}.png"
HTTP_USER_AGENT = "ActivityHeatmap/1.0 (+https://www.openstreetmap.org/copyright)"
FETCH_TIMEOUT = 10.0

# Retry policy for transient tile-fetch failures
FETCH_MAX_ATTEMPTS = 4
FETCH_BASE_DELAY = 0.5   # Seconds, doubled after every failed attempt
FETCH_MAX_DELAY = 8.0

TILE_CACHE_SUBDIR = "activity-heatmap/tiles"


# =============================================================================
# Activity Import
# =============================================================================

SEMICIRCLES_TO_DEGREES = 180.0 / 2 ** 31
STRAVA_ACTIVITIES_CSV = "activities.csv"
SUPPORTED_ACTIVITY_SUFFIXES = frozenset({".gpx", ".fit"})
UNTITLED_ACTIVITY = "Untitled"
