"""
Heat accumulation for the heatmap renderer.

Projects each track onto the viewport's pixel grid, rasterizes the segments
between consecutive points with an integer line-drawing algorithm, and adds
a saturating weight to every touched cell of the per-tile heat grids.

Every (segment, tile) update publishes a TileTouched event. The frame
emitter counts these to pace streamed frames.

Concurrency: apply() may run on several threads at once. Each tile's grid is
only written while holding that tile's lock, and events are published after
the lock is released so a blocked event channel never holds a tile hostage.
"""

import logging
import math
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from constants import (
    TILE_SIZE, DEFAULT_HEAT_CAP, DEFAULT_SEGMENT_WEIGHT,
    SQUADRAT_ZOOM, SQUADRATINO_ZOOM,
)
from projection import TileKey, Viewport, project_to_pixels
from tile_cache import TileCache

logger = logging.getLogger(__name__)


class HeatmapKind(str, Enum):
    """How a track deposits heat."""
    PIXEL = "pixel"              # Rasterized lines, one pixel wide
    SQUADRAT = "squadrat"        # Whole zoom-14 tiles visited by the track
    SQUADRATINO = "squadratino"  # Whole zoom-17 tiles visited by the track

    @property
    def coarse_zoom(self) -> Optional[int]:
        return {
            HeatmapKind.SQUADRAT: SQUADRAT_ZOOM,
            HeatmapKind.SQUADRATINO: SQUADRATINO_ZOOM,
        }.get(self)


@dataclass(frozen=True)
class TileTouched:
    """A tile's heat grid changed while applying the named track."""
    key: TileKey
    track_name: str = ""
    track_date: Optional[datetime] = None


class AccumulationCancelled(Exception):
    """Raised inside apply() when the run is cancelled."""


def rasterize_line(x0: int, y0: int, x1: int, y1: int,
                   first: int = 0, last: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Integer pixels along the line from (x0, y0) to (x1, y1), endpoints included.

    Steps one pixel along the major axis and rounds the minor axis with
    exact integer arithmetic (halves round up), which visits the same set of
    cells as Bresenham's algorithm up to tie-breaking. first/last restrict the
    result to a range of step indices, so clipped lines stay pixel-identical
    to their unclipped form.
    """
    dx, dy = x1 - x0, y1 - y0
    n = max(abs(dx), abs(dy))
    if n == 0:
        return np.array([x0], dtype=np.int64), np.array([y0], dtype=np.int64)
    last = n if last is None else last
    steps = np.arange(first, last + 1, dtype=np.int64)
    xs = x0 + (2 * steps * dx + n) // (2 * n)
    ys = y0 + (2 * steps * dy + n) // (2 * n)
    return xs, ys


def clip_parameters(x0: float, y0: float, x1: float, y1: float,
                    box: Tuple[float, float, float, float]) -> Optional[Tuple[float, float]]:
    """Liang-Barsky: parameter range [t0, t1] of the segment inside box (x0, y0, x1, y1 inclusive)."""
    xmin, ymin, xmax, ymax = box
    dx, dy = x1 - x0, y1 - y0
    t0, t1 = 0.0, 1.0
    for p, q in ((-dx, x0 - xmin), (dx, xmax - x0), (-dy, y0 - ymin), (dy, ymax - y0)):
        if p == 0:
            if q < 0:
                return None
            continue
        t = q / p
        if p < 0:
            t0 = max(t0, t)
        else:
            t1 = min(t1, t)
        if t0 > t1:
            return None
    return t0, t1


class HeatAccumulator:
    """Adds tracks to the heat grids of the viewport's tiles.

    Args:
        viewport: Fixed render viewport
        tile_cache: Owner of the per-tile grids
        cap: Saturation ceiling for any cell
        weight: Amount added per segment to every cell it passes through
        kind: Pixel lines or visited coarse tiles
        events: Optional bounded channel receiving TileTouched events
        cancel: Optional event that aborts apply() when set
        listener: Optional callback invoked synchronously per event
    """

    def __init__(self, viewport: Viewport, tile_cache: TileCache,
                 cap: float = DEFAULT_HEAT_CAP, weight: float = DEFAULT_SEGMENT_WEIGHT,
                 kind: HeatmapKind = HeatmapKind.PIXEL,
                 events: Optional[queue.Queue] = None,
                 cancel: Optional[threading.Event] = None,
                 listener: Optional[Callable[[TileTouched], None]] = None):
        if not cap > 0:
            raise ValueError(f"Heat cap must be positive, got {cap}")
        if not weight > 0:
            raise ValueError(f"Segment weight must be positive, got {weight}")
        self.viewport = viewport
        self.tile_cache = tile_cache
        self.cap = np.float32(cap)
        self.weight = np.float32(weight)
        self.kind = HeatmapKind(kind)
        self.events = events
        self.cancel = cancel or threading.Event()
        self.listener = listener

        bx0, by0, bx1, by1 = viewport.pixel_bounds()
        self._bounds = (bx0, by0, bx1, by1)
        self._touches = 0
        self._count_lock = threading.Lock()

    @property
    def touch_count(self) -> int:
        """Total TileTouched events published so far."""
        with self._count_lock:
            return self._touches

    def apply(self, track) -> int:
        """Accumulate one track. Returns the number of tile-touch events it produced.

        Raises:
            ValueError: If the track contains non-finite coordinates
            AccumulationCancelled: If the run was cancelled
        """
        if self.cancel.is_set():
            raise AccumulationCancelled()
        points = track.points
        if not points:
            return 0
        lats = np.fromiter((p.lat for p in points), dtype=np.float64, count=len(points))
        lons = np.fromiter((p.lon for p in points), dtype=np.float64, count=len(points))
        if not (np.all(np.isfinite(lats)) and np.all(np.isfinite(lons))):
            raise ValueError(f"Track '{track.name}' contains non-finite coordinates")

        bx0, by0, bx1, by1 = self._bounds
        if bx1 <= bx0 or by1 <= by0:
            return 0
        if self.kind is HeatmapKind.PIXEL:
            return self._apply_lines(track, lats, lons)
        return self._apply_squares(track, lats, lons)

    # -- pixel lines ----------------------------------------------------------

    def _apply_lines(self, track, lats: np.ndarray, lons: np.ndarray) -> int:
        gx, gy = self.viewport.project(lats, lons)
        half_world = self.viewport.world_pixels / 2
        touched = 0

        if np.all(gx == gx[0]) and np.all(gy == gy[0]):
            # Single point, or a recording that never moved: one pixel
            x, y = int(gx[0]), int(gy[0])
            bx0, by0, bx1, by1 = self._bounds
            if not (bx0 <= x < bx1 and by0 <= y < by1):
                return 0
            xs, ys = rasterize_line(x, y, x, y)
            return self._deposit_pixels(xs, ys, track)

        joined = False
        for i in range(len(gx) - 1):
            x0, y0, x1, y1 = int(gx[i]), int(gy[i]), int(gx[i + 1]), int(gy[i + 1])
            if abs(x1 - x0) > half_world:
                # Jump across the antimeridian: not a drawable segment
                joined = False
                continue
            if x0 == x1 and y0 == y1:
                continue
            xs, ys = self._segment_pixels(x0, y0, x1, y1, skip_first=joined)
            joined = True
            if len(xs):
                touched += self._deposit_pixels(xs, ys, track)
        return touched

    def _segment_pixels(self, x0: int, y0: int, x1: int, y1: int,
                        skip_first: bool) -> Tuple[np.ndarray, np.ndarray]:
        """Pixels of one segment that fall inside the visible tiles."""
        bx0, by0, bx1, by1 = self._bounds
        params = clip_parameters(x0, y0, x1, y1, (bx0 - 1, by0 - 1, bx1, by1))
        if params is None:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64)
        n = max(abs(x1 - x0), abs(y1 - y0))
        first = max(int(math.floor(params[0] * n)), 0)
        last = min(int(math.ceil(params[1] * n)), n)
        if skip_first:
            first = max(first, 1)
        if first > last:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64)
        xs, ys = rasterize_line(x0, y0, x1, y1, first, last)
        inside = (xs >= bx0) & (xs < bx1) & (ys >= by0) & (ys < by1)
        return xs[inside], ys[inside]

    def _deposit_pixels(self, xs: np.ndarray, ys: np.ndarray, track) -> int:
        """Saturating add of self.weight at each (x, y), grouped by tile."""
        tx = xs // TILE_SIZE
        ty = ys // TILE_SIZE
        n = self.viewport.tiles_per_side
        touched = 0
        for cx, cy in sorted(set(zip(tx.tolist(), ty.tolist()))):
            if not 0 <= cy < n:
                continue
            mask = (tx == cx) & (ty == cy)
            lx = xs[mask] - cx * TILE_SIZE
            ly = ys[mask] - cy * TILE_SIZE
            key = TileKey(self.viewport.zoom, cx % n, cy)
            tile = self.tile_cache.acquire(key)
            with tile.lock:
                grid = tile.heat_grid()
                grid[ly, lx] = np.minimum(grid[ly, lx] + self.weight, self.cap)
            self._publish(TileTouched(key, track.name, track.date))
            touched += 1
        return touched

    # -- visited coarse tiles -------------------------------------------------

    def _apply_squares(self, track, lats: np.ndarray, lons: np.ndarray) -> int:
        coarse = self.kind.coarse_zoom
        px, py = project_to_pixels(lats, lons, coarse)
        visited = sorted(set(zip((px // TILE_SIZE).astype(np.int64).tolist(),
                                 (py // TILE_SIZE).astype(np.int64).tolist())))
        scale = 2.0 ** (self.viewport.zoom - coarse) * TILE_SIZE
        touched = 0
        for cx, cy in visited:
            left = float(self.viewport.unwrap_x(np.array([(cx + 0.5) * scale]))[0]) - 0.5 * scale
            top = cy * scale
            x_start, y_start = math.floor(left), math.floor(top)
            x_end = max(math.ceil(left + scale), x_start + 1)
            y_end = max(math.ceil(top + scale), y_start + 1)
            touched += self._deposit_rect(x_start, y_start, x_end, y_end, track)
        return touched

    def _deposit_rect(self, x0: int, y0: int, x1: int, y1: int, track) -> int:
        """Saturating add over the global pixel rectangle [x0, x1) x [y0, y1)."""
        bx0, by0, bx1, by1 = self._bounds
        x0, y0, x1, y1 = max(x0, bx0), max(y0, by0), min(x1, bx1), min(y1, by1)
        if x0 >= x1 or y0 >= y1:
            return 0
        n = self.viewport.tiles_per_side
        touched = 0
        for cy in range(y0 // TILE_SIZE, (y1 - 1) // TILE_SIZE + 1):
            for cx in range(x0 // TILE_SIZE, (x1 - 1) // TILE_SIZE + 1):
                lx0 = max(x0 - cx * TILE_SIZE, 0)
                ly0 = max(y0 - cy * TILE_SIZE, 0)
                lx1 = min(x1 - cx * TILE_SIZE, TILE_SIZE)
                ly1 = min(y1 - cy * TILE_SIZE, TILE_SIZE)
                key = TileKey(self.viewport.zoom, cx % n, cy)
                tile = self.tile_cache.acquire(key)
                with tile.lock:
                    cells = tile.heat_grid()[ly0:ly1, lx0:lx1]
                    np.minimum(cells + self.weight, self.cap, out=cells)
                self._publish(TileTouched(key, track.name, track.date))
                touched += 1
        return touched

    # -- events ---------------------------------------------------------------

    def _publish(self, event: TileTouched) -> None:
        with self._count_lock:
            self._touches += 1
        if self.listener is not None:
            self.listener(event)
        if self.events is None:
            return
        while True:
            try:
                self.events.put(event, timeout=0.1)
                return
            except queue.Full:
                if self.cancel.is_set():
                    raise AccumulationCancelled()


def apply_all(accumulator: HeatAccumulator, tracks) -> List[int]:
    """Apply tracks sequentially; convenience for static, single-threaded use."""
    return [accumulator.apply(track) for track in tracks]
