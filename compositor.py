"""
Tile compositing for the heatmap renderer.

Blends each tile's accumulated heat over its base imagery and assembles the
visible tiles into one viewport-sized RGBA buffer.

Blend per pixel, with t = tint:
    base' = base * (1 - t)                  if the style darkens the base
    out   = base' * (1 - t) + ramp(heat) * t where heat > 0
    out   = base'                           elsewhere
"""

import logging
from typing import Dict, Iterable, Optional

import numpy as np

from constants import TILE_SIZE
from heat_styles import HeatStyle
from projection import TileKey, TilePlacement, Viewport
from tile_cache import TileCache, blank_tile

logger = logging.getLogger(__name__)


class Compositor:
    """Renders tiles and viewports from the tile cache's current state.

    Output depends only on base imagery, heat grids, style, tint and cap.

    Args:
        tile_cache: Source of base imagery and heat grids
        style: Color ramp and decay curve
        tint: Blend strength in [0, 1]
        cap: Heat saturation ceiling used to normalize grid values
    """

    def __init__(self, tile_cache: TileCache, style: HeatStyle, tint: float, cap: float):
        if not 0.0 <= tint <= 1.0:
            raise ValueError(f"Tint must be within [0, 1], got {tint}")
        if not cap > 0:
            raise ValueError(f"Heat cap must be positive, got {cap}")
        self.tile_cache = tile_cache
        self.style = style
        self.tint = float(tint)
        self.cap = float(cap)

    def render(self, key: TileKey) -> np.ndarray:
        """Composite one tile into a TILE_SIZE x TILE_SIZE RGBA uint8 buffer."""
        tile = self.tile_cache.get(key)
        base = tile.base if tile is not None and tile.base is not None else blank_tile()
        heat = tile.heat_snapshot() if tile is not None else None
        return self.blend(base, heat)

    def blend(self, base: np.ndarray, heat: Optional[np.ndarray]) -> np.ndarray:
        """Blend a heat grid over an RGBA base image."""
        out = base.astype(np.float32)
        keep = 1.0 - self.tint
        if self.style.darken_base:
            out[..., :3] *= keep

        if heat is not None:
            hot = heat > 0
            if np.any(hot):
                colors = self.style.colorize(heat[hot], self.cap).astype(np.float32)
                out[hot, :3] = out[hot, :3] * keep + colors * self.tint
                out[hot, 3] = out[hot, 3] * keep + 255.0 * self.tint

        return np.clip(np.rint(out), 0, 255).astype(np.uint8)

    def assemble(self, viewport: Viewport,
                 placements: Optional[Iterable[TilePlacement]] = None) -> np.ndarray:
        """Assemble the full viewport (height x width x 4, uint8).

        Tiles hanging over the viewport edges are cropped; areas with no
        tile (beyond the poles) stay transparent.
        """
        frame = np.zeros((viewport.height, viewport.width, 4), dtype=np.uint8)
        rendered: Dict[TileKey, np.ndarray] = {}
        if placements is None:
            placements = viewport.visible_tiles()

        for placement in placements:
            x0, y0 = placement.offset_x, placement.offset_y
            dx0, dy0 = max(x0, 0), max(y0, 0)
            dx1 = min(x0 + TILE_SIZE, viewport.width)
            dy1 = min(y0 + TILE_SIZE, viewport.height)
            if dx0 >= dx1 or dy0 >= dy1:
                continue
            pixels = rendered.get(placement.key)
            if pixels is None:
                pixels = self.render(placement.key)
                rendered[placement.key] = pixels
            frame[dy0:dy1, dx0:dx1] = pixels[dy0 - y0:dy1 - y0, dx0 - x0:dx1 - x0]

        return frame
