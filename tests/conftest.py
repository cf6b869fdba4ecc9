"""
Pytest configuration and fixtures for heatmap renderer tests.

Provides an in-memory tile provider, tile caches that never touch the
network, the reference viewport, and small sample tracks.
"""

import io
import threading
from typing import Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from activity_import.data_models import Track
from projection import GeoPoint, TileKey, Viewport
from tile_cache import TileCache, TileFetchError, TileProvider


def png_bytes(color=(40, 80, 120, 255), size=256) -> bytes:
    """Encode a solid-color RGBA PNG."""
    buf = io.BytesIO()
    Image.new("RGBA", (size, size), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeTileProvider(TileProvider):
    """In-memory provider serving one solid color for every tile.

    Args:
        color: RGBA color of every tile
        failures: Per-key count of transient failures before succeeding
        missing: Keys that fail permanently
    """

    def __init__(self, color=(40, 80, 120, 255), failures: Optional[Dict[TileKey, int]] = None,
                 missing=()):
        self.data = png_bytes(color)
        self.failures = dict(failures or {})
        self.missing = set(missing)
        self.calls: List[TileKey] = []
        self.release = threading.Event()
        self.release.set()
        self._lock = threading.Lock()

    def fetch(self, key: TileKey) -> bytes:
        with self._lock:
            self.calls.append(key)
        self.release.wait(5)
        if key in self.missing:
            raise TileFetchError(f"no tile {key}", permanent=True)
        with self._lock:
            remaining = self.failures.get(key, 0)
            if remaining:
                self.failures[key] = remaining - 1
                raise TileFetchError(f"transient failure for {key}")
        return self.data


@pytest.fixture
def fake_provider():
    """Fixture providing an in-memory provider with a solid blue-gray tile."""
    return FakeTileProvider()


@pytest.fixture
def tile_cache(fake_provider):
    """Fixture providing a tile cache backed by the fake provider, without backoff delays."""
    cache = TileCache(fake_provider, max_tiles=64, fetch_workers=2, base_delay=0.0, max_delay=0.0)
    yield cache
    cache.close()


@pytest.fixture
def geneva_viewport():
    """Fixture providing the reference viewport: (46.25, 6.10), zoom 11, 600x400."""
    return Viewport(GeoPoint(46.25, 6.10), 11, 600, 400)


@pytest.fixture
def short_track():
    """Fixture providing a 3-point track near the viewport center."""
    return Track(
        name="Lunch Ride",
        points=(
            GeoPoint(46.2500, 6.1000),
            GeoPoint(46.2520, 6.1040),
            GeoPoint(46.2535, 6.1090),
        ),
    )


def make_track(name: str, coords) -> Track:
    """Build a Track from (lat, lon) pairs."""
    return Track(name=name, points=tuple(GeoPoint(lat, lon) for lat, lon in coords))


def solid_tile(value=(10, 20, 30, 255)) -> np.ndarray:
    """A 256x256 RGBA tile of one color."""
    tile = np.zeros((256, 256, 4), dtype=np.uint8)
    tile[...] = value
    return tile
