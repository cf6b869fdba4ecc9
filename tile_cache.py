"""
Map tile cache for the heatmap renderer.

Owns one Tile per TileKey: its base imagery (fetched asynchronously from a
tile provider) and its heat grid (created lazily by the accumulator).

Key behaviors:
- Fetches run on a bounded thread pool; a second request for a tile that is
  already being fetched joins the in-flight future.
- Transient failures are retried with exponential backoff. When retries are
  exhausted, or the failure is permanent, the tile's base imagery becomes
  fully transparent and rendering carries on.
- Least-recently-used eviction over tiles that are not visible. While a run
  is active, tiles holding heat are pinned.
- Fetched tiles are kept on disk, so an evicted tile is re-read locally.
"""

import functools
import hashlib
import io
import itertools
import logging
import os
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from constants import (
    TILE_SIZE, TILE_CACHE_SUBDIR, HTTP_USER_AGENT, FETCH_TIMEOUT,
    FETCH_MAX_ATTEMPTS, FETCH_BASE_DELAY, FETCH_MAX_DELAY,
    DEFAULT_FETCH_WORKERS, DEFAULT_MAX_TILES,
)
from projection import TileKey

logger = logging.getLogger(__name__)


class TileFetchError(Exception):
    """A tile could not be fetched.

    Args:
        message: Description of the failure
        permanent: If True, retrying cannot help (e.g. HTTP 404)
    """

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


def blank_tile() -> np.ndarray:
    """Fully transparent RGBA tile."""
    return np.zeros((TILE_SIZE, TILE_SIZE, 4), dtype=np.uint8)


def decode_tile(data: bytes) -> np.ndarray:
    """Decode image bytes into a TILE_SIZE x TILE_SIZE RGBA array.

    Oversized images are cropped from the top-left corner, undersized ones
    padded with transparent pixels.
    """
    with Image.open(io.BytesIO(data)) as img:
        rgba = img.convert("RGBA")
    if rgba.size != (TILE_SIZE, TILE_SIZE):
        canvas = Image.new("RGBA", (TILE_SIZE, TILE_SIZE), (0, 0, 0, 0))
        canvas.paste(rgba.crop((0, 0, min(rgba.width, TILE_SIZE), min(rgba.height, TILE_SIZE))), (0, 0))
        rgba = canvas
    return np.array(rgba, dtype=np.uint8)


def default_cache_dir() -> Path:
    """Per-user tile cache directory (XDG_CACHE_HOME or ~/.cache)."""
    root = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return Path(root) / TILE_CACHE_SUBDIR


# =============================================================================
# Tile Providers
# =============================================================================

class TileProvider(ABC):
    """Source of encoded base imagery for a TileKey."""

    @abstractmethod
    def fetch(self, key: TileKey) -> bytes:
        """Return encoded image bytes for the tile.

        Raises:
            TileFetchError: Provider-level failure (check .permanent)
            requests.RequestException, OSError: Transient I/O failures
        """


def _format_pattern(pattern: str, key: TileKey) -> str:
    return (pattern.replace("{z}", str(key.zoom))
            .replace("{x}", str(key.x))
            .replace("{y}", str(key.y)))


class HttpTileProvider(TileProvider):
    """Fetches tiles over HTTP(S) and keeps a copy of every tile on disk.

    Cached files are named after the SHA-256 of the tile URL, keeping the
    URL's file extension, so different providers never collide.
    """

    def __init__(self, url_pattern: str, cache_dir: Optional[Union[str, Path]] = None,
                 timeout: float = FETCH_TIMEOUT):
        self.url_pattern = url_pattern
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self.timeout = timeout
        # requests.Session is not guaranteed thread-safe: one per fetch thread
        self._local = threading.local()

    def url_for(self, key: TileKey) -> str:
        return _format_pattern(self.url_pattern, key)

    def cache_path(self, url: str) -> Path:
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest().upper()
        suffix = Path(url.split("?", 1)[0]).suffix or ".png"
        return self.cache_dir / f"{digest}{suffix}"

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = HTTP_USER_AGENT
            self._local.session = session
        return session

    def fetch(self, key: TileKey) -> bytes:
        url = self.url_for(key)
        cached = self.cache_path(url)
        if cached.exists():
            logger.debug(f"cached: {url}")
            return cached.read_bytes()

        logger.debug(f"fetch:  {url}")
        resp = self._session().get(url, timeout=self.timeout)
        if 400 <= resp.status_code < 500:
            raise TileFetchError(f"HTTP {resp.status_code} for {url}", permanent=True)
        resp.raise_for_status()

        data = resp.content
        cached.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crashed download never leaves a truncated tile
        tmp = cached.with_name(f"{cached.name}.{threading.get_ident()}.part")
        tmp.write_bytes(data)
        os.replace(tmp, cached)
        return data


class LocalTileProvider(TileProvider):
    """Reads tiles from a local directory tree, e.g. /tiles/{z}/{x}/{y}.png."""

    def __init__(self, path_pattern: str):
        if path_pattern.startswith("file://"):
            path_pattern = path_pattern[len("file://"):]
        self.path_pattern = path_pattern

    def fetch(self, key: TileKey) -> bytes:
        path = Path(_format_pattern(self.path_pattern, key))
        if not path.exists():
            raise TileFetchError(f"No local tile at {path}", permanent=True)
        return path.read_bytes()


def create_tile_provider(pattern: str, cache_dir: Optional[Union[str, Path]] = None,
                         timeout: float = FETCH_TIMEOUT) -> TileProvider:
    """Pick a provider for a URL or path pattern containing {z}, {x} and {y}."""
    for placeholder in ("{z}", "{x}", "{y}"):
        if placeholder not in pattern:
            raise ValueError(f"Tile pattern '{pattern}' is missing the {placeholder} placeholder")
    if pattern.startswith(("http://", "https://")):
        return HttpTileProvider(pattern, cache_dir=cache_dir, timeout=timeout)
    return LocalTileProvider(pattern)


# =============================================================================
# Tiles and Cache
# =============================================================================

class Tile:
    """One map tile: base imagery plus heat grid.

    The tile's lock serializes heat-grid writers, and compositor reads take
    the same lock, so a reader always sees a grid between two segment updates.
    """

    def __init__(self, key: TileKey):
        self.key = key
        self.lock = threading.Lock()
        self.base: Optional[np.ndarray] = None  # RGBA, set once by the fetch
        self.visible = False
        self.last_access = 0
        self._heat: Optional[np.ndarray] = None

    @property
    def has_heat(self) -> bool:
        return self._heat is not None

    @property
    def base_ready(self) -> bool:
        return self.base is not None

    def heat_grid(self) -> np.ndarray:
        """Heat grid, created on first touch. Caller must hold self.lock."""
        if self._heat is None:
            self._heat = np.zeros((TILE_SIZE, TILE_SIZE), dtype=np.float32)
        return self._heat

    def heat_snapshot(self) -> Optional[np.ndarray]:
        """Copy of the heat grid taken under the lock, or None if never touched."""
        with self.lock:
            return None if self._heat is None else self._heat.copy()

    def __repr__(self) -> str:
        return f"Tile({self.key.zoom}/{self.key.x}/{self.key.y})"


class TileCache:
    """Tiles keyed by TileKey, with asynchronous fetching and LRU eviction.

    Args:
        provider: Source of base imagery
        max_tiles: Resident tile ceiling before eviction kicks in
        fetch_workers: Maximum simultaneous fetches
        max_attempts: Fetch attempts per tile before falling back to blank
        base_delay: Backoff after the first failure, doubled every retry
        max_delay: Backoff ceiling
    """

    def __init__(self, provider: TileProvider, max_tiles: int = DEFAULT_MAX_TILES,
                 fetch_workers: int = DEFAULT_FETCH_WORKERS,
                 max_attempts: int = FETCH_MAX_ATTEMPTS,
                 base_delay: float = FETCH_BASE_DELAY, max_delay: float = FETCH_MAX_DELAY):
        if max_tiles < 1:
            raise ValueError("max_tiles must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.provider = provider
        self.max_tiles = max_tiles
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.failed_keys: Set[TileKey] = set()

        self._tiles: Dict[TileKey, Tile] = {}
        self._inflight: Dict[TileKey, Future] = {}
        # Reentrant: cancelling a future runs its done-callbacks synchronously
        self._lock = threading.RLock()
        self._clock = itertools.count(1)
        self._run_active = False
        self._cancel = threading.Event()
        self._closed = False
        self._pool = ThreadPoolExecutor(max_workers=fetch_workers, thread_name_prefix="tile-fetch")

    # -- lookup ---------------------------------------------------------------

    def acquire(self, key: TileKey, fetch: bool = True, visible: Optional[bool] = None) -> Tile:
        """Return the live Tile for key, creating it (and scheduling its fetch) if needed."""
        with self._lock:
            tile = self._tiles.get(key)
            if tile is None:
                tile = Tile(key)
                self._tiles[key] = tile
            tile.last_access = next(self._clock)
            if visible is not None:
                tile.visible = visible
            self._evict_locked(protect=key)
        if fetch and tile.base is None:
            self.fetch(key)
        return tile

    def get(self, key: TileKey) -> Optional[Tile]:
        """Return the live Tile for key without creating or touching it."""
        with self._lock:
            return self._tiles.get(key)

    def __contains__(self, key: TileKey) -> bool:
        with self._lock:
            return key in self._tiles

    def __len__(self) -> int:
        with self._lock:
            return len(self._tiles)

    # -- visibility / lifetime --------------------------------------------------

    def set_visible(self, keys: Iterable[TileKey]) -> None:
        """Mark exactly these tiles as visible; visible tiles are never evicted."""
        wanted = set(keys)
        with self._lock:
            for key, tile in self._tiles.items():
                tile.visible = key in wanted
        for key in wanted:
            self.acquire(key, visible=True)

    def begin_run(self) -> None:
        """Pin heat-bearing tiles until end_run()."""
        with self._lock:
            self._run_active = True

    def end_run(self) -> None:
        with self._lock:
            self._run_active = False
            self._evict_locked()

    def _evict_locked(self, protect: Optional[TileKey] = None) -> List[TileKey]:
        excess = len(self._tiles) - self.max_tiles
        if excess <= 0:
            return []
        candidates = [
            t for t in self._tiles.values()
            if t.key != protect and not t.visible and not (self._run_active and t.has_heat)
        ]
        candidates.sort(key=lambda t: t.last_access)
        evicted = []
        for tile in candidates[:excess]:
            del self._tiles[tile.key]
            future = self._inflight.pop(tile.key, None)
            if future is not None:
                future.cancel()
            evicted.append(tile.key)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} tiles: {evicted}")
        return evicted

    # -- fetching ---------------------------------------------------------------

    def fetch(self, key: TileKey) -> Future:
        """Schedule a fetch of key's base imagery, joining any fetch already in flight."""
        with self._lock:
            future = self._inflight.get(key)
            if future is not None:
                return future
            tile = self._tiles.get(key)
            if self._closed or (tile is not None and tile.base is not None):
                done: Future = Future()
                done.set_result(tile.base if tile is not None and tile.base is not None else blank_tile())
                return done
            future = self._pool.submit(self._fetch_task, key)
            self._inflight[key] = future
        future.add_done_callback(functools.partial(self._forget_fetch, key))
        return future

    def _fetch_task(self, key: TileKey) -> np.ndarray:
        image = self._load_base(key)
        with self._lock:
            tile = self._tiles.get(key)
            if tile is not None:
                tile.base = image
        return image

    def _forget_fetch(self, key: TileKey, future: Future) -> None:
        # A re-acquired tile may already have a newer fetch registered
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def _load_base(self, key: TileKey) -> np.ndarray:
        """Fetch and decode with bounded exponential backoff; blank on failure."""
        delay = self.base_delay
        for attempt in range(1, self.max_attempts + 1):
            if self._cancel.is_set():
                return blank_tile()
            try:
                return decode_tile(self.provider.fetch(key))
            except UnidentifiedImageError as e:
                logger.warning(f"Tile {key.zoom}/{key.x}/{key.y} is not a readable image: {e}")
                break
            except TileFetchError as e:
                if e.permanent:
                    logger.warning(f"Tile {key.zoom}/{key.x}/{key.y} unavailable: {e}")
                    break
                error = e
            except (requests.RequestException, OSError) as e:
                error = e

            if attempt < self.max_attempts:
                logger.debug(f"Tile {key.zoom}/{key.x}/{key.y} attempt {attempt} failed ({error}), "
                             f"retrying in {delay:.1f}s")
                if self._cancel.wait(delay):
                    return blank_tile()
                delay = min(delay * 2, self.max_delay)
            else:
                logger.warning(f"Tile {key.zoom}/{key.x}/{key.y} failed after {attempt} attempts: {error}")

        with self._lock:
            self.failed_keys.add(key)
        return blank_tile()

    def wait_for(self, keys: Iterable[TileKey], timeout: Optional[float] = None) -> bool:
        """Block until the given tiles' fetches finish. Returns False on timeout."""
        with self._lock:
            futures = [self._inflight[k] for k in set(keys) if k in self._inflight]
        if not futures:
            return True
        _, pending = wait(futures, timeout=timeout)
        return not pending

    # -- shutdown ---------------------------------------------------------------

    def close(self, cancel: bool = False) -> None:
        """Shut down the fetch pool, abandoning queued fetches if cancel is set."""
        with self._lock:
            self._closed = True
        if cancel:
            self._cancel.set()
        self._pool.shutdown(wait=not cancel, cancel_futures=cancel)

    def __enter__(self) -> "TileCache":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close(cancel=exc_type is not None)
        return False
