"""
Heatmap render pipeline.

Wires the pieces together for one run:

    tracks -> worker pool (HeatAccumulator.apply) -> bounded event queue
           -> consumer thread (FrameEmitter) -> Compositor -> FrameSink

Tracks are applied on a bounded thread pool. In streaming mode every
TileTouched event travels through a bounded queue to a single consumer
thread that owns the FrameEmitter, so frames are produced in a strict total
order and a slow sink pushes back all the way to the workers. In static mode
no events are queued and a single frame is emitted once every track has been
applied.
"""

import logging
import queue
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set

import numpy as np

from compositor import Compositor
from constants import EVENT_QUEUE_SIZE, FINAL_FETCH_TIMEOUT
from frame_emitter import FrameEmitter
from heat_accumulator import AccumulationCancelled, HeatAccumulator
from overlays import CaptionOverlay, OverlayRegistry
from render_config import RenderConfig
from tile_cache import TileCache
from video_io import FrameSink

logger = logging.getLogger(__name__)

# End-of-input marker for the event queue
_DONE = object()


@dataclass
class RenderSummary:
    """What a run did."""
    tracks_applied: int = 0
    tracks_skipped: int = 0
    frames_emitted: int = 0
    tile_events: int = 0
    blank_tiles: int = 0
    cancelled: bool = False
    final_frame: Optional[np.ndarray] = field(default=None, repr=False)


class HeatmapRenderer:
    """
    Renders tracks into frames for one configuration.

    Args:
        config: Validated render configuration
        tile_cache: Base imagery and heat grid owner
        sink: Destination for emitted frames
        overlays: Drawn on streamed frames; defaults to captions when configured
        on_progress: Called from the rendering thread after each finished track
    """

    def __init__(self, config: RenderConfig, tile_cache: TileCache, sink: FrameSink,
                 overlays: Optional[OverlayRegistry] = None,
                 on_progress: Optional[Callable[[RenderSummary], None]] = None):
        self.config = config
        self.viewport = config.viewport()
        self.tile_cache = tile_cache
        self.on_progress = on_progress
        self._cancel = threading.Event()
        self._events: "queue.Queue" = queue.Queue(maxsize=EVENT_QUEUE_SIZE)

        if overlays is None and config.has_captions:
            overlays = OverlayRegistry()
            overlays.register("caption", CaptionOverlay(
                self.viewport.size, show_title=config.render_title, show_date=config.render_date))

        self.compositor = Compositor(tile_cache, config.style, config.tint, config.heat_cap)
        self.emitter = FrameEmitter(
            self.compositor, self.viewport, sink,
            threshold=config.frame_rate,
            streaming=config.stream,
            overlays=overlays,
        )
        self.accumulator = HeatAccumulator(
            self.viewport, tile_cache,
            cap=config.heat_cap,
            weight=config.segment_weight,
            kind=config.heatmap_kind,
            events=self._events if config.stream else None,
            cancel=self._cancel,
        )

    def cancel(self) -> None:
        """Stop feeding tracks. Safe to call from any thread."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def render(self, tracks: Iterable) -> RenderSummary:
        """
        Apply every track and emit frames.

        Raises:
            OutputSinkError: A frame could not be written; the run is aborted
        """
        summary = RenderSummary()
        keys = self.viewport.tile_keys()
        self.tile_cache.set_visible(keys)
        self.tile_cache.begin_run()
        logger.info(f"Rendering {len(keys)} tiles at zoom {self.viewport.zoom} "
                    f"({'streaming' if self.config.stream else 'static'})")

        consumer_errors: List[BaseException] = []
        consumer = None
        if self.config.stream:
            consumer = threading.Thread(
                target=self._consume, args=(consumer_errors,), name="frame-emitter", daemon=True)
            consumer.start()

        try:
            self._apply_tracks(tracks, summary)
        finally:
            if consumer is not None:
                self._stop_consumer(consumer)
            if consumer_errors:
                self.tile_cache.end_run()

        if consumer_errors:
            raise consumer_errors[0]

        try:
            if self.cancelled:
                summary.cancelled = True
                logger.warning("Render cancelled, skipping the final frame")
            else:
                if not self.tile_cache.wait_for(keys, timeout=FINAL_FETCH_TIMEOUT):
                    logger.warning("Some tiles were still loading for the final frame")
                summary.final_frame = self.emitter.finish().pixels
        finally:
            self.tile_cache.end_run()

        summary.frames_emitted = self.emitter.frames_emitted
        summary.tile_events = self.accumulator.touch_count
        summary.blank_tiles = len(self.tile_cache.failed_keys & keys)
        logger.info(f"Applied {summary.tracks_applied} tracks, emitted {summary.frames_emitted} frames")
        return summary

    def _apply_tracks(self, tracks: Iterable, summary: RenderSummary) -> None:
        """Feed tracks to the worker pool, keeping at most 2x workers queued."""
        limit = self.config.workers * 2
        with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="track") as pool:
            pending: Set[Future] = set()
            try:
                for track in tracks:
                    if self.cancelled:
                        break
                    pending.add(pool.submit(self.accumulator.apply, track))
                    if len(pending) >= limit:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        self._collect(done, summary)
                done, pending = wait(pending)
                self._collect(done, summary)
            except BaseException:
                self.cancel()
                raise

    def _collect(self, done: Iterable[Future], summary: RenderSummary) -> None:
        for future in done:
            try:
                future.result()
            except AccumulationCancelled:
                continue
            except ValueError as e:
                logger.warning(f"Skipping track: {e}")
                summary.tracks_skipped += 1
            else:
                summary.tracks_applied += 1
            if self.on_progress is not None:
                self.on_progress(summary)

    def _consume(self, errors: List[BaseException]) -> None:
        try:
            self.emitter.run(self._events, sentinel=_DONE, stop=self._cancel)
        except BaseException as e:
            errors.append(e)
            self.cancel()

    def _stop_consumer(self, consumer: threading.Thread) -> None:
        """Send the end marker, unless the consumer already died."""
        while consumer.is_alive():
            try:
                self._events.put(_DONE, timeout=0.1)
                break
            except queue.Full:
                continue
        consumer.join()
