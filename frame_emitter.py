"""
Frame emission for the heatmap renderer.

The emitter is a single-threaded consumer of TileTouched events. It counts
events and, once a threshold is reached in streaming mode, assembles the
whole viewport through the compositor and writes it to the sink as the next
frame. Only one frame is ever being assembled or written at a time, and a
slow sink blocks the emitter (and through the bounded event channel, the
accumulator workers) instead of frames being buffered or dropped.

State machine:
    IDLE -> ACCUMULATING -> EMITTING -> ACCUMULATING ... -> FINISHED
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np

from constants import DEFAULT_FRAME_RATE
from compositor import Compositor
from overlays import OverlayRegistry
from projection import Viewport
from video_io import FrameSink, OutputSinkError

logger = logging.getLogger(__name__)


class EmitterState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    EMITTING = "emitting"
    FINISHED = "finished"


@dataclass(frozen=True)
class Frame:
    """One emitted viewport image. pixels is read-only."""
    seq: int
    pixels: np.ndarray


class FrameEmitter:
    """
    Paces frames by tile-touch events.

    Args:
        compositor: Renders the viewport's tiles
        viewport: Region being rendered
        sink: Destination for frames
        threshold: Tile-touch events per streamed frame
        streaming: If False, events are only counted and finish() emits the single frame
        overlays: Drawn on every threshold frame, given the triggering event
        on_frame: Called after each frame is written
    """

    def __init__(self, compositor: Compositor, viewport: Viewport, sink: FrameSink,
                 threshold: int = DEFAULT_FRAME_RATE, streaming: bool = True,
                 overlays: Optional[OverlayRegistry] = None,
                 on_frame: Optional[Callable[[Frame], None]] = None):
        if threshold < 1:
            raise ValueError(f"Frame threshold must be at least 1, got {threshold}")
        self.compositor = compositor
        self.viewport = viewport
        self.sink = sink
        self.threshold = threshold
        self.streaming = streaming
        self.overlays = overlays
        self.on_frame = on_frame

        self.state = EmitterState.IDLE
        self.events_seen = 0
        self.last_frame: Optional[Frame] = None
        self._pending = 0
        self._seq = 0

    @property
    def frames_emitted(self) -> int:
        return self._seq

    @property
    def pending(self) -> int:
        """Events counted since the last emitted frame."""
        return self._pending

    def notify(self, event: Any) -> Optional[Frame]:
        """Count one tile-touch event, emitting a frame when the threshold is reached."""
        if self.state is EmitterState.FINISHED:
            raise RuntimeError("FrameEmitter already finished")
        self.events_seen += 1
        self._pending += 1
        self.state = EmitterState.ACCUMULATING
        if not self.streaming or self._pending < self.threshold:
            return None
        frame = self._emit(caption=event)
        self._pending = 0
        return frame

    def run(self, events: "queue.Queue", sentinel: Any = None,
            stop: Optional[threading.Event] = None) -> int:
        """Consume events until sentinel arrives. Returns the number of events consumed.

        Once stop is set, remaining events are drained without emitting frames.
        """
        consumed = 0
        while True:
            event = events.get()
            try:
                if event is sentinel:
                    return consumed
                if stop is not None and stop.is_set():
                    continue
                self.notify(event)
                consumed += 1
            finally:
                events.task_done()

    def finish(self) -> Frame:
        """Emit the final frame with everything accumulated so far.

        Always emits, even if the counter is zero, so the fully accumulated
        state is never missing from the output.
        """
        if self.state is EmitterState.FINISHED:
            raise RuntimeError("FrameEmitter already finished")
        frame = self._emit(caption=None)
        self._pending = 0
        self.state = EmitterState.FINISHED
        logger.debug(f"Emitter finished: {self._seq} frames from {self.events_seen} events")
        return frame

    def _emit(self, caption: Any) -> Frame:
        self.state = EmitterState.EMITTING
        pixels = self.compositor.assemble(self.viewport)
        if self.overlays is not None and caption is not None:
            self.overlays.compose_all(pixels, caption)
        pixels.setflags(write=False)

        seq = self._seq + 1
        try:
            self.sink.write(pixels)
        except OutputSinkError:
            raise
        except (OSError, ValueError) as e:
            logger.error(f"Failed to write frame {seq}: {e}")
            raise OutputSinkError(f"Failed to write frame {seq}: {e}") from e

        self._seq = seq
        frame = Frame(seq, pixels)
        self.last_frame = frame
        self.state = EmitterState.ACCUMULATING
        logger.debug(f"Emitted frame {seq}")
        if self.on_frame is not None:
            self.on_frame(frame)
        return frame
