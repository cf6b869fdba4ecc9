"""
Overlay abstraction layer for streamed heatmap frames.

Provides a base class for renderable RGBA overlays with consistent
positioning and composition behavior, plus the caption overlay that burns
the current activity's title and date into each streamed frame.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from constants import COLORS, CAPTION_HEIGHT_FRACTION, CAPTION_MARGIN

logger = logging.getLogger(__name__)


# Font cache
_font_cache: dict = {}
_font_path: Optional[str] = None


def _get_font(size: float = 12) -> ImageFont.ImageFont:
    """Get a cached font instance."""
    global _font_path

    int_size = max(int(size), 1)

    if int_size in _font_cache:
        return _font_cache[int_size]

    if _font_path is None:
        for font_name in ["DejaVuSans.ttf", "Arial.ttf", "Helvetica.ttf",
                          "/System/Library/Fonts/Helvetica.ttc"]:
            try:
                ImageFont.truetype(font_name, 12)
                _font_path = font_name
                break
            except OSError:
                continue

    if _font_path:
        font = ImageFont.truetype(_font_path, int_size)
    else:
        logger.debug("No TrueType font found, captions use Pillow's default font")
        font = ImageFont.load_default()

    _font_cache[int_size] = font
    return font


class Overlay(ABC):
    """
    Abstract base class for frame overlays.

    Overlays are RGBA images alpha-composited onto an RGBA frame at a fixed
    position. The overlay's own alpha channel decides coverage.

    Subclasses must implement:
        - render(data): Generate the overlay image, or None to draw nothing
        - size: Property returning (width, height) tuple
    """

    def __init__(self, position: Tuple[int, int] = (0, 0)):
        self._position = position

    @property
    def position(self) -> Tuple[int, int]:
        """Top-left (x, y) position on canvas."""
        return self._position

    @position.setter
    def position(self, value: Tuple[int, int]):
        self._position = value

    @property
    @abstractmethod
    def size(self) -> Tuple[int, int]:
        """Return (width, height) of the overlay."""

    @abstractmethod
    def render(self, data: Any) -> Optional[np.ndarray]:
        """
        Render the overlay image from input data.

        Returns:
            RGBA image array of shape (height, width, 4), or None
        """

    def compose(self, canvas: np.ndarray, data: Any) -> np.ndarray:
        """Render and composite the overlay onto canvas (modified in place)."""
        overlay_img = self.render(data)
        if overlay_img is not None:
            self._apply_overlay(canvas, overlay_img)
        return canvas

    def _apply_overlay(self, canvas: np.ndarray, overlay: np.ndarray) -> None:
        """
        Source-over composite of overlay onto canvas at the configured position.

        Parts of the overlay that fall outside the canvas are cropped.
        """
        x, y = self._position
        oh, ow = overlay.shape[:2]
        ch, cw = canvas.shape[:2]

        x0, y0 = max(x, 0), max(y, 0)
        x1, y1 = min(x + ow, cw), min(y + oh, ch)
        if x0 >= x1 or y0 >= y1:
            return

        src = overlay[y0 - y:y1 - y, x0 - x:x1 - x].astype(np.float32)
        dst = canvas[y0:y1, x0:x1].astype(np.float32)
        alpha = src[..., 3:4] / 255.0
        dst[..., :3] = src[..., :3] * alpha + dst[..., :3] * (1.0 - alpha)
        dst[..., 3:4] = 255.0 * alpha + dst[..., 3:4] * (1.0 - alpha)
        canvas[y0:y1, x0:x1] = np.clip(np.rint(dst), 0, 255).astype(np.uint8)


class CaptionOverlay(Overlay):
    """
    Activity title and date in the bottom-left corner of a frame.

    The date sits on the bottom line and the title on the line above it.
    Text height is a fixed fraction of the frame height.

    Args:
        frame_size: (width, height) of the frames being captioned
        show_title: Draw the activity name
        show_date: Draw the activity date ("%B %d, %Y")
    """

    DATE_FORMAT = "%B %d, %Y"

    def __init__(self, frame_size: Tuple[int, int], show_title: bool = True, show_date: bool = True):
        self.frame_width, self.frame_height = frame_size
        self.show_title = show_title
        self.show_date = show_date
        self.line_height = max(int(self.frame_height * CAPTION_HEIGHT_FRACTION), 1)
        lines = int(show_title) + int(show_date)
        height = min(self.line_height * max(lines, 1), self.frame_height)
        width = max(self.frame_width - CAPTION_MARGIN, 1)
        super().__init__(position=(CAPTION_MARGIN, self.frame_height - height))
        self._size = (width, height)
        self._font = _get_font(self.line_height)

    @property
    def size(self) -> Tuple[int, int]:
        return self._size

    def lines_for(self, title: Optional[str], date: Optional[datetime]) -> list:
        """Caption lines, top to bottom."""
        lines = []
        if self.show_title and title:
            lines.append(title)
        if self.show_date and date is not None:
            lines.append(date.strftime(self.DATE_FORMAT))
        return lines

    def render(self, data: Any) -> Optional[np.ndarray]:
        """Render the caption for data (anything with track_name and track_date)."""
        if data is None:
            return None
        lines = self.lines_for(getattr(data, "track_name", None), getattr(data, "track_date", None))
        if not lines:
            return None

        width, height = self._size
        img = Image.new("RGBA", (width, height), COLORS.TRANSPARENT)
        draw = ImageDraw.Draw(img)
        # Bottom line hugs the frame's bottom edge
        y = height - self.line_height * len(lines)
        for line in lines:
            draw.text((0, y), line, fill=COLORS.WHITE, font=self._font)
            y += self.line_height
        return np.array(img, dtype=np.uint8)


class OverlayRegistry:
    """
    Registry for managing multiple overlays.

    Provides ordered rendering of overlays onto a frame.

    Example:
        registry = OverlayRegistry()
        registry.register('caption', CaptionOverlay((1920, 1080)))

        frame = registry.compose_all(frame, event)
    """

    def __init__(self):
        self._overlays: dict[str, Overlay] = {}
        self._order: list[str] = []

    def register(self, name: str, overlay: Overlay) -> None:
        """
        Register an overlay with a unique name.

        Args:
            name: Unique identifier for this overlay
            overlay: Overlay instance to register
        """
        if name not in self._overlays:
            self._order.append(name)
        self._overlays[name] = overlay

    def compose_all(self, canvas: np.ndarray, data: Any) -> np.ndarray:
        """Render all registered overlays onto canvas in registration order."""
        for name in self._order:
            self._overlays[name].compose(canvas, data)
        return canvas
