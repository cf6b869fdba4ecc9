"""
Heat styles: color ramps and decay curves for the heat overlay.

A style is selected once at startup and shared read-only by every compositor
call. Styles form a closed set (HeatStyleName); each one maps an accumulated
cell value to a color through two steps:

1. decay: value / cap -> perceptual intensity in [0, 1]
2. ramp: intensity -> RGB, via a pre-computed 256-entry lookup table
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]

# Ramp LUT cache (module-level, styles are immutable)
_ramp_luts: Dict[str, np.ndarray] = {}


class HeatStyleName(str, Enum):
    """Built-in heat styles."""
    RED = "red"
    FIRE = "fire"
    ICE = "ice"
    MONO = "mono"


class DecayFunction(str, Enum):
    """Curves mapping a saturating cell value onto the color ramp."""
    LOG = "log"
    SQRT = "sqrt"
    LINEAR = "linear"

    def apply(self, values: np.ndarray, cap: float) -> np.ndarray:
        """Map values in [0, cap] to intensities in [0, 1]."""
        fraction = np.clip(np.asarray(values, dtype=np.float32) / np.float32(cap), 0.0, 1.0)
        if self is DecayFunction.LOG:
            # log1p keeps a single pass visible instead of mapping it to zero
            scale = np.float32(np.log1p(cap))
            return np.log1p(fraction * np.float32(cap)) / scale
        if self is DecayFunction.SQRT:
            return np.sqrt(fraction)
        return fraction


@dataclass(frozen=True)
class HeatStyle:
    """Color ramp plus decay curve.

    Attributes:
        name: Style identifier
        stops: (position, RGB) pairs, positions ascending from 0.0 to 1.0
        decay: Curve applied before the ramp lookup
        darken_base: Whether the tint also darkens base imagery under cold cells
    """
    name: HeatStyleName
    stops: Tuple[Tuple[float, RGB], ...]
    decay: DecayFunction = DecayFunction.LOG
    darken_base: bool = True

    @property
    def lut(self) -> np.ndarray:
        """256x3 uint8 lookup table for the color ramp."""
        lut = _ramp_luts.get(self.name.value)
        if lut is None:
            lut = _build_ramp_lut(self.stops)
            _ramp_luts[self.name.value] = lut
        return lut

    def intensity(self, values: np.ndarray, cap: float) -> np.ndarray:
        return self.decay.apply(values, cap)

    def colorize(self, values: np.ndarray, cap: float) -> np.ndarray:
        """Map a heat grid to RGB colors (uint8, shape (..., 3))."""
        index = np.rint(self.intensity(values, cap) * 255.0).astype(np.uint8)
        return self.lut[index]


def _build_ramp_lut(stops: Tuple[Tuple[float, RGB], ...]) -> np.ndarray:
    """Linearly interpolate the ramp stops at 256 evenly spaced positions."""
    positions = np.array([p for p, _ in stops], dtype=np.float64)
    colors = np.array([c for _, c in stops], dtype=np.float64)
    samples = np.linspace(0.0, 1.0, 256)
    lut = np.empty((256, 3), dtype=np.uint8)
    for channel in range(3):
        lut[:, channel] = np.clip(np.rint(np.interp(samples, positions, colors[:, channel])), 0, 255)
    return lut


HEAT_STYLES: Dict[HeatStyleName, HeatStyle] = {
    # Single-hue red ramp, dim to bright (HSV value 0.45 -> 1.0 at saturation 0.75)
    HeatStyleName.RED: HeatStyle(
        name=HeatStyleName.RED,
        stops=((0.0, (115, 29, 29)), (1.0, (255, 64, 64))),
    ),
    HeatStyleName.FIRE: HeatStyle(
        name=HeatStyleName.FIRE,
        stops=((0.0, (128, 0, 0)), (0.4, (255, 64, 0)), (0.8, (255, 220, 0)), (1.0, (255, 255, 255))),
        decay=DecayFunction.SQRT,
    ),
    HeatStyleName.ICE: HeatStyle(
        name=HeatStyleName.ICE,
        stops=((0.0, (0, 40, 140)), (0.6, (0, 200, 255)), (1.0, (235, 255, 255))),
    ),
    HeatStyleName.MONO: HeatStyle(
        name=HeatStyleName.MONO,
        stops=((0.0, (255, 255, 255)), (1.0, (255, 255, 255))),
        decay=DecayFunction.LINEAR,
        darken_base=False,
    ),
}


def get_heat_style(name: Union[str, HeatStyleName]) -> HeatStyle:
    """Look up a built-in style by name.

    Raises:
        ValueError: If the name is not a known style
    """
    try:
        key = HeatStyleName(name)
    except ValueError:
        valid = ", ".join(s.value for s in HeatStyleName)
        raise ValueError(f"Unknown heat style '{name}' (valid: {valid})") from None
    return HEAT_STYLES[key]
