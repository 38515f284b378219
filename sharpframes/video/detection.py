"""Heuristic detection of equirectangular (360°) sources from frame geometry.

The result is advisory: an explicit user toggle on the session always wins.
"""

from dataclasses import dataclass
from typing import Literal

from sharpframes.errors import GeometryError

Confidence = Literal["high", "medium", "low"]

# Common equirectangular widths; the matching height is half the width
_COMMON_360_WIDTHS = (7680, 5760, 4096, 3840, 2880, 2048, 1920)
_WIDTH_TOLERANCE = 100
_HEIGHT_TOLERANCE = 50
_EXACT_ASPECT_TOLERANCE = 0.05
_NEAR_ASPECT_RANGE = (1.9, 2.1)


@dataclass(frozen=True)
class Detection360Result:
    is_360: bool
    confidence: Confidence
    reason: str


def detect_equirectangular(width: int, height: int) -> Detection360Result:
    """Classify a frame size as equirectangular or not.

    Rules are evaluated in order and the first match wins:

    1. ~2:1 aspect and close to a common 360 resolution -> 360, high
    2. ~2:1 aspect -> 360, medium
    3. aspect within [1.9, 2.1] -> 360, low
    4. anything else -> not 360, high

    Raises:
        GeometryError: If either dimension is not positive.
    """
    if width <= 0 or height <= 0:
        raise GeometryError(f"Frame dimensions must be positive, got {width}x{height}")

    aspect = width / height
    is_2to1 = abs(aspect - 2.0) < _EXACT_ASPECT_TOLERANCE
    is_common_resolution = any(
        abs(width - w) < _WIDTH_TOLERANCE and abs(height - w / 2) < _HEIGHT_TOLERANCE
        for w in _COMMON_360_WIDTHS
    )

    if is_2to1 and is_common_resolution:
        return Detection360Result(True, "high", "2:1 aspect ratio with common 360 resolution")

    if is_2to1:
        return Detection360Result(True, "medium", "2:1 aspect ratio detected")

    low, high = _NEAR_ASPECT_RANGE
    if low <= aspect <= high:
        return Detection360Result(True, "low", "Near 2:1 aspect ratio")

    return Detection360Result(False, "high", "Non-equirectangular aspect ratio")
