"""Frame sharpness scoring via Laplacian variance."""

import cv2
import numpy as np

from sharpframes.errors import GeometryError

# ITU-R BT.601 luma weights, applied to R, G, B in that order
_LUMA_WEIGHTS = (0.299, 0.587, 0.114)


def to_luma(frame: np.ndarray) -> np.ndarray:
    """Return the 8-bit luma plane of an RGB(A) frame.

    Alpha is ignored.  The weighted sum is truncated (not rounded) to uint8
    so that scores are reproducible for identical input pixels.
    """
    if frame.ndim == 2:
        return frame.astype(np.uint8, copy=False)
    rgb = frame[..., :3].astype(np.float64)
    r, g, b = _LUMA_WEIGHTS
    gray = r * rgb[..., 0] + g * rgb[..., 1] + b * rgb[..., 2]
    return gray.astype(np.uint8)


def compute_sharpness(frame: np.ndarray) -> float:
    """Return the Laplacian variance of an RGBA frame.

    Higher values indicate a sharper frame.  The 4-connected kernel is
    evaluated on interior pixels only; the 1-pixel border takes no part in
    either the mean or the variance.

    Raises:
        GeometryError: If the frame is smaller than 3x3.
    """
    h, w = frame.shape[:2]
    if h < 3 or w < 3:
        raise GeometryError(f"Sharpness needs at least a 3x3 frame, got {w}x{h}")

    gray = to_luma(frame)
    # ksize=1 is the 4-neighbour kernel [[0,1,0],[1,-4,1],[0,1,0]]
    laplacian = cv2.Laplacian(gray, cv2.CV_64F, ksize=1)
    interior = laplacian[1:-1, 1:-1]
    return float(interior.var())
