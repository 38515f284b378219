"""Unit tests for sharpframes/video/sharpness.py."""

import cv2
import numpy as np
import pytest

from sharpframes.errors import GeometryError
from sharpframes.video.sharpness import compute_sharpness, to_luma


def _solid_frame(h: int = 100, w: int = 100, value: int = 128) -> np.ndarray:
    """Return a solid gray RGBA frame: zero Laplacian variance."""
    frame = np.full((h, w, 4), value, dtype=np.uint8)
    frame[..., 3] = 255
    return frame


def _checkerboard_frame(h: int = 100, w: int = 100) -> np.ndarray:
    """Return a high-contrast RGBA checkerboard: high Laplacian variance."""
    frame = np.zeros((h, w, 4), dtype=np.uint8)
    rows = np.arange(h)
    cols = np.arange(w)
    mask = (rows[:, None] + cols[None, :]) % 2 == 0
    frame[mask, :3] = 255
    frame[..., 3] = 255
    return frame


def test_solid_frame_scores_exactly_zero():
    assert compute_sharpness(_solid_frame()) == 0.0


def test_minimum_size_solid_frame_scores_zero():
    assert compute_sharpness(_solid_frame(3, 3)) == 0.0


def test_checkerboard_scores_higher_than_blurred_copy():
    sharp = _checkerboard_frame()
    blurred = cv2.blur(sharp, (5, 5))
    assert compute_sharpness(sharp) > compute_sharpness(blurred)


def test_returns_float():
    assert isinstance(compute_sharpness(_checkerboard_frame(8, 8)), float)


def test_alpha_channel_is_ignored():
    frame = _checkerboard_frame(20, 20)
    other = frame.copy()
    other[..., 3] = np.arange(20, dtype=np.uint8)[None, :] * 10
    assert compute_sharpness(frame) == compute_sharpness(other)


def test_single_bright_pixel_matches_hand_computed_variance():
    # 5x5 black frame with one bright pixel in the centre: over the 3x3
    # interior the Laplacian is g at the four neighbours, -4g at the centre
    frame = _solid_frame(5, 5, value=0)
    frame[2, 2, :3] = 200
    g = float(to_luma(frame)[2, 2])
    values = np.array([0, g, 0, g, -4 * g, g, 0, g, 0])
    assert compute_sharpness(frame) == pytest.approx(values.var())


def test_corner_pixels_do_not_contribute():
    # A corner pixel is in no interior pixel's 4-neighbour stencil
    frame = _solid_frame(6, 6, value=100)
    frame[0, 0, :3] = 255
    frame[5, 5, :3] = 0
    assert compute_sharpness(frame) == 0.0


def test_edge_row_feeds_neighbouring_interior_pixels():
    frame = _solid_frame(6, 6, value=100)
    frame[0, :, :3] = 255
    assert compute_sharpness(frame) > 0.0


def test_deterministic_for_identical_input():
    rng = np.random.default_rng(7)
    frame = rng.integers(0, 256, size=(40, 30, 4), dtype=np.uint8)
    assert compute_sharpness(frame) == compute_sharpness(frame.copy())


@pytest.mark.parametrize("shape", [(2, 10), (10, 2), (0, 0)])
def test_frames_smaller_than_3x3_raise(shape):
    with pytest.raises(GeometryError):
        compute_sharpness(np.zeros((*shape, 4), dtype=np.uint8))


def test_to_luma_truncates_weighted_sum():
    frame = np.zeros((1, 1, 4), dtype=np.uint8)
    frame[0, 0, :3] = (10, 20, 30)
    # 0.299*10 + 0.587*20 + 0.114*30 = 18.15 -> 18
    assert to_luma(frame)[0, 0] == 18
