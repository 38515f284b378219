"""
Shared pytest fixtures for the SharpFrames test suite.

- override_settings: small analysis/export sizes so projection tests stay fast
- InMemoryVideoSource / make_video: a seekable video whose frames are
  generated from the timestamp, standing in for FFmpegVideoSource
"""

import asyncio
from collections.abc import Callable

import numpy as np
import pytest

from sharpframes.errors import DecodeError
from sharpframes.video.decoder import VideoSource


# ---------------------------------------------------------------------------
# Basic settings fixture: overrides env vars for tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def override_settings(monkeypatch):
    """Keep buffers tiny so 360 extraction runs in milliseconds."""
    monkeypatch.setenv("ANALYSIS_FACE_SIZE", "24")
    monkeypatch.setenv("EXPORT_FACE_SIZE", "32")
    monkeypatch.setenv("PLANAR_MAX_DIMENSION", "64")
    monkeypatch.setenv("SEEK_TIMEOUT_S", "5")
    # Clear lru_cache so each test gets fresh Settings from monkeypatched env
    from sharpframes.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings():
    from sharpframes.config import get_settings

    return get_settings()


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


def checkerboard(h: int, w: int, contrast: int = 255, cell: int = 1) -> np.ndarray:
    """RGBA checkerboard; ``contrast`` is the bright-cell value."""
    rows = np.arange(h)[:, None] // cell
    cols = np.arange(w)[None, :] // cell
    mask = (rows + cols) % 2 == 0
    frame = np.zeros((h, w, 4), dtype=np.uint8)
    frame[mask, :3] = contrast
    frame[..., 3] = 255
    return frame


def _default_frame(width: int, height: int) -> Callable[[float], np.ndarray]:
    def frame_at(t: float) -> np.ndarray:
        # Contrast cycles with the sample index so variances differ per timestamp
        contrast = 60 + 60 * (round(t * 6) % 4)
        return checkerboard(height, width, contrast=contrast, cell=2)

    return frame_at


class InMemoryVideoSource(VideoSource):
    """A fake decoded video: ``frame_at(t)`` produces the frame for time ``t``.

    Every seek is recorded.  ``fail_at`` makes seeks at or after that time
    raise ``DecodeError``.  ``concurrent_seeks`` tracks the peak number of
    overlapping seeks so tests can prove they are serialised.
    """

    def __init__(
        self,
        width: int = 64,
        height: int = 32,
        duration: float = 2.0,
        frame_at: Callable[[float], np.ndarray] | None = None,
        fail_at: float | None = None,
        seek_delay: float = 0.0,
    ) -> None:
        self.width = width
        self.height = height
        self.duration = duration
        self._frame_at = frame_at or _default_frame(width, height)
        self.fail_at = fail_at
        self.seek_delay = seek_delay

        self.seeks: list[float] = []
        self.closed = False
        self._time = 0.0
        self._frame: np.ndarray | None = None
        self._playing = False
        self._in_flight = 0
        self.concurrent_seeks = 0

    @property
    def current_time(self) -> float:
        return self._time

    @property
    def is_playing(self) -> bool:
        return self._playing

    async def seek(self, time: float) -> None:
        self._in_flight += 1
        self.concurrent_seeks = max(self.concurrent_seeks, self._in_flight)
        try:
            self.seeks.append(time)
            await asyncio.sleep(self.seek_delay)
            if self.fail_at is not None and time >= self.fail_at:
                raise DecodeError(f"synthetic failure at {time:.3f}s", time=time)
            self._frame = self._frame_at(time)
            self._time = time
        finally:
            self._in_flight -= 1

    def current_frame(self) -> np.ndarray:
        if self._frame is None:
            raise DecodeError("No frame decoded yet; seek first")
        return self._frame

    def pause(self) -> None:
        self._playing = False

    def play(self) -> None:
        self._playing = True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def make_video():
    return InMemoryVideoSource
