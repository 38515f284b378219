"""Analysis driver: seek, decode, project and score every sampled timestamp.

For each timestamp ``t_i = i / fps`` the driver:

1. Seeks the shared video handle and awaits the decoded frame.  The seek is
   the only suspension point where decoding happens; pixels are never read
   before it completes.
2. Derives one image per view: a downscaled full frame for planar sources,
   a cubemap face or perspective view for 360 sources.
3. Scores each image with the Laplacian-variance scorer and appends a
   ``FrameSample`` to the view, reports progress and yields to the event
   loop so other tasks keep running.

Samples are appended in increasing time order, so no sort is ever needed
downstream.  A decode or geometry error aborts the run; samples already
appended stay in place.  The pre-run playback position is always restored.
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import cv2
import numpy as np

from sharpframes.config import Settings
from sharpframes.errors import ConfigurationError, DecodeError, GeometryError
from sharpframes.models import FrameSample, Progress, View
from sharpframes.video.decoder import VideoSource
from sharpframes.video.projection import extract_cubemap_face, extract_perspective_view
from sharpframes.video.sharpness import compute_sharpness

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Progress], None]


@dataclass
class AnalysisSummary:
    timestamps: int
    views: int
    samples: int
    elapsed_s: float


def sample_times(duration: float, fps: int) -> list[float]:
    """Return ``i / fps`` for ``i = 0 .. floor(duration * fps)``.

    Both ends are inclusive: a timestamp exactly equal to ``duration`` is
    sampled, so a 2 s clip at 6 fps yields 13 timestamps.
    """
    if not math.isfinite(duration) or duration < 0:
        raise DecodeError(f"Invalid video duration {duration}")
    if fps < 1:
        raise ConfigurationError(f"Sample rate must be at least 1 fps, got {fps}")

    times = []
    for i in range(math.floor(duration * fps) + 1):
        t = i / fps
        if t > duration:
            break
        times.append(t)
    return times


def downscale_to_fit(frame: np.ndarray, max_dimension: int) -> np.ndarray:
    """Shrink ``frame`` so neither edge exceeds ``max_dimension``, keeping aspect."""
    h, w = frame.shape[:2]
    if w <= max_dimension and h <= max_dimension:
        return frame
    ratio = min(max_dimension / w, max_dimension / h)
    size = (max(1, round(w * ratio)), max(1, round(h * ratio)))
    return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)


def render_view(
    frame: np.ndarray,
    view: View,
    *,
    spherical: bool,
    size: int,
) -> np.ndarray:
    """Derive one view's image from a decoded frame.

    Planar sources return the frame unchanged; 360 sources are reprojected
    into a ``size`` x ``size`` cubemap face (when ``view.face`` is set) or a
    perspective view from ``view``'s yaw, pitch and fov.
    """
    if not spherical:
        return frame
    if view.face is not None:
        return extract_cubemap_face(frame, view.face, size)
    return extract_perspective_view(frame, view.yaw, view.pitch, view.fov, size, size)


class AnalysisDriver:
    """Runs a sharpness scan over a video for a set of views.

    Usage::

        driver = AnalysisDriver(settings)
        summary = await driver.run(video, views, fps=6, spherical=True)
        # views[i].frame_data now holds one FrameSample per timestamp
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def run(
        self,
        video: VideoSource,
        views: Sequence[View],
        *,
        fps: int,
        spherical: bool,
        on_progress: ProgressCallback | None = None,
    ) -> AnalysisSummary:
        """Replace every view's frame data with a fresh scan.

        Raises:
            DecodeError: If a seek or frame read fails.
            GeometryError: If a frame cannot be projected or scored.
        """
        if not views:
            raise ConfigurationError("Analysis needs at least one view")

        times = sample_times(video.duration, fps)
        progress = Progress(processed=0, total=len(times) * len(views))
        for view in views:
            view.frame_data = []
            view.stale = False

        original_time = video.current_time
        video.pause()
        start = time.monotonic()
        logger.info(
            "Analysis started: %d timestamps x %d views at %d fps (spherical=%s)",
            len(times),
            len(views),
            fps,
            spherical,
        )
        report_progress(on_progress, progress)

        try:
            for t in times:
                await video.seek(t)
                frame = video.current_frame()
                if not spherical:
                    frame = downscale_to_fit(frame, self._settings.planar_max_dimension)

                for view in views:
                    image = render_view(
                        frame,
                        view,
                        spherical=spherical,
                        size=self._settings.analysis_face_size,
                    )
                    variance = compute_sharpness(image)
                    view.frame_data.append(FrameSample(time=t, variance=variance))

                    progress.processed += 1
                    report_progress(on_progress, progress)
                    # One scheduling tick per score keeps the loop responsive
                    await asyncio.sleep(0)

                logger.debug("Scored t=%.3fs for %d views", t, len(views))

        except (DecodeError, GeometryError) as exc:
            logger.exception(
                "Analysis aborted after %d/%d operations: %s",
                progress.processed,
                progress.total,
                exc,
            )
            raise
        finally:
            await restore_position(video, original_time)

        elapsed = time.monotonic() - start
        logger.info(
            "Analysis finished: %d samples in %.1fs", progress.processed, elapsed
        )
        return AnalysisSummary(
            timestamps=len(times),
            views=len(views),
            samples=progress.processed,
            elapsed_s=elapsed,
        )


def report_progress(on_progress: ProgressCallback | None, progress: Progress) -> None:
    if on_progress is not None:
        on_progress(Progress(progress.processed, progress.total))


async def restore_position(video: VideoSource, original_time: float) -> None:
    """Seek back to where playback was before the run; failures are logged only."""
    try:
        await video.seek(original_time)
    except DecodeError as exc:
        logger.warning("Could not restore playback position %.3fs: %s", original_time, exc)
