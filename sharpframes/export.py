"""Export assembler: re-decode the selected frames and package them as a ZIP.

Archive layouts
---------------
- planar:  ``frame_<time>_<variance>.jpg`` at the archive root, plus an
  optional ``frame_<time>_<variance>_mask.png`` for frames covered by a
  mask_generation range.
- skybox:  ``frame_<time>/<face>.jpg``, one folder per timestamp selected
  on the active view, each holding all six faces.
- custom:  ``<view name>/frame_<time>_<variance>.jpg``, one folder per
  view, one image per timestamp selected on that view.

``<time>`` is ``m-ss-mmm`` (minutes, seconds, milliseconds).  Faces and
perspective views are re-extracted at ``export_face_size`` from the full
decoded frame, never reused from the smaller analysis buffers.

Each timestamp is decoded once, even when several views export it.
"""

import asyncio
import io
import logging
import re
import zipfile
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

import cv2
import numpy as np

from sharpframes.analysis import (
    ProgressCallback,
    render_view,
    report_progress,
    restore_position,
)
from sharpframes.config import Settings
from sharpframes.errors import ExternalFeatureError, GeometryError, NothingToExport
from sharpframes.models import EditorMode, FrameSample, Progress, View
from sharpframes.selection import eligible_frames, mask_prompt_for
from sharpframes.video.decoder import VideoSource

logger = logging.getLogger(__name__)

# (rgba_frame, prompt) -> PNG mask bytes, or None when no mask was produced
MaskGenerator = Callable[[np.ndarray, str], Awaitable[bytes | None]]


# ---------------------------------------------------------------------------
# Archive writer
# ---------------------------------------------------------------------------


class ArchiveWriter(ABC):
    @abstractmethod
    def create_folder(self, path: str) -> None: ...

    @abstractmethod
    def add_file(self, path: str, data: bytes) -> None: ...

    @abstractmethod
    def finalize(self) -> bytes: ...


class ZipArchiveWriter(ArchiveWriter):
    """Builds a deflated ZIP archive in memory."""

    def __init__(self) -> None:
        self._buffer = io.BytesIO()
        self._zip = zipfile.ZipFile(self._buffer, "w", zipfile.ZIP_DEFLATED)
        self._folders: set[str] = set()

    def create_folder(self, path: str) -> None:
        folder = path.strip("/") + "/"
        if folder not in self._folders:
            self._zip.writestr(folder, b"")
            self._folders.add(folder)

    def add_file(self, path: str, data: bytes) -> None:
        self._zip.writestr(path, data)

    def finalize(self) -> bytes:
        self._zip.close()
        return self._buffer.getvalue()


# ---------------------------------------------------------------------------
# Naming and encoding
# ---------------------------------------------------------------------------


def format_time_label(seconds: float) -> str:
    """Format ``seconds`` as ``m-ss-mmm`` for use in file and folder names."""
    total_ms = round(seconds * 1000)
    minutes, rest_ms = divmod(total_ms, 60_000)
    secs, millis = divmod(rest_ms, 1000)
    return f"{minutes}-{secs:02d}-{millis:03d}"


def frame_file_stem(sample: FrameSample) -> str:
    return f"frame_{format_time_label(sample.time)}_{round(sample.variance)}"


def encode_image(image: np.ndarray, ext: str, quality: int = 95) -> bytes | None:
    """Encode an RGB(A) image as ``.jpg`` or ``.png``; ``None`` if OpenCV refuses it."""
    if image.ndim == 3 and image.shape[2] == 4:
        code = cv2.COLOR_RGBA2BGR if ext == ".jpg" else cv2.COLOR_RGBA2BGRA
        bgr = cv2.cvtColor(image, code)
    elif image.ndim == 3:
        bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    else:
        bgr = image

    params = [cv2.IMWRITE_JPEG_QUALITY, quality] if ext == ".jpg" else []
    ok, buf = cv2.imencode(ext, bgr, params)
    if not ok:
        logger.warning("Failed to encode image as %s", ext)
        return None
    return buf.tobytes()


_UNSAFE_FOLDER_CHARS = re.compile(r'[\x00-\x1f\x7f/\\:*?"<>|]')


def _safe_folder_name(name: str) -> str:
    """Turn a user-chosen view name into a single archive path segment.

    Separators and control characters become ``_``; leading dots are
    dropped so ``.`` and ``..`` can never address outside the archive root.
    """
    cleaned = _UNSAFE_FOLDER_CHARS.sub("_", name).strip().lstrip(".").strip()
    return cleaned or "view"


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


@dataclass
class _Output:
    """One image to write for a decoded timestamp."""

    view: View
    sample: FrameSample
    path: str


@dataclass
class ExportSummary:
    archive: bytes
    filename: str
    frames_exported: int
    files_written: int
    skipped: list[str] = field(default_factory=list)
    mask_failures: int = 0


class ExportAssembler:
    """Materialises eligible frames into an archive.

    Usage::

        assembler = ExportAssembler(settings, mask_generator=my_masker)
        summary = await assembler.export(
            video, views, spherical=True, mode="skybox",
            active_view=views[0], video_name="clip",
        )
        Path(summary.filename).write_bytes(summary.archive)
    """

    def __init__(
        self,
        settings: Settings,
        mask_generator: MaskGenerator | None = None,
    ) -> None:
        self._settings = settings
        self._mask_generator = mask_generator

    async def export(
        self,
        video: VideoSource,
        views: Sequence[View],
        *,
        spherical: bool,
        mode: EditorMode,
        active_view: View,
        video_name: str,
        archive: ArchiveWriter | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExportSummary:
        """Decode, render and package every eligible frame.

        Raises:
            NothingToExport: If no frame is eligible.
            DecodeError: If a seek fails; the archive is abandoned.
        """
        if not spherical:
            jobs = self._planar_jobs(active_view)
            filename = f"{video_name}_frames.zip"
        elif mode == "skybox":
            jobs = self._skybox_jobs(views, active_view)
            filename = f"{video_name}_360_frames.zip"
        else:
            jobs = self._custom_jobs(views)
            filename = f"{video_name}_360_frames.zip"

        if not jobs:
            raise NothingToExport("No frames meet the criteria (above threshold and not excluded)")

        archive = archive or ZipArchiveWriter()
        summary = ExportSummary(archive=b"", filename=filename, frames_exported=0, files_written=0)
        progress = Progress(processed=0, total=len(jobs))
        size = self._settings.export_face_size

        original_time = video.current_time
        video.pause()
        logger.info(
            "Export started: %d timestamps (spherical=%s mode=%s)", len(jobs), spherical, mode
        )
        report_progress(on_progress, progress)

        try:
            for t in sorted(jobs):
                await video.seek(t)
                frame = video.current_frame()

                for output in jobs[t]:
                    if self._write_output(archive, frame, output, spherical, size):
                        summary.files_written += 1
                    else:
                        summary.skipped.append(output.path)

                    if not spherical:
                        await self._write_mask(archive, frame, output, summary)

                summary.frames_exported += 1
                progress.processed += 1
                report_progress(on_progress, progress)
                await asyncio.sleep(0)
        finally:
            await restore_position(video, original_time)

        summary.archive = archive.finalize()
        logger.info(
            "Export finished: %d files, %d skipped, %d mask failures (%s)",
            summary.files_written,
            len(summary.skipped),
            summary.mask_failures,
            filename,
        )
        return summary

    # ------------------------------------------------------------------
    # Job planning: timestamp -> outputs
    # ------------------------------------------------------------------

    def _planar_jobs(self, view: View) -> dict[float, list[_Output]]:
        return {
            s.time: [_Output(view, s, f"{frame_file_stem(s)}.jpg")]
            for s in eligible_frames(view)
        }

    def _skybox_jobs(
        self, views: Sequence[View], active_view: View
    ) -> dict[float, list[_Output]]:
        faces = [v for v in views if v.face is not None]
        jobs: dict[float, list[_Output]] = {}
        for sample in eligible_frames(active_view):
            folder = f"frame_{format_time_label(sample.time)}"
            jobs[sample.time] = [
                _Output(face_view, sample, f"{folder}/{face_view.face}.jpg")
                for face_view in faces
            ]
        return jobs

    def _custom_jobs(self, views: Sequence[View]) -> dict[float, list[_Output]]:
        folders = _unique_folder_names(views)
        jobs: dict[float, list[_Output]] = {}
        for view in views:
            for sample in eligible_frames(view):
                path = f"{folders[view.id]}/{frame_file_stem(sample)}.jpg"
                jobs.setdefault(sample.time, []).append(_Output(view, sample, path))
        return jobs

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write_output(
        self,
        archive: ArchiveWriter,
        frame: np.ndarray,
        output: _Output,
        spherical: bool,
        size: int,
    ) -> bool:
        """Render and add one image; geometry failures skip this image only."""
        try:
            image = render_view(frame, output.view, spherical=spherical, size=size)
        except GeometryError as exc:
            logger.warning("Skipping %s: %s", output.path, exc)
            return False

        data = encode_image(image, ".jpg", self._settings.jpeg_quality)
        if data is None:
            return False

        folder, _, _ = output.path.rpartition("/")
        if folder:
            archive.create_folder(folder)
        archive.add_file(output.path, data)
        return True

    async def _write_mask(
        self,
        archive: ArchiveWriter,
        frame: np.ndarray,
        output: _Output,
        summary: ExportSummary,
    ) -> None:
        """Best-effort mask generation; failures never abort the export."""
        prompt = mask_prompt_for(output.sample.time, output.view.ranges)
        if prompt is None or self._mask_generator is None:
            return

        try:
            mask = await self._mask_generator(frame, prompt)
        except Exception as exc:
            if not isinstance(exc, ExternalFeatureError):
                exc = ExternalFeatureError(f"{type(exc).__name__}: {exc}")
            summary.mask_failures += 1
            logger.warning(
                "Mask generation failed for frame at %.3fs (prompt=%r): %s",
                output.sample.time,
                prompt,
                exc,
            )
            return

        if mask:
            stem = output.path.removesuffix(".jpg")
            archive.add_file(f"{stem}_mask.png", mask)
            summary.files_written += 1


def _unique_folder_names(views: Sequence[View]) -> dict[str, str]:
    """Map view id -> folder name, disambiguating views that share a name."""
    names = [_safe_folder_name(v.name) for v in views]
    return {
        view.id: name if names.count(name) == 1 else f"{name} ({view.id})"
        for view, name in zip(views, names)
    }
