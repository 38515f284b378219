"""Seekable video handle: asyncio FFmpeg subprocesses with PPM frame output.

Architecture
------------
- ``open()`` runs ffprobe once and records duration, frame size and
  frame rate.
- Every ``seek(t)`` launches a short-lived FFmpeg process that decodes the
  single frame at ``t`` and writes it to stdout as a PPM (Portable Pixmap)
  image.  PPM is self-framing: the header carries width and height, so the
  reader needs no prior configuration.
- The seek only completes once the whole frame has been read.  Callers
  ``await seek()`` and then call ``current_frame()``; reading before the
  seek lands would return the previous frame.
- Seeks are serialised by a lock, so at most one decode is ever in flight
  per handle.  A cancelled or timed-out seek kills its FFmpeg process and
  leaves ``current_time``/``current_frame`` untouched.

FFmpeg command
--------------
    ffmpeg -loglevel error -ss <t> -i <path> -frames:v 1 -f image2pipe -vcodec ppm pipe:1
"""

import asyncio
import json
import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import cv2
import numpy as np

from sharpframes.errors import DecodeError

logger = logging.getLogger(__name__)

_KILL_WAIT_S = 2.0


class VideoSource(ABC):
    """A decoded video the analysis and export paths can seek and read.

    Exactly one owner (the editor session) holds the handle and lends it to
    either playback or analysis/export, never both at once.
    """

    duration: float
    width: int
    height: int

    @property
    @abstractmethod
    def current_time(self) -> float: ...

    @property
    @abstractmethod
    def is_playing(self) -> bool: ...

    @abstractmethod
    async def seek(self, time: float) -> None:
        """Move to ``time`` seconds and return once that frame is decoded."""

    @abstractmethod
    def current_frame(self) -> np.ndarray:
        """Return the frame at ``current_time`` as an RGBA ``(H, W, 4)`` uint8 array."""

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def play(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class FFmpegVideoSource(VideoSource):
    """Decodes frames from a video file on demand via FFmpeg.

    Usage::

        video = FFmpegVideoSource("clip.mp4")
        await video.open()

        await video.seek(1.5)
        frame = video.current_frame()   # np.ndarray (H, W, 4) RGBA

        await video.close()

    Parameters
    ----------
    seek_timeout:
        Seconds to wait for a single-frame decode before raising
        ``DecodeError``.
    _probe_cmd:
        Override the full ffprobe command.  Used in tests to substitute a
        lightweight mock instead of the real binary.
    _seek_cmd:
        Override the FFmpeg command prefix; the seek position is appended
        as the final argument.  Used in tests.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        seek_timeout: float = 30.0,
        _probe_cmd: list[str] | None = None,
        _seek_cmd: list[str] | None = None,
    ) -> None:
        self.path = Path(path)
        self.duration = 0.0
        self.width = 0
        self.height = 0
        self.frame_rate = 0.0
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path
        self._seek_timeout = seek_timeout
        self._probe_cmd = _probe_cmd
        self._seek_cmd = _seek_cmd

        self._current_time = 0.0
        self._frame: np.ndarray | None = None
        self._playing = False
        self._seek_lock = asyncio.Lock()
        self._process: Any = None  # asyncio.subprocess.Process of the running seek

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> float:
        return self._current_time

    @property
    def is_playing(self) -> bool:
        return self._playing

    async def open(self) -> None:
        """Probe the file for duration, frame size and frame rate.

        Raises:
            DecodeError: If ffprobe fails or the file has no video stream.
        """
        cmd = self._probe_cmd or [
            self._ffprobe_path,
            "-v",
            "error",
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=width,height,r_frame_rate,duration:format=duration",
            "-print_format",
            "json",
            str(self.path),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DecodeError(f"Cannot run ffprobe: {exc}") from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise DecodeError(
                f"ffprobe failed for {self.path} (exit {process.returncode}): "
                f"{stderr.decode(errors='replace').strip()}"
            )

        self._apply_probe(stdout)
        logger.info(
            "Opened %s (%dx%d, %.3fs, %.3f fps)",
            self.path,
            self.width,
            self.height,
            self.duration,
            self.frame_rate,
        )

    async def seek(self, time: float) -> None:
        """Decode the frame at ``time`` and make it the current frame.

        Raises:
            DecodeError: On a non-finite time, an FFmpeg failure or when the
                decode exceeds ``seek_timeout``.
        """
        if not math.isfinite(time):
            raise DecodeError(f"Cannot seek to non-finite time {time}", time=time)
        time = max(0.0, time)

        async with self._seek_lock:
            try:
                frame = await asyncio.wait_for(
                    self._decode_at(self._decode_position(time)),
                    timeout=self._seek_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise DecodeError(
                    f"Seek to {time:.3f}s timed out after {self._seek_timeout:.1f}s",
                    time=time,
                ) from exc

            self._frame = frame
            self._current_time = time

    def current_frame(self) -> np.ndarray:
        if self._frame is None:
            raise DecodeError("No frame decoded yet; seek first")
        return self._frame

    def pause(self) -> None:
        self._playing = False

    def play(self) -> None:
        self._playing = True

    async def close(self) -> None:
        """Kill any in-flight decode and drop the cached frame."""
        await self._kill_process()
        self._frame = None
        self._playing = False
        logger.info("FFmpegVideoSource closed (%s)", self.path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply_probe(self, raw: bytes) -> None:
        try:
            info = json.loads(raw or b"{}")
            stream = (info.get("streams") or [])[0]
            self.width = int(stream["width"])
            self.height = int(stream["height"])
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise DecodeError(f"No decodable video stream in {self.path}") from exc

        duration = stream.get("duration") or (info.get("format") or {}).get("duration")
        try:
            self.duration = float(duration)
        except (TypeError, ValueError) as exc:
            raise DecodeError(f"Unknown duration for {self.path}") from exc

        self.frame_rate = _parse_rate(stream.get("r_frame_rate", ""))

    def _decode_position(self, time: float) -> float:
        """Clamp a seek at or past the end onto the final decodable frame."""
        if self.frame_rate > 0 and self.duration > 0:
            last_frame = max(0.0, self.duration - 1.0 / self.frame_rate)
            return min(time, last_frame)
        return time

    async def _decode_at(self, position: float) -> np.ndarray:
        if self._seek_cmd is not None:
            cmd = [*self._seek_cmd, f"{position:.6f}"]
        else:
            cmd = [
                self._ffmpeg_path,
                "-loglevel",
                "error",  # suppress informational output; errors still captured
                "-ss",
                f"{position:.6f}",  # input seeking: fast and frame-accurate
                "-i",
                str(self.path),
                "-frames:v",
                "1",  # decode exactly one frame
                "-f",
                "image2pipe",
                "-vcodec",
                "ppm",  # PPM is self-framing (no need to know resolution)
                "pipe:1",
            ]

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DecodeError(f"Cannot run ffmpeg: {exc}", time=position) from exc

        process = self._process
        # stderr is drained alongside stdout so a chatty FFmpeg never blocks on a full pipe
        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            frame = await self._read_ppm(process.stdout, position)
            stderr = await stderr_task
            returncode = await process.wait()
            if returncode != 0:
                raise DecodeError(
                    f"ffmpeg exited with {returncode} at {position:.3f}s: "
                    f"{stderr.decode(errors='replace').strip()}",
                    time=position,
                )
            return frame
        finally:
            await self._kill_process()
            stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)

    async def _read_ppm(self, stdout: asyncio.StreamReader, position: float) -> np.ndarray:
        """Parse one binary PPM (P6) image and return it as RGBA.

        PPM binary format::

            P6\\n
            {width} {height}\\n
            255\\n
            <width x height x 3 raw RGB bytes>
        """
        try:
            magic = (await stdout.readline()).strip()
            if not magic:
                raise DecodeError(f"No frame decoded at {position:.3f}s", time=position)
            if magic != b"P6":
                raise DecodeError(f"Unexpected PPM magic {magic!r}", time=position)

            dim_line = (await stdout.readline()).strip()
            width, height = (int(x) for x in dim_line.split())
            await stdout.readline()  # max-value line, always 255 for 8-bit output

            frame_bytes = await stdout.readexactly(width * height * 3)
        except asyncio.IncompleteReadError as exc:
            raise DecodeError(
                f"ffmpeg output ended mid-frame at {position:.3f}s", time=position
            ) from exc
        except ValueError as exc:
            raise DecodeError(f"Malformed PPM header at {position:.3f}s", time=position) from exc

        rgb = np.frombuffer(frame_bytes, dtype=np.uint8).reshape(height, width, 3)
        return cv2.cvtColor(rgb, cv2.COLOR_RGB2RGBA)

    async def _kill_process(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        # Undrained stdout can keep wait() pending after the kill; don't hang on it
        try:
            await asyncio.wait_for(process.wait(), timeout=_KILL_WAIT_S)
        except asyncio.TimeoutError:
            logger.warning("ffmpeg pid %s did not report exit after kill", process.pid)


def _parse_rate(rate: str) -> float:
    """Parse an ffprobe rational such as ``30000/1001``; 0.0 when unknown."""
    num, _, den = rate.partition("/")
    try:
        value = float(num) / float(den or 1)
    except (ValueError, ZeroDivisionError):
        return 0.0
    return value if math.isfinite(value) and value > 0 else 0.0
