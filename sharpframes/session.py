"""Editor sessions: the single owner of a video handle and its views.

One ``SessionManager`` holds every open ``EditorSession``.  A session:

1. Owns the decoded-video handle and releases it on ``close()`` or when a
   new video is loaded.
2. Holds the view set for the current editor mode (six skybox faces or
   ``frame_count`` custom views) plus a single full-frame view used when
   the source is treated as planar.
3. Runs at most one analysis or export at a time.  Starting a new analysis
   cancels the running one and waits for it to release the handle first,
   so two runs never seek the same handle concurrently.
"""

import asyncio
import logging
import math
import uuid
from dataclasses import asdict

from sharpframes.analysis import AnalysisDriver, AnalysisSummary
from sharpframes.config import Settings
from sharpframes.errors import ConfigurationError, SessionBusy, TooManySessions
from sharpframes.export import ExportAssembler, ExportSummary, MaskGenerator
from sharpframes.models import EDITOR_MODES, CustomConfig, EditorMode, Progress, View
from sharpframes.video.decoder import VideoSource
from sharpframes.video.detection import Detection360Result, detect_equirectangular
from sharpframes.video.projection import (
    CUBEMAP_FACES,
    clamp_pitch,
    generate_custom_views,
    normalize_yaw,
)

logger = logging.getLogger(__name__)

FPS_CHOICES = (3, 6, 12)
MAX_FRAME_COUNT = 12
FOV_RANGE = (30.0, 120.0)
PITCH_RANGE = (-90.0, 90.0)

PLANAR_VIEW_ID = "full"


# ---------------------------------------------------------------------------
# View factories
# ---------------------------------------------------------------------------


def create_skybox_views(threshold: float) -> list[View]:
    return [
        View(
            id=f"skybox_{spec.face}",
            name=f"{spec.face.upper()} ({spec.name})",
            yaw=spec.yaw,
            pitch=spec.pitch,
            fov=90.0,
            face=spec.face,
            threshold=threshold,
        )
        for spec in CUBEMAP_FACES
    ]


def create_custom_views(config: CustomConfig, threshold: float) -> list[View]:
    geometries = generate_custom_views(
        config.frame_count, config.rig_pitch, config.start_angle, config.fov
    )
    return [
        View(
            id=f"custom_{i}",
            name=g.name,
            yaw=g.yaw,
            pitch=g.pitch,
            fov=g.fov,
            threshold=threshold,
        )
        for i, g in enumerate(geometries)
    ]


def create_planar_view(threshold: float) -> View:
    return View(id=PLANAR_VIEW_ID, name="Full frame", threshold=threshold)


def validate_custom_config(config: CustomConfig) -> None:
    """Reject a rig layout the editor cannot build.

    Raises:
        ConfigurationError: If any field is non-finite or out of bounds.
    """
    count = config.frame_count
    if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_FRAME_COUNT:
        raise ConfigurationError(
            f"frame_count must be an integer in 1..{MAX_FRAME_COUNT}, got {count!r}"
        )
    for label, value in (
        ("rig_pitch", config.rig_pitch),
        ("start_angle", config.start_angle),
        ("fov", config.fov),
    ):
        if not math.isfinite(value):
            raise ConfigurationError(f"{label} must be finite, got {value}")
    if not FOV_RANGE[0] <= config.fov <= FOV_RANGE[1]:
        raise ConfigurationError(
            f"fov must be within {FOV_RANGE[0]:g}..{FOV_RANGE[1]:g}, got {config.fov}"
        )
    if not PITCH_RANGE[0] <= config.rig_pitch <= PITCH_RANGE[1]:
        raise ConfigurationError(
            f"rig_pitch must be within {PITCH_RANGE[0]:g}..{PITCH_RANGE[1]:g}, "
            f"got {config.rig_pitch}"
        )


# ---------------------------------------------------------------------------
# Editor session
# ---------------------------------------------------------------------------


class EditorSession:
    """State of one editing session over one loaded video.

    Usage::

        session = EditorSession("abc", settings)
        await session.load_video(video, name="clip")
        await session.run_analysis()
        summary = await session.export()
        await session.close()
    """

    def __init__(
        self,
        session_id: str,
        settings: Settings,
        mask_generator: MaskGenerator | None = None,
    ) -> None:
        self.id = session_id
        self._settings = settings
        self._analysis = AnalysisDriver(settings)
        self._exporter = ExportAssembler(settings, mask_generator)

        self.video: VideoSource | None = None
        self.video_name = "video"
        self.detection: Detection360Result | None = None
        self._spherical_override: bool | None = None

        self.mode: EditorMode = "skybox"
        self.custom_config = CustomConfig()
        self.views: list[View] = create_skybox_views(settings.default_threshold)
        self.planar_view = create_planar_view(settings.default_threshold)
        self.active_view_id: str | None = self.views[0].id
        self.fps: int = settings.analysis_fps

        self.progress = Progress()
        self.last_error: str | None = None
        self._analysis_task: asyncio.Task | None = None
        self._exporting = False

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def is_360_enabled(self) -> bool:
        """The explicit override when set, otherwise the detector's verdict."""
        if self._spherical_override is not None:
            return self._spherical_override
        return self.detection.is_360 if self.detection else False

    @property
    def is_processing(self) -> bool:
        running = self._analysis_task is not None and not self._analysis_task.done()
        return running or self._exporting

    @property
    def analysis_views(self) -> list[View]:
        return self.views if self.is_360_enabled else [self.planar_view]

    def get_view(self, view_id: str) -> View:
        if view_id == self.planar_view.id:
            return self.planar_view
        for view in self.views:
            if view.id == view_id:
                return view
        raise ConfigurationError(f"Unknown view {view_id!r}")

    @property
    def active_view(self) -> View:
        if not self.is_360_enabled:
            return self.planar_view
        if self.active_view_id is None:
            return self.views[0]
        return self.get_view(self.active_view_id)

    # ------------------------------------------------------------------
    # Video lifecycle
    # ------------------------------------------------------------------

    async def load_video(self, video: VideoSource, name: str = "video") -> Detection360Result:
        """Adopt ``video`` as the session's handle, releasing any previous one.

        All analysis results and ranges are dropped, and the explicit 360
        override is reset so the new video's detection applies.
        """
        await self._cancel_analysis()
        if self.video is not None and self.video is not video:
            await self.video.close()

        self.video = video
        self.video_name = name
        self.detection = detect_equirectangular(video.width, video.height)
        self._spherical_override = None
        for view in [*self.views, self.planar_view]:
            view.frame_data = []
            view.ranges = []
            view.selected_range_id = None
            view.stale = False
        self.progress = Progress()
        self.last_error = None

        logger.info(
            "Session %s loaded %s (%dx%d, %.2fs) 360=%s (%s confidence)",
            self.id,
            name,
            video.width,
            video.height,
            video.duration,
            self.detection.is_360,
            self.detection.confidence,
        )
        return self.detection

    async def close(self) -> None:
        await self._cancel_analysis()
        if self.video is not None:
            await self.video.close()
            self.video = None

    # ------------------------------------------------------------------
    # Mode and configuration
    # ------------------------------------------------------------------

    def set_360_enabled(self, enabled: bool) -> None:
        self._require_idle()
        self._spherical_override = enabled

    def set_editor_mode(self, mode: str) -> None:
        """Switch editor mode, regenerating the view set wholesale."""
        if mode not in EDITOR_MODES:
            raise ConfigurationError(
                f"Unknown editor mode {mode!r}; expected one of {', '.join(EDITOR_MODES)}"
            )
        self._require_idle()
        self.mode = mode
        self._regenerate_views()

    def set_custom_config(
        self,
        *,
        frame_count: int | None = None,
        rig_pitch: float | None = None,
        start_angle: float | None = None,
        fov: float | None = None,
    ) -> CustomConfig:
        """Merge a partial rig update; views are rebuilt only in custom mode.

        The update is validated as a whole before anything changes, so a
        rejected update leaves the previous config and views untouched.
        """
        updates = {
            "frame_count": frame_count,
            "rig_pitch": rig_pitch,
            "start_angle": start_angle,
            "fov": fov,
        }
        merged = CustomConfig(
            **{
                **asdict(self.custom_config),
                **{k: v for k, v in updates.items() if v is not None},
            }
        )
        validate_custom_config(merged)
        self._require_idle()

        self.custom_config = merged
        if self.mode == "custom":
            self._regenerate_views()
        return merged

    def set_fps(self, fps: int) -> None:
        if fps not in FPS_CHOICES:
            raise ConfigurationError(
                f"Unsupported sample rate {fps}; choose one of {FPS_CHOICES}"
            )
        self.fps = fps

    def set_active_view(self, view_id: str | None) -> None:
        if view_id is not None:
            self.get_view(view_id)
        self.active_view_id = view_id

    def rename_view(self, view_id: str, name: str) -> View:
        view = self.get_view(view_id)
        if not name.strip():
            raise ConfigurationError("View name cannot be empty")
        view.name = name.strip()
        return view

    def update_view_angle(
        self, view_id: str, *, yaw: float | None = None, pitch: float | None = None
    ) -> View:
        """Move one custom view.  Existing frame data is kept but marked stale."""
        if self.mode != "custom":
            raise ConfigurationError("View angles can only be edited in custom mode")
        view = self.get_view(view_id)
        if view.face is not None or view is self.planar_view:
            raise ConfigurationError(f"View {view_id!r} has fixed geometry")
        for label, value in (("yaw", yaw), ("pitch", pitch)):
            if value is not None and not math.isfinite(value):
                raise ConfigurationError(f"{label} must be finite, got {value}")

        if yaw is not None:
            view.yaw = normalize_yaw(yaw)
        if pitch is not None:
            view.pitch = clamp_pitch(pitch)
        if view.frame_data:
            view.stale = True
            logger.info(
                "View %s moved after analysis; its frame data is stale until re-run",
                view.id,
            )
        return view

    def apply_url_config(
        self, mode: EditorMode | None, config: dict[str, float | int]
    ) -> None:
        """Apply a parsed editor query: mode first, then the rig config."""
        if mode is not None:
            self.set_editor_mode(mode)
        if config:
            self.set_custom_config(**config)

    def _regenerate_views(self) -> None:
        threshold = self._settings.default_threshold
        if self.mode == "skybox":
            self.views = create_skybox_views(threshold)
        else:
            self.views = create_custom_views(self.custom_config, threshold)
        self.active_view_id = self.views[0].id
        logger.debug("Session %s regenerated %d %s views", self.id, len(self.views), self.mode)

    # ------------------------------------------------------------------
    # Analysis and export
    # ------------------------------------------------------------------

    def start_analysis(self, fps: int | None = None) -> asyncio.Task:
        """Launch analysis in the background and return its task.

        A running analysis is cancelled first; the new run only starts
        seeking once the old one has released the handle.
        """
        video = self._require_video()
        if self._exporting:
            raise SessionBusy(f"Session {self.id} is exporting")
        if fps is not None:
            self.set_fps(fps)

        previous = self._analysis_task
        self._analysis_task = asyncio.create_task(
            self._analysis_run(video, previous),
            name=f"analysis-{self.id[:8]}",
        )
        return self._analysis_task

    async def run_analysis(self, fps: int | None = None) -> AnalysisSummary:
        return await self.start_analysis(fps)

    async def _analysis_run(
        self, video: VideoSource, previous: asyncio.Task | None
    ) -> AnalysisSummary:
        if previous is not None and not previous.done():
            previous.cancel()
            await asyncio.gather(previous, return_exceptions=True)

        views = self.analysis_views
        self.progress = Progress()
        self.last_error = None
        try:
            return await self._analysis.run(
                video,
                views,
                fps=self.fps,
                spherical=self.is_360_enabled,
                on_progress=self._set_progress,
            )
        except asyncio.CancelledError:
            logger.info("Session %s analysis cancelled", self.id)
            raise
        except Exception as exc:
            self.last_error = str(exc)
            raise
        finally:
            self.progress = Progress()

    async def export(self) -> ExportSummary:
        """Build the archive for the current selection.

        Raises:
            SessionBusy: If an analysis or another export is running.
            NothingToExport: If no frame is eligible.
        """
        video = self._require_video()
        self._require_idle()
        self._exporting = True
        self.last_error = None
        try:
            return await self._exporter.export(
                video,
                self.analysis_views,
                spherical=self.is_360_enabled,
                mode=self.mode,
                active_view=self.active_view,
                video_name=self.video_name,
                on_progress=self._set_progress,
            )
        except Exception as exc:
            self.last_error = str(exc)
            raise
        finally:
            self._exporting = False
            self.progress = Progress()

    def _set_progress(self, progress: Progress) -> None:
        self.progress = progress

    async def _cancel_analysis(self) -> None:
        task, self._analysis_task = self._analysis_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _require_video(self) -> VideoSource:
        if self.video is None:
            raise ConfigurationError(f"Session {self.id} has no video loaded")
        return self.video

    def _require_idle(self) -> None:
        if self.is_processing:
            raise SessionBusy(f"Session {self.id} is busy")


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Registry of open editor sessions.

    Usage::

        manager = SessionManager(settings)
        session = await manager.create_session(video, name="clip")
        ...
        await manager.close_session(session.id)
        await manager.close()
    """

    def __init__(
        self,
        settings: Settings,
        mask_generator: MaskGenerator | None = None,
    ) -> None:
        self._settings = settings
        self._mask_generator = mask_generator
        self._sessions: dict[str, EditorSession] = {}
        self._lock = asyncio.Lock()

    @property
    def active_session_count(self) -> int:
        return len(self._sessions)

    async def create_session(self, video: VideoSource, name: str = "video") -> EditorSession:
        """Register a new session around an opened video.

        Raises:
            TooManySessions: If ``max_sessions`` would be exceeded.  The
                video handle is closed before raising.
        """
        async with self._lock:
            if len(self._sessions) >= self._settings.max_sessions:
                await video.close()
                raise TooManySessions(
                    f"Cannot open session: max {self._settings.max_sessions} sessions"
                )
            session = EditorSession(uuid.uuid4().hex, self._settings, self._mask_generator)
            self._sessions[session.id] = session

        await session.load_video(video, name)
        logger.info("Session opened: %s (%s)", session.id, name)
        return session

    def get(self, session_id: str) -> EditorSession | None:
        return self._sessions.get(session_id)

    async def close_session(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)

        if session is None:
            logger.debug("close_session called for unknown session: %s", session_id)
            return False

        await session.close()
        logger.info("Session closed: %s", session_id)
        return True

    async def close(self) -> None:
        """Close every open session."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            await session.close()

        if sessions:
            logger.info("SessionManager shut down (%d sessions closed)", len(sessions))
