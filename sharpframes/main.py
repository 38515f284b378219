import asyncio
import io
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from sharpframes.config import get_settings
from sharpframes.editor_url import build_editor_query, parse_editor_query
from sharpframes.errors import (
    ConfigurationError,
    DecodeError,
    GeometryError,
    NothingToExport,
    SessionBusy,
    TooManySessions,
)
from sharpframes.models import RangeAction, TimelineRange, View
from sharpframes.selection import (
    add_range,
    begin_range_gesture,
    effective_threshold,
    eligible_frames,
    finish_range_gesture,
    frames_above_threshold,
    is_excluded,
    remove_range,
    select_range,
    set_threshold,
    update_range,
)
from sharpframes.session import EditorSession, SessionManager
from sharpframes.video.decoder import FFmpegVideoSource, VideoSource

logger = logging.getLogger(__name__)

# Module-level singleton, initialised in lifespan, None before startup.
_manager: SessionManager | None = None


async def open_video(path: str) -> VideoSource:
    settings = get_settings()
    video = FFmpegVideoSource(
        path,
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
        seek_timeout=settings.seek_timeout_s,
    )
    await video.open()
    return video


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global _manager

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO)
    )

    _manager = SessionManager(settings)
    logger.info(
        "SessionManager ready (max_sessions=%d, fps=%d)",
        settings.max_sessions,
        settings.analysis_fps,
    )

    yield

    if _manager is not None:
        await _manager.close()
    _manager = None


app = FastAPI(
    title="SharpFrames",
    description=(
        "Sharp-frame selection for planar and 360 video. "
        "Samples a video, scores every sampled frame with Laplacian variance "
        "and exports the sharpest frames, optionally reprojected into "
        "cubemap faces or perspective views."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[Exception], int] = {
    ConfigurationError: 422,
    GeometryError: 422,
    NothingToExport: 422,
    SessionBusy: 409,
    TooManySessions: 503,
    DecodeError: 502,
}


async def _error_response(request: Request, exc: Exception) -> JSONResponse:
    status = next(
        code for kind, code in _STATUS_BY_ERROR.items() if isinstance(exc, kind)
    )
    logger.info("%s %s -> %d: %s", request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


for _kind in _STATUS_BY_ERROR:
    app.add_exception_handler(_kind, _error_response)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    path: str
    name: str | None = None


class SphericalRequest(BaseModel):
    enabled: bool


class ActiveViewRequest(BaseModel):
    view_id: str | None


class ThresholdRequest(BaseModel):
    threshold: float


class ViewUpdateRequest(BaseModel):
    name: str | None = None
    yaw: float | None = None
    pitch: float | None = None


class RangeCreateRequest(BaseModel):
    start: float
    end: float
    action: RangeAction = "none"
    mask_prompt: str | None = None


class RangeUpdateRequest(BaseModel):
    start: float | None = None
    end: float | None = None
    action: RangeAction | None = None
    mask_prompt: str | None = None


class GestureRequest(BaseModel):
    start: float
    end: float


class RangeSelectionRequest(BaseModel):
    range_id: str | None


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------


def _get_manager() -> SessionManager:
    if _manager is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _manager


def _get_session(session_id: str) -> EditorSession:
    session = _get_manager().get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _get_view(session: EditorSession, view_id: str) -> View:
    try:
        return session.get_view(view_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _range_dict(timeline_range: TimelineRange) -> dict:
    return {
        "id": timeline_range.id,
        "start": timeline_range.start,
        "end": timeline_range.end,
        "action": timeline_range.action,
        "mask_prompt": timeline_range.mask_prompt,
    }


def _view_dict(view: View) -> dict:
    return {
        "id": view.id,
        "name": view.name,
        "face": view.face,
        "yaw": view.yaw,
        "pitch": view.pitch,
        "fov": view.fov,
        "threshold": view.threshold,
        "effective_threshold": effective_threshold(view.threshold, view.frame_data),
        "frame_count": len(view.frame_data),
        "above_threshold": frames_above_threshold(view),
        "eligible": len(eligible_frames(view)),
        "stale": view.stale,
        "ranges": [_range_dict(r) for r in view.ranges],
        "selected_range_id": view.selected_range_id,
    }


def _session_dict(session: EditorSession) -> dict:
    video = session.video
    detection = session.detection
    return {
        "id": session.id,
        "video": {
            "name": session.video_name,
            "duration": video.duration if video else 0.0,
            "width": video.width if video else 0,
            "height": video.height if video else 0,
        },
        "detection": (
            {
                "is_360": detection.is_360,
                "confidence": detection.confidence,
                "reason": detection.reason,
            }
            if detection
            else None
        ),
        "is_360_enabled": session.is_360_enabled,
        "mode": session.mode,
        "custom_config": {
            "frame_count": session.custom_config.frame_count,
            "rig_pitch": session.custom_config.rig_pitch,
            "start_angle": session.custom_config.start_angle,
            "fov": session.custom_config.fov,
        },
        "fps": session.fps,
        "active_view_id": session.active_view.id,
        "views": [_view_dict(v) for v in session.analysis_views],
        **_progress_dict(session),
    }


def _progress_dict(session: EditorSession) -> dict:
    return {
        "processing": session.is_processing,
        "progress": {
            "processed": session.progress.processed,
            "total": session.progress.total,
            "percent": session.progress.percent,
        },
        "last_error": session.last_error,
    }


def _log_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background analysis failed (%s): %s", task.get_name(), exc)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@app.post("/sessions", status_code=201)
async def create_session(body: CreateSessionRequest) -> dict:
    manager = _get_manager()
    video = await open_video(body.path)
    name = body.name or Path(body.path).stem or "video"
    session = await manager.create_session(video, name)
    return _session_dict(session)


@app.get("/sessions/{session_id}")
async def get_session(session_id: str) -> dict:
    return _session_dict(_get_session(session_id))


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str) -> None:
    if not await _get_manager().close_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")


@app.get("/sessions/{session_id}/editor360")
async def editor360(session_id: str, request: Request) -> dict:
    """Apply ``mode``/``frames``/``pitch``/``angle``/``fov`` query parameters.

    Unknown or invalid parameters are ignored.  The response carries the
    canonical query string for the resulting state.
    """
    session = _get_session(session_id)
    mode, config = parse_editor_query(request.query_params)
    session.apply_url_config(mode, config)
    return {
        "query": build_editor_query(session.mode, session.custom_config),
        "session": _session_dict(session),
    }


@app.put("/sessions/{session_id}/spherical")
async def set_spherical(session_id: str, body: SphericalRequest) -> dict:
    session = _get_session(session_id)
    session.set_360_enabled(body.enabled)
    return _session_dict(session)


@app.put("/sessions/{session_id}/active-view")
async def set_active_view(session_id: str, body: ActiveViewRequest) -> dict:
    session = _get_session(session_id)
    if body.view_id is not None:
        _get_view(session, body.view_id)
    session.set_active_view(body.view_id)
    return _session_dict(session)


# ---------------------------------------------------------------------------
# Analysis and export
# ---------------------------------------------------------------------------


@app.post("/sessions/{session_id}/analysis", status_code=202)
async def start_analysis(session_id: str, fps: int | None = None) -> dict:
    session = _get_session(session_id)
    task = session.start_analysis(fps)
    task.add_done_callback(_log_task_result)
    return {"status": "started", "fps": session.fps}


@app.get("/sessions/{session_id}/progress")
async def get_progress(session_id: str) -> dict:
    return _progress_dict(_get_session(session_id))


@app.post("/sessions/{session_id}/export")
async def export_frames(session_id: str) -> StreamingResponse:
    session = _get_session(session_id)
    summary = await session.export()
    return StreamingResponse(
        io.BytesIO(summary.archive),
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{summary.filename}"',
            "X-Frames-Exported": str(summary.frames_exported),
            "X-Files-Written": str(summary.files_written),
            "X-Mask-Failures": str(summary.mask_failures),
        },
    )


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


@app.get("/sessions/{session_id}/views/{view_id}/frames")
async def get_frames(session_id: str, view_id: str) -> dict:
    view = _get_view(_get_session(session_id), view_id)
    cutoff = effective_threshold(view.threshold, view.frame_data)
    eligible = {s.time for s in eligible_frames(view)}
    return {
        "view_id": view.id,
        "threshold": view.threshold,
        "effective_threshold": cutoff,
        "stale": view.stale,
        "frames": [
            {
                "time": s.time,
                "variance": s.variance,
                "above_threshold": s.variance >= cutoff,
                "excluded": is_excluded(s.time, view.ranges),
                "eligible": s.time in eligible,
            }
            for s in view.frame_data
        ],
    }


@app.put("/sessions/{session_id}/views/{view_id}/threshold")
async def put_threshold(session_id: str, view_id: str, body: ThresholdRequest) -> dict:
    view = _get_view(_get_session(session_id), view_id)
    set_threshold(view, body.threshold)
    return _view_dict(view)


@app.put("/sessions/{session_id}/views/{view_id}")
async def put_view(session_id: str, view_id: str, body: ViewUpdateRequest) -> dict:
    session = _get_session(session_id)
    view = _get_view(session, view_id)
    if body.name is not None and not body.name.strip():
        raise ConfigurationError("View name cannot be empty")
    # A refused angle edit must leave the name untouched too
    if body.yaw is not None or body.pitch is not None:
        session.update_view_angle(view.id, yaw=body.yaw, pitch=body.pitch)
    if body.name is not None:
        session.rename_view(view.id, body.name)
    return _view_dict(view)


# ---------------------------------------------------------------------------
# Ranges
# ---------------------------------------------------------------------------


@app.post("/sessions/{session_id}/views/{view_id}/ranges", status_code=201)
async def post_range(session_id: str, view_id: str, body: RangeCreateRequest) -> dict:
    view = _get_view(_get_session(session_id), view_id)
    timeline_range = add_range(view, body.start, body.end, body.action, body.mask_prompt)
    return _range_dict(timeline_range)


@app.post("/sessions/{session_id}/views/{view_id}/ranges/gesture")
async def post_range_gesture(session_id: str, view_id: str, body: GestureRequest) -> dict:
    """Create a range from a timeline drag, discarding an unassigned draft first."""
    view = _get_view(_get_session(session_id), view_id)
    begin_range_gesture(view)
    timeline_range = finish_range_gesture(view, body.start, body.end)
    return {"range": _range_dict(timeline_range) if timeline_range else None}


@app.put("/sessions/{session_id}/views/{view_id}/ranges/selection")
async def put_range_selection(
    session_id: str, view_id: str, body: RangeSelectionRequest
) -> dict:
    view = _get_view(_get_session(session_id), view_id)
    select_range(view, body.range_id)
    return {"selected_range_id": view.selected_range_id}


@app.patch("/sessions/{session_id}/views/{view_id}/ranges/{range_id}")
async def patch_range(
    session_id: str, view_id: str, range_id: str, body: RangeUpdateRequest
) -> dict:
    view = _get_view(_get_session(session_id), view_id)
    changes = {}
    if "mask_prompt" in body.model_fields_set:
        changes["mask_prompt"] = body.mask_prompt
    elif body.action is not None:
        # A new action drops any prompt left over from the previous one
        changes["mask_prompt"] = None
    timeline_range = update_range(
        view,
        range_id,
        start=body.start,
        end=body.end,
        action=body.action,
        **changes,
    )
    return _range_dict(timeline_range)


@app.delete("/sessions/{session_id}/views/{view_id}/ranges/{range_id}", status_code=204)
async def delete_range(session_id: str, view_id: str, range_id: str) -> None:
    view = _get_view(_get_session(session_id), view_id)
    remove_range(view, range_id)


@app.get("/health")
async def health() -> dict:
    return {
        "status": "ok",
        "version": app.version,
        "active_sessions": _manager.active_session_count if _manager else 0,
    }
