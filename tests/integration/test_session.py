"""Integration tests for sharpframes/session.py."""

import asyncio

import pytest

from sharpframes.errors import ConfigurationError, DecodeError, SessionBusy, TooManySessions
from sharpframes.models import FrameSample
from sharpframes.selection import add_range
from sharpframes.session import EditorSession, SessionManager


@pytest.fixture()
def session(settings):
    return EditorSession("sess-1", settings)


async def _loaded(session, make_video, **kwargs):
    await session.load_video(make_video(**kwargs), name="clip")
    return session


# ---------------------------------------------------------------------------
# Defaults and loading
# ---------------------------------------------------------------------------


def test_defaults(session):
    assert session.mode == "skybox"
    assert [v.id for v in session.views] == [
        "skybox_pz",
        "skybox_px",
        "skybox_nz",
        "skybox_nx",
        "skybox_py",
        "skybox_ny",
    ]
    assert session.views[0].name == "PZ (Front)"
    assert session.active_view_id == "skybox_pz"
    assert session.fps == 6
    assert (session.custom_config.frame_count, session.custom_config.fov) == (4, 90.0)
    assert all(v.threshold == 300.0 for v in session.views)


async def test_load_video_runs_detection(session, make_video):
    await _loaded(session, make_video, width=3840, height=1920)
    assert session.detection.is_360
    assert session.detection.confidence == "high"
    assert session.is_360_enabled


async def test_planar_video_uses_single_full_frame_view(session, make_video):
    await _loaded(session, make_video, width=1920, height=1080)
    assert not session.is_360_enabled
    assert [v.id for v in session.analysis_views] == ["full"]
    assert session.active_view.id == "full"


async def test_override_wins_over_detection(session, make_video):
    await _loaded(session, make_video, width=1920, height=1080)
    session.set_360_enabled(True)
    assert session.is_360_enabled
    assert len(session.analysis_views) == 6


async def test_loading_new_video_resets_state(session, make_video):
    first = make_video(width=64, height=32)
    await session.load_video(first, name="first")
    session.set_360_enabled(False)
    session.views[0].frame_data = [FrameSample(0.0, 1.0)]
    add_range(session.views[0], 0.0, 1.0, action="exclude")

    second = make_video(width=64, height=32)
    await session.load_video(second, name="second")

    assert first.closed
    assert session.video is second
    assert session.video_name == "second"
    assert session.is_360_enabled  # override reset, detection applies again
    assert session.views[0].frame_data == []
    assert session.views[0].ranges == []


# ---------------------------------------------------------------------------
# Mode and configuration
# ---------------------------------------------------------------------------


def test_switch_to_custom_mode_generates_rig(session):
    session.set_editor_mode("custom")
    assert [v.id for v in session.views] == ["custom_0", "custom_1", "custom_2", "custom_3"]
    assert [v.yaw for v in session.views] == [0, 90, 180, 270]
    assert session.active_view_id == "custom_0"


def test_unknown_mode_raises(session):
    with pytest.raises(ConfigurationError):
        session.set_editor_mode("cylinder")
    assert session.mode == "skybox"


def test_custom_config_regenerates_only_in_custom_mode(session):
    skybox_views = session.views
    session.set_custom_config(frame_count=6)
    assert session.views is skybox_views
    assert session.custom_config.frame_count == 6

    session.set_editor_mode("custom")
    assert len(session.views) == 6
    session.set_custom_config(start_angle=30.0, rig_pitch=-10.0)
    assert [v.yaw for v in session.views] == pytest.approx([30, 90, 150, 210, 270, 330])
    assert all(v.pitch == -10.0 for v in session.views)


@pytest.mark.parametrize(
    "update",
    [
        {"frame_count": 0},
        {"frame_count": 13},
        {"fov": 20.0},
        {"fov": 121.0},
        {"rig_pitch": 95.0},
        {"start_angle": float("inf")},
    ],
)
def test_invalid_custom_config_leaves_views_unchanged(session, update):
    session.set_editor_mode("custom")
    before = list(session.views)
    with pytest.raises(ConfigurationError):
        session.set_custom_config(**update)
    assert session.views == before
    assert session.custom_config.frame_count == 4


def test_regeneration_discards_analysis_data(session):
    session.set_editor_mode("custom")
    session.views[0].frame_data = [FrameSample(0.0, 5.0)]
    session.set_custom_config(fov=100.0)
    assert session.views[0].frame_data == []
    assert session.views[0].fov == 100.0


def test_set_fps_accepts_menu_values_only(session):
    session.set_fps(12)
    assert session.fps == 12
    with pytest.raises(ConfigurationError):
        session.set_fps(5)


def test_rename_and_activate_view(session):
    session.rename_view("skybox_px", "  East wall ")
    session.set_active_view("skybox_px")
    assert session.get_view("skybox_px").name == "East wall"
    assert session.active_view_id == "skybox_px"
    with pytest.raises(ConfigurationError):
        session.set_active_view("nope")


def test_angle_edit_in_custom_mode_wraps_and_clamps(session):
    session.set_editor_mode("custom")
    view = session.update_view_angle("custom_1", yaw=-30.0, pitch=120.0)
    assert view.yaw == 330.0
    assert view.pitch == 90.0
    assert not view.stale


def test_angle_edit_after_analysis_marks_view_stale(session):
    session.set_editor_mode("custom")
    session.views[2].frame_data = [FrameSample(0.0, 5.0)]
    view = session.update_view_angle("custom_2", yaw=200.0)
    assert view.stale
    assert view.frame_data == [FrameSample(0.0, 5.0)]
    assert not session.views[0].stale


def test_angle_edit_rejected_in_skybox_mode(session):
    with pytest.raises(ConfigurationError):
        session.update_view_angle("skybox_pz", yaw=10.0)


def test_apply_url_config_sets_mode_then_rig(session):
    session.apply_url_config("custom", {"frame_count": 3, "fov": 60.0})
    assert session.mode == "custom"
    assert [v.fov for v in session.views] == [60.0, 60.0, 60.0]


# ---------------------------------------------------------------------------
# Analysis and export
# ---------------------------------------------------------------------------


async def test_run_analysis_fills_every_view(session, make_video):
    await _loaded(session, make_video, width=64, height=32, duration=1.0)
    summary = await session.run_analysis(fps=3)
    assert summary.timestamps == 4
    assert all(len(v.frame_data) == 4 for v in session.views)
    assert not session.is_processing
    assert session.progress.total == 0


async def test_new_analysis_cancels_running_one(session, make_video):
    video = make_video(width=64, height=32, duration=2.0, seek_delay=0.01)
    await session.load_video(video, name="clip")

    first = session.start_analysis()
    await asyncio.sleep(0.03)
    second = session.start_analysis(fps=3)
    summary = await second

    assert first.cancelled()
    assert summary.timestamps == 7
    assert all(len(v.frame_data) == 7 for v in session.views)
    assert video.concurrent_seeks == 1


async def test_failed_analysis_records_error(session, make_video):
    await _loaded(session, make_video, width=64, height=32, duration=1.0, fail_at=0.5)
    with pytest.raises(DecodeError):
        await session.run_analysis()
    assert "synthetic failure" in session.last_error
    assert not session.is_processing


async def test_mode_change_rejected_while_analysing(session, make_video):
    await _loaded(session, make_video, width=64, height=32, duration=1.0, seek_delay=0.01)
    task = session.start_analysis()
    await asyncio.sleep(0)
    with pytest.raises(SessionBusy):
        session.set_editor_mode("custom")
    await task


async def test_spherical_override_rejected_while_analysing(session, make_video):
    await _loaded(session, make_video, width=64, height=32, duration=1.0, seek_delay=0.01)
    task = session.start_analysis()
    await asyncio.sleep(0)
    with pytest.raises(SessionBusy):
        session.set_360_enabled(False)
    await task
    assert session.is_360_enabled
    assert all(len(v.frame_data) == 7 for v in session.views)


async def test_export_after_analysis(session, make_video):
    await _loaded(session, make_video, width=64, height=32, duration=1.0)
    await session.run_analysis(fps=3)
    summary = await session.export()
    assert summary.filename == "clip_360_frames.zip"
    assert summary.frames_exported >= 1
    assert not session.is_processing


async def test_operations_without_video_raise(session):
    with pytest.raises(ConfigurationError):
        session.start_analysis()


async def test_close_releases_video(session, make_video):
    video = make_video()
    await session.load_video(video)
    await session.close()
    assert video.closed
    assert session.video is None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


async def test_manager_creates_and_closes_sessions(settings, make_video):
    manager = SessionManager(settings)
    session = await manager.create_session(make_video(), "clip")
    assert manager.get(session.id) is session
    assert manager.active_session_count == 1

    assert await manager.close_session(session.id)
    assert manager.get(session.id) is None
    assert not await manager.close_session(session.id)


async def test_manager_enforces_capacity(monkeypatch, make_video):
    monkeypatch.setenv("MAX_SESSIONS", "1")
    from sharpframes.config import get_settings

    get_settings.cache_clear()
    manager = SessionManager(get_settings())
    await manager.create_session(make_video())

    rejected = make_video()
    with pytest.raises(TooManySessions):
        await manager.create_session(rejected)
    assert rejected.closed
    await manager.close()
    assert manager.active_session_count == 0
