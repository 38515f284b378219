"""Round-trip the 360 editor's mode and rig config through URL query parameters.

Parameters::

    mode   skybox | custom
    frames custom frame count, 1..12
    pitch  rig pitch in degrees, -45..45
    angle  start angle in degrees
    fov    field of view in degrees, 30..120

Parsing is tolerant: a missing, malformed or out-of-range value is simply
left out of the result so the session keeps its default.  Serialising
always emits ``mode`` and, only in custom mode, the four rig values.
"""

import math
from collections.abc import Mapping
from urllib.parse import urlencode

from sharpframes.models import EDITOR_MODES, CustomConfig, EditorMode
from sharpframes.session import FOV_RANGE, MAX_FRAME_COUNT

# Narrower than the rig itself accepts: matches the editor's rig pitch control
URL_PITCH_RANGE = (-45.0, 45.0)


def parse_editor_query(
    params: Mapping[str, str],
) -> tuple[EditorMode | None, dict[str, float | int]]:
    """Return ``(mode, partial_config)`` from query parameters.

    ``partial_config`` only holds the keys that parsed to valid values and
    uses ``CustomConfig`` field names, so it can be passed straight to
    ``EditorSession.set_custom_config``.
    """
    mode = params.get("mode")
    parsed_mode = mode if mode in EDITOR_MODES else None

    config: dict[str, float | int] = {}

    frames = _parse_int(params.get("frames"))
    if frames is not None and 1 <= frames <= MAX_FRAME_COUNT:
        config["frame_count"] = frames

    pitch = _parse_float(params.get("pitch"))
    if pitch is not None and URL_PITCH_RANGE[0] <= pitch <= URL_PITCH_RANGE[1]:
        config["rig_pitch"] = pitch

    angle = _parse_float(params.get("angle"))
    if angle is not None:
        config["start_angle"] = angle % 360.0

    fov = _parse_float(params.get("fov"))
    if fov is not None and FOV_RANGE[0] <= fov <= FOV_RANGE[1]:
        config["fov"] = fov

    return parsed_mode, config


def build_editor_query(mode: EditorMode, config: CustomConfig) -> str:
    params = {"mode": mode}
    if mode == "custom":
        params["frames"] = str(config.frame_count)
        params["pitch"] = _format_number(config.rig_pitch)
        params["angle"] = _format_number(config.start_angle)
        params["fov"] = _format_number(config.fov)
    return urlencode(params)


def _parse_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _parse_float(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _format_number(value: float) -> str:
    # 90.0 -> "90", 22.5 -> "22.5"
    return str(int(value)) if float(value).is_integer() else repr(float(value))
