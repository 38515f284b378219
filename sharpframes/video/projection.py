"""Equirectangular reprojection: cubemap faces and free perspective views.

Conventions
-----------
- Longitude ``lon`` in [-pi, pi], latitude ``lat`` in [-pi/2, pi/2].
- ``+Z`` is the forward (yaw 0) direction, ``+X`` is right (yaw 90) and
  ``+Y`` is up.
- ``v`` is flipped so that row 0 of the equirectangular image is the north
  pole (``lat = +pi/2``).

Every extractor builds one ray per output pixel and samples the source
with bilinear interpolation.  The per-pixel work is vectorised with NumPy;
there is no shared mutable state, so extractions for different views of
the same frame may run concurrently.

Frames are ``(H, W, C)`` uint8 arrays (RGBA throughout the pipeline);
every channel, alpha included, is interpolated.
"""

import math
from dataclasses import dataclass
from typing import Literal

import numpy as np

from sharpframes.errors import ConfigurationError, GeometryError

CubemapFace = Literal["px", "nx", "py", "ny", "pz", "nz"]


@dataclass(frozen=True)
class CubemapFaceSpec:
    face: CubemapFace
    name: str
    yaw: float
    pitch: float


CUBEMAP_FACES: tuple[CubemapFaceSpec, ...] = (
    CubemapFaceSpec("pz", "Front", 0.0, 0.0),
    CubemapFaceSpec("px", "Right", 90.0, 0.0),
    CubemapFaceSpec("nz", "Back", 180.0, 0.0),
    CubemapFaceSpec("nx", "Left", 270.0, 0.0),
    CubemapFaceSpec("py", "Top", 0.0, 90.0),
    CubemapFaceSpec("ny", "Bottom", 0.0, -90.0),
)

_FACE_TAGS = frozenset(spec.face for spec in CUBEMAP_FACES)


@dataclass(frozen=True)
class ViewGeometry:
    """Yaw/pitch/fov of one virtual perspective camera, in degrees."""

    name: str
    yaw: float
    pitch: float
    fov: float


# ---------------------------------------------------------------------------
# Coordinate conversion
# ---------------------------------------------------------------------------


def spherical_to_cartesian(lon, lat):
    """Return the unit vector ``(x, y, z)`` for a longitude/latitude pair.

    Accepts scalars or NumPy arrays (element-wise).
    """
    cos_lat = np.cos(lat)
    x = cos_lat * np.sin(lon)
    y = np.sin(lat)
    z = cos_lat * np.cos(lon)
    return x, y, z


def cartesian_to_equirectangular_uv(x, y, z):
    """Return ``(u, v)`` in [0, 1] for a unit direction vector.

    Accepts scalars or NumPy arrays (element-wise).
    """
    lon = np.arctan2(x, z)
    lat = np.arcsin(np.clip(y, -1.0, 1.0))

    u = (lon / np.pi + 1.0) / 2.0
    v = (lat / (np.pi / 2.0) + 1.0) / 2.0
    return u, 1.0 - v


def normalize_yaw(yaw: float) -> float:
    """Wrap a yaw angle into [0, 360)."""
    _require_finite(yaw=yaw)
    return yaw % 360.0


def clamp_pitch(pitch: float) -> float:
    _require_finite(pitch=pitch)
    return max(-90.0, min(90.0, pitch))


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_cubemap_face(
    source: np.ndarray, face: CubemapFace, size: int
) -> np.ndarray:
    """Extract one ``size`` x ``size`` cubemap face from an equirectangular frame.

    Raises:
        GeometryError: On an empty source, an unknown face or ``size < 1``.
    """
    _validate_source(source)
    _validate_size(size, size)
    if face not in _FACE_TAGS:
        raise GeometryError(f"Unknown cubemap face: {face!r}")

    idx = np.arange(size, dtype=np.float64)
    nx = np.broadcast_to(2.0 * idx[None, :] / size - 1.0, (size, size))
    ny = np.broadcast_to(2.0 * idx[:, None] / size - 1.0, (size, size))
    one = np.ones((size, size))

    if face == "pz":
        dx, dy, dz = nx, -ny, one
    elif face == "nz":
        dx, dy, dz = -nx, -ny, -one
    elif face == "px":
        dx, dy, dz = one, -ny, -nx
    elif face == "nx":
        dx, dy, dz = -one, -ny, nx
    elif face == "py":
        dx, dy, dz = nx, one, ny
    else:  # ny
        dx, dy, dz = nx, -one, -ny

    length = np.sqrt(dx**2 + dy**2 + dz**2)
    u, v = cartesian_to_equirectangular_uv(dx / length, dy / length, dz / length)
    return _bilinear_sample(source, u, v)


def extract_all_cubemap_faces(
    source: np.ndarray, size: int
) -> dict[CubemapFace, np.ndarray]:
    """Return all six faces keyed by face tag, in ``CUBEMAP_FACES`` order."""
    return {spec.face: extract_cubemap_face(source, spec.face, size) for spec in CUBEMAP_FACES}


def extract_perspective_view(
    source: np.ndarray,
    yaw: float,
    pitch: float,
    fov: float,
    width: int,
    height: int,
) -> np.ndarray:
    """Extract a pinhole-camera view of ``width`` x ``height`` pixels.

    ``fov`` is the horizontal field of view.  Each camera ray is rotated by
    pitch about the X axis first and by yaw about the Y axis second; a
    positive pitch tilts the forward ray towards ``-Y``.  The rotation order
    and signs must match the preview exactly or exported images drift from
    the angles the user picked.

    Raises:
        GeometryError: On an empty source, non-finite angles, ``fov``
            outside (0, 180) or a non-positive output size.
    """
    _validate_source(source)
    _validate_size(width, height)
    _require_finite(yaw=yaw, pitch=pitch, fov=fov)
    if not 0.0 < fov < 180.0:
        raise GeometryError(f"fov must be in (0, 180) degrees, got {fov}")

    yaw_rad = math.radians(yaw)
    pitch_rad = math.radians(pitch)
    focal_length = width / (2.0 * math.tan(math.radians(fov) / 2.0))

    xs = np.arange(width, dtype=np.float64) - width / 2.0
    ys = height / 2.0 - np.arange(height, dtype=np.float64)
    dx = np.broadcast_to(xs[None, :], (height, width))
    dy = np.broadcast_to(ys[:, None], (height, width))

    length = np.sqrt(dx**2 + dy**2 + focal_length**2)
    ray_x = dx / length
    ray_y = dy / length
    ray_z = focal_length / length

    cos_pitch, sin_pitch = math.cos(pitch_rad), math.sin(pitch_rad)
    pitched_y = ray_y * cos_pitch - ray_z * sin_pitch
    pitched_z = ray_y * sin_pitch + ray_z * cos_pitch

    cos_yaw, sin_yaw = math.cos(yaw_rad), math.sin(yaw_rad)
    final_x = ray_x * cos_yaw + pitched_z * sin_yaw
    final_z = -ray_x * sin_yaw + pitched_z * cos_yaw

    u, v = cartesian_to_equirectangular_uv(final_x, pitched_y, final_z)
    return _bilinear_sample(source, u, v)


def generate_custom_views(
    frame_count: int, rig_pitch: float, start_angle: float, fov: float
) -> list[ViewGeometry]:
    """Return ``frame_count`` views evenly spaced in yaw from ``start_angle``.

    Deterministic: identical inputs always yield the identical sequence.

    Raises:
        ConfigurationError: If ``frame_count < 1`` or any angle is non-finite.
    """
    if isinstance(frame_count, bool) or not isinstance(frame_count, int) or frame_count < 1:
        raise ConfigurationError(f"frame_count must be a positive integer, got {frame_count!r}")
    for label, value in (("rig_pitch", rig_pitch), ("start_angle", start_angle), ("fov", fov)):
        if not math.isfinite(value):
            raise ConfigurationError(f"{label} must be finite, got {value}")

    angle_step = 360.0 / frame_count
    return [
        ViewGeometry(
            name=f"View {i + 1}",
            yaw=(start_angle + i * angle_step) % 360.0,
            pitch=rig_pitch,
            fov=fov,
        )
        for i in range(frame_count)
    ]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _bilinear_sample(source: np.ndarray, u: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Sample ``source`` at normalised ``(u, v)`` with edge-clamped bilinear weights."""
    src_h, src_w = source.shape[:2]
    src_x = u * (src_w - 1)
    src_y = v * (src_h - 1)

    x0 = np.clip(np.floor(src_x).astype(np.intp), 0, src_w - 1)
    y0 = np.clip(np.floor(src_y).astype(np.intp), 0, src_h - 1)
    x1 = np.minimum(x0 + 1, src_w - 1)
    y1 = np.minimum(y0 + 1, src_h - 1)

    fx = src_x - x0
    fy = src_y - y0
    if source.ndim == 3:
        fx = fx[..., None]
        fy = fy[..., None]

    v00 = source[y0, x0].astype(np.float64)
    v10 = source[y0, x1].astype(np.float64)
    v01 = source[y1, x0].astype(np.float64)
    v11 = source[y1, x1].astype(np.float64)

    value = (
        (1 - fx) * (1 - fy) * v00
        + fx * (1 - fy) * v10
        + (1 - fx) * fy * v01
        + fx * fy * v11
    )
    if np.issubdtype(source.dtype, np.integer):
        # Round half up, then saturate to the source range
        info = np.iinfo(source.dtype)
        value = np.clip(np.floor(value + 0.5), info.min, info.max)
    return value.astype(source.dtype)


def _validate_source(source: np.ndarray) -> None:
    if source.ndim not in (2, 3) or source.shape[0] < 1 or source.shape[1] < 1:
        raise GeometryError(f"Cannot project from an empty source of shape {source.shape}")


def _validate_size(width: int, height: int) -> None:
    if width < 1 or height < 1:
        raise GeometryError(f"Output size must be positive, got {width}x{height}")


def _require_finite(**angles: float) -> None:
    for label, value in angles.items():
        if not math.isfinite(value):
            raise GeometryError(f"{label} must be finite, got {value}")
