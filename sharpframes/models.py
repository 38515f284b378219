import uuid
from dataclasses import dataclass, field
from typing import Literal, get_args

from sharpframes.video.projection import CubemapFace

RangeAction = Literal["exclude", "mask_generation", "highlight", "none"]
RANGE_ACTIONS: tuple[str, ...] = get_args(RangeAction)

EditorMode = Literal["skybox", "custom"]
EDITOR_MODES: tuple[str, ...] = get_args(EditorMode)


@dataclass(frozen=True)
class FrameSample:
    """Sharpness score of one sampled frame for one view."""

    time: float  # seconds from the start of the video
    variance: float  # Laplacian variance, >= 0


@dataclass
class TimelineRange:
    """A user-drawn time span on one view's timeline."""

    id: str
    start: float
    end: float
    action: RangeAction = "none"
    # Free-text prompt, only meaningful for mask_generation ranges
    mask_prompt: str | None = None

    def covers(self, time: float) -> bool:
        """True if ``time`` lies inside the range, both ends inclusive."""
        return self.start <= time <= self.end


def new_range_id() -> str:
    return f"range_{uuid.uuid4().hex[:12]}"


@dataclass
class View:
    """One camera into the source: the full frame, a cubemap face or a perspective view."""

    id: str
    name: str
    yaw: float = 0.0
    pitch: float = 0.0
    fov: float = 90.0
    face: CubemapFace | None = None  # set for fixed skybox faces
    threshold: float = 300.0
    frame_data: list[FrameSample] = field(default_factory=list)
    ranges: list[TimelineRange] = field(default_factory=list)
    selected_range_id: str | None = None
    # Set when the geometry is edited after analysis; frame_data is then
    # scored against the old angles until the next run.
    stale: bool = False

    def find_range(self, range_id: str) -> TimelineRange | None:
        return next((r for r in self.ranges if r.id == range_id), None)


@dataclass
class CustomConfig:
    """Rig layout for custom mode: ``frame_count`` views evenly spaced in yaw."""

    frame_count: int = 4
    rig_pitch: float = 0.0
    start_angle: float = 0.0
    fov: float = 90.0


@dataclass
class Progress:
    processed: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.processed * 100 / self.total)
