"""Threshold and timeline-range selection for a single view.

A frame is exported when its variance reaches the view's effective
threshold and no ``exclude`` range covers its timestamp.  Ranges are never
merged or deduplicated; the first matching range wins wherever a lookup
needs a single answer.
"""

import logging
import math
from collections.abc import Iterable, Sequence

from sharpframes.errors import ConfigurationError
from sharpframes.models import (
    RANGE_ACTIONS,
    FrameSample,
    RangeAction,
    TimelineRange,
    View,
    new_range_id,
)

logger = logging.getLogger(__name__)

# Drag gestures shorter than this are treated as clicks, not ranges
MIN_RANGE_DURATION = 0.1

_UNSET = object()


# ---------------------------------------------------------------------------
# Threshold and eligibility
# ---------------------------------------------------------------------------


def max_variance(samples: Iterable[FrameSample]) -> float:
    return max((s.variance for s in samples), default=0.0)


def effective_threshold(threshold: float, samples: Sequence[FrameSample]) -> float:
    """Clamp ``threshold`` to the highest variance observed.

    A threshold left over from a sharper video would otherwise select zero
    frames.  With no samples the configured threshold is returned as-is.
    """
    if not samples:
        return threshold
    return min(threshold, max_variance(samples))


def is_excluded(time: float, ranges: Iterable[TimelineRange]) -> bool:
    return any(r.action == "exclude" and r.covers(time) for r in ranges)


def mask_prompt_for(time: float, ranges: Iterable[TimelineRange]) -> str | None:
    """Return the prompt of the first mask_generation range covering ``time``."""
    for r in ranges:
        if r.action == "mask_generation" and r.mask_prompt and r.covers(time):
            return r.mask_prompt
    return None


def eligible_frames(view: View) -> list[FrameSample]:
    """Return the view's samples that pass the threshold and are not excluded."""
    cutoff = effective_threshold(view.threshold, view.frame_data)
    return [
        s
        for s in view.frame_data
        if s.variance >= cutoff and not is_excluded(s.time, view.ranges)
    ]


def frames_above_threshold(view: View) -> int:
    cutoff = effective_threshold(view.threshold, view.frame_data)
    return sum(1 for s in view.frame_data if s.variance >= cutoff)


def set_threshold(view: View, threshold: float) -> None:
    if not math.isfinite(threshold) or threshold < 0:
        raise ConfigurationError(f"Threshold must be a finite value >= 0, got {threshold}")
    view.threshold = threshold


# ---------------------------------------------------------------------------
# Range editing
# ---------------------------------------------------------------------------


def add_range(
    view: View,
    start: float,
    end: float,
    action: RangeAction = "none",
    mask_prompt: str | None = None,
) -> TimelineRange:
    """Append a new range to ``view`` and select it.  ``start``/``end`` may be given in either order."""
    _require_action(action)
    _require_finite_times(start, end)
    timeline_range = TimelineRange(
        id=new_range_id(),
        start=min(start, end),
        end=max(start, end),
        action=action,
        mask_prompt=mask_prompt,
    )
    view.ranges.append(timeline_range)
    view.selected_range_id = timeline_range.id
    return timeline_range


def begin_range_gesture(view: View) -> None:
    """Start a new drag on the timeline.

    A selected range that never received an action is a draft: starting a
    new gesture discards it.  Any selection is cleared.
    """
    selected = view.find_range(view.selected_range_id) if view.selected_range_id else None
    if selected is not None and selected.action == "none":
        view.ranges.remove(selected)
        logger.debug("Discarded draft range %s on view %s", selected.id, view.id)
    view.selected_range_id = None


def finish_range_gesture(view: View, start: float, end: float) -> TimelineRange | None:
    """Complete a drag; returns the new range or ``None`` if it was too short."""
    if abs(end - start) < MIN_RANGE_DURATION:
        return None
    return add_range(view, start, end)


def update_range(
    view: View,
    range_id: str,
    *,
    start: float | None = None,
    end: float | None = None,
    action: RangeAction | None = None,
    mask_prompt=_UNSET,
) -> TimelineRange:
    timeline_range = _require_range(view, range_id)
    new_start = timeline_range.start if start is None else start
    new_end = timeline_range.end if end is None else end
    _require_finite_times(new_start, new_end)
    if new_start > new_end:
        raise ConfigurationError(f"Range start {new_start} is after its end {new_end}")
    if action is not None:
        _require_action(action)
        timeline_range.action = action

    timeline_range.start = new_start
    timeline_range.end = new_end
    if mask_prompt is not _UNSET:
        timeline_range.mask_prompt = mask_prompt
    return timeline_range


def set_range_action(view: View, range_id: str, action: RangeAction) -> TimelineRange:
    """Change a range's action; any previous mask prompt is dropped."""
    return update_range(view, range_id, action=action, mask_prompt=None)


def remove_range(view: View, range_id: str) -> None:
    timeline_range = _require_range(view, range_id)
    view.ranges.remove(timeline_range)
    if view.selected_range_id == range_id:
        view.selected_range_id = None


def select_range(view: View, range_id: str | None) -> None:
    if range_id is not None:
        _require_range(view, range_id)
    view.selected_range_id = range_id


def clear_ranges(view: View) -> None:
    view.ranges.clear()
    view.selected_range_id = None


def _require_range(view: View, range_id: str) -> TimelineRange:
    timeline_range = view.find_range(range_id)
    if timeline_range is None:
        raise ConfigurationError(f"Unknown range {range_id!r} on view {view.id!r}")
    return timeline_range


def _require_action(action: str) -> None:
    if action not in RANGE_ACTIONS:
        raise ConfigurationError(
            f"Unknown range action {action!r}; expected one of {', '.join(RANGE_ACTIONS)}"
        )


def _require_finite_times(*times: float) -> None:
    if not all(math.isfinite(t) for t in times):
        raise ConfigurationError(f"Range times must be finite, got {times}")
