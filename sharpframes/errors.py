"""Error kinds raised across the analysis, projection and export pipeline.

The pure functions (projection, scoring, detection) raise these directly.
The analysis driver and export assembler catch them and decide whether to
abort the whole run or skip a single frame.
"""


class SharpFramesError(Exception):
    """Base class for every error raised by this package."""


class DecodeError(SharpFramesError):
    """Raised when a seek or frame read on the video handle fails."""

    def __init__(self, message: str, time: float | None = None) -> None:
        super().__init__(message)
        self.time = time


class GeometryError(SharpFramesError, ValueError):
    """Raised on degenerate projection or scoring input (zero-size, NaN angles)."""


class ConfigurationError(SharpFramesError, ValueError):
    """Raised when an editor configuration change is rejected."""


class ExternalFeatureError(SharpFramesError):
    """Raised when an optional external step (mask generation) fails."""


class SessionBusy(SharpFramesError):
    """Raised when a session is already running an analysis or export."""


class TooManySessions(SharpFramesError):
    """Raised when ``MAX_SESSIONS`` would be exceeded."""


class NothingToExport(SharpFramesError):
    """Raised when no frame passes the threshold and range filters."""
