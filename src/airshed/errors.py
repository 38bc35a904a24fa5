# ============================================================================
# FILE: src/airshed/errors.py
# ============================================================================


class AirshedError(Exception):
    """Base class for all errors raised by the airshed pipelines."""


class RegionSourceError(AirshedError):
    """Administrative boundary source could not provide usable regions."""


class GridError(AirshedError):
    """Base class for per-file emission grid failures."""


class GridNameError(GridError):
    """Grid filename does not follow the inventory naming pattern."""


class GridFormatError(GridError):
    """Grid file is unreadable or lacks georeferencing."""


class TrajectoryEngineError(AirshedError):
    """Base class for trajectory engine failures on a unit of work."""

    reason = "engine_failed"


class MeteorologyMissingError(TrajectoryEngineError):
    """Meteorological input files for the requested window are not in the cache."""

    reason = "no_meteorology"


class EngineFailedError(TrajectoryEngineError):
    """The engine exited abnormally or produced no trajectory output."""

    reason = "engine_failed"


class EngineTimeoutError(TrajectoryEngineError):
    """The engine did not finish within its time budget."""

    reason = "timeout"
