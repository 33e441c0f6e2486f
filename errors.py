"""Error types for the blackout analysis pipeline.

Each exception records the pipeline stage that raised it so a failed run
reports where it stopped.

Example:
    try:
        result = compute_blackout_impacts(before_tiles, after_tiles, ...)
    except CrsMismatchError as e:
        print(f"Stage '{e.stage}' failed: {e}")
"""

from __future__ import annotations


class BlackoutAnalysisError(Exception):
    """Base class for all blackout analysis errors."""

    def __init__(self, message: str, stage: str | None = None):
        self.stage = stage
        if stage:
            message = f"[{stage}] {message}"
        super().__init__(message)


class IncompatibleGridError(BlackoutAnalysisError):
    """Raised when grids cannot be combined (CRS, resolution or alignment differ).

    Attributes:
        expected: What the first grid had (optional).
        got: What the offending grid had (optional).
    """

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        expected: str | None = None,
        got: str | None = None,
    ):
        self.expected = expected
        self.got = got
        super().__init__(message, stage=stage)


class ShapeMismatchError(IncompatibleGridError):
    """Raised when two grids that must be co-registered differ in shape or extent."""

    def __init__(self, expected_shape: tuple, actual_shape: tuple, stage: str | None = None, detail: str = ""):
        message = (
            f"Grid shape/extent mismatch:\n"
            f"  Expected: {expected_shape}\n"
            f"  Got: {actual_shape}"
        )
        if detail:
            message += f"\n{detail}"
        super().__init__(message, stage=stage, expected=str(expected_shape), got=str(actual_shape))
        self.expected_shape = expected_shape
        self.actual_shape = actual_shape


class CrsMismatchError(BlackoutAnalysisError):
    """Raised when layers do not share a CRS or a CRS transform cannot be resolved."""

    def __init__(self, message: str, stage: str | None = None, left_crs=None, right_crs=None):
        self.left_crs = left_crs
        self.right_crs = right_crs
        super().__init__(message, stage=stage)


class InvalidGeometryError(BlackoutAnalysisError):
    """Raised when a vectorized region cannot be repaired into a valid polygon."""

    def __init__(self, message: str, stage: str | None = None, region_id: int | None = None):
        self.region_id = region_id
        super().__init__(message, stage=stage)


class ConfigurationError(BlackoutAnalysisError):
    """Raised when a configuration parameter is invalid.

    Attributes:
        parameter: The problematic parameter name.
        reason: Why the configuration is invalid.
    """

    def __init__(self, parameter: str, reason: str):
        self.parameter = parameter
        self.reason = reason
        super().__init__(f"Invalid configuration for '{parameter}': {reason}")


class EmptyResultWarning(UserWarning):
    """Issued (never raised) when a stage produces zero features."""

    pass
