"""
Tests for the error hierarchy.
"""

import pytest

from errors import (
    BlackoutAnalysisError,
    ConfigurationError,
    CrsMismatchError,
    EmptyResultWarning,
    IncompatibleGridError,
    InvalidGeometryError,
    ShapeMismatchError,
)


class TestErrorHierarchy:
    def test_all_errors_share_base(self):
        for cls in (IncompatibleGridError, ShapeMismatchError, CrsMismatchError,
                    InvalidGeometryError, ConfigurationError):
            assert issubclass(cls, BlackoutAnalysisError)

    def test_shape_mismatch_is_incompatible_grid(self):
        error = ShapeMismatchError((10, 10), (5, 5))
        assert isinstance(error, IncompatibleGridError)
        assert error.expected_shape == (10, 10)
        assert error.actual_shape == (5, 5)
        assert "(10, 10)" in str(error)
        assert "(5, 5)" in str(error)

    def test_stage_prefixes_message(self):
        error = CrsMismatchError("layers differ", stage="highway_exclusion")
        assert error.stage == "highway_exclusion"
        assert str(error).startswith("[highway_exclusion]")

    def test_configuration_error_fields(self):
        error = ConfigurationError("connectivity", "must be 4 or 8")
        assert error.parameter == "connectivity"
        assert "connectivity" in str(error)

    def test_empty_result_is_a_warning_not_an_error(self):
        assert issubclass(EmptyResultWarning, UserWarning)
        assert not issubclass(EmptyResultWarning, BlackoutAnalysisError)
        with pytest.warns(EmptyResultWarning):
            import warnings
            warnings.warn("nothing found", EmptyResultWarning)
