"""
Tests for the radiance change mask.

The drop is computed as before - after: a darker "after" image gives a
positive drop, and a drop of at least the threshold marks a blackout candidate.
"""

import numpy as np
import pytest
from conftest import make_grid, uniform_grid

from analysis_modules import compute_radiance_difference, derive_change_mask
from errors import IncompatibleGridError, ShapeMismatchError
from models import ABOVE_THRESHOLD, BELOW_THRESHOLD, NO_DATA


class TestDropDirection:
    def test_darkening_is_positive_drop(self):
        diff = compute_radiance_difference(uniform_grid(350.0), uniform_grid(100.0))
        np.testing.assert_allclose(diff.data, 250.0)

    def test_darkening_above_threshold_is_flagged(self):
        mask = derive_change_mask(uniform_grid(350.0), uniform_grid(100.0), threshold=200)
        assert (mask.classes == ABOVE_THRESHOLD).all()

    def test_brightening_is_not_flagged(self):
        mask = derive_change_mask(uniform_grid(100.0), uniform_grid(350.0), threshold=200)
        assert (mask.classes == BELOW_THRESHOLD).all()
        assert mask.above_count == 0

    def test_small_drop_is_not_flagged(self):
        mask = derive_change_mask(uniform_grid(100.0), uniform_grid(50.0), threshold=200)
        assert mask.above_count == 0


class TestThresholdBoundary:
    def test_drop_equal_to_threshold_is_above(self):
        mask = derive_change_mask(uniform_grid(300.0, shape=(1, 1)), uniform_grid(100.0, shape=(1, 1)), 200)
        assert mask.classes[0, 0] == ABOVE_THRESHOLD

    def test_drop_just_below_threshold_is_excluded(self):
        eps = 1e-6
        mask = derive_change_mask(uniform_grid(300.0, shape=(1, 1)),
                                  uniform_grid(100.0 + eps, shape=(1, 1)), 200)
        assert mask.classes[0, 0] == BELOW_THRESHOLD

    def test_threshold_is_configurable(self):
        before = uniform_grid(300.0, shape=(1, 1))
        after = uniform_grid(250.0, shape=(1, 1))
        assert derive_change_mask(before, after, threshold=50).classes[0, 0] == ABOVE_THRESHOLD
        assert derive_change_mask(before, after, threshold=51).classes[0, 0] == BELOW_THRESHOLD


class TestMonotonicity:
    def test_larger_drop_never_leaves_above_threshold(self):
        # One row of cells whose drop grows left to right; the classes must never fall back.
        after = np.full((1, 41), 100.0)
        before = after + np.linspace(0.0, 400.0, 41)
        mask = derive_change_mask(make_grid(before), make_grid(after), threshold=200)

        codes = mask.classes[0].astype(int)
        assert np.all(np.diff(codes) >= 0)
        assert codes[0] == BELOW_THRESHOLD
        assert codes[-1] == ABOVE_THRESHOLD

    @pytest.mark.parametrize("after_value", [50.0, 100.0, 150.0, 200.0])
    def test_lowering_after_value_moves_toward_above(self, after_value):
        before = uniform_grid(400.0, shape=(1, 1))
        current = derive_change_mask(before, uniform_grid(after_value, shape=(1, 1)), 200).classes[0, 0]
        darker = derive_change_mask(before, uniform_grid(after_value - 50.0, shape=(1, 1)), 200).classes[0, 0]
        assert not (current == ABOVE_THRESHOLD and darker == BELOW_THRESHOLD)


class TestNoData:
    def test_nodata_in_either_grid_propagates(self):
        before = make_grid(np.full((2, 2), 500.0), nodata_mask=[[True, False], [False, False]])
        after = make_grid(np.full((2, 2), 100.0), nodata_mask=[[False, True], [False, False]])

        mask = derive_change_mask(before, after, threshold=200)

        assert mask.classes[0, 0] == NO_DATA
        assert mask.classes[0, 1] == NO_DATA
        assert mask.classes[1, 0] == ABOVE_THRESHOLD
        assert mask.classes[1, 1] == ABOVE_THRESHOLD
        assert np.ma.getmaskarray(mask.drop)[0].all()

    def test_nodata_is_never_above_threshold(self):
        before = make_grid(np.full((3, 3), 1000.0), nodata_mask=np.ones((3, 3), dtype=bool))
        mask = derive_change_mask(before, uniform_grid(0.0, shape=(3, 3)), threshold=200)
        assert mask.above_count == 0
        assert (mask.classes == NO_DATA).all()


class TestValidation:
    def test_shape_mismatch(self):
        with pytest.raises(ShapeMismatchError) as exc_info:
            derive_change_mask(uniform_grid(300.0, shape=(10, 10)), uniform_grid(100.0, shape=(5, 10)))
        assert exc_info.value.stage == "change_mask"

    def test_extent_mismatch_with_same_shape(self):
        before = uniform_grid(300.0, left=0.0)
        after = uniform_grid(100.0, left=10.0)
        with pytest.raises(ShapeMismatchError):
            derive_change_mask(before, after)

    def test_crs_mismatch(self):
        before = uniform_grid(300.0)
        after = uniform_grid(100.0, crs="EPSG:32615")
        with pytest.raises(IncompatibleGridError):
            derive_change_mask(before, after)

    def test_inputs_are_not_mutated(self):
        before = uniform_grid(350.0)
        after = uniform_grid(100.0)
        before_copy = before.data.copy()
        after_copy = after.data.copy()

        derive_change_mask(before, after)

        np.testing.assert_array_equal(before.data, before_copy)
        np.testing.assert_array_equal(after.data, after_copy)

    def test_sub_cell_shift_in_geographic_grid(self):
        # VIIRS-like lon/lat lattice: a fifth of a cell far from the origin is still a mismatch.
        cell = 1.0 / 240
        before = uniform_grid(300.0, left=-96.0, top=30.0, cell=cell, crs="EPSG:4326")
        after = uniform_grid(100.0, left=-96.0 + 0.2 * cell, top=30.0, cell=cell, crs="EPSG:4326")
        with pytest.raises(ShapeMismatchError):
            derive_change_mask(before, after)

    def test_float_noise_in_transform_is_tolerated(self):
        cell = 1.0 / 240
        before = uniform_grid(300.0, left=-96.0, top=30.0, cell=cell, crs="EPSG:4326")
        after = uniform_grid(100.0, left=-96.0 + 1e-12, top=30.0, cell=cell, crs="EPSG:4326")
        assert derive_change_mask(before, after).above_count == 100
