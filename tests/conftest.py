"""Shared pytest configuration, path setup and synthetic layers."""

import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_origin
from shapely.geometry import LineString, box

# Ensure the project root is on sys.path so the flat modules import
# regardless of how pytest is invoked.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from models import RadianceGrid  # noqa: E402

TEST_CRS = "EPSG:3083"


def make_grid(values, left=0.0, top=None, cell=1.0, crs=TEST_CRS, nodata_mask=None):
    """Build a RadianceGrid from a 2D array; `top` defaults to the row count so the grid sits at y >= 0."""
    values = np.asarray(values, dtype="float64")
    if top is None:
        top = values.shape[0] * cell
    mask = np.zeros(values.shape, dtype=bool) if nodata_mask is None else np.asarray(nodata_mask, dtype=bool)
    return RadianceGrid(
        data=np.ma.MaskedArray(values, mask=mask),
        transform=from_origin(left, top, cell, cell),
        crs=CRS.from_user_input(crs),
    )


def uniform_grid(value, shape=(10, 10), **kwargs):
    return make_grid(np.full(shape, value, dtype="float64"), **kwargs)


@pytest.fixture
def config(tmp_path):
    """BlackoutConfig pointed at a temporary directory, set up for 1-unit test grids."""
    from config import BlackoutConfig

    cfg = BlackoutConfig(base_dir=str(tmp_path))
    cfg.analysis_crs = TEST_CRS
    cfg.study_area_crs = TEST_CRS
    cfg.study_area_vertices = [(0, 0), (0, 10), (10, 10), (10, 0)]
    cfg.change_threshold = 200
    cfg.highway_buffer_distance = 1
    cfg.NUM_WORKERS = 1
    return cfg


@pytest.fixture
def far_highways():
    """A single motorway well away from the 10x10 test area."""
    return gpd.GeoDataFrame(
        {"osm_id": ["hw1"], "fclass": ["motorway"]},
        geometry=[LineString([(1000, 1000), (1100, 1000)])],
        crs=TEST_CRS,
    )


@pytest.fixture
def buildings():
    """Buildings inside, straddling and outside the 10x10 test area."""
    return gpd.GeoDataFrame(
        {
            "id": ["b1", "b2", "b3", "b4"],
            "type": ["house", None, "apartments", "residential"],
            "name": [None, None, "Oak Flats", None],
        },
        geometry=[
            box(1, 1, 2, 2),
            box(6, 6, 7, 7),
            box(4.5, 3, 5.5, 4),
            box(50, 50, 51, 51),
        ],
        crs=TEST_CRS,
    )


@pytest.fixture
def tracts():
    """Three tracts: left half, right half and one far away."""
    return gpd.GeoDataFrame(
        {
            "GEOID": ["48201000100", "48201000200", "48201000300"],
            "NAMELSAD": ["Census Tract 1", "Census Tract 2", "Census Tract 3"],
            "median_income": [42000.0, 87000.0, 61000.0],
        },
        geometry=[box(0, 0, 5, 10), box(5, 0, 10, 10), box(40, 40, 60, 60)],
        crs=TEST_CRS,
    )
