"""Data containers passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass

import geopandas as gpd
import numpy as np
from affine import Affine
from rasterio.coords import BoundingBox
from rasterio.crs import CRS
from shapely.geometry import box

# ChangeMask class codes
BELOW_THRESHOLD = 0
ABOVE_THRESHOLD = 1
NO_DATA = 255


@dataclass(frozen=True)
class RadianceGrid:
    """Georeferenced radiance raster. Masked cells are no-data."""

    data: np.ma.MaskedArray
    transform: Affine
    crs: CRS

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape

    @property
    def res(self) -> tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> BoundingBox:
        height, width = self.shape
        left, top = self.transform * (0, 0)
        right, bottom = self.transform * (width, height)
        return BoundingBox(min(left, right), min(top, bottom), max(left, right), max(top, bottom))

    @property
    def footprint(self):
        return box(*self.bounds)

    @property
    def nodata_mask(self) -> np.ndarray:
        return np.ma.getmaskarray(self.data)


@dataclass(frozen=True)
class ChangeMask:
    """Tri-state classification of a radiance drop.

    ``drop`` holds ``before - after`` (masked where either input was no-data);
    ``classes`` holds BELOW_THRESHOLD / ABOVE_THRESHOLD / NO_DATA codes.
    """

    classes: np.ndarray
    drop: np.ma.MaskedArray
    transform: Affine
    crs: CRS
    threshold: float

    @property
    def shape(self) -> tuple[int, int]:
        return self.classes.shape

    @property
    def above_threshold(self) -> np.ndarray:
        return self.classes == ABOVE_THRESHOLD

    @property
    def above_count(self) -> int:
        return int(self.above_threshold.sum())


@dataclass
class BlackoutResult:
    """Outputs of a full pipeline run."""

    regions: gpd.GeoDataFrame
    impacted_structures: gpd.GeoDataFrame
    impacted_tracts: gpd.GeoDataFrame
    unimpacted_tracts: gpd.GeoDataFrame
    highway_buffer: gpd.GeoDataFrame
    study_area: gpd.GeoDataFrame

    @property
    def impacted_count(self) -> int:
        return len(self.impacted_structures)
