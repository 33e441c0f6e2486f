# analysis_modules.py
import warnings

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS
from pyproj.exceptions import CRSError, ProjError
from rasterio import features
from rasterio.transform import from_origin
from rasterstats import zonal_stats
import shapely
from shapely.geometry import Polygon, shape
from shapely.ops import unary_union

from errors import (
    ConfigurationError,
    CrsMismatchError,
    EmptyResultWarning,
    IncompatibleGridError,
    InvalidGeometryError,
    ShapeMismatchError,
)
from models import ABOVE_THRESHOLD, BELOW_THRESHOLD, NO_DATA, BlackoutResult, ChangeMask, RadianceGrid

import logging
logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

# Fraction of a cell tolerated when checking that tiles share a cell lattice
GRID_ALIGNMENT_TOLERANCE = 1e-3
# Fill value handed to zonal statistics for no-data cells
ZONAL_NODATA = -9999.0


def _require_same_crs(left, right, stage, left_name="left layer", right_name="right layer"):
    """Raise CrsMismatchError unless both layers carry the same, defined CRS."""
    if left.crs is None or right.crs is None:
        missing = left_name if left.crs is None else right_name
        raise CrsMismatchError(f"{missing} has no CRS defined.", stage=stage,
                               left_crs=left.crs, right_crs=right.crs)
    if left.crs != right.crs:
        raise CrsMismatchError(
            f"{left_name} CRS ({left.crs}) does not match {right_name} CRS ({right.crs}).",
            stage=stage, left_crs=left.crs, right_crs=right.crs
        )

def _resolve_crs(crs, stage):
    try:
        return CRS.from_user_input(crs)
    except CRSError as e:
        raise CrsMismatchError(f"Cannot resolve CRS {crs!r}: {e}", stage=stage) from e

def _to_crs(gdf, target_crs, stage):
    try:
        projected = gdf.to_crs(target_crs)
    except (CRSError, ProjError) as e:
        raise CrsMismatchError(
            f"No transform from {gdf.crs} to {target_crs}: {e}", stage=stage,
            left_crs=gdf.crs, right_crs=target_crs
        ) from e
    if len(projected) and not np.all(np.isfinite(projected.total_bounds)):
        raise CrsMismatchError(
            f"Transform from {gdf.crs} to {target_crs} produced non-finite coordinates.",
            stage=stage, left_crs=gdf.crs, right_crs=target_crs
        )
    return projected

def _polygonal_part(geom):
    """Keep only the areal part of a geometry (overlay results can carry stray lines or points)."""
    if geom is None or geom.is_empty:
        return Polygon()
    if geom.geom_type in ('Polygon', 'MultiPolygon'):
        return geom
    parts = [g for g in shapely.get_parts(geom) if g.geom_type in ('Polygon', 'MultiPolygon')]
    if not parts:
        return Polygon()
    return unary_union(parts)

def _drop_empty_polygons(gdf):
    gdf = gdf.copy()
    gdf['geometry'] = gpd.GeoSeries([_polygonal_part(geom) for geom in gdf.geometry],
                                    index=gdf.index, crs=gdf.crs)
    # Planar area is only an emptiness test, so geographic CRSs are fine here
    geoms = np.asarray(gdf.geometry.values)
    keep = ~shapely.is_empty(geoms) & (shapely.area(geoms) > 0)
    return gdf[keep].reset_index(drop=True)

def _vector_crs(raster_crs):
    """pyproj CRS for a raster CRS, keeping the EPSG identity when there is one."""
    epsg = raster_crs.to_epsg()
    if epsg is not None:
        return CRS.from_epsg(epsg)
    return CRS.from_wkt(raster_crs.to_wkt())

def _empty_regions(crs):
    return gpd.GeoDataFrame(
        {'region_id': pd.Series(dtype='int64'),
         'cell_count': pd.Series(dtype='int64'),
         'mean_drop': pd.Series(dtype='float64')},
        geometry=gpd.GeoSeries([], crs=crs), crs=crs
    )


###############################################################################
# RASTER MOSAIC
###############################################################################
def mosaic_radiance_grids(grids):
    """
    Merge adjacent radiance tiles into one grid covering their union.

    All grids must share CRS, resolution and cell lattice, and their footprints
    must form one connected area. Cells outside every tile are no-data. Where
    tiles overlap, a valid value wins over no-data; between two valid values the
    earlier tile in `grids` wins.
    """
    stage = "mosaic"
    grids = list(grids)
    if not grids:
        raise ValueError("At least one radiance grid is required for mosaicking.")
    first = grids[0]
    if len(grids) == 1:
        return RadianceGrid(data=first.data.copy(), transform=first.transform, crs=first.crs)

    for grid in grids:
        if grid.transform.b != 0 or grid.transform.d != 0 or grid.transform.e > 0:
            raise IncompatibleGridError("Tiles must be north-up without rotation.", stage=stage)
        if grid.crs != first.crs:
            raise IncompatibleGridError("Tiles have different CRS.", stage=stage,
                                        expected=str(first.crs), got=str(grid.crs))
        if not np.allclose(grid.res, first.res):
            raise IncompatibleGridError("Tiles have different resolution.", stage=stage,
                                        expected=str(first.res), got=str(grid.res))

    xres, yres = first.res
    tolerance = min(xres, yres) * GRID_ALIGNMENT_TOLERANCE
    footprint = unary_union([grid.footprint.buffer(tolerance, join_style='mitre') for grid in grids])
    if footprint.geom_type != 'Polygon':
        raise IncompatibleGridError("Tiles are not spatially adjacent.", stage=stage)

    left = min(grid.bounds.left for grid in grids)
    top = max(grid.bounds.top for grid in grids)
    right = max(grid.bounds.right for grid in grids)
    bottom = min(grid.bounds.bottom for grid in grids)
    width = int(round((right - left) / xres))
    height = int(round((top - bottom) / yres))

    data = np.zeros((height, width), dtype='float64')
    empty = np.ones((height, width), dtype=bool)
    for grid in grids:
        col_off = (grid.bounds.left - left) / xres
        row_off = (top - grid.bounds.top) / yres
        if (abs(col_off - round(col_off)) > GRID_ALIGNMENT_TOLERANCE
                or abs(row_off - round(row_off)) > GRID_ALIGNMENT_TOLERANCE):
            raise IncompatibleGridError("Tiles do not share a common cell lattice.", stage=stage,
                                        expected=str(first.transform), got=str(grid.transform))
        row, col = int(round(row_off)), int(round(col_off))
        rows, cols = grid.shape
        window_empty = empty[row:row + rows, col:col + cols]
        fill = window_empty & ~grid.nodata_mask
        data[row:row + rows, col:col + cols][fill] = np.ma.getdata(grid.data)[fill]
        window_empty[fill] = False

    transform = from_origin(left, top, xres, yres)
    logger.info(f"Mosaicked {len(grids)} tiles into a {width}x{height} grid.")
    return RadianceGrid(data=np.ma.MaskedArray(data, mask=empty), transform=transform, crs=first.crs)


###############################################################################
# CHANGE MASK
###############################################################################
def compute_radiance_difference(before, after):
    """
    Radiance drop between two co-registered grids: `before - after`.

    Positive values mean the area got darker. A cell is no-data when either
    input is no-data there.
    """
    stage = "change_mask"
    if before.crs != after.crs:
        raise IncompatibleGridError("Before and after grids have different CRS.", stage=stage,
                                    expected=str(before.crs), got=str(after.crs))
    if before.shape != after.shape:
        raise ShapeMismatchError(before.shape, after.shape, stage=stage)
    tolerance = min(before.res) * GRID_ALIGNMENT_TOLERANCE
    if not np.allclose(tuple(before.transform)[:6], tuple(after.transform)[:6], rtol=0, atol=tolerance):
        raise ShapeMismatchError(tuple(before.bounds), tuple(after.bounds), stage=stage,
                                 detail="Grids have the same shape but different extents.")
    drop = np.ma.masked_invalid(before.data - after.data)
    return RadianceGrid(data=drop, transform=before.transform, crs=before.crs)

def derive_change_mask(before, after, threshold=200):
    """
    Classify each cell by its radiance drop.

    `before - after >= threshold` is ABOVE_THRESHOLD (a blackout candidate),
    any smaller drop (or a gain) is BELOW_THRESHOLD, and cells missing in
    either grid are NO_DATA. Inputs are left untouched.
    """
    drop = compute_radiance_difference(before, after).data
    nodata = np.ma.getmaskarray(drop)
    classes = np.full(drop.shape, BELOW_THRESHOLD, dtype=np.uint8)
    classes[(np.ma.filled(drop, -np.inf) >= threshold) & ~nodata] = ABOVE_THRESHOLD
    classes[nodata] = NO_DATA
    mask = ChangeMask(classes=classes, drop=drop, transform=before.transform,
                      crs=before.crs, threshold=threshold)
    logger.info(f"Change mask: {mask.above_count} of {drop.size} cells dropped by >= {threshold}.")
    return mask


###############################################################################
# MASK VECTORIZATION
###############################################################################
def repair_region_geometry(geom, region_id=None):
    """
    Return a valid polygonal version of `geom`.

    Self-intersections are removed with make_valid; any line or point debris
    from the repair is discarded. Raises InvalidGeometryError if nothing with
    positive area is left.
    """
    if geom is None or geom.is_empty:
        raise InvalidGeometryError("Region geometry is empty.", stage="vectorize", region_id=region_id)
    if not geom.is_valid:
        geom = shapely.make_valid(geom)
    repaired = _polygonal_part(geom)
    if repaired.is_empty or repaired.area <= 0 or not repaired.is_valid:
        raise InvalidGeometryError(
            f"Region {region_id} has no valid area after repair.", stage="vectorize", region_id=region_id
        )
    return repaired

def vectorize_change_mask(mask, connectivity=8):
    """
    Turn connected ABOVE_THRESHOLD cells into region polygons.

    Each region carries `cell_count` and `mean_drop` taken from the drop grid.
    A mask with no blackout cells gives an empty layer and an EmptyResultWarning.
    """
    if connectivity not in (4, 8):
        raise ConfigurationError("connectivity", f"must be 4 or 8, got {connectivity}")
    above = mask.above_threshold
    if not above.any():
        warnings.warn("No cells exceed the change threshold; no blackout regions.", EmptyResultWarning)
        return _empty_regions(_vector_crs(mask.crs))

    records = []
    shapes = features.shapes(mask.classes, mask=above, connectivity=connectivity, transform=mask.transform)
    for region_id, (geom, _value) in enumerate(shapes, start=1):
        records.append({'region_id': region_id, 'geometry': repair_region_geometry(shape(geom), region_id)})
    regions = gpd.GeoDataFrame(records, geometry="geometry", crs=_vector_crs(mask.crs))

    stats = zonal_stats(
        list(regions.geometry),
        np.ma.filled(mask.drop, ZONAL_NODATA),
        affine=mask.transform,
        stats=['count', 'mean'],
        nodata=ZONAL_NODATA
    )
    regions['cell_count'] = [int(s['count'] or 0) for s in stats]
    regions['mean_drop'] = [s['mean'] if s['mean'] is not None else np.nan for s in stats]
    regions = regions[['region_id', 'cell_count', 'mean_drop', 'geometry']]
    logger.info(f"Vectorized {len(regions)} blackout regions ({connectivity}-connected).")
    return regions


###############################################################################
# STUDY AREA CROP AND REPROJECTION
###############################################################################
def build_study_area(vertices, crs):
    """Single-row layer holding the study polygon defined by its corner vertices."""
    crs = _resolve_crs(crs, "study_area")
    polygon = Polygon(vertices)
    if polygon.is_empty or not polygon.is_valid or polygon.area <= 0:
        raise InvalidGeometryError("Study area vertices do not form a valid polygon.", stage="study_area")
    return gpd.GeoDataFrame({'name': ['study_area']}, geometry=[polygon], crs=crs)

def crop_regions_to_study_area(regions, study_area, analysis_crs):
    """
    Clip regions to the study area, then reproject them to the analysis CRS.

    The study area is reprojected into the regions' CRS for the clip. Regions
    falling entirely outside are dropped.
    """
    stage = "crop"
    if regions.crs is None or study_area.crs is None:
        raise CrsMismatchError("Regions and study area must both have a CRS.", stage=stage,
                               left_crs=regions.crs, right_crs=study_area.crs)
    target_crs = _resolve_crs(analysis_crs, stage)
    study_geom = _to_crs(study_area, regions.crs, stage).geometry.union_all()

    cropped = regions.copy()
    cropped['geometry'] = cropped.geometry.intersection(study_geom)
    cropped = _drop_empty_polygons(cropped)
    cropped = _to_crs(cropped, target_crs, stage)
    logger.info(f"Cropped regions to study area: {len(regions)} -> {len(cropped)}.")
    if not regions.empty and cropped.empty:
        warnings.warn("No blackout regions inside the study area.", EmptyResultWarning)
    return cropped

def select_within_study_area(layer, study_area):
    """Features of `layer` that intersect the study area (study area reprojected to the layer CRS)."""
    stage = "study_area"
    if layer.crs is None or study_area.crs is None:
        raise CrsMismatchError("Layer and study area must both have a CRS.", stage=stage,
                               left_crs=layer.crs, right_crs=study_area.crs)
    study_geom = _to_crs(study_area, layer.crs, stage).geometry.union_all()
    return layer[layer.intersects(study_geom)].reset_index(drop=True)


###############################################################################
# HIGHWAY EXCLUSION
###############################################################################
def build_highway_buffer(highways, distance=200):
    """
    Dissolved buffer around all highway centerlines, as a single-row layer.

    `distance` is in the units of the highways' CRS, which must be projected.
    """
    stage = "highway_buffer"
    if highways.crs is None:
        raise CrsMismatchError("Highway layer has no CRS defined.", stage=stage)
    if highways.crs.is_geographic:
        raise CrsMismatchError(
            f"Highway buffer needs a projected CRS, got geographic {highways.crs}.", stage=stage,
            left_crs=highways.crs
        )
    if len(highways):
        buffer_union = highways.geometry.buffer(distance).union_all()
    else:
        buffer_union = Polygon()
    logger.info(f"Buffered {len(highways)} highway features by {distance}.")
    return gpd.GeoDataFrame({'buffer_distance': [distance]}, geometry=[buffer_union], crs=highways.crs)

def exclude_highway_regions(regions, highway_buffer):
    """
    Remove the highway buffer from every region.

    Regions fully inside the buffer disappear; regions partly inside keep
    only the part outside it.
    """
    stage = "highway_exclusion"
    _require_same_crs(regions, highway_buffer, stage, "regions", "highway buffer")
    buffer_geom = highway_buffer.geometry.union_all()
    filtered = regions.copy()
    if not buffer_geom.is_empty:
        filtered['geometry'] = filtered.geometry.difference(buffer_geom)
    filtered = _drop_empty_polygons(filtered)
    logger.info(f"Highway exclusion: {len(regions)} -> {len(filtered)} regions.")
    if not regions.empty and filtered.empty:
        warnings.warn("All blackout regions fall inside the highway buffer.", EmptyResultWarning)
    return filtered


###############################################################################
# STRUCTURE IMPACT JOIN
###############################################################################
def join_impacted_structures(buildings, regions):
    """
    Buildings whose footprint intersects at least one blackout region.

    Each building appears once (by `id`) however many regions it touches;
    rows are sorted by `id`.
    """
    stage = "structure_join"
    _require_same_crs(buildings, regions, stage, "buildings", "regions")
    if 'id' not in buildings.columns:
        raise KeyError("Building layer needs an 'id' column. Available columns: " + str(list(buildings.columns)))

    if buildings.empty or regions.empty:
        impacted = buildings.iloc[0:0].copy()
    else:
        joined = gpd.sjoin(buildings, regions[['geometry']], how='inner', predicate='intersects')
        impacted = joined[buildings.columns].drop_duplicates(subset='id')
    impacted = impacted.sort_values('id').reset_index(drop=True)

    logger.info(f"Impacted structures: {len(impacted)} of {len(buildings)} buildings.")
    if impacted.empty:
        warnings.warn("No buildings intersect a blackout region.", EmptyResultWarning)
    return impacted


###############################################################################
# SOCIOECONOMIC AGGREGATION
###############################################################################
def summarize_tract_impacts(tracts, impacted_structures):
    """
    Flag each tract as impacted when it intersects at least one impacted structure.

    Returns a copy of `tracts` with a boolean `impacted` column.
    """
    stage = "tract_aggregation"
    _require_same_crs(tracts, impacted_structures, stage, "tracts", "impacted structures")
    summary = tracts.copy()
    flags = np.zeros(len(summary), dtype=bool)
    if not (summary.empty or impacted_structures.empty):
        # Positional index so repeated tract labels cannot flag each other
        hits = gpd.sjoin(tracts[['geometry']].reset_index(drop=True),
                         impacted_structures[['geometry']].reset_index(drop=True),
                         how='inner', predicate='intersects')
        flags[hits.index.unique().to_numpy()] = True
    summary['impacted'] = flags
    logger.info(f"Tracts with impacted structures: {int(summary['impacted'].sum())} of {len(summary)}.")
    return summary

def partition_tracts(summary):
    """Split a tract summary into (impacted, unimpacted); each tract lands in exactly one."""
    flag = summary['impacted'].astype(bool).to_numpy()
    impacted = summary[flag]
    unimpacted = summary[~flag]
    if 'GEOID' in summary.columns:
        impacted = impacted.sort_values('GEOID')
        unimpacted = unimpacted.sort_values('GEOID')
    return impacted.reset_index(drop=True), unimpacted.reset_index(drop=True)

def describe_income_by_impact(summary):
    """Descriptive statistics of median income for impacted and unimpacted tracts."""
    status = np.where(summary['impacted'].astype(bool), 'impacted', 'unimpacted')
    income = pd.to_numeric(summary['median_income'], errors='coerce')
    stats = income.groupby(pd.Index(status, name='status')).describe()
    return stats.reindex(['impacted', 'unimpacted'])


###############################################################################
# FULL PIPELINE
###############################################################################
def compute_blackout_impacts(before_tiles, after_tiles, highways, buildings, tracts, config):
    """
    Run every stage in order, from raw tiles to the tract partitions.

    Vector layers must already be in config.analysis_crs. Any stage error
    aborts the run; empty intermediate layers flow through to empty results.
    """
    logger.info("Mosaicking before/after tiles...")
    before = mosaic_radiance_grids(before_tiles)
    after = mosaic_radiance_grids(after_tiles)

    mask = derive_change_mask(before, after, config.change_threshold)
    regions = vectorize_change_mask(mask, config.connectivity)

    study_area = build_study_area(config.study_area_vertices, config.study_area_crs)
    regions = crop_regions_to_study_area(regions, study_area, config.analysis_crs)

    highway_buffer = build_highway_buffer(highways, config.highway_buffer_distance)
    regions = exclude_highway_regions(regions, highway_buffer)

    impacted_structures = join_impacted_structures(buildings, regions)
    summary = summarize_tract_impacts(tracts, impacted_structures)
    impacted_tracts, unimpacted_tracts = partition_tracts(summary)

    return BlackoutResult(
        regions=regions,
        impacted_structures=impacted_structures,
        impacted_tracts=impacted_tracts,
        unimpacted_tracts=unimpacted_tracts,
        highway_buffer=highway_buffer,
        study_area=_to_crs(study_area, config.analysis_crs, "study_area"),
    )
