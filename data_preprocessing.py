# data_preprocessing.py
import logging
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio

from analysis_modules import _to_crs
from errors import CrsMismatchError
from models import RadianceGrid

logger = logging.getLogger(__name__)

def print_dataset_info(name, data):
    print(f"\n=== {name} Dataset ===")
    if isinstance(data, gpd.GeoDataFrame):
        print("\nColumns:")
        for col in data.columns:
            print(f"- {col}")
        print("\nCRS Information:")
        print(data.crs)
        print(f"Number of features: {len(data)}")
    elif isinstance(data, RadianceGrid):
        print("\nRaster Summary:")
        print(f"Width: {data.shape[1]}")
        print(f"Height: {data.shape[0]}")
        print(f"Resolution: {data.res}")
        print(f"Bounds: {data.bounds}")
        print(f"No-data cells: {int(data.nodata_mask.sum())}")
        print("\nCRS Information:")
        print(data.crs)
    else:
        print("No data loaded or invalid data format.")

###############################################################################
# RASTER INPUTS
###############################################################################
def load_radiance_tile(file_path, nodata=None):
    """
    Read band 1 of a radiance tile into a RadianceGrid.

    Cells equal to the tile's nodata value (or the `nodata` override) and
    non-finite cells are masked.
    """
    with rasterio.open(file_path) as src:
        if src.crs is None:
            raise CrsMismatchError(f"{Path(file_path).name} has no CRS defined.", stage="load")
        data = src.read(1, masked=True).astype('float64')
        if nodata is not None:
            data = np.ma.masked_equal(data.filled(nodata), nodata)
        data = np.ma.masked_invalid(data)
        logger.info(f"Loaded {Path(file_path).name}: {src.width}x{src.height} cells, CRS {src.crs}")
        return RadianceGrid(data=data, transform=src.transform, crs=src.crs)

def _load_tile_args(args):
    file_path, nodata = args
    return load_radiance_tile(file_path, nodata)

def load_radiance_tiles(file_paths, num_workers=1, nodata=None):
    """
    Load several tiles. With num_workers > 1 tiles are read in worker
    processes; results keep the order of `file_paths`.
    """
    args_list = [(str(path), nodata) for path in file_paths]
    if num_workers is None or num_workers <= 1 or len(args_list) <= 1:
        return [_load_tile_args(args) for args in args_list]
    with ProcessPoolExecutor(max_workers=min(num_workers, len(args_list))) as executor:
        return list(executor.map(_load_tile_args, args_list))

def write_radiance_grid(grid, file_path, nodata=-9999.0):
    """Write a RadianceGrid to a single-band GeoTIFF."""
    height, width = grid.shape
    profile = {
        'driver': 'GTiff',
        'height': height,
        'width': width,
        'count': 1,
        'dtype': 'float64',
        'crs': grid.crs,
        'transform': grid.transform,
        'nodata': nodata,
    }
    with rasterio.open(file_path, 'w', **profile) as dst:
        dst.write(grid.data.filled(nodata), 1)
    return str(file_path)

###############################################################################
# VECTOR INPUTS
###############################################################################
def ensure_crs_vector(gdf, target_crs):
    """Reproject a layer to target_crs. A layer without a CRS is an error, never coerced."""
    if gdf.crs is None:
        raise CrsMismatchError(
            "Layer has no CRS defined; refusing to assume one.", stage="load", right_crs=target_crs
        )
    if gdf.crs != target_crs:
        gdf = _to_crs(gdf, target_crs, stage="load")
    return gdf

def load_highways(file_path, layer, fclass='motorway'):
    """Load road centerlines of a single classification (e.g. motorways)."""
    query = f"SELECT * FROM {layer} WHERE fclass = '{fclass}'"
    gdf = gpd.read_file(file_path, sql=query, engine='pyogrio')
    print(f"Highways ({fclass}) loaded: {len(gdf)} features.")
    return gdf

def load_buildings(file_path, layer, residential_types, fields=None):
    """
    Load building footprints that are residential or carry no classification.

    The OSM `osm_id` column becomes the building identity `id`.
    """
    type_list = ", ".join(f"'{t}'" for t in residential_types)
    query = (
        f"SELECT * FROM {layer} "
        f"WHERE (type IS NULL AND name IS NULL) OR type IN ({type_list})"
    )
    gdf = gpd.read_file(file_path, sql=query, engine='pyogrio')
    if fields is not None:
        gdf = gdf[[f for f in fields if f in gdf.columns] + ['geometry']]
    if 'osm_id' in gdf.columns:
        gdf = gdf.rename(columns={'osm_id': 'id'})
    for col in ['type', 'name']:
        if col not in gdf.columns:
            gdf[col] = None
    print(f"Residential buildings loaded: {len(gdf)} features.")
    return gdf

def attach_tract_income(tracts, income_table, tract_key='GEOID', income_key='GEOID', income_field='median_income'):
    """
    Join the income attribute onto tract polygons by tract identity.

    The result has a `GEOID` identity column and a `median_income` column.
    Tracts without a matching income row keep a missing income.
    """
    income = income_table[[income_key, income_field]].rename(
        columns={income_key: '_income_key', income_field: 'median_income'}
    )
    merged = tracts.merge(income, how='left', left_on=tract_key, right_on='_income_key', validate='one_to_one')
    merged = merged.drop(columns=['_income_key'])
    if tract_key != 'GEOID':
        merged = merged.drop(columns=['GEOID'], errors='ignore').rename(columns={tract_key: 'GEOID'})
    merged['median_income'] = pd.to_numeric(merged['median_income'], errors='coerce')
    unmatched = merged['median_income'].isna().sum()
    if unmatched:
        logger.info(f"{unmatched} tracts have no median income.")
    return gpd.GeoDataFrame(merged, geometry='geometry', crs=tracts.crs)

def load_census_tracts(gdb_path, tract_layer, income_layer, tract_key='GEOID_Data',
                       income_key='GEOID', income_field='B19013e1', tract_fields=None):
    """Load tract polygons and attach median income from the ACS income table."""
    tracts = gpd.read_file(gdb_path, layer=tract_layer, engine='pyogrio')
    if tract_fields is not None:
        tracts = tracts[[f for f in tract_fields if f in tracts.columns] + ['geometry']]
    income = gpd.read_file(
        gdb_path, layer=income_layer, columns=[income_key, income_field],
        ignore_geometry=True, engine='pyogrio'
    )
    tracts = attach_tract_income(tracts, income, tract_key=tract_key,
                                 income_key=income_key, income_field=income_field)
    print(f"Census tracts loaded: {len(tracts)} features.")
    return tracts

def load_vector_inputs(config):
    """Load highways, buildings and tracts named in config.data_files, in config.analysis_crs."""
    files = config.data_files
    highways = load_highways(files['roads']['path'], files['roads']['layer'], config.highway_fclass)
    buildings = load_buildings(files['buildings']['path'], files['buildings']['layer'],
                               config.residential_types, config.building_fields)
    tracts = load_census_tracts(files['census']['path'], files['census']['layer'], config.income_layer,
                                tract_key=config.tract_key, income_key=config.income_key,
                                income_field=config.income_field, tract_fields=config.tract_fields)
    datasets = {
        'highways': ensure_crs_vector(highways, config.analysis_crs),
        'buildings': ensure_crs_vector(buildings, config.analysis_crs),
        'tracts': ensure_crs_vector(tracts, config.analysis_crs),
    }
    for key, gdf in datasets.items():
        print_dataset_info(key, gdf)
    return datasets
