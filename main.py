# main.py
import os
import time
from datetime import timedelta

import pandas as pd

def main():
    from config import BlackoutConfig
    from analysis_modules import (
        build_study_area,
        compute_blackout_impacts,
        describe_income_by_impact,
        select_within_study_area,
    )
    from data_preprocessing import load_radiance_tiles, load_vector_inputs, print_dataset_info
    import webmap

    start_time = time.time()

    # Instantiate configuration.
    config = BlackoutConfig()

    # Load the radiance tiles for both dates.
    print("\nLoading VIIRS radiance tiles...")
    before_tiles = load_radiance_tiles(config.tile_input_paths['before'], config.NUM_WORKERS, config.radiance_nodata)
    after_tiles = load_radiance_tiles(config.tile_input_paths['after'], config.NUM_WORKERS, config.radiance_nodata)
    for label, tiles in (('before', before_tiles), ('after', after_tiles)):
        for i, tile in enumerate(tiles, start=1):
            print_dataset_info(f"{label} tile {i}", tile)

    # Load vector layers, already reprojected to the analysis CRS.
    print("\nLoading vector layers...")
    datasets = load_vector_inputs(config)

    # Keep only buildings and tracts that touch the study area.
    study_area = build_study_area(config.study_area_vertices, config.study_area_crs)
    buildings = select_within_study_area(datasets['buildings'], study_area)
    tracts = select_within_study_area(datasets['tracts'], study_area)
    print(f"Buildings in study area: {len(buildings)}; tracts in study area: {len(tracts)}")

    print("\nRunning blackout pipeline...")
    result = compute_blackout_impacts(before_tiles, after_tiles, datasets['highways'], buildings, tracts, config)

    # Export results.
    output_gpkg = os.path.join(config.output_dir, "houston_blackout.gpkg")
    result.regions.to_file(output_gpkg, layer="blackout_regions", driver="GPKG")
    result.impacted_structures.to_file(output_gpkg, layer="impacted_structures", driver="GPKG")
    result.impacted_tracts.to_file(output_gpkg, layer="impacted_tracts", driver="GPKG")
    result.unimpacted_tracts.to_file(output_gpkg, layer="unimpacted_tracts", driver="GPKG")
    print(f"Result layers saved to {output_gpkg}")

    all_tracts = pd.concat([result.impacted_tracts, result.unimpacted_tracts], ignore_index=True)
    summary = describe_income_by_impact(all_tracts)
    summary_csv = os.path.join(config.output_dir, "income_by_impact.csv")
    summary.to_csv(summary_csv)

    webmap.plot_income_comparison(result.impacted_tracts, result.unimpacted_tracts,
                                  os.path.join(config.output_dir, "income_by_impact.png"))
    webmap.build_webmap(result, config)

    print("\n" + "="*50)
    print("BLACKOUT SUMMARY")
    print("="*50)
    print(f"Blackout regions after highway exclusion: {len(result.regions)}")
    print(f"Homes that lost power: {result.impacted_count}")
    print(f"Impacted tracts: {len(result.impacted_tracts)}; unimpacted tracts: {len(result.unimpacted_tracts)}")
    print("\nMedian household income by impact:")
    print(summary)

    total_duration = time.time() - start_time
    print(f"\nTotal processing time: {timedelta(seconds=total_duration)}")

if __name__ == "__main__":
    main()
