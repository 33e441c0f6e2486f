# config.py
import os
import copy

class BlackoutConfig:
    def __init__(self, base_dir=None):
        if base_dir is None:
            try:
                base_dir = os.path.dirname(os.path.abspath(__file__))
            except NameError:
                base_dir = os.getcwd()
        self.script_dir = base_dir

        # Directories
        self.input_dir = os.path.join(self.script_dir, 'input')
        self.output_dir = os.path.join(self.script_dir, 'output')
        os.makedirs(self.output_dir, exist_ok=True)

        # CRS and base parameters
        # NAD83 / Texas Centric Albers Equal Area, units in meters
        self.analysis_crs = 'EPSG:3083'
        self.change_threshold = 200
        self.highway_buffer_distance = 200
        self.connectivity = 8
        self.NUM_WORKERS = 4  # Number of worker processes for tile loading (1 = in-process)

        # Study area corners (lon, lat), Houston metropolitan area
        self.study_area_crs = 'EPSG:4326'
        self.study_area_vertices = [
            (-96.5, 29.0),
            (-96.5, 30.5),
            (-94.5, 30.5),
            (-94.5, 29.0),
        ]

        # VIIRS VNP46A1 tiles: 2021-02-07 is before the storm, 2021-02-16 is after.
        # Tiles h08v05 and h08v06 together cover the Houston area.
        viirs_dir = os.path.join(self.input_dir, 'VNP46A1')
        self.tile_input_paths = {
            'before': [
                os.path.join(viirs_dir, 'VNP46A1.A2021038.h08v05.001.2021039064328.tif'),
                os.path.join(viirs_dir, 'VNP46A1.A2021038.h08v06.001.2021039064329.tif'),
            ],
            'after': [
                os.path.join(viirs_dir, 'VNP46A1.A2021047.h08v05.001.2021048091106.tif'),
                os.path.join(viirs_dir, 'VNP46A1.A2021047.h08v06.001.2021048091105.tif'),
            ],
        }
        self.radiance_nodata = None  # None = use the nodata value stored in each tile

        # Vector data files dictionary
        self.data_files = {
            'roads': {'path': os.path.join(self.input_dir, 'gis_osm_roads_free_1.gpkg'),
                      'layer': 'gis_osm_roads_free_1'},
            'buildings': {'path': os.path.join(self.input_dir, 'gis_osm_buildings_a_free_1.gpkg'),
                          'layer': 'gis_osm_buildings_a_free_1'},
            'census': {'path': os.path.join(self.input_dir, 'ACS_2019_5YR_TRACT_48_TEXAS.gdb'),
                       'layer': 'ACS_2019_5YR_TRACT_48_TEXAS'},
        }

        # Road classification kept as highways
        self.highway_fclass = 'motorway'

        # Building categories treated as residential (unclassified buildings are kept too)
        self.residential_types = ['residential', 'apartments', 'house', 'static_caravan', 'detached']
        self.building_fields = ['osm_id', 'type', 'name']

        # ACS income table: B19013e1 is median household income in the past 12 months
        self.income_layer = 'X19_INCOME'
        self.income_field = 'B19013e1'
        self.income_key = 'GEOID'
        self.tract_key = 'GEOID_Data'
        self.tract_fields = ['GEOID_Data', 'NAMELSAD']

        # Display settings for the webmap
        self.dataset_info = {
            "median_income": {
                "name": "Median Household Income",
                "description": "Median household income in the past 12 months. <br>Source:<br>US Census Bureau, ACS 2019 5-year estimates.",
                "prefix": "$",
                "suffix": "",
                "low_hex": "#f7fbff",
                "high_hex": "#08306b"
            },
            "impacted": {
                "name": "Tracts With Blackout Homes",
                "description": "Tracts containing at least one residential building inside a blackout region. <br>Source:<br>VIIRS VNP46A1 night lights, 2021-02-07 vs 2021-02-16, and OpenStreetMap buildings.",
                "hex": "#d7301f"
            },
            "regions": {
                "name": "Blackout Regions",
                "description": "Areas where night-light radiance dropped by at least the change threshold, excluding highway surroundings.",
                "hex": "#fc8d59"
            }
        }

    def copy(self):
        return copy.deepcopy(self)

if __name__ == "__main__":
    config = BlackoutConfig()
    print("Config dataset info:")
    for key, info in config.dataset_info.items():
        print(f"{key}: {info}")
