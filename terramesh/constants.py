"""Configuration constants, tile endpoints, and the vector layer table."""

import os
import pathlib

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure base paths
BASE_DIR = pathlib.Path(__file__).parent.parent.absolute()
OUTPUT_DIR = pathlib.Path(os.environ.get("TERRAMESH_OUTPUT_DIR", BASE_DIR / "output"))

# ── Tile endpoints ───────────────────────────────────────────────────────
ELEVATION_URL = os.environ.get(
    "TERRAMESH_ELEVATION_URL",
    "https://wms.wheregroup.com/dem_tileserver/raster_dem/{z}/{x}/{y}.webp",
)
VECTOR_URL = os.environ.get(
    "TERRAMESH_VECTOR_URL",
    "https://wms.wheregroup.com/tileserver/tile/world-0-14/{z}/{x}/{y}.pbf",
)
# Optional MapLibre style document used to discover the building source
STYLE_URL = os.environ.get("TERRAMESH_STYLE_URL", "")

HTTP_TIMEOUT = float(os.environ.get("TERRAMESH_HTTP_TIMEOUT", "30"))
USER_AGENT = os.environ.get("TERRAMESH_USER_AGENT", "terramesh/0.1")

# ── Tile addressing ──────────────────────────────────────────────────────
MAX_ELEVATION_ZOOM = 12
MAX_ELEVATION_TILES = 4
BUILDING_ZOOM = 14
MAX_BUILDING_TILES = 9

# ── Grid fusion ──────────────────────────────────────────────────────────
GRID_SIZE = 150
EDGE_FALLOFF = 0.7
SMOOTHING_RADIUS = 2
SMOOTHING_PASSES = 2

# ── Mesh layout (Z-up, mesh units) ───────────────────────────────────────
MESH_WIDTH = 200.0
VERTICAL_SPAN_RATIO = 0.2
TERRAIN_BASE_HEIGHT = 5.0
BUILDING_SUBMERGE_OFFSET = 0.5
POLYGON_SUBMERGE_OFFSET = 0.01
MIN_BUILDING_HEIGHT = 5.0
MAX_BUILDING_HEIGHT = 500.0
# Clamp applied to heights inside the extruder
MIN_EXTRUDE_HEIGHT = 2.0
ADAPTIVE_SCALE_RANGE = (0.001, 0.5)

# Terrain colors (RGB 0-1): low ground to high ground
TERRAIN_LOW_COLOR = (0xD2 / 255, 0xB4 / 255, 0x8C / 255)   # tan
TERRAIN_HIGH_COLOR = (0xA8 / 255, 0x7B / 255, 0x4D / 255)  # brown

# ── Vector layers ────────────────────────────────────────────────────────
# Colors are 0xRRGGBB, depths and offsets are mesh units, buffer_m metres.
VECTOR_LAYERS = {
    'building': {
        'source_layer': 'building',
        'color': 0xAFAFAF,
        'default_height': 5.0,
        'is_building': True,
    },
    'water': {
        'source_layer': 'water',
        'color': 0x76BCFF,
        'extrusion_depth': 1.0,
        'z_offset': -0.5,
    },
    'landuse': {
        'source_layer': 'landuse',
        'color': 0x4CAF50,
        'extrusion_depth': 0.8,
        'z_offset': -0.4,
        'filter': ['in', 'class', 'commercial', 'residential'],
    },
    'park': {
        'source_layer': 'park',
        'color': 0x4CDF54,
        'extrusion_depth': 0.8,
        'z_offset': -0.3,
    },
    'landcover': {
        'source_layer': 'landcover',
        'color': 0x74E010,
        'extrusion_depth': 1.2,
        'z_offset': -0.3,
    },
    'transportation': {
        'source_layer': 'transportation',
        'color': 0x989898,
        'extrusion_depth': 1.4,
        'z_offset': -0.2,
        'buffer_m': 2.0,
        'filter': ['in', 'class', 'motorway', 'trunk', 'primary', 'secondary',
                   'tertiary', 'service', 'minor', 'track', 'raceway'],
    },
}

DEFAULT_LAYERS = ('building',)
