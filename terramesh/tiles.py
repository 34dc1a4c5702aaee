"""Web-Mercator slippy-tile addressing."""

import logging
import math

from . import constants
from .models import BoundingBox, Tile

logger = logging.getLogger(__name__)

# Web-Mercator is undefined at the poles
MAX_LATITUDE = 85.0511287798


def lng_lat_to_tile(lng: float, lat: float, zoom: int) -> tuple[int, int]:
    """Tile column/row containing a point (floor, no rounding)."""
    n = 2 ** zoom
    lat_rad = math.radians(max(-MAX_LATITUDE, min(MAX_LATITUDE, lat)))
    x = math.floor((lng + 180.0) / 360.0 * n)
    y = math.floor((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n)
    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def _corner_tiles(bbox: BoundingBox, zoom: int):
    # North-west and south-east corners; tile rows grow southwards
    return (lng_lat_to_tile(bbox.min_lng, bbox.max_lat, zoom),
            lng_lat_to_tile(bbox.max_lng, bbox.min_lat, zoom))


def tile_count(bbox: BoundingBox, zoom: int) -> int:
    (x0, y0), (x1, y1) = _corner_tiles(bbox, zoom)
    return (abs(x1 - x0) + 1) * (abs(y1 - y0) + 1)


def tiles_for_bbox(bbox: BoundingBox, zoom: int) -> list[Tile]:
    """Every tile in the inclusive rectangle between the two corner tiles."""
    (x0, y0), (x1, y1) = _corner_tiles(bbox, zoom)
    return [Tile(x, y, zoom)
            for x in range(min(x0, x1), max(x0, x1) + 1)
            for y in range(min(y0, y1), max(y0, y1) + 1)]


def select_zoom(bbox: BoundingBox,
                max_zoom: int = constants.MAX_ELEVATION_ZOOM,
                max_tiles: int = constants.MAX_ELEVATION_TILES) -> int:
    """Highest zoom <= ``max_zoom`` whose tile cover stays within ``max_tiles``."""
    zoom = max_zoom
    while zoom > 0 and tile_count(bbox, zoom) > max_tiles:
        zoom -= 1
    logger.debug(f"Selected zoom {zoom} ({tile_count(bbox, zoom)} tiles)")
    return zoom


def tile_to_lat(y: float, zoom: int) -> float:
    """Inverse Web-Mercator: latitude of a (fractional) tile row edge."""
    n = math.pi * (1.0 - 2.0 * y / 2 ** zoom)
    return math.degrees(math.atan(math.sinh(n)))


def tile_to_lng(x: float, zoom: int) -> float:
    return x / 2 ** zoom * 360.0 - 180.0


def tile_bounds(tile: Tile) -> BoundingBox:
    return BoundingBox(
        min_lng=tile_to_lng(tile.x, tile.z),
        min_lat=tile_to_lat(tile.y + 1, tile.z),
        max_lng=tile_to_lng(tile.x + 1, tile.z),
        max_lat=tile_to_lat(tile.y, tile.z),
    )
