"""Footprint validation, height resolution and terrain anchoring."""

import logging
import math
from typing import Optional

from shapely.geometry import Polygon
from tqdm import tqdm

from . import constants
from .context import CancellationToken
from .errors import ValidationError
from .models import (
    BoundingBox, BuildingData, ContainmentPolicy, ElevationGrid, PolygonFeature,
)

logger = logging.getLogger(__name__)


def clamp_height(height: Optional[float], default: float,
                 lo: float = constants.MIN_BUILDING_HEIGHT,
                 hi: float = constants.MAX_BUILDING_HEIGHT) -> float:
    """Clamp into [lo, hi]; missing or non-finite heights use ``default``."""
    if height is None or not math.isfinite(height):
        height = default
    if not math.isfinite(height):
        height = lo
    return min(max(height, lo), hi)


def centroid(ring: list[tuple[float, float]]) -> tuple[float, float]:
    """Arithmetic mean of the ring vertices (not area-weighted)."""
    n = len(ring)
    return (sum(p[0] for p in ring) / n, sum(p[1] for p in ring) / n)


def grid_cell_for(grid: ElevationGrid, lng: float, lat: float) -> tuple[int, int]:
    """(row, col) of the grid cell for a point, clamped to the grid."""
    bbox = grid.bbox
    h, w = grid.values.shape
    col = math.floor((lng - bbox.min_lng) / (bbox.max_lng - bbox.min_lng) * (w - 1))
    row = math.floor((lat - bbox.min_lat) / (bbox.max_lat - bbox.min_lat) * (h - 1))
    return min(max(row, 0), h - 1), min(max(col, 0), w - 1)


def base_elevation(grid: ElevationGrid, ring: list[tuple[float, float]]) -> float:
    row, col = grid_cell_for(grid, *centroid(ring))
    return float(grid.values[row, col])


def is_contained(ring, bbox: BoundingBox, policy: ContainmentPolicy) -> bool:
    inside = (bbox.contains(lng, lat) for lng, lat in ring)
    if policy == ContainmentPolicy.all_vertices:
        return all(inside)
    return any(inside)


def clip_ring(ring, bbox: BoundingBox) -> list[list[tuple[float, float]]]:
    """Outer rings of ``ring`` cut to ``bbox``.

    A ring already inside the box comes back unchanged. One that crosses
    the edge may split into several parts; only polygonal parts with area
    are kept, and a ring that misses the box entirely yields ``[]``.
    """
    if all(bbox.contains(lng, lat) for lng, lat in ring):
        return [list(ring)]

    polygon = Polygon(ring)
    if not polygon.is_valid:
        polygon = polygon.buffer(0)
    clipped = polygon.intersection(bbox.to_polygon())

    parts = clipped.geoms if hasattr(clipped, "geoms") else [clipped]
    return [list(part.exterior.coords)[:-1] for part in parts
            if part.geom_type == "Polygon" and not part.is_empty and part.area > 0]


def validate_ring(ring) -> None:
    if len(ring) < 3:
        raise ValidationError(f"footprint has {len(ring)} points, need at least 3")
    for lng, lat in ring:
        if not (math.isfinite(lng) and math.isfinite(lat)):
            raise ValidationError("footprint has non-finite coordinates")


def normalize_buildings(features: list[PolygonFeature], grid: ElevationGrid,
                        policy: ContainmentPolicy = ContainmentPolicy.any_vertex,
                        default_height: float = constants.MIN_BUILDING_HEIGHT,
                        height_range: tuple[float, float] = (constants.MIN_BUILDING_HEIGHT,
                                                             constants.MAX_BUILDING_HEIGHT),
                        token: Optional[CancellationToken] = None) -> list[BuildingData]:
    """Turn raw building features into ``BuildingData`` anchored on the grid.

    Invalid footprints are dropped with a warning count; features outside
    the grid's bbox (per ``policy``) are skipped silently.
    """
    buildings = []
    invalid = outside = 0
    lo, hi = height_range

    for feature in tqdm(features, desc="Buildings", disable=not features):
        if token is not None:
            token.raise_if_cancelled()
        try:
            validate_ring(feature.ring)
        except ValidationError as e:
            invalid += 1
            logger.debug(f"Dropping footprint: {e}")
            continue

        if not is_contained(feature.ring, grid.bbox, policy):
            outside += 1
            continue

        height = clamp_height(feature.resolve_height(default_height), default_height, lo, hi)
        for ring in clip_ring(feature.ring, grid.bbox):
            buildings.append(BuildingData(
                footprint=ring,
                height=height,
                base_elevation=base_elevation(grid, ring),
            ))

    if invalid:
        logger.warning(f"Dropped {invalid} invalid footprints")
    logger.info(f"Normalized {len(buildings)} buildings "
                f"({outside} outside the area, policy={policy.value})")
    return buildings


def normalize_polygons(features: list[PolygonFeature], bbox: BoundingBox,
                       policy: ContainmentPolicy = ContainmentPolicy.any_vertex
                       ) -> list[list[tuple[float, float]]]:
    """Valid, contained rings of a flat-extrusion layer, cut to ``bbox``."""
    rings = []
    invalid = 0
    for feature in features:
        try:
            validate_ring(feature.ring)
        except ValidationError:
            invalid += 1
            continue
        if is_contained(feature.ring, bbox, policy):
            rings.extend(clip_ring(feature.ring, bbox))
    if invalid:
        logger.warning(f"Dropped {invalid} invalid polygons")
    return rings
