"""Building and flat-polygon extrusion, mesh merging and centering."""

import logging
import time
from typing import Optional

import numpy as np
import trimesh
from shapely.geometry import LinearRing, Polygon
from shapely.geometry.polygon import orient

from . import constants
from .context import CancellationToken
from .models import (
    BoundingBox, BuildingData, ElevationGrid, MeshBuffer, MeshSettings, VectorLayer,
)
from .terrain import build_terrain_mesh, sample_terrain_z

logger = logging.getLogger(__name__)


# ── Coordinate mapping ───────────────────────────────────────────────────

def lng_lat_to_mesh(bbox: BoundingBox, lngs, lats, mesh_width: float = constants.MESH_WIDTH):
    """Map lng/lat linearly onto [-mesh_width/2, mesh_width/2] on both axes."""
    lngs = np.asarray(lngs, dtype=np.float64)
    lats = np.asarray(lats, dtype=np.float64)
    x = ((lngs - bbox.min_lng) / (bbox.max_lng - bbox.min_lng) - 0.5) * mesh_width
    y = ((lats - bbox.min_lat) / (bbox.max_lat - bbox.min_lat) - 0.5) * mesh_width
    return x, y


def orient_clockwise(ring: list[tuple[float, float]]) -> list[tuple[float, float]]:
    if len(ring) >= 3 and LinearRing(ring).is_ccw:
        return list(reversed(ring))
    return list(ring)


def ring_signature(ring, decimals: int = 6) -> tuple:
    """Key for de-duplicating rings repeated across tile boundaries."""
    return tuple((round(lng, decimals), round(lat, decimals)) for lng, lat in ring)


# ── Buildings ────────────────────────────────────────────────────────────

def adaptive_scale_factor(bbox: BoundingBox, min_elevation: float, max_elevation: float,
                          settings: Optional[MeshSettings] = None) -> float:
    """Metres-to-mesh-Z factor for building heights, corrected for area size.

    Large areas (diagonal > 10 km) get taller buildings, small ones
    (< 2 km) shorter, and the result is clamped to a sane range.
    """
    settings = settings or MeshSettings()
    elevation_span = (max_elevation - min_elevation) or 1.0
    scale = settings.vertical_span / elevation_span

    diagonal = bbox.diagonal_m
    if diagonal > 10000:
        scale *= 1.5
    elif diagonal < 2000:
        scale *= 0.8

    lo, hi = constants.ADAPTIVE_SCALE_RANGE
    return min(hi, max(lo, scale))


def extrude_building(building: BuildingData, grid: ElevationGrid, adaptive_scale: float,
                     settings: MeshSettings,
                     color: tuple[float, float, float] = (0.69, 0.69, 0.69)) -> MeshBuffer:
    """Extrude one footprint from just below the terrain up to its scaled height.

    The prism is anchored at the lowest terrain point under the footprint
    and sinks ``building_submerge_offset`` below it so no gap shows on
    slopes.
    """
    ring = orient_clockwise(building.footprint)
    n = len(ring)
    lngs = np.array([p[0] for p in ring])
    lats = np.array([p[1] for p in ring])

    lowest = float(sample_terrain_z(grid, lngs, lats, settings).min())
    submerge = settings.building_submerge_offset
    height = min(max(building.height, constants.MIN_EXTRUDE_HEIGHT),
                 constants.MAX_BUILDING_HEIGHT)
    effective = height * adaptive_scale * settings.building_scale_factor + submerge
    z_top = lowest + effective
    z_bottom = lowest - submerge

    x, y = lng_lat_to_mesh(grid.bbox, lngs, lats, settings.mesh_width)
    positions = np.vstack([
        np.column_stack([x, y, np.full(n, z_top)]),
        np.column_stack([x, y, np.full(n, z_bottom)]),
    ])

    i = np.arange(2, n)
    # Clockwise ring: reversed fan faces up, forward fan faces down
    top = np.column_stack([np.zeros(n - 2, dtype=np.int64), i, i - 1])
    bottom = np.column_stack([np.full(n - 2, n), i - 1 + n, i + n])

    a = np.arange(n)
    b = (a + 1) % n
    walls = np.vstack([np.column_stack([a, b, a + n]),
                       np.column_stack([b, b + n, a + n])])

    return MeshBuffer(positions, np.vstack([top, bottom, walls]),
                      np.tile(color, (2 * n, 1)))


def build_building_meshes(buildings: list[BuildingData], grid: ElevationGrid,
                          settings: MeshSettings, color,
                          token: Optional[CancellationToken] = None) -> list[MeshBuffer]:
    adaptive = adaptive_scale_factor(grid.bbox, grid.min_elevation,
                                     grid.max_elevation, settings)
    logger.info(f"Adaptive building scale: {adaptive:.4f}")

    meshes, seen = [], set()
    for building in buildings:
        if token is not None:
            token.raise_if_cancelled()
        key = ring_signature(building.footprint)
        if key in seen:
            continue
        seen.add(key)
        meshes.append(extrude_building(building, grid, adaptive, settings, color))
    return meshes


# ── Flat polygons ────────────────────────────────────────────────────────

def extrude_polygon(ring: list[tuple[float, float]], grid: ElevationGrid,
                    layer: VectorLayer, settings: MeshSettings) -> Optional[MeshBuffer]:
    """Extrude a flat slab of ``layer.extrusion_depth`` sitting on the terrain.

    The slab has a single base height (lowest terrain under the ring plus
    the layer's z offset) rather than following the terrain per vertex.
    """
    ring = orient_clockwise(ring)
    lngs = np.array([p[0] for p in ring])
    lats = np.array([p[1] for p in ring])
    base = (float(sample_terrain_z(grid, lngs, lats, settings).min())
            + layer.z_offset - settings.polygon_submerge_offset)

    x, y = lng_lat_to_mesh(grid.bbox, lngs, lats, settings.mesh_width)
    polygon = orient(Polygon(np.column_stack([x, y])), sign=-1.0)
    if not polygon.is_valid:
        polygon = polygon.buffer(0)
    if polygon.is_empty or polygon.area < 1e-9:
        return None

    parts = list(polygon.geoms) if polygon.geom_type == "MultiPolygon" else [polygon]
    meshes = []
    for part in parts:
        try:
            mesh = trimesh.creation.extrude_polygon(part, height=layer.extrusion_depth)
        except Exception as e:
            logger.warning(f"extrude_polygon failed for {layer.name}: {e}")
            continue
        positions = mesh.vertices.copy()
        positions[:, 2] += base
        meshes.append(MeshBuffer(positions, mesh.faces,
                                 np.tile(layer.rgb, (len(positions), 1))))
    if not meshes:
        return None
    return MeshBuffer.merge(meshes)


def build_layer_meshes(rings: list[list[tuple[float, float]]], grid: ElevationGrid,
                       layer: VectorLayer, settings: MeshSettings,
                       token: Optional[CancellationToken] = None) -> list[MeshBuffer]:
    meshes, seen = [], set()
    for ring in rings:
        if token is not None:
            token.raise_if_cancelled()
        key = ring_signature(ring)
        if key in seen:
            continue
        seen.add(key)
        mesh = extrude_polygon(ring, grid, layer, settings)
        if mesh is not None:
            meshes.append(mesh)
    logger.info(f"Layer '{layer.name}': {len(meshes)} slabs "
                f"({len(rings) - len(seen)} duplicates skipped)")
    return meshes


# ── Assembly ─────────────────────────────────────────────────────────────

def merge_meshes(buffers: list[MeshBuffer]) -> MeshBuffer:
    return MeshBuffer.merge(buffers)


def center_mesh(buffer: MeshBuffer) -> MeshBuffer:
    return buffer.centered()


def synthesize(grid: ElevationGrid, buildings: list[BuildingData],
               layer_rings: dict[str, list], settings: MeshSettings,
               token: Optional[CancellationToken] = None) -> MeshBuffer:
    """Terrain solid, building prisms and layer slabs as one frozen buffer.

    ``layer_rings`` maps flat-extrusion layer names to their rings.
    Centering happens once, after everything is merged.
    """
    t0 = time.perf_counter()
    parts = [build_terrain_mesh(grid, settings, token)]

    building_color = VectorLayer.from_config('building').rgb
    parts.extend(build_building_meshes(buildings, grid, settings, building_color, token))

    for name, rings in layer_rings.items():
        layer = VectorLayer.from_config(name)
        if layer.is_building:
            continue
        parts.extend(build_layer_meshes(rings, grid, layer, settings, token))

    if token is not None:
        token.raise_if_cancelled()
    mesh = center_mesh(merge_meshes(parts)).freeze()
    logger.info(f"Synthesized mesh: {mesh.vertex_count} verts, {mesh.face_count} faces "
                f"from {len(parts)} parts ({time.perf_counter() - t0:.2f}s)")
    return mesh
