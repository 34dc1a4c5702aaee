"""Elevation grid fusion and terrain solid generation.

Provides functions for:
1. Fusing several decoded terrain-RGB tiles into one regular lng/lat grid
2. Filling uncovered cells and Gaussian smoothing
3. Bilinear sampling of the grid at arbitrary points
4. Building the closed terrain slab (top surface, bottom, side walls)
"""

import logging
import time
from typing import Optional

import numpy as np
from scipy import ndimage

from . import constants
from .context import CancellationToken
from .errors import ResourceError
from .models import BoundingBox, ElevationGrid, ElevationTile, MeshBuffer, MeshSettings
from .tiles import tile_bounds

logger = logging.getLogger(__name__)


# ── Grid fusion ──────────────────────────────────────────────────────────

def elevation_range(tiles: list[ElevationTile]) -> tuple[float, float]:
    """Global finite min/max over all tiles; (0, 0) when nothing is finite."""
    lo, hi = np.inf, -np.inf
    for et in tiles:
        finite = et.data[np.isfinite(et.data)]
        if finite.size:
            lo = min(lo, float(finite.min()))
            hi = max(hi, float(finite.max()))
    if lo > hi:
        return 0.0, 0.0
    return lo, hi


def cell_coordinates(bbox: BoundingBox, width: int, height: int):
    """(lng, lat) of every grid cell, endpoints inclusive, row 0 = south."""
    lngs = bbox.min_lng + (bbox.max_lng - bbox.min_lng) * np.arange(width) / (width - 1)
    lats = bbox.min_lat + (bbox.max_lat - bbox.min_lat) * np.arange(height) / (height - 1)
    return np.meshgrid(lngs, lats)


def accumulate_tile(tile: ElevationTile, lng: np.ndarray, lat: np.ndarray,
                    weighted: np.ndarray, coverage: np.ndarray) -> int:
    """Add one tile's edge-weighted bilinear samples into the accumulators.

    ``weighted`` and ``coverage`` are updated in place. Returns the number
    of cells the tile contributed to.
    """
    tb = tile_bounds(tile.tile)
    inside = ((lng >= tb.min_lng) & (lng <= tb.max_lng) &
              (lat >= tb.min_lat) & (lat <= tb.max_lat))
    if not inside.any():
        return 0

    h, w = tile.data.shape
    # Fractions within the tile; latitude is mapped linearly across the tile
    u = (lng[inside] - tb.min_lng) / (tb.max_lng - tb.min_lng)
    v = (lat[inside] - tb.min_lat) / (tb.max_lat - tb.min_lat)
    px = u * (w - 1)
    py = (1.0 - v) * (h - 1)

    x0 = np.floor(px).astype(np.intp)
    y0 = np.floor(py).astype(np.intp)
    ok = (x0 >= 0) & (x0 < w - 1) & (y0 >= 0) & (y0 < h - 1)

    x0c = np.clip(x0, 0, w - 2)
    y0c = np.clip(y0, 0, h - 2)
    h00 = tile.data[y0c, x0c]
    h10 = tile.data[y0c, x0c + 1]
    h01 = tile.data[y0c + 1, x0c]
    h11 = tile.data[y0c + 1, x0c + 1]
    ok &= np.isfinite(h00) & np.isfinite(h10) & np.isfinite(h01) & np.isfinite(h11)
    if not ok.any():
        return 0

    fx = (px - x0c)[ok]
    fy = (py - y0c)[ok]
    top = h00[ok] * (1 - fx) + h10[ok] * fx
    bottom = h01[ok] * (1 - fx) + h11[ok] * fx
    elev = top * (1 - fy) + bottom * fy

    dist = np.maximum(np.abs(2.0 * (u[ok] - 0.5)), np.abs(2.0 * (v[ok] - 0.5)))
    weight = 1.0 - np.minimum(1.0, dist) ** 2 * constants.EDGE_FALLOFF

    rows, cols = np.nonzero(inside)
    rows, cols = rows[ok], cols[ok]
    weighted[rows, cols] += elev * weight
    coverage[rows, cols] += weight
    return int(rows.size)


def fill_gaps(values: np.ndarray, covered: np.ndarray) -> np.ndarray:
    """Copy every uncovered cell from its nearest covered cell (grid distance).

    Raises ``ResourceError`` when no cell is covered at all.
    """
    if not covered.any():
        raise ResourceError("no elevation coverage anywhere in the grid")
    if covered.all():
        return values
    _, (iy, ix) = ndimage.distance_transform_edt(
        ~covered, return_distances=True, return_indices=True)
    return values[iy, ix]


def gaussian_kernel(radius: int = constants.SMOOTHING_RADIUS) -> np.ndarray:
    offsets = np.arange(-radius, radius + 1)
    dx, dy = np.meshgrid(offsets, offsets)
    return np.exp(-(dx ** 2 + dy ** 2) / (2.0 * radius ** 2))


def smooth_grid(values: np.ndarray,
                radius: int = constants.SMOOTHING_RADIUS,
                passes: int = constants.SMOOTHING_PASSES,
                token: Optional[CancellationToken] = None) -> np.ndarray:
    """Gaussian smoothing, each pass reading the previous pass's full output.

    Weights are renormalised over the in-bounds part of the kernel, so
    border cells are not pulled towards zero.
    """
    kernel = gaussian_kernel(radius)
    norm = ndimage.convolve(np.ones_like(values), kernel, mode="constant", cval=0.0)
    out = values
    for _ in range(passes):
        if token is not None:
            token.raise_if_cancelled()
        out = ndimage.convolve(out, kernel, mode="constant", cval=0.0) / norm
    return out


def build_elevation_grid(tiles: list[ElevationTile], bbox: BoundingBox,
                         width: int = constants.GRID_SIZE,
                         height: int = constants.GRID_SIZE,
                         smoothing_passes: int = constants.SMOOTHING_PASSES,
                         token: Optional[CancellationToken] = None) -> ElevationGrid:
    """Fuse decoded tiles into a ``height`` x ``width`` grid over ``bbox``.

    Parameters
    ----------
    tiles : list[ElevationTile]
        Decoded tiles, in any order
    bbox : BoundingBox
        Query region; row 0 of the grid is ``bbox.min_lat``
    width, height : int
        Grid resolution.
    smoothing_passes : int
        Gaussian passes applied after gap filling

    Returns
    -------
    ElevationGrid
        Finite everywhere; min/max are the pre-smoothing range observed
        across the raw tiles.
    """
    t0 = time.perf_counter()
    min_elev, max_elev = elevation_range(tiles)

    lng, lat = cell_coordinates(bbox, width, height)
    weighted = np.zeros((height, width), dtype=np.float64)
    coverage = np.zeros((height, width), dtype=np.float64)

    for et in tiles:
        if token is not None:
            token.raise_if_cancelled()
        n = accumulate_tile(et, lng, lat, weighted, coverage)
        logger.debug(f"Tile {et.tile.z}/{et.tile.x}/{et.tile.y} covered {n} cells")

    covered = coverage > 0
    values = np.zeros_like(weighted)
    values[covered] = weighted[covered] / coverage[covered]
    missing = int((~covered).sum())

    try:
        values = fill_gaps(values, covered)
        if missing:
            logger.info(f"Filled {missing} uncovered grid cells from nearest neighbours")
    except ResourceError as e:
        fallback = (min_elev + max_elev) / 2.0
        logger.warning(f"{e}; using fallback elevation {fallback:.1f}m")
        values = np.full((height, width), fallback, dtype=np.float64)

    values = smooth_grid(values, passes=smoothing_passes, token=token)

    logger.info(f"Elevation grid: {width}x{height} from {len(tiles)} tiles, "
                f"range {min_elev:.1f}..{max_elev:.1f}m "
                f"({time.perf_counter() - t0:.2f}s)")
    return ElevationGrid(values=values, min_elevation=min_elev,
                         max_elevation=max_elev, bbox=bbox)


# ── Sampling ─────────────────────────────────────────────────────────────

def sample_elevation_batch(grid: ElevationGrid, lngs, lats) -> np.ndarray:
    """Vectorized bilinear lookup in metres.

    Points outside the grid's bbox get the grid minimum; results are
    clamped into [min_elevation, max_elevation].
    """
    lngs = np.asarray(lngs, dtype=np.float64)
    lats = np.asarray(lats, dtype=np.float64)
    bbox = grid.bbox
    h, w = grid.values.shape

    fx = (lngs - bbox.min_lng) / (bbox.max_lng - bbox.min_lng) * (w - 1)
    fy = (lats - bbox.min_lat) / (bbox.max_lat - bbox.min_lat) * (h - 1)
    inside = (fx >= 0) & (fx <= w - 1) & (fy >= 0) & (fy <= h - 1)

    ix = np.clip(np.floor(fx).astype(np.intp), 0, w - 2)
    iy = np.clip(np.floor(fy).astype(np.intp), 0, h - 2)
    dx = np.clip(fx - ix, 0.0, 1.0)
    dy = np.clip(fy - iy, 0.0, 1.0)

    v = grid.values
    top = v[iy, ix] * (1 - dx) + v[iy, ix + 1] * dx
    bottom = v[iy + 1, ix] * (1 - dx) + v[iy + 1, ix + 1] * dx
    elev = top * (1 - dy) + bottom * dy

    elev = np.where(inside, elev, grid.min_elevation)
    return np.clip(elev, grid.min_elevation, max(grid.min_elevation, grid.max_elevation))


def sample_elevation_at(grid: ElevationGrid, lng: float, lat: float) -> float:
    return float(sample_elevation_batch(grid, [lng], [lat])[0])


def elevation_to_mesh_z(elevation, grid: ElevationGrid, settings: MeshSettings):
    """Map metres to mesh Z exactly as the terrain surface does."""
    normalized = (np.asarray(elevation, dtype=np.float64) - grid.min_elevation) / max(
        1.0, grid.elevation_range)
    return (settings.terrain_base_height +
            normalized * settings.vertical_span * settings.vertical_exaggeration)


def sample_terrain_z(grid: ElevationGrid, lngs, lats, settings: MeshSettings) -> np.ndarray:
    return elevation_to_mesh_z(sample_elevation_batch(grid, lngs, lats), grid, settings)


# ── Terrain solid ────────────────────────────────────────────────────────

def _boundary_loop(width: int, height: int) -> np.ndarray:
    """Grid indices around the border, counter-clockwise seen from +Z."""
    south = [(0, x) for x in range(width)]
    east = [(y, width - 1) for y in range(1, height)]
    north = [(height - 1, x) for x in range(width - 2, -1, -1)]
    west = [(y, 0) for y in range(height - 2, 0, -1)]
    return np.array([y * width + x for y, x in south + east + north + west], dtype=np.int64)


def terrain_colors(normalized: np.ndarray) -> np.ndarray:
    """Linear ramp from the low-ground to the high-ground color."""
    low = np.asarray(constants.TERRAIN_LOW_COLOR)
    high = np.asarray(constants.TERRAIN_HIGH_COLOR)
    t = np.clip(normalized, 0.0, 1.0)[:, None]
    return low + (high - low) * t


def build_terrain_mesh(grid: ElevationGrid, settings: MeshSettings,
                       token: Optional[CancellationToken] = None) -> MeshBuffer:
    """Build the closed terrain slab from the elevation grid.

    The top surface follows the terrain, the bottom sits flat at z = 0 and
    side walls close all four borders. Faces are wound so normals point
    outward, giving a positive signed volume.
    """
    h, w = grid.values.shape
    n = h * w

    xs = (np.arange(w) / (w - 1) - 0.5) * settings.mesh_width
    ys = (np.arange(h) / (h - 1) - 0.5) * settings.mesh_width
    xx, yy = np.meshgrid(xs, ys)

    normalized = ((grid.values - grid.min_elevation) /
                  max(1.0, grid.elevation_range)).ravel()
    top_z = elevation_to_mesh_z(grid.values, grid, settings).ravel()

    positions = np.empty((2 * n, 3), dtype=np.float64)
    positions[:n, 0] = xx.ravel()
    positions[:n, 1] = yy.ravel()
    positions[:n, 2] = top_z
    positions[n:, 0] = xx.ravel()
    positions[n:, 1] = yy.ravel()
    positions[n:, 2] = 0.0

    if token is not None:
        token.raise_if_cancelled()

    # ── Top and bottom: 2 triangles per grid cell ───────────────
    iy_g, ix_g = np.meshgrid(np.arange(h - 1), np.arange(w - 1), indexing='ij')
    iy_f = iy_g.ravel()
    ix_f = ix_g.ravel()

    tl = iy_f * w + ix_f
    tr = iy_f * w + (ix_f + 1)
    bl = (iy_f + 1) * w + ix_f
    br = (iy_f + 1) * w + (ix_f + 1)

    # Wound for +Z normals on top, -Z on the bottom
    top = np.vstack([np.column_stack([tl, tr, bl]),
                     np.column_stack([bl, tr, br])])
    bottom = np.vstack([np.column_stack([tl, bl, tr]),
                        np.column_stack([tr, bl, br])]) + n

    # ── Side walls along the border loop ────────────────────────
    a = _boundary_loop(w, h)
    b = np.roll(a, -1)
    walls = np.vstack([np.column_stack([a + n, b + n, b]),
                       np.column_stack([a + n, b, a])])

    colors = np.vstack([terrain_colors(normalized),
                        np.tile(constants.TERRAIN_LOW_COLOR, (n, 1))])

    mesh = MeshBuffer(positions, np.vstack([top, bottom, walls]), colors)
    logger.info(f"Terrain mesh: {mesh.vertex_count} verts, {mesh.face_count} faces")
    return mesh
