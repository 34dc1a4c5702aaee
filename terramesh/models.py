"""Data classes shared by the pipeline stages."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple, Optional

import numpy as np
import trimesh
from shapely.geometry import Polygon, box

from . import constants
from .errors import ConfigurationError

METERS_PER_DEGREE = 111320.0


class Tile(NamedTuple):
    x: int
    y: int
    z: int

    def format_url(self, template: str) -> str:
        return (template.replace("{z}", str(self.z))
                .replace("{x}", str(self.x))
                .replace("{y}", str(self.y)))


@dataclass(frozen=True)
class BoundingBox:
    min_lng: float
    min_lat: float
    max_lng: float
    max_lat: float

    @classmethod
    def from_geojson(cls, geometry: dict) -> "BoundingBox":
        """Build the query box from the first ring of a GeoJSON polygon.

        Accepts either a bare geometry or a Feature wrapping one. Anything
        other than a non-empty Polygon raises ``ConfigurationError``.
        """
        if not isinstance(geometry, dict):
            raise ConfigurationError("Bounding geometry must be a GeoJSON object")
        if geometry.get("type") == "Feature":
            geometry = geometry.get("geometry") or {}
        if geometry.get("type") != "Polygon":
            raise ConfigurationError(
                f"Bounding geometry must be a Polygon, got {geometry.get('type')!r}")

        rings = geometry.get("coordinates") or []
        if not rings or len(rings[0]) < 3:
            raise ConfigurationError("Bounding polygon has no usable outer ring")

        try:
            lngs = [float(pt[0]) for pt in rings[0]]
            lats = [float(pt[1]) for pt in rings[0]]
        except (TypeError, ValueError, IndexError) as e:
            raise ConfigurationError(f"Malformed polygon coordinates: {e}") from e

        if not all(math.isfinite(v) for v in lngs + lats):
            raise ConfigurationError("Bounding polygon has non-finite coordinates")

        bbox = cls(min(lngs), min(lats), max(lngs), max(lats))
        if bbox.max_lng <= bbox.min_lng or bbox.max_lat <= bbox.min_lat:
            raise ConfigurationError("Bounding polygon has zero area")
        return bbox

    @property
    def center(self) -> tuple[float, float]:
        return ((self.min_lng + self.max_lng) / 2, (self.min_lat + self.max_lat) / 2)

    @property
    def width_m(self) -> float:
        center_lat = math.radians(self.center[1])
        return (self.max_lng - self.min_lng) * METERS_PER_DEGREE * math.cos(center_lat)

    @property
    def height_m(self) -> float:
        return (self.max_lat - self.min_lat) * METERS_PER_DEGREE

    @property
    def diagonal_m(self) -> float:
        return math.hypot(self.width_m, self.height_m)

    def contains(self, lng: float, lat: float) -> bool:
        return (self.min_lng <= lng <= self.max_lng and
                self.min_lat <= lat <= self.max_lat)

    def to_polygon(self) -> Polygon:
        """Convert bounding box to shapely polygon."""
        return box(self.min_lng, self.min_lat, self.max_lng, self.max_lat)


@dataclass
class ElevationTile:
    """One decoded terrain-RGB tile: elevations in metres, row 0 = north."""
    tile: Tile
    data: np.ndarray

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]


@dataclass
class ElevationGrid:
    """Fused elevation grid. Row 0 is the southern edge, column 0 the western."""
    values: np.ndarray
    min_elevation: float
    max_elevation: float
    bbox: BoundingBox

    @property
    def width(self) -> int:
        return self.values.shape[1]

    @property
    def height(self) -> int:
        return self.values.shape[0]

    @property
    def elevation_range(self) -> float:
        return self.max_elevation - self.min_elevation


def _as_height(value) -> Optional[float]:
    """Coerce a raw attribute to a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        height = float(value)
    except (TypeError, ValueError):
        return None
    return height if math.isfinite(height) else None


@dataclass
class PolygonFeature:
    """A single-ring polygon pulled out of a vector tile.

    Height attributes are read into typed fields up front; the fallback
    order is ``render_height`` then ``height`` then the layer default.
    """
    ring: list[tuple[float, float]]
    layer: str = "building"
    render_height: Optional[float] = None
    height: Optional[float] = None
    properties: dict = field(default_factory=dict)

    @classmethod
    def from_properties(cls, ring, layer: str, properties: dict) -> "PolygonFeature":
        return cls(
            ring=ring,
            layer=layer,
            render_height=_as_height(properties.get("render_height")),
            height=_as_height(properties.get("height")),
            properties=dict(properties),
        )

    def resolve_height(self, default: float) -> float:
        if self.render_height is not None:
            return self.render_height
        if self.height is not None:
            return self.height
        return default


@dataclass
class BuildingData:
    footprint: list[tuple[float, float]]
    height: float
    base_elevation: float


class ContainmentPolicy(str, Enum):
    any_vertex = "any_vertex"
    all_vertices = "all_vertices"


@dataclass
class VectorLayer:
    """Per-layer extraction and extrusion settings."""
    name: str
    source_layer: str
    color: int = 0xAFAFAF
    extrusion_depth: float = 1.0
    z_offset: float = 0.0
    buffer_m: Optional[float] = None
    filter: Optional[list] = None
    default_height: float = constants.MIN_BUILDING_HEIGHT
    is_building: bool = False

    @classmethod
    def from_config(cls, name: str, config: Optional[dict] = None) -> "VectorLayer":
        if config is None:
            if name not in constants.VECTOR_LAYERS:
                raise ConfigurationError(f"Unknown vector layer: {name!r}")
            config = constants.VECTOR_LAYERS[name]
        return cls(name=name, **config)

    @property
    def rgb(self) -> tuple[float, float, float]:
        return (((self.color >> 16) & 0xFF) / 255,
                ((self.color >> 8) & 0xFF) / 255,
                (self.color & 0xFF) / 255)


@dataclass
class MeshSettings:
    """Every tunable of one generation request."""
    grid_width: int = constants.GRID_SIZE
    grid_height: int = constants.GRID_SIZE
    mesh_width: float = constants.MESH_WIDTH
    vertical_span_ratio: float = constants.VERTICAL_SPAN_RATIO
    vertical_exaggeration: float = 1.0
    building_scale_factor: float = 1.0
    terrain_base_height: float = constants.TERRAIN_BASE_HEIGHT
    building_submerge_offset: float = constants.BUILDING_SUBMERGE_OFFSET
    polygon_submerge_offset: float = constants.POLYGON_SUBMERGE_OFFSET
    min_building_height: float = constants.MIN_BUILDING_HEIGHT
    max_building_height: float = constants.MAX_BUILDING_HEIGHT
    smoothing_passes: int = constants.SMOOTHING_PASSES
    containment: ContainmentPolicy = ContainmentPolicy.any_vertex
    layers: tuple[str, ...] = constants.DEFAULT_LAYERS

    def __post_init__(self):
        if self.grid_width < 2 or self.grid_height < 2:
            raise ConfigurationError("Elevation grid must be at least 2x2")
        if self.mesh_width <= 0:
            raise ConfigurationError("Mesh width must be positive")
        if self.vertical_exaggeration < 0 or self.building_scale_factor < 0:
            raise ConfigurationError("Scale factors must be non-negative")
        if self.min_building_height > self.max_building_height:
            raise ConfigurationError("Building height range is inverted")
        try:
            self.containment = ContainmentPolicy(self.containment)
        except ValueError:
            raise ConfigurationError(
                f"Unknown containment policy {self.containment!r}; choose from "
                f"{[p.value for p in ContainmentPolicy]}") from None
        self.layers = tuple(self.layers)
        unknown = [name for name in self.layers if name not in constants.VECTOR_LAYERS]
        if unknown:
            raise ConfigurationError(f"Unknown vector layer(s): {', '.join(unknown)}")

    @property
    def vertical_span(self) -> float:
        return self.mesh_width * self.vertical_span_ratio

    def vector_layers(self) -> list[VectorLayer]:
        return [VectorLayer.from_config(name) for name in self.layers]


@dataclass
class MeshBuffer:
    """Triangle soup with optional per-vertex RGB colors in [0, 1]."""
    positions: np.ndarray
    indices: np.ndarray
    colors: Optional[np.ndarray] = None

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float64).reshape(-1, 3)
        self.indices = np.asarray(self.indices, dtype=np.int64).reshape(-1, 3)
        if self.colors is not None:
            self.colors = np.asarray(self.colors, dtype=np.float64).reshape(-1, 3)
            if len(self.colors) != len(self.positions):
                raise ValueError("colors must have one entry per vertex")
        if len(self.indices) and (self.indices.min() < 0 or
                                  self.indices.max() >= len(self.positions)):
            raise ValueError("triangle index out of range")

    @classmethod
    def empty(cls) -> "MeshBuffer":
        return cls(np.empty((0, 3)), np.empty((0, 3), dtype=np.int64))

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def face_count(self) -> int:
        return len(self.indices)

    @property
    def bounds(self) -> np.ndarray:
        if not self.vertex_count:
            return np.zeros((2, 3))
        return np.array([self.positions.min(axis=0), self.positions.max(axis=0)])

    @classmethod
    def merge(cls, buffers: list["MeshBuffer"]) -> "MeshBuffer":
        """Concatenate buffers, offsetting each one's indices by the running vertex count."""
        buffers = [b for b in buffers if b.vertex_count]
        if not buffers:
            return cls.empty()

        positions, indices, colors = [], [], []
        has_colors = any(b.colors is not None for b in buffers)
        offset = 0
        for b in buffers:
            positions.append(b.positions)
            indices.append(b.indices + offset)
            if has_colors:
                colors.append(b.colors if b.colors is not None
                              else np.ones((b.vertex_count, 3)))
            offset += b.vertex_count

        return cls(
            np.vstack(positions),
            np.vstack(indices),
            np.vstack(colors) if has_colors else None,
        )

    def centered(self) -> "MeshBuffer":
        """Return a copy translated so the bounding-box center is the origin."""
        if not self.vertex_count:
            return self
        lo, hi = self.bounds
        return MeshBuffer(self.positions - (lo + hi) / 2, self.indices.copy(),
                          None if self.colors is None else self.colors.copy())

    def freeze(self) -> "MeshBuffer":
        for arr in (self.positions, self.indices, self.colors):
            if arr is not None:
                arr.setflags(write=False)
        return self

    def to_trimesh(self) -> trimesh.Trimesh:
        vertex_colors = None
        if self.colors is not None:
            vertex_colors = np.round(np.clip(self.colors, 0, 1) * 255).astype(np.uint8)
        return trimesh.Trimesh(
            vertices=np.array(self.positions),
            faces=np.array(self.indices),
            vertex_colors=vertex_colors,
            process=False,
        )
