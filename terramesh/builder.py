"""MeshGenerator: thin orchestrator that delegates to the pipeline modules."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from . import constants
from .context import CancellationToken
from .elevation import ElevationSource, fetch_elevation_tiles
from .fetch import create_client
from .features import normalize_buildings, normalize_polygons
from .geometry import synthesize
from .models import BoundingBox, BuildingData, ElevationGrid, MeshBuffer, MeshSettings
from .terrain import build_elevation_grid
from .tiles import select_zoom, tiles_for_bbox
from .vector_tiles import VectorTileSource

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


@dataclass
class GenerationResult:
    mesh: MeshBuffer
    grid: ElevationGrid
    buildings: list[BuildingData]
    zoom: int
    elevation_tiles: int
    layer_counts: dict[str, int] = field(default_factory=dict)
    timings: dict[str, float] = field(default_factory=dict)

    def summary(self) -> dict:
        return {
            "vertices": self.mesh.vertex_count,
            "faces": self.mesh.face_count,
            "buildings": len(self.buildings),
            "zoom": self.zoom,
            "elevation_tiles": self.elevation_tiles,
            "min_elevation": self.grid.min_elevation,
            "max_elevation": self.grid.max_elevation,
            "layers": dict(self.layer_counts),
            "timings": {k: round(v, 3) for k, v in self.timings.items()},
        }


class MeshGenerator:
    def __init__(self, elevation_url: str = constants.ELEVATION_URL,
                 vector_url: str = constants.VECTOR_URL,
                 style: Optional[dict] = None,
                 style_url: str = constants.STYLE_URL,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        elevation_url, vector_url: ``{z}/{x}/{y}`` tile templates.
        style / style_url: MapLibre style used to discover the building source.
        transport: optional httpx transport (tests use ``httpx.MockTransport``).
        """
        self.elevation_url = elevation_url
        self.vector_url = vector_url
        self.style = style
        self.style_url = style_url
        self.transport = transport

    async def _load_style(self, client: httpx.AsyncClient) -> Optional[dict]:
        """The configured style, or the one at ``style_url`` fetched for this run."""
        if self.style is not None or not self.style_url:
            return self.style
        try:
            response = await client.get(self.style_url)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not load map style {self.style_url}: {e}")
            return None

    async def generate(self, geometry: dict, settings: Optional[MeshSettings] = None,
                       token: Optional[CancellationToken] = None,
                       progress_callback: Optional[ProgressCallback] = None
                       ) -> GenerationResult:
        """Run the whole pipeline for one bounding polygon.

        Raises ``ConfigurationError`` before any network access when the
        geometry or settings are invalid, and ``GenerationCancelled`` as
        soon as ``token`` is cancelled.
        """
        def _progress(pct, msg):
            if progress_callback:
                progress_callback(pct, msg)

        bbox = BoundingBox.from_geojson(geometry)
        settings = settings or MeshSettings()
        layers = settings.vector_layers()
        token = token or CancellationToken()
        timings = {}

        zoom = select_zoom(bbox)
        tiles = tiles_for_bbox(bbox, zoom)
        logger.info(f"Generating mesh for {bbox} at zoom {zoom} ({len(tiles)} elevation tiles)")

        # ── Fetch elevation and vector tiles concurrently ──────────────
        _progress(10, "Fetching tiles...")
        t0 = time.perf_counter()
        async with create_client(self.transport) as client:
            style = await self._load_style(client)
            elevation_source = ElevationSource(client, self.elevation_url)
            vector_source = VectorTileSource(client, style, self.vector_url)
            elevation_tiles, features = await asyncio.gather(
                fetch_elevation_tiles(tiles, elevation_source, token),
                vector_source.fetch_features(bbox, layers, token),
            )
        timings["fetch"] = time.perf_counter() - t0
        token.raise_if_cancelled()

        # ── Elevation grid ──────────────────────────────────────────
        _progress(40, "Building elevation grid...")
        t0 = time.perf_counter()
        grid = await asyncio.to_thread(
            build_elevation_grid, elevation_tiles, bbox,
            settings.grid_width, settings.grid_height,
            settings.smoothing_passes, token)
        timings["grid"] = time.perf_counter() - t0

        # ── Features ────────────────────────────────────────────────
        _progress(60, "Normalizing features...")
        t0 = time.perf_counter()
        buildings = []
        layer_rings = {}
        for layer in layers:
            if layer.is_building:
                buildings.extend(normalize_buildings(
                    features[layer.name], grid, settings.containment,
                    default_height=layer.default_height,
                    height_range=(settings.min_building_height,
                                  settings.max_building_height),
                    token=token))
            else:
                layer_rings[layer.name] = normalize_polygons(
                    features[layer.name], bbox, settings.containment)
        timings["features"] = time.perf_counter() - t0

        # ── Mesh ────────────────────────────────────────────────────
        _progress(75, "Synthesizing mesh...")
        t0 = time.perf_counter()
        mesh = await asyncio.to_thread(
            synthesize, grid, buildings, layer_rings, settings, token)
        timings["mesh"] = time.perf_counter() - t0
        _progress(100, "Mesh complete")

        logger.info("Timing: " + ", ".join(f"{k}={v:.2f}s" for k, v in timings.items()))
        return GenerationResult(
            mesh=mesh,
            grid=grid,
            buildings=buildings,
            zoom=zoom,
            elevation_tiles=len(elevation_tiles),
            layer_counts={name: len(rings) for name, rings in layer_rings.items()},
            timings=timings,
        )
