"""End-to-end tests for MeshGenerator against mocked tile servers."""

import asyncio
import math
import re

import httpx
import numpy as np
import pytest
from shapely.geometry import box

from terramesh.builder import MeshGenerator
from terramesh.context import CancellationToken
from terramesh.errors import ConfigurationError, GenerationCancelled
from terramesh.models import MeshSettings

DEM_URL = "https://dem.test/{z}/{x}/{y}.png"
MVT_URL = "https://mvt.test/{z}/{x}/{y}.pbf"
TILE_PATH = re.compile(r"/(\d+)/(\d+)/(\d+)\.pbf$")


def polygon_for(bbox) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[
            [bbox.min_lng, bbox.min_lat], [bbox.max_lng, bbox.min_lat],
            [bbox.max_lng, bbox.max_lat], [bbox.min_lng, bbox.max_lat],
            [bbox.min_lng, bbox.min_lat],
        ]],
    }


def tile_pixel(lng, lat, z, x, y, extent=4096):
    """Pixel position of a point inside tile z/x/y, y growing downwards."""
    n = 2 ** z
    lat_rad = math.radians(lat)
    fx = (lng + 180.0) / 360.0 * n
    fy = (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n
    return (fx - x) * extent, (fy - y) * extent


def building_server(mvt_tile, lng, lat, height=24):
    """MVT handler serving one square building centred on (lng, lat)."""
    def handler(request: httpx.Request) -> httpx.Response:
        z, x, y = (int(v) for v in TILE_PATH.search(request.url.path).groups())
        px, py = tile_pixel(lng, lat, z, x, y)
        if not (150 <= px <= 3946 and 150 <= py <= 3946):
            return httpx.Response(204)
        footprint = box(px - 150, py - 150, px + 150, py + 150)
        return httpx.Response(200, content=mvt_tile(
            {"building": [(footprint, {"height": height})]}))
    return handler


def run_generate(transport, geometry, settings=None, **kwargs):
    generator = MeshGenerator(elevation_url=DEM_URL, vector_url=MVT_URL,
                              style=None, style_url="", transport=transport)
    return asyncio.run(generator.generate(geometry, settings, **kwargs))


class TestMeshGenerator:
    def test_terrain_and_building(self, mock_transport, png_tile, mvt_tile, small_bbox):
        lng, lat = small_bbox.center
        transport = mock_transport({
            "dem.test": png_tile(np.full((256, 256), 120.0)),
            "mvt.test": building_server(mvt_tile, lng, lat),
        })
        settings = MeshSettings(grid_width=20, grid_height=20)
        progress = []
        result = run_generate(transport, polygon_for(small_bbox), settings,
                              progress_callback=lambda pct, msg: progress.append(pct))

        assert result.zoom == 12
        assert result.elevation_tiles >= 1
        assert len(result.buildings) == 1
        assert result.buildings[0].height == 24
        assert result.buildings[0].base_elevation == pytest.approx(120.0)
        assert result.mesh.vertex_count == 2 * 20 * 20 + 8
        assert result.mesh.to_trimesh().volume > 0
        assert progress == sorted(progress)
        assert progress[-1] == 100

        summary = result.summary()
        assert summary["buildings"] == 1
        assert set(summary["timings"]) == {"fetch", "grid", "features", "mesh"}

    def test_building_rises_above_terrain(self, mock_transport, png_tile, mvt_tile,
                                          small_bbox):
        lng, lat = small_bbox.center
        transport = mock_transport({
            "dem.test": png_tile(np.full((256, 256), 50.0)),
            "mvt.test": building_server(mvt_tile, lng, lat),
        })
        result = run_generate(transport, polygon_for(small_bbox),
                              MeshSettings(grid_width=10, grid_height=10))
        z = result.mesh.positions[:, 2]
        terrain_top = z[:10 * 10]
        assert z.max() > terrain_top.max()

    def test_missing_tiles_still_produce_mesh(self, mock_transport, small_bbox):
        """With every tile server failing the output is a flat slab."""
        transport = mock_transport({"dem.test": 500, "mvt.test": 404})
        result = run_generate(transport, polygon_for(small_bbox),
                              MeshSettings(grid_width=8, grid_height=8))

        assert result.elevation_tiles == 0
        assert result.buildings == []
        assert np.allclose(result.grid.values, 0.0)
        assert result.mesh.to_trimesh().is_watertight

    def test_flat_layers(self, mock_transport, png_tile, mvt_tile, small_bbox):
        lng, lat = small_bbox.center

        def handler(request):
            z, x, y = (int(v) for v in TILE_PATH.search(request.url.path).groups())
            px, py = tile_pixel(lng, lat, z, x, y)
            if not (0 <= px < 4096 and 0 <= py < 4096):
                return httpx.Response(204)
            pond = box(px - 100, py - 100, px + 100, py + 100)
            return httpx.Response(200, content=mvt_tile({"water": [(pond, {})]}))

        transport = mock_transport({
            "dem.test": png_tile(np.full((256, 256), 10.0)),
            "mvt.test": handler,
        })
        settings = MeshSettings(grid_width=10, grid_height=10, layers=("building", "water"))
        result = run_generate(transport, polygon_for(small_bbox), settings)

        assert result.buildings == []
        assert result.layer_counts == {"water": 1}
        assert result.mesh.vertex_count > 2 * 10 * 10

    def test_invalid_geometry_makes_no_requests(self, mock_transport):
        transport = mock_transport({})
        with pytest.raises(ConfigurationError):
            run_generate(transport, {"type": "Point", "coordinates": [7.1, 50.7]})
        assert transport.requested == []

    def test_unknown_layer_makes_no_requests(self, mock_transport, small_bbox):
        transport = mock_transport({})
        with pytest.raises(ConfigurationError):
            run_generate(transport, polygon_for(small_bbox),
                         MeshSettings(layers=("building", "lava")))
        assert transport.requested == []

    def test_cancelled_before_start(self, mock_transport, png_tile, small_bbox):
        transport = mock_transport({"dem.test": png_tile(np.zeros((4, 4)))})
        token = CancellationToken()
        token.cancel()
        with pytest.raises(GenerationCancelled):
            run_generate(transport, polygon_for(small_bbox), token=token)
        assert transport.requested == []

    def test_feature_wrapper_accepted(self, mock_transport, small_bbox):
        transport = mock_transport({})
        feature = {"type": "Feature", "properties": {}, "geometry": polygon_for(small_bbox)}
        result = run_generate(transport, feature, MeshSettings(grid_width=4, grid_height=4))
        assert result.grid.bbox == small_bbox

    def test_style_fetched_per_run_without_caching(self, mock_transport, small_bbox):
        transport = mock_transport({"style.test": b'{"version": 8, "layers": []}'})
        generator = MeshGenerator(elevation_url=DEM_URL, vector_url=MVT_URL, style=None,
                                  style_url="https://style.test/style.json",
                                  transport=transport)
        settings = MeshSettings(grid_width=4, grid_height=4)

        async def scenario():
            await generator.generate(polygon_for(small_bbox), settings)
            await generator.generate(polygon_for(small_bbox), settings)

        asyncio.run(scenario())
        assert generator.style is None
        assert [u for u in transport.requested if "style.test" in u] == [
            "https://style.test/style.json"] * 2

    def test_preset_style_not_fetched(self, mock_transport, small_bbox):
        transport = mock_transport({})
        style = {"version": 8, "layers": []}
        generator = MeshGenerator(elevation_url=DEM_URL, vector_url=MVT_URL, style=style,
                                  style_url="https://style.test/style.json",
                                  transport=transport)
        asyncio.run(generator.generate(polygon_for(small_bbox),
                                       MeshSettings(grid_width=4, grid_height=4)))
        assert generator.style is style
        assert not any("style.test" in u for u in transport.requested)
