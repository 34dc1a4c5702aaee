"""Shared fixtures: synthetic elevation tiles, MVT payloads and mock HTTP."""

import io

import httpx
import mapbox_vector_tile
import numpy as np
import pytest
from PIL import Image

from terramesh.elevation import encode_terrain_rgb
from terramesh.models import BoundingBox, ElevationGrid, MeshSettings, Tile
from terramesh.tiles import tile_bounds


def png_for_elevation(elevation: np.ndarray) -> bytes:
    """Encode an elevation array as a terrain-RGB PNG."""
    buf = io.BytesIO()
    Image.fromarray(encode_terrain_rgb(elevation)).save(buf, format="PNG")
    return buf.getvalue()


def mvt_for_layers(layers: dict) -> bytes:
    """Encode ``{layer_name: [(shapely_geometry, properties), ...]}`` as an MVT.

    Geometries are in tile pixel coordinates (0..4096, y down).
    """
    payload = [
        {
            "name": name,
            "features": [{"geometry": geom, "properties": props}
                         for geom, props in features],
        }
        for name, features in layers.items()
    ]
    return mapbox_vector_tile.encode(payload, default_options={"y_coord_down": True})


@pytest.fixture
def equator_tile():
    """A zoom-8 tile just north-east of (0, 0), about 1.4 degrees square."""
    return Tile(128, 127, 8)


@pytest.fixture
def one_degree_bbox(equator_tile):
    """A 1x1 degree box that lies fully inside ``equator_tile``."""
    tb = tile_bounds(equator_tile)
    return BoundingBox(tb.min_lng + 0.2, tb.min_lat + 0.2,
                       tb.min_lng + 1.2, tb.min_lat + 1.2)


@pytest.fixture
def small_bbox():
    """Roughly 700 m square near Bonn; fits in a handful of zoom-14 tiles."""
    return BoundingBox(7.095, 50.730, 7.105, 50.736)


@pytest.fixture
def settings():
    return MeshSettings(grid_width=20, grid_height=20)


@pytest.fixture
def make_grid():
    """Factory for an ``ElevationGrid`` with given values over a bbox."""
    def _make(values, bbox, min_elevation=None, max_elevation=None):
        values = np.asarray(values, dtype=np.float64)
        return ElevationGrid(
            values=values,
            min_elevation=float(values.min()) if min_elevation is None else min_elevation,
            max_elevation=float(values.max()) if max_elevation is None else max_elevation,
            bbox=bbox,
        )
    return _make


@pytest.fixture
def png_tile():
    return png_for_elevation


@pytest.fixture
def mvt_tile():
    return mvt_for_layers


@pytest.fixture
def mock_transport():
    """Build an ``httpx.MockTransport`` from a ``{url_substring: response}`` map.

    Values are bytes (served with 200), ints (bare status codes) or
    callables taking the request. Unmatched URLs return 404. Every request
    URL is appended to ``transport.requested``.
    """
    def _make(routes: dict):
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            requested.append(url)
            for pattern, response in routes.items():
                if pattern in url:
                    if callable(response):
                        return response(request)
                    if isinstance(response, int):
                        return httpx.Response(response)
                    return httpx.Response(200, content=response)
            return httpx.Response(404)

        transport = httpx.MockTransport(handler)
        transport.requested = requested
        return transport
    return _make
