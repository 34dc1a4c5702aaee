"""Terrain-RGB elevation tile fetching and decoding.

Terrain-RGB encodes elevation as a 24-bit integer spread over the red,
green and blue channels::

    elevation = -10000 + (R * 65536 + G * 256 + B) * 0.1

giving 0.1 m precision; the alpha channel carries no data.
"""

import io
import logging
from typing import Optional

import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError

from . import constants
from .context import CancellationToken
from .errors import DecodeError
from .fetch import fetch_bytes, gather_tiles
from .models import ElevationTile, Tile

logger = logging.getLogger(__name__)

TERRAIN_RGB_OFFSET = -10000.0
TERRAIN_RGB_SCALE = 0.1
MAX_ENCODED_VALUE = 256 ** 3 - 1


def decode_terrain_rgb(rgb: np.ndarray) -> np.ndarray:
    """Decode an (H, W, 3+) uint8 image to elevation in metres (float64)."""
    rgb = np.asarray(rgb)
    r = rgb[..., 0].astype(np.float64)
    g = rgb[..., 1].astype(np.float64)
    b = rgb[..., 2].astype(np.float64)
    return TERRAIN_RGB_OFFSET + (r * 65536.0 + g * 256.0 + b) * TERRAIN_RGB_SCALE


def encode_terrain_rgb(elevation) -> np.ndarray:
    """Encode elevation in metres to Terrain-RGB; inverse of ``decode_terrain_rgb``.

    Values are rounded to the nearest 0.1 m and clamped to the 24-bit range.
    """
    elevation = np.asarray(elevation, dtype=np.float64)
    value = np.rint((elevation - TERRAIN_RGB_OFFSET) / TERRAIN_RGB_SCALE)
    value = np.clip(value, 0, MAX_ENCODED_VALUE).astype(np.int64)

    r = (value >> 16) & 0xFF
    g = (value >> 8) & 0xFF
    b = value & 0xFF
    return np.stack([r, g, b], axis=-1).astype(np.uint8)


def decode_tile_image(data: bytes) -> np.ndarray:
    """Decode PNG/WebP bytes into an elevation array, row 0 = north."""
    if not data:
        raise DecodeError("empty image payload")
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = np.array(img.convert("RGB"))
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"cannot decode elevation image: {e}") from e
    if rgb.ndim != 3 or rgb.shape[0] < 2 or rgb.shape[1] < 2:
        raise DecodeError(f"unexpected elevation image shape {rgb.shape}")
    return decode_terrain_rgb(rgb)


class ElevationSource:
    """Fetches terrain-RGB tiles from a ``{z}/{x}/{y}`` endpoint."""

    def __init__(self, client: httpx.AsyncClient,
                 url_template: str = constants.ELEVATION_URL):
        self.client = client
        self.url_template = url_template

    async def fetch_tile(self, tile: Tile,
                         token: Optional[CancellationToken] = None) -> ElevationTile:
        url = tile.format_url(self.url_template)
        data = await fetch_bytes(self.client, url, token)
        try:
            elevation = decode_tile_image(data)
        except DecodeError as e:
            raise DecodeError(f"{url}: {e}") from e
        return ElevationTile(tile=tile, data=elevation)


async def fetch_elevation_tiles(tiles: list[Tile], source: ElevationSource,
                                token: Optional[CancellationToken] = None
                                ) -> list[ElevationTile]:
    """Fetch and decode all tiles concurrently; failed tiles are dropped."""
    return await gather_tiles(
        tiles, lambda t: source.fetch_tile(t, token), token, label="elevation tile")
