"""Vector tile (MVT) fetching, decoding and polygon extraction."""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import httpx
import mapbox_vector_tile
from shapely.geometry import LineString, MultiPolygon, Polygon

from . import constants
from .context import CancellationToken
from .errors import DecodeError, ValidationError
from .fetch import fetch_bytes, gather_tiles
from .models import BoundingBox, PolygonFeature, Tile, VectorLayer
from .tiles import tile_count, tiles_for_bbox

logger = logging.getLogger(__name__)

DEFAULT_EXTENT = 4096
DEFAULT_BUILDING_SOURCE = "openmaptiles"
DEFAULT_BUILDING_LAYER = "building"


def decode_vector_tile(data: bytes) -> dict:
    """Decode an MVT payload; y grows downwards like image rows."""
    if not data:
        return {}
    try:
        return mapbox_vector_tile.decode(data, default_options={"y_coord_down": True})
    except Exception as e:
        raise DecodeError(f"cannot decode vector tile: {e}") from e


def tile_point_to_lng_lat(tile: Tile, px: float, py: float,
                          extent: int = DEFAULT_EXTENT) -> tuple[float, float]:
    n = 2 ** tile.z
    lng = (tile.x + px / extent) / n * 360.0 - 180.0
    lat_rad = math.atan(math.sinh(math.pi * (1.0 - 2.0 * (tile.y + py / extent) / n)))
    return lng, math.degrees(lat_rad)


def _open_ring(ring):
    if len(ring) > 1 and tuple(ring[0]) == tuple(ring[-1]):
        return ring[:-1]
    return ring


def ring_to_lng_lat(ring, tile: Tile, extent: int) -> list[tuple[float, float]]:
    """Convert a tile-local ring; raises ``ValidationError`` on bad coordinates."""
    out = []
    for point in _open_ring(ring):
        try:
            px, py = float(point[0]), float(point[1])
        except (TypeError, ValueError, IndexError) as e:
            raise ValidationError(f"malformed ring coordinate {point!r}") from e
        if not (math.isfinite(px) and math.isfinite(py)):
            raise ValidationError("non-finite ring coordinate")
        out.append(tile_point_to_lng_lat(tile, px, py, extent))
    if len(out) < 3:
        raise ValidationError(f"ring has {len(out)} points, need at least 3")
    return out


# ── Filters ──────────────────────────────────────────────────────────────

def _base_type(geometry_type: str) -> str:
    return geometry_type[5:] if geometry_type.startswith("Multi") else geometry_type


def evaluate_filter(expr, properties: dict, geometry_type: str = "Polygon") -> bool:
    """Evaluate a MapLibre legacy filter expression against one feature.

    Supports ``all``, ``any``, ``none``, ``==``, ``!=``, ``in``, ``!in``,
    ``has`` and ``!has``; the ``$type`` key compares against the geometry
    type. Unknown operators let the feature through.
    """
    if not expr:
        return True

    op = expr[0]
    if op == "all":
        return all(evaluate_filter(e, properties, geometry_type) for e in expr[1:])
    if op == "any":
        return any(evaluate_filter(e, properties, geometry_type) for e in expr[1:])
    if op == "none":
        return not any(evaluate_filter(e, properties, geometry_type) for e in expr[1:])

    key = expr[1] if len(expr) > 1 else None
    if key == "$type":
        value = _base_type(geometry_type)
    else:
        value = properties.get(key)

    if op == "==":
        return value == expr[2]
    if op == "!=":
        return value != expr[2]
    if op == "in":
        return value in expr[2:]
    if op == "!in":
        return value not in expr[2:]
    if op == "has":
        return key in properties
    if op == "!has":
        return key not in properties

    logger.warning(f"Unsupported filter operator {op!r}, letting feature through")
    return True


# ── Extraction ───────────────────────────────────────────────────────────

def buffer_line(coords: list[tuple[float, float]], buffer_m: float) -> list[Polygon]:
    """Buffer a lng/lat polyline by ``buffer_m`` metres into polygons.

    The buffer is applied in degrees, averaging the longitude and latitude
    scale at the line's mean latitude.
    """
    if len(coords) < 2:
        return []
    mean_lat = sum(lat for _, lat in coords) / len(coords)
    deg_lat = buffer_m / 111320.0
    deg_lng = buffer_m / (111320.0 * max(math.cos(math.radians(mean_lat)), 1e-6))
    buffered = LineString(coords).buffer((deg_lat + deg_lng) / 2.0, cap_style=2, join_style=2)
    if buffered.is_empty:
        return []
    if isinstance(buffered, MultiPolygon):
        return list(buffered.geoms)
    return [buffered]


def _line_parts(geometry: dict) -> list:
    if geometry["type"] == "LineString":
        return [geometry["coordinates"]]
    if geometry["type"] == "MultiLineString":
        return list(geometry["coordinates"])
    return []


def extract_polygon_features(decoded: dict, tile: Tile, layer: VectorLayer,
                             source_layer: Optional[str] = None) -> list[PolygonFeature]:
    """Pull single-ring polygon features for ``layer`` out of one decoded tile.

    MultiPolygons are split into one feature per part (outer ring only).
    Lines are kept only for layers with a ``buffer_m`` and are buffered
    into polygons. Features with any non-finite coordinate are dropped.
    """
    data = decoded.get(source_layer or layer.source_layer)
    if not data:
        return []
    extent = data.get("extent", DEFAULT_EXTENT)

    features = []
    dropped = 0
    for feat in data.get("features", []):
        geometry = feat.get("geometry") or {}
        geom_type = geometry.get("type", "")
        properties = feat.get("properties") or {}
        if layer.filter and not evaluate_filter(layer.filter, properties, geom_type):
            continue

        try:
            if geom_type == "Polygon":
                rings = [ring_to_lng_lat(geometry["coordinates"][0], tile, extent)]
            elif geom_type == "MultiPolygon":
                rings = [ring_to_lng_lat(part[0], tile, extent)
                         for part in geometry["coordinates"] if part]
            elif layer.buffer_m and geom_type in ("LineString", "MultiLineString"):
                rings = []
                for part in _line_parts(geometry):
                    line = [tile_point_to_lng_lat(tile, p[0], p[1], extent) for p in part]
                    if not all(math.isfinite(c) for pt in line for c in pt):
                        raise ValidationError("non-finite line coordinate")
                    rings.extend(list(poly.exterior.coords)[:-1]
                                 for poly in buffer_line(line, layer.buffer_m))
            else:
                continue
        except (ValidationError, KeyError, IndexError, TypeError) as e:
            dropped += 1
            logger.debug(f"Dropping {layer.name} feature in {tile}: {e}")
            continue

        for ring in rings:
            features.append(PolygonFeature.from_properties(ring, layer.name, properties))

    if dropped:
        logger.warning(f"Dropped {dropped} invalid {layer.name} features "
                       f"in tile {tile.z}/{tile.x}/{tile.y}")
    return features


# ── Acquisition strategies ───────────────────────────────────────────────

@dataclass
class VectorStrategy:
    name: str
    url_template: str
    building_layer: str = DEFAULT_BUILDING_LAYER


def resolve_style_source(style: Optional[dict]) -> Optional[VectorStrategy]:
    """Find the building source in a MapLibre style document.

    Takes the first style layer whose id or source-layer mentions
    "building" and returns its source's first tile template.
    """
    if not style:
        return None

    source, source_layer = None, None
    for layer in style.get("layers") or []:
        layer_id = str(layer.get("id", "")).lower()
        sl = layer.get("source-layer")
        if "building" in layer_id or (sl and "building" in sl.lower()):
            source, source_layer = layer.get("source"), sl
            break

    if not source or not source_layer:
        logger.warning("No building layer in map style, assuming OpenMapTiles")
        source, source_layer = DEFAULT_BUILDING_SOURCE, DEFAULT_BUILDING_LAYER

    info = (style.get("sources") or {}).get(source) or {}
    templates = info.get("tiles") or []
    if not templates:
        logger.warning(f"Style source {source!r} has no tile template")
        return None
    return VectorStrategy("style", templates[0], source_layer)


class VectorTileSource:
    """Fetches vector features, trying the style source before the fallback."""

    def __init__(self, client: httpx.AsyncClient, style: Optional[dict] = None,
                 fallback_url: str = constants.VECTOR_URL,
                 zoom: int = constants.BUILDING_ZOOM,
                 max_tiles: int = constants.MAX_BUILDING_TILES):
        self.client = client
        self.style = style
        self.fallback_url = fallback_url
        self.zoom = zoom
        self.max_tiles = max_tiles

    def strategies(self) -> list[VectorStrategy]:
        strategies = []
        from_style = resolve_style_source(self.style)
        if from_style is not None:
            strategies.append(from_style)
        strategies.append(VectorStrategy("fallback", self.fallback_url))
        return strategies

    async def _fetch_decoded(self, template: str, tile: Tile,
                             token: Optional[CancellationToken]):
        data = await fetch_bytes(self.client, tile.format_url(template), token)
        return tile, decode_vector_tile(data)

    async def fetch_features(self, bbox: BoundingBox, layers: list[VectorLayer],
                             token: Optional[CancellationToken] = None
                             ) -> dict[str, list[PolygonFeature]]:
        """Features per layer name for every tile covering ``bbox``.

        Strategies run in order; the next one is tried only when the
        previous one produced no (building) features at all.
        """
        result: dict[str, list[PolygonFeature]] = {layer.name: [] for layer in layers}
        if not layers:
            return result

        count = tile_count(bbox, self.zoom)
        if count > self.max_tiles:
            logger.warning(f"Skipping vector fetch: area too large "
                           f"({count} tiles, max allowed: {self.max_tiles})")
            return result

        tiles = tiles_for_bbox(bbox, self.zoom)
        building_layers = [layer for layer in layers if layer.is_building]
        for strategy in self.strategies():
            decoded = await gather_tiles(
                tiles, lambda t: self._fetch_decoded(strategy.url_template, t, token),
                token, label=f"{strategy.name} vector tile")

            result = {layer.name: [] for layer in layers}
            for tile, data in decoded:
                for layer in layers:
                    source_layer = strategy.building_layer if layer.is_building else None
                    result[layer.name].extend(
                        extract_polygon_features(data, tile, layer, source_layer))

            counted = building_layers or layers
            found = sum(len(result[layer.name]) for layer in counted)
            logger.info(f"Strategy '{strategy.name}' yielded {found} features")
            if found:
                break
        return result
