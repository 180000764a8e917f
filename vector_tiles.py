"""
vector_tiles.py - Decode vector tile payloads and project them to lat/lng

Decoding never fails outward: raster payloads, corrupt protobufs and bad
gzip streams all come back as a tile with no layers. Projection maps
tile-local integer coordinates onto the tile's geographic bounds.
"""

import gzip
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import mapbox_vector_tile

from geo_utils import BoundingBox, TileCoordinate, tile_bounds
from map_errors import DecodeDegraded
from terrain_classifier import GeometryKind

logger = logging.getLogger(__name__)

PNG_MAGIC = b"\x89PNG"
GZIP_MAGIC = b"\x1f\x8b"

DEFAULT_EXTENT = 4096

# Vector tile feature type codes
GEOMETRY_TYPE_CODES = {
    1: GeometryKind.POINT,
    2: GeometryKind.LINESTRING,
    3: GeometryKind.POLYGON,
}

# Decoded GeoJSON geometry names back to feature type codes
GEOMETRY_NAME_CODES = {
    "Point": 1,
    "MultiPoint": 1,
    "LineString": 2,
    "MultiLineString": 2,
    "Polygon": 3,
    "MultiPolygon": 3,
}


@dataclass
class TileFeature:
    """One decoded feature in tile-local coordinates.

    Rings and parts are flattened into a single coordinate list.
    """
    kind: GeometryKind
    coordinates: List[Tuple[int, int]]
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TileLayer:
    name: str
    features: List[TileFeature] = field(default_factory=list)
    extent: Optional[int] = None
    version: Optional[int] = None


@dataclass
class VectorTile:
    layers: Dict[str, TileLayer] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.layers

    @property
    def feature_count(self) -> int:
        return sum(len(layer.features) for layer in self.layers.values())


def _flatten_coords(coords) -> List[Tuple[int, int]]:
    """Flatten nested GeoJSON coordinate arrays into (x, y) pairs."""
    if not coords:
        return []
    if isinstance(coords[0], (int, float)):
        return [(coords[0], coords[1])]
    flat = []
    for part in coords:
        flat.extend(_flatten_coords(part))
    return flat


def _feature_type_code(feature: Dict[str, Any]) -> Optional[int]:
    type_code = feature.get("type")
    if isinstance(type_code, int):
        return type_code
    geometry = feature.get("geometry") or {}
    return GEOMETRY_NAME_CODES.get(geometry.get("type"))


def _decode(data: bytes) -> VectorTile:
    if data[:2] == GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise DecodeDegraded(f"Bad gzip stream: {e}") from e

    try:
        raw = mapbox_vector_tile.decode(data, default_options={"y_coord_down": True})
    except Exception as e:
        raise DecodeDegraded(f"Not a vector tile: {e}") from e

    if not isinstance(raw, dict):
        raise DecodeDegraded(f"Unexpected decoder output: {type(raw).__name__}")

    tile = VectorTile()
    for layer_name, layer_data in raw.items():
        layer = TileLayer(
            name=layer_name,
            extent=layer_data.get("extent"),
            version=layer_data.get("version"),
        )
        for feature in layer_data.get("features", []):
            kind = GEOMETRY_TYPE_CODES.get(_feature_type_code(feature))
            if kind is None:
                continue
            geometry = feature.get("geometry") or {}
            coords = geometry.get("coordinates", geometry) if isinstance(geometry, dict) else geometry
            layer.features.append(TileFeature(
                kind=kind,
                coordinates=_flatten_coords(coords),
                properties=dict(feature.get("properties") or {}),
            ))
        tile.layers[layer_name] = layer
    return tile


def decode_vector_tile(data: bytes, tile: Optional[TileCoordinate] = None) -> VectorTile:
    """Decode a fetched tile payload.

    Args:
        data: Raw payload (protobuf vector tile, possibly gzipped, or a PNG)
        tile: Tile address, used only in log messages

    Returns:
        VectorTile; empty for raster tiles and undecodable payloads
    """
    label = tile.key if tile is not None else "tile"

    if not data:
        return VectorTile()

    if data[:4] == PNG_MAGIC:
        logger.debug("%s is a raster tile, no vector data", label)
        return VectorTile()

    try:
        return _decode(bytes(data))
    except DecodeDegraded as e:
        logger.warning("Failed to decode %s, using empty tile: %s", label, e)
        return VectorTile()


# OpenMapTiles-style layers and the OSM tag their "class" stands for
LAYER_TAG_HINTS = {
    "building": ("building", None),
    "transportation": ("highway", "class"),
    "water": ("natural", None),
    "waterway": ("waterway", "class"),
    "landuse": ("landuse", "class"),
    "park": ("leisure", None),
    "poi": ("amenity", "class"),
}
LAYER_HINT_DEFAULTS = {
    "building": "yes",
    "water": "water",
    "park": "park",
}
LANDCOVER_CLASS_TAGS = {
    "wood": ("natural", "wood"),
    "forest": ("landuse", "forest"),
    "grass": ("landuse", "grass"),
    "meadow": ("landuse", "meadow"),
    "wetland": ("natural", "wetland"),
}
NON_ROAD_CLASSES = {"rail", "transit", "ferry", "aerialway"}


def layer_tags(layer_name: str, properties: Dict[str, Any]) -> Dict[str, Any]:
    """Add the OSM tag implied by a schema layer, keeping existing tags."""
    tags = dict(properties)
    tags["_layer"] = layer_name
    feature_class = properties.get("class")

    if layer_name == "landcover":
        hint = LANDCOVER_CLASS_TAGS.get(str(feature_class))
        if hint and hint[0] not in properties:
            tags[hint[0]] = hint[1]
        return tags

    if layer_name not in LAYER_TAG_HINTS:
        return tags

    key, class_field = LAYER_TAG_HINTS[layer_name]
    if key in properties:
        return tags

    if class_field is None:
        tags[key] = LAYER_HINT_DEFAULTS[layer_name]
    elif properties.get(class_field):
        value = str(properties[class_field])
        if layer_name == "transportation" and value in NON_ROAD_CLASSES:
            return tags
        tags[key] = value
    return tags


def project_point(x: float, y: float, bbox: BoundingBox, extent: int = DEFAULT_EXTENT) -> Tuple[float, float]:
    """Tile-local (x, y) to (lng, lat). Tile y grows downward, latitude upward."""
    lng = bbox.min_lng + (x / extent) * (bbox.max_lng - bbox.min_lng)
    lat = bbox.max_lat - (y / extent) * (bbox.max_lat - bbox.min_lat)
    return (lng, lat)


def project_feature(
    feature: TileFeature,
    bbox: BoundingBox,
    extent: int = DEFAULT_EXTENT,
) -> Optional[Dict[str, Any]]:
    """Convert one tile feature into a GeoJSON geometry dict."""
    if not feature.coordinates:
        return None

    coords = [project_point(x, y, bbox, extent) for x, y in feature.coordinates]

    if feature.kind == GeometryKind.POINT:
        return {"type": "Point", "coordinates": coords[0]}
    if feature.kind == GeometryKind.LINESTRING:
        return {"type": "LineString", "coordinates": coords}
    return {"type": "Polygon", "coordinates": [coords]}


def vector_tile_to_features(
    tile_data: VectorTile,
    tile: TileCoordinate,
    default_extent: int = DEFAULT_EXTENT,
) -> List[Dict[str, Any]]:
    """Project every feature of a decoded tile into GeoJSON features.

    Layers that do not declare an extent use default_extent.
    """
    bbox = tile_bounds(tile)
    features = []

    for layer_name, layer in tile_data.layers.items():
        extent = layer.extent or default_extent
        for feature in layer.features:
            geometry = project_feature(feature, bbox, extent)
            if geometry is None:
                continue
            features.append({
                "type": "Feature",
                "geometry": geometry,
                "properties": layer_tags(layer_name, feature.properties),
            })

    return features
