"""
terrain_classifier.py - Map OSM tags onto tilemap terrain categories

Every tag combination resolves to exactly one TerrainCategory (GRASS when
nothing matches). Categories carry a render priority used by the rasterizer
to settle overlapping features: lower number wins.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional


class GeometryKind(str, Enum):
    POINT = "Point"
    LINESTRING = "LineString"
    POLYGON = "Polygon"


class TerrainCategory(IntEnum):
    """Closed set of tile types. Values are the codes stored in grid cells (0 = empty)."""
    GRASS = 1
    ROAD_MAIN = 2
    ROAD_SMALL = 3
    PATH = 4
    HOUSE = 5
    SHOP = 6
    SCHOOL = 7
    FACTORY = 8
    FOREST = 9
    PARK_GRASS = 10
    WATER = 11
    RIVER = 12
    LAKE = 13


DEFAULT_CATEGORY = TerrainCategory.GRASS

WATER_CATEGORIES = frozenset({
    TerrainCategory.WATER, TerrainCategory.RIVER, TerrainCategory.LAKE,
})

# Render priority (lower = drawn first and protected from later writes)
TERRAIN_PRIORITY = {
    TerrainCategory.WATER: 0,
    TerrainCategory.RIVER: 0,
    TerrainCategory.LAKE: 0,
    TerrainCategory.ROAD_MAIN: 1,
    TerrainCategory.ROAD_SMALL: 1,
    TerrainCategory.PATH: 1,
    TerrainCategory.HOUSE: 2,
    TerrainCategory.SHOP: 2,
    TerrainCategory.SCHOOL: 2,
    TerrainCategory.FACTORY: 2,
    TerrainCategory.FOREST: 3,
    TerrainCategory.PARK_GRASS: 3,
    TerrainCategory.GRASS: 4,
}

# Tag keys that make a feature worth rasterizing
RENDERABLE_KEYS = ("building", "highway", "natural", "waterway", "landuse", "amenity", "leisure")

MAIN_ROADS = {"residential", "primary", "secondary", "tertiary", "trunk", "motorway"}
SMALL_ROADS = {"service", "unclassified"}
PATHS = {"footway", "path", "cycleway", "pedestrian"}


@dataclass(frozen=True)
class ClassifiedFeature:
    """A feature with geographic geometry and its resolved terrain category.

    Attributes:
        kind: Point, LineString or Polygon
        coordinates: GeoJSON-style (lng, lat) coordinates for the kind
        category: Resolved terrain category
        priority: Render priority of the category
        tags: Source tags
    """
    kind: GeometryKind
    coordinates: Any
    category: TerrainCategory
    priority: int
    tags: Dict[str, str] = field(default_factory=dict)


def _tag(tags: Mapping[str, Any], key: str) -> Optional[str]:
    """Normalized tag value, or None when missing or empty."""
    value = tags.get(key)
    if value is None:
        return None
    value = str(value).strip().lower()
    return value or None


def classify_tags(tags: Mapping[str, Any], kind: GeometryKind) -> TerrainCategory:
    """Resolve tags to a terrain category. First matching rule wins."""
    building = _tag(tags, "building")
    if building:
        if building in ("commercial", "retail"):
            return TerrainCategory.SHOP
        if building in ("industrial", "warehouse"):
            return TerrainCategory.FACTORY
        if building in ("school", "university"):
            return TerrainCategory.SCHOOL
        return TerrainCategory.HOUSE

    highway = _tag(tags, "highway")
    if highway:
        if highway in MAIN_ROADS:
            return TerrainCategory.ROAD_MAIN
        if highway in SMALL_ROADS:
            return TerrainCategory.ROAD_SMALL
        if highway in PATHS:
            return TerrainCategory.PATH
        return TerrainCategory.ROAD_MAIN

    natural = _tag(tags, "natural")
    waterway = _tag(tags, "waterway")
    landuse = _tag(tags, "landuse")
    leisure = _tag(tags, "leisure")

    if natural == "water" or waterway:
        if waterway in ("river", "stream"):
            return TerrainCategory.RIVER
        if natural == "water" and GeometryKind(kind) == GeometryKind.POLYGON:
            return TerrainCategory.LAKE
        return TerrainCategory.WATER

    if natural == "wood" or landuse == "forest":
        return TerrainCategory.FOREST

    if landuse in ("park", "grass", "meadow") or leisure == "park":
        return TerrainCategory.PARK_GRASS

    amenity = _tag(tags, "amenity")
    if amenity:
        if amenity in ("school", "university"):
            return TerrainCategory.SCHOOL
        if amenity in ("shop", "marketplace"):
            return TerrainCategory.SHOP
        return TerrainCategory.HOUSE

    if leisure:
        return TerrainCategory.PARK_GRASS

    return DEFAULT_CATEGORY


def get_priority(category: TerrainCategory) -> int:
    """Render priority for a category (unknown values sort last)."""
    return TERRAIN_PRIORITY.get(category, TERRAIN_PRIORITY[DEFAULT_CATEGORY])


def is_renderable(tags: Mapping[str, Any]) -> bool:
    """True if the tags carry at least one key the classifier understands."""
    return any(_tag(tags, key) for key in RENDERABLE_KEYS)


def classify_feature(kind: GeometryKind, coordinates: Any, tags: Mapping[str, Any]) -> ClassifiedFeature:
    """Build a ClassifiedFeature from raw geometry and tags."""
    kind = GeometryKind(kind)
    category = classify_tags(tags, kind)
    return ClassifiedFeature(
        kind=kind,
        coordinates=coordinates,
        category=category,
        priority=get_priority(category),
        tags={str(k): str(v) for k, v in tags.items()},
    )


def parse_category(name: str) -> TerrainCategory:
    """Look up a category by name (case-insensitive)."""
    try:
        return TerrainCategory[name.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown terrain category: {name}") from None
