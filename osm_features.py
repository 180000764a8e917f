"""
osm_features.py - Convert Overpass API JSON into GeoJSON features

Ways become lines or polygons, tagged nodes become points. Relations are
accepted in the response but not turned into geometry.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from geo_utils import BoundingBox

logger = logging.getLogger(__name__)

# Tag filters sent to Overpass: (element type, tag key)
QUERY_FILTERS = (
    ("way", "building"),
    ("way", "highway"),
    ("way", "landuse"),
    ("way", "natural"),
    ("way", "waterway"),
    ("way", "water"),
    ("node", "amenity"),
    ("way", "leisure"),
)

# Overpass refuses long server-side timeouts on the public instances
MAX_QUERY_TIMEOUT = 25


def build_overpass_query(bbox: BoundingBox, timeout: float) -> str:
    """Build the Overpass QL query for all tag filters inside bbox."""
    query_timeout = min(int(timeout), MAX_QUERY_TIMEOUT)
    bounds = bbox.as_overpass()
    statements = "\n".join(
        f'  {element}["{key}"]({bounds});' for element, key in QUERY_FILTERS
    )
    return f"[out:json][timeout:{query_timeout}];\n(\n{statements}\n);\nout geom;\n"


def is_polygon_way(coords: List[Tuple[float, float]], tags: Dict[str, str]) -> bool:
    """Decide whether a way is an area.

    A way is an area when its ring is closed, when it carries an area tag
    (building, landuse, natural=water), or when it has no waterway tag.
    The last rule makes ways polygons unless they are waterways; open
    highways are still classified as roads, but rasterized as filled rings.
    """
    closed = len(coords) >= 4 and coords[0] == coords[-1]
    return (
        closed
        or "building" in tags
        or "landuse" in tags
        or tags.get("natural") == "water"
        or "waterway" not in tags
    )


def _way_coords(element: Dict[str, Any], nodes: Dict[int, Tuple[float, float]]) -> List[Tuple[float, float]]:
    """Coordinates of a way from inline geometry, else from referenced nodes."""
    geometry = element.get("geometry")
    if geometry:
        return [
            (point["lon"], point["lat"])
            for point in geometry
            if point and "lat" in point and "lon" in point
        ]

    coords = []
    for node_id in element.get("nodes", []):
        if node_id in nodes:
            coords.append(nodes[node_id])
    return coords


def _way_feature(element: Dict[str, Any], nodes: Dict[int, Tuple[float, float]]) -> Optional[Dict[str, Any]]:
    coords = _way_coords(element, nodes)
    if len(coords) < 2:
        return None

    tags = element.get("tags") or {}

    if is_polygon_way(coords, tags):
        ring = list(coords)
        if ring[0] != ring[-1]:
            ring.append(ring[0])
        geometry = {"type": "Polygon", "coordinates": [ring]}
    else:
        geometry = {"type": "LineString", "coordinates": coords}

    return {"type": "Feature", "geometry": geometry, "properties": dict(tags)}


def osm_to_features(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Convert an Overpass JSON response into GeoJSON features."""
    elements = data.get("elements", [])

    # Build node lookup for ways that reference nodes by id
    nodes = {}
    for element in elements:
        if element.get("type") == "node" and "lat" in element and "lon" in element:
            nodes[element["id"]] = (element["lon"], element["lat"])

    features = []
    skipped_relations = 0

    for element in elements:
        element_type = element.get("type")

        if element_type == "way":
            feature = _way_feature(element, nodes)
            if feature is not None:
                features.append(feature)

        elif element_type == "node" and "lat" in element and "lon" in element:
            tags = element.get("tags") or {}
            if tags:
                features.append({
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": (element["lon"], element["lat"])},
                    "properties": dict(tags),
                })

        elif element_type == "relation":
            skipped_relations += 1

    if skipped_relations:
        logger.debug("Skipped %d relation(s)", skipped_relations)

    return features
