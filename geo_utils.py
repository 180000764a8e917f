"""
Coordinate utilities for OSM tilemap generation.

This module provides the geographic value types (points, bounding boxes,
slippy-map tile addresses), the lat/lng <-> local meters projection used as
the rasterization frame, tile index math, and line resampling.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Set, Tuple

import numpy as np
from pyproj import Transformer

from map_errors import InvalidRequest

# Approximate meters per degree of latitude
METERS_PER_DEGREE = 111000

# Web Mercator cannot represent the poles
MAX_MERCATOR_LAT = 85.0511287798

Point2D = Tuple[float, float]


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 position in degrees.

    Attributes:
        lat: Latitude, -90 to 90
        lng: Longitude, -180 to 180
    """
    lat: float
    lng: float

    def __post_init__(self):
        if not -90 <= self.lat <= 90:
            raise InvalidRequest(f"Latitude out of range: {self.lat}")
        if not -180 <= self.lng <= 180:
            raise InvalidRequest(f"Longitude out of range: {self.lng}")


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned lat/lng rectangle.

    Attributes:
        min_lat: Southern boundary
        min_lng: Western boundary
        max_lat: Northern boundary
        max_lng: Eastern boundary
    """
    min_lat: float
    min_lng: float
    max_lat: float
    max_lng: float

    def __post_init__(self):
        if self.min_lat > self.max_lat or self.min_lng > self.max_lng:
            raise InvalidRequest(f"Inverted bounding box: {self}")

    @property
    def width(self) -> float:
        """Longitude span in degrees."""
        return self.max_lng - self.min_lng

    @property
    def height(self) -> float:
        """Latitude span in degrees."""
        return self.max_lat - self.min_lat

    @property
    def center(self) -> GeoPoint:
        """Geometric center of the box."""
        return GeoPoint(
            lat=(self.min_lat + self.max_lat) / 2,
            lng=(self.min_lng + self.max_lng) / 2,
        )

    def contains(self, point: GeoPoint) -> bool:
        """Check if a point is within the box (edges included)."""
        return (self.min_lat <= point.lat <= self.max_lat and
                self.min_lng <= point.lng <= self.max_lng)

    def intersects(self, other: 'BoundingBox') -> bool:
        """Check if two boxes share any area or edge."""
        return not (other.min_lat > self.max_lat or other.max_lat < self.min_lat or
                    other.min_lng > self.max_lng or other.max_lng < self.min_lng)

    def as_overpass(self) -> str:
        """Return bounds as the "south,west,north,east" string Overpass expects."""
        return f"{self.min_lat},{self.min_lng},{self.max_lat},{self.max_lng}"


@dataclass(frozen=True, order=True)
class TileCoordinate:
    """Slippy-map tile address.

    Attributes:
        z: Zoom level
        x: Column, 0 at 180W
        y: Row, 0 at the northern Mercator limit
    """
    z: int
    x: int
    y: int

    def __post_init__(self):
        n = 2 ** self.z
        if self.z < 0 or not (0 <= self.x < n and 0 <= self.y < n):
            raise InvalidRequest(f"Invalid tile {self.z}/{self.x}/{self.y}")

    @property
    def key(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


class LocalProjection:
    """Converts between WGS84 and planar meters (spherical Web Mercator).

    The planar frame is where grids are laid out and lines are resampled.
    Scalar and array variants are provided; the array variants are used to
    test many grid cell centers against a polygon in one call.
    """

    WGS84 = "EPSG:4326"
    MERCATOR = "EPSG:3857"

    def __init__(self, planar_crs: str = MERCATOR):
        self.planar_crs = planar_crs
        self._to_planar = Transformer.from_crs(self.WGS84, planar_crs, always_xy=True)
        self._to_wgs84 = Transformer.from_crs(planar_crs, self.WGS84, always_xy=True)

    def to_meters(self, point: GeoPoint) -> Point2D:
        """Convert a GeoPoint to (x, y) meters."""
        x, y = self._to_planar.transform(point.lng, point.lat)
        return (float(x), float(y))

    def from_meters(self, x: float, y: float) -> GeoPoint:
        """Convert (x, y) meters back to a GeoPoint."""
        lng, lat = self._to_wgs84.transform(x, y)
        return GeoPoint(lat=float(lat), lng=float(lng))

    def lnglat_to_meters(self, lngs, lats) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorized lng/lat arrays to x/y arrays."""
        xs, ys = self._to_planar.transform(np.asarray(lngs, dtype=float),
                                           np.asarray(lats, dtype=float))
        return np.asarray(xs), np.asarray(ys)

    def meters_to_lnglat(self, xs, ys) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorized x/y arrays to lng/lat arrays."""
        lngs, lats = self._to_wgs84.transform(np.asarray(xs, dtype=float),
                                              np.asarray(ys, dtype=float))
        return np.asarray(lngs), np.asarray(lats)


_default_projection = None


def default_projection() -> LocalProjection:
    """Shared Web Mercator projection (Transformer construction is not free)."""
    global _default_projection
    if _default_projection is None:
        _default_projection = LocalProjection()
    return _default_projection


def to_local_meters(point: GeoPoint) -> Point2D:
    return default_projection().to_meters(point)


def from_local_meters(x: float, y: float) -> GeoPoint:
    return default_projection().from_meters(x, y)


def bounding_box(center: GeoPoint, radius_m: float) -> BoundingBox:
    """Square-ish box around a center point.

    Uses the equirectangular approximation: one degree of latitude is about
    111 km and one degree of longitude shrinks with cos(lat).

    Args:
        center: Box center
        radius_m: Half the side length, in meters

    Returns:
        BoundingBox centered on center
    """
    if radius_m <= 0:
        raise InvalidRequest(f"Radius must be positive, got {radius_m}")

    lat_delta = radius_m / METERS_PER_DEGREE
    cos_lat = max(math.cos(math.radians(center.lat)), 1e-6)
    lng_delta = radius_m / (METERS_PER_DEGREE * cos_lat)

    return BoundingBox(
        min_lat=max(center.lat - lat_delta, -90.0),
        min_lng=max(center.lng - lng_delta, -180.0),
        max_lat=min(center.lat + lat_delta, 90.0),
        max_lng=min(center.lng + lng_delta, 180.0),
    )


def to_tile_index(point: GeoPoint, zoom: int) -> TileCoordinate:
    """Tile containing a point (standard slippy-map formula)."""
    n = 2 ** zoom
    lat = min(max(point.lat, -MAX_MERCATOR_LAT), MAX_MERCATOR_LAT)
    lat_rad = math.radians(lat)
    x = int(math.floor((point.lng + 180) / 360 * n))
    y = int(math.floor((1 - math.asinh(math.tan(lat_rad)) / math.pi) / 2 * n))
    # lng=180 and the Mercator limit land exactly on the far edge
    return TileCoordinate(z=zoom, x=min(max(x, 0), n - 1), y=min(max(y, 0), n - 1))


def _tile_row_lat(y: int, n: int) -> float:
    return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))


def tile_bounds(tile: TileCoordinate) -> BoundingBox:
    """Geographic bounds of a tile. Inverse of to_tile_index."""
    n = 2 ** tile.z
    return BoundingBox(
        min_lat=_tile_row_lat(tile.y + 1, n),
        min_lng=tile.x / n * 360 - 180,
        max_lat=_tile_row_lat(tile.y, n),
        max_lng=(tile.x + 1) / n * 360 - 180,
    )


def tiles_covering(bbox: BoundingBox, zoom: int) -> Set[TileCoordinate]:
    """All tiles at a zoom level whose bounds intersect bbox, edge tiles included."""
    top_left = to_tile_index(GeoPoint(bbox.max_lat, bbox.min_lng), zoom)
    bottom_right = to_tile_index(GeoPoint(bbox.min_lat, bbox.max_lng), zoom)

    return {
        TileCoordinate(z=zoom, x=x, y=y)
        for x in range(top_left.x, bottom_right.x + 1)
        for y in range(top_left.y, bottom_right.y + 1)
    }


def get_line_length(line_coords: Sequence[Point2D]) -> float:
    """Total length of a polyline."""
    total = 0.0
    for (x1, y1), (x2, y2) in zip(line_coords, line_coords[1:]):
        total += math.hypot(x2 - x1, y2 - y1)
    return total


def resample(line: Sequence[Point2D], spacing: float) -> List[Point2D]:
    """Resample a polyline so consecutive points are at most spacing apart.

    Original vertices are kept, so both endpoints and every corner survive.

    Args:
        line: Sequence of (x, y) points
        spacing: Maximum gap between output points

    Returns:
        List of (x, y) points
    """
    if len(line) <= 1:
        return list(line)
    if spacing <= 0:
        raise InvalidRequest(f"Spacing must be positive, got {spacing}")

    sampled = [tuple(line[0])]
    for (x1, y1), (x2, y2) in zip(line, line[1:]):
        dx = x2 - x1
        dy = y2 - y1
        distance = math.hypot(dx, dy)

        step = spacing
        while step < distance:
            t = step / distance
            sampled.append((x1 + dx * t, y1 + dy * t))
            step += spacing

        sampled.append((x2, y2))

    return sampled
