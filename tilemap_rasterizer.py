"""
tilemap_rasterizer.py - Burn classified map features into a square tile grid

The grid is laid out in Web Mercator meters around a center point, row 0
at the north edge. Features are drawn in priority order (water, roads,
buildings, vegetation, grass) and a cell that already holds anything other
than GRASS or PARK_GRASS keeps its value, except that water polygons may
replace other water.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import Polygon

from geo_utils import GeoPoint, LocalProjection, default_projection, resample
from map_errors import InvalidRequest
from terrain_classifier import (
    DEFAULT_CATEGORY,
    WATER_CATEGORIES,
    ClassifiedFeature,
    GeometryKind,
    TerrainCategory,
    classify_feature,
    is_renderable,
)

logger = logging.getLogger(__name__)

EMPTY = 0

# Cell values later features may paint over
OVERWRITABLE_CODES = np.array([EMPTY, TerrainCategory.GRASS, TerrainCategory.PARK_GRASS], dtype=np.uint8)
WATER_CODES = np.array(sorted(WATER_CATEGORIES), dtype=np.uint8)

# Line buffer width as a multiple of cell size
ROAD_MAIN_BUFFER = 1.5
DEFAULT_LINE_BUFFER = 1.0


@dataclass
class TileGrid:
    """A width x height grid of terrain category codes.

    Attributes:
        width: Columns
        height: Rows
        cells: uint8 array of shape (height, width); 0 = empty, else a TerrainCategory value
    """
    width: int
    height: int
    cells: np.ndarray = field(default=None, repr=False)

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise InvalidRequest(f"Invalid tile grid dimensions: {self.width}x{self.height}")
        if self.cells is None:
            self.cells = np.full((self.height, self.width), TerrainCategory.GRASS, dtype=np.uint8)
        elif self.cells.shape != (self.height, self.width):
            raise InvalidRequest(f"Cell array shape {self.cells.shape} does not match {self.height}x{self.width}")

    def category_at(self, col: int, row: int) -> Optional[TerrainCategory]:
        code = int(self.cells[row, col])
        return TerrainCategory(code) if code != EMPTY else None

    def rows(self) -> List[List[str]]:
        """Category names, row by row from north to south."""
        names = {category.value: category.name for category in TerrainCategory}
        return [[names.get(int(code), TerrainCategory.GRASS.name) for code in row] for row in self.cells]

    def counts(self) -> Dict[str, int]:
        """Number of cells per category (categories with no cells left out)."""
        codes, totals = np.unique(self.cells, return_counts=True)
        return {
            TerrainCategory(int(code)).name: int(total)
            for code, total in zip(codes, totals)
            if code != EMPTY
        }

    def to_identifiers(self, mapping: Mapping[str, Any], default: Any) -> List[List[Any]]:
        """Map each cell to a renderer identifier via a category-name table."""
        lookup = {category.value: mapping.get(category.name, default) for category in TerrainCategory}
        return [[lookup.get(int(code), default) for code in row] for row in self.cells]

    def to_dict(self) -> Dict[str, Any]:
        return {"width": self.width, "height": self.height, "rows": self.rows()}


@dataclass(frozen=True)
class GridFrame:
    """Placement of a grid in planar meters.

    Attributes:
        origin_x: West edge of column 0
        top_y: North edge of row 0
        cell_size: Meters per cell
        width: Columns
        height: Rows
    """
    origin_x: float
    top_y: float
    cell_size: float
    width: int
    height: int

    @classmethod
    def around(cls, center_xy: Tuple[float, float], cell_size: float, width: int, height: int) -> 'GridFrame':
        cx, cy = center_xy
        return cls(
            origin_x=cx - width * cell_size / 2,
            top_y=cy + height * cell_size / 2,
            cell_size=cell_size,
            width=width,
            height=height,
        )

    def to_cell(self, x: float, y: float) -> Tuple[int, int]:
        """Planar meters to (col, row). May fall outside the grid."""
        col = math.floor((x - self.origin_x) / self.cell_size)
        row = math.floor((self.top_y - y) / self.cell_size)
        return (col, row)

    def cell_center(self, col, row):
        """Planar center of a cell (accepts arrays)."""
        x = self.origin_x + (np.asarray(col) + 0.5) * self.cell_size
        y = self.top_y - (np.asarray(row) + 0.5) * self.cell_size
        return x, y


def validate_dimensions(radius_m: float, cell_size: float, width: int, height: int) -> None:
    """Reject grids that cannot be built. Never clamps."""
    if radius_m is not None and radius_m <= 0:
        raise InvalidRequest(f"Radius must be positive, got {radius_m}")
    if cell_size <= 0:
        raise InvalidRequest(f"Cell size must be positive, got {cell_size}")
    if int(width) != width or int(height) != height or width <= 0 or height <= 0:
        raise InvalidRequest(f"Invalid tile grid dimensions: {width}x{height}")


def _paint(cells: np.ndarray, rows: np.ndarray, cols: np.ndarray,
           category: TerrainCategory, water_over_water: bool = False) -> int:
    """Write category to the given cells where the overwrite rule allows it.

    Returns:
        Number of cells written
    """
    height, width = cells.shape
    inside = (rows >= 0) & (rows < height) & (cols >= 0) & (cols < width)
    rows = rows[inside]
    cols = cols[inside]
    if rows.size == 0:
        return 0

    current = cells[rows, cols]
    writable = np.isin(current, OVERWRITABLE_CODES)
    if water_over_water and category in WATER_CATEGORIES:
        writable |= np.isin(current, WATER_CODES)

    cells[rows[writable], cols[writable]] = category
    return int(np.count_nonzero(writable))


def _disc_offsets(radius_cells: int) -> Tuple[np.ndarray, np.ndarray]:
    """Cell offsets within radius_cells of the center (dx^2 + dy^2 <= r^2)."""
    span = np.arange(-radius_cells, radius_cells + 1)
    dx, dy = np.meshgrid(span, span)
    inside = dx * dx + dy * dy <= radius_cells * radius_cells
    return dx[inside], dy[inside]


def close_ring(ring: Sequence[Sequence[float]]) -> Optional[List[Tuple[float, float]]]:
    """Return a closed ring with at least 4 positions, or None if unusable.

    Fewer than 3 unique vertices cannot enclose anything. An open triangle
    becomes a 4-position ring by repeating its first vertex.
    """
    points = [(float(p[0]), float(p[1])) for p in ring]
    if len(set(points)) < 3:
        return None
    if points[0] != points[-1]:
        points.append(points[0])
    return points


class Rasterizer:
    """Rasterizes classified features onto a TileGrid.

    Args:
        center: Grid center
        cell_size: Meters per cell
        width: Columns
        height: Rows
        projection: lat/lng <-> planar meters conversion
    """

    def __init__(self, center: GeoPoint, cell_size: float, width: int, height: int,
                 projection: Optional[LocalProjection] = None):
        validate_dimensions(None, cell_size, width, height)
        self.projection = projection or default_projection()
        self.frame = GridFrame.around(self.projection.to_meters(center), cell_size, int(width), int(height))

    def new_grid(self) -> TileGrid:
        return TileGrid(width=self.frame.width, height=self.frame.height)

    def rasterize(self, features: Iterable[ClassifiedFeature], grid: Optional[TileGrid] = None) -> TileGrid:
        """Draw features in priority order onto a (new) grid."""
        if grid is None:
            grid = self.new_grid()

        # GRASS is the grid default and must not erase PARK_GRASS
        drawable = [feature for feature in features if feature.category != DEFAULT_CATEGORY]

        # Stable sort keeps input order within a priority
        ordered = sorted(drawable, key=lambda feature: feature.priority)

        for feature in ordered:
            if feature.kind == GeometryKind.POINT:
                self.draw_point(grid, feature)
            elif feature.kind == GeometryKind.LINESTRING:
                self.draw_line(grid, feature)
            elif feature.kind == GeometryKind.POLYGON:
                self.draw_polygon(grid, feature)

        return grid

    def _lnglat_to_cells(self, coords: Sequence[Sequence[float]]) -> Tuple[np.ndarray, np.ndarray]:
        coords = np.asarray(coords, dtype=float).reshape(-1, 2)
        xs, ys = self.projection.lnglat_to_meters(coords[:, 0], coords[:, 1])
        cols = np.floor((xs - self.frame.origin_x) / self.frame.cell_size).astype(np.int64)
        rows = np.floor((self.frame.top_y - ys) / self.frame.cell_size).astype(np.int64)
        return rows, cols

    def draw_point(self, grid: TileGrid, feature: ClassifiedFeature) -> int:
        rows, cols = self._lnglat_to_cells([feature.coordinates])
        return _paint(grid.cells, rows, cols, feature.category)

    def draw_line(self, grid: TileGrid, feature: ClassifiedFeature) -> int:
        """Buffer a line by resampling it and stamping a disc at each sample."""
        coords = np.asarray(feature.coordinates, dtype=float).reshape(-1, 2)
        if len(coords) == 0:
            return 0

        cell_size = self.frame.cell_size
        xs, ys = self.projection.lnglat_to_meters(coords[:, 0], coords[:, 1])
        samples = resample(list(zip(xs.tolist(), ys.tolist())), cell_size / 2)

        factor = ROAD_MAIN_BUFFER if feature.category == TerrainCategory.ROAD_MAIN else DEFAULT_LINE_BUFFER
        buffer_width = cell_size * factor
        buffer_cells = math.ceil(buffer_width / cell_size)
        dx, dy = _disc_offsets(buffer_cells)

        sample_cells = np.array([self.frame.to_cell(x, y) for x, y in samples], dtype=np.int64)
        cols = (sample_cells[:, 0:1] + dx[np.newaxis, :]).ravel()
        rows = (sample_cells[:, 1:2] + dy[np.newaxis, :]).ravel()
        return _paint(grid.cells, rows, cols, feature.category)

    def draw_polygon(self, grid: TileGrid, feature: ClassifiedFeature) -> int:
        """Fill every cell whose center lies inside the polygon's outer ring."""
        rings = feature.coordinates
        if not rings:
            return 0
        ring = close_ring(rings[0])
        if ring is None:
            return 0

        polygon = Polygon(ring)
        min_lng, min_lat, max_lng, max_lat = polygon.bounds

        corner_rows, corner_cols = self._lnglat_to_cells([(min_lng, max_lat), (max_lng, min_lat)])
        row_lo = max(int(corner_rows.min()), 0)
        row_hi = min(int(corner_rows.max()), self.frame.height - 1)
        col_lo = max(int(corner_cols.min()), 0)
        col_hi = min(int(corner_cols.max()), self.frame.width - 1)
        if row_lo > row_hi or col_lo > col_hi:
            return 0

        rows, cols = np.mgrid[row_lo:row_hi + 1, col_lo:col_hi + 1]
        rows = rows.ravel()
        cols = cols.ravel()

        center_x, center_y = self.frame.cell_center(cols, rows)
        lngs, lats = self.projection.meters_to_lnglat(center_x, center_y)
        inside = shapely.intersects_xy(polygon, lngs, lats)

        return _paint(grid.cells, rows[inside], cols[inside], feature.category, water_over_water=True)


def classify_features(features: Iterable[Dict[str, Any]]) -> List[ClassifiedFeature]:
    """Classify GeoJSON features, dropping those with no recognized tags."""
    classified = []
    skipped = 0
    for feature in features:
        geometry = feature.get("geometry") or {}
        properties = feature.get("properties") or {}
        if geometry.get("type") not in {kind.value for kind in GeometryKind}:
            skipped += 1
            continue
        if not is_renderable(properties):
            skipped += 1
            continue
        classified.append(classify_feature(geometry["type"], geometry.get("coordinates"), properties))

    if skipped:
        logger.debug("Skipped %d unrenderable feature(s)", skipped)
    return classified


def rasterize_features(
    features: Iterable[Dict[str, Any]],
    center: GeoPoint,
    radius_m: float,
    cell_size: float,
    width: int,
    height: int,
) -> TileGrid:
    """Classify and rasterize GeoJSON features into a new grid.

    Args:
        features: GeoJSON feature dicts with lng/lat coordinates
        center: Grid center
        radius_m: Region radius the features were fetched for
        cell_size: Meters per cell
        width, height: Grid size in cells

    Returns:
        TileGrid; cells no feature touched stay GRASS
    """
    validate_dimensions(radius_m, cell_size, width, height)
    rasterizer = Rasterizer(center, cell_size, width, height)
    return rasterizer.rasterize(classify_features(features))
