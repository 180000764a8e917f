"""
Pipeline configuration for OSM tilemap generation.

Centralizes endpoint lists, timeouts, retry policy, cache lifetime and grid
defaults. A PipelineConfig is passed into the pipeline explicitly, so tests
and callers can use isolated configurations.
"""

import json
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from map_errors import InvalidRequest
from terrain_classifier import parse_category

SOURCE_KINDS = ("pmtiles", "xyz", "overpass")


@dataclass
class OverpassConfig:
    """Overpass API endpoints and retry policy."""

    # Tried in order on every fetch
    endpoints: Tuple[str, ...] = (
        "https://overpass-api.de/api/interpreter",
        "https://overpass.kumi.systems/api/interpreter",
        "https://overpass.openstreetmap.ru/api/interpreter",
    )
    timeout: float = 30.0  # seconds, per try
    max_attempts: int = 2  # tries per endpoint
    retry_statuses: Tuple[int, ...] = (429, 504)
    retry_delay: float = 1.0  # seconds between tries


@dataclass
class TileServerConfig:
    """Vector tile servers, PMTiles archives and tile fetch limits."""

    # XYZ templates with {z}/{x}/{y} placeholders
    servers: Tuple[str, ...] = (
        "https://tile.ourmap.us/{z}/{x}/{y}.pbf",
        "https://tiles.openstreetmap.us/vectiles-highroad/{z}/{x}/{y}.pbf",
        "https://tile.openstreetmap.org/{z}/{x}/{y}.png",
    )
    # Mirrors of one .pmtiles archive
    pmtiles_urls: Tuple[str, ...] = ()

    zoom: int = 14
    min_zoom: int = 10
    max_zoom: int = 18
    extent: int = 4096

    timeout: float = 30.0
    max_attempts: int = 2
    retry_statuses: Tuple[int, ...] = (429, 504)
    retry_delay: float = 0.5

    max_concurrency: int = 8
    # Tile failures tolerated before the whole source is abandoned (None = no limit)
    max_tile_failures: Optional[int] = 16


@dataclass
class CacheConfig:
    """Fetch cache settings."""

    enabled: bool = True
    expiration: float = 24 * 60 * 60  # seconds
    directory: Optional[Path] = None  # None = in-memory store


@dataclass
class RasterConfig:
    """Default grid geometry (Pokemon-style 3 m tiles)."""

    radius: float = 200.0  # meters
    cell_size: float = 3.0  # meters per cell
    width: int = 200
    height: int = 200


DEFAULT_CATEGORY_IDS = {
    "GRASS": 1,
    "ROAD_MAIN": 50,
    "ROAD_SMALL": 51,
    "PATH": 52,
    "HOUSE": 100,
    "SHOP": 101,
    "SCHOOL": 102,
    "FACTORY": 103,
    "FOREST": 200,
    "PARK_GRASS": 201,
    "WATER": 300,
    "RIVER": 301,
    "LAKE": 302,
}


@dataclass
class PipelineConfig:
    """Master configuration for the tilemap pipeline."""

    overpass: OverpassConfig = field(default_factory=OverpassConfig)
    tiles: TileServerConfig = field(default_factory=TileServerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    raster: RasterConfig = field(default_factory=RasterConfig)

    # Source strategies tried in order when the caller gives none
    source_order: Tuple[str, ...] = ("xyz", "overpass")
    user_agent: str = "OSMTilemap/1.0 (tilemap generation tool)"

    # Downstream renderer identifiers per category
    category_ids: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CATEGORY_IDS))
    default_id: int = 1

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Reject configurations the pipeline cannot run with."""
        for kind in self.source_order:
            if kind not in SOURCE_KINDS:
                raise InvalidRequest(f"Unknown source kind: {kind}. Available: {', '.join(SOURCE_KINDS)}")

        tiles = self.tiles
        if not tiles.min_zoom <= tiles.zoom <= tiles.max_zoom:
            raise InvalidRequest(f"Zoom {tiles.zoom} outside {tiles.min_zoom}-{tiles.max_zoom}")
        if tiles.max_concurrency < 1:
            raise InvalidRequest("max_concurrency must be at least 1")
        if tiles.max_attempts < 1 or self.overpass.max_attempts < 1:
            raise InvalidRequest("max_attempts must be at least 1")

        for name in self.category_ids:
            try:
                parse_category(name)
            except ValueError as e:
                raise InvalidRequest(str(e)) from None

    def with_overrides(self, **changes) -> 'PipelineConfig':
        """Copy with top-level fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineConfig':
        """Build a config from nested dicts, e.g. a parsed map_config.json."""
        return _build(cls, data)

    @classmethod
    def from_json(cls, path: Path) -> 'PipelineConfig':
        with open(path) as f:
            return cls.from_dict(json.load(f))


def _build(cls, data: Dict[str, Any]):
    """Instantiate a config dataclass, recursing into nested sections."""
    if not isinstance(data, dict):
        raise InvalidRequest(f"Expected an object for {cls.__name__}, got {type(data).__name__}")

    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise InvalidRequest(f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")

    defaults = cls.__dataclass_fields__
    kwargs = {}
    for name, value in data.items():
        default_factory = defaults[name].default_factory
        nested = default_factory() if callable(default_factory) else defaults[name].default
        if is_dataclass(nested):
            kwargs[name] = _build(type(nested), value)
        elif isinstance(value, list):
            kwargs[name] = tuple(value)
        elif name == "directory" and value is not None:
            kwargs[name] = Path(value)
        else:
            kwargs[name] = value
    return cls(**kwargs)
