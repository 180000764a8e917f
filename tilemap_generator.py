#!/usr/bin/env python3
"""
tilemap_generator.py - Turn real map data around a point into a terrain tile grid

Pipeline:
  1. Try each source strategy in preference order (PMTiles archive, XYZ
     vector tiles, Overpass API) until one yields renderable features
  2. Classify the features into terrain categories
  3. Rasterize them onto a width x height grid centered on the point

Usage:
  python tilemap_generator.py --lat 47.3769 --lon 8.5417
  python tilemap_generator.py --lat 47.3769 --lon 8.5417 --radius 300 --sources overpass
  python tilemap_generator.py --lat 47.3769 --lon 8.5417 --config map_config.json --output grid.json
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from geo_utils import GeoPoint
from map_config import SOURCE_KINDS, PipelineConfig
from map_errors import InvalidRequest, OutsideArchiveBounds, SourceExhausted, TilemapError
from tile_cache import CacheStore, DirectoryStore, MemoryStore, TileCache
from tile_sources import TileSource, create_session, create_source
from terrain_classifier import ClassifiedFeature
from tilemap_rasterizer import Rasterizer, TileGrid, classify_features, validate_dimensions

logger = logging.getLogger(__name__)

SourcePreference = Union[str, Sequence[str], None]


def resolve_source_order(preference: SourcePreference, default: Sequence[str]) -> List[str]:
    """Normalize a source preference ("xyz,overpass", ["pmtiles"], None) to a list of kinds."""
    if preference is None:
        kinds = list(default)
    elif isinstance(preference, str):
        kinds = [kind.strip() for kind in preference.split(",") if kind.strip()]
    else:
        kinds = list(preference)

    if not kinds:
        raise InvalidRequest("No source kinds given")
    for kind in kinds:
        if kind not in SOURCE_KINDS:
            raise InvalidRequest(f"Unknown source kind: {kind}. Available: {', '.join(SOURCE_KINDS)}")
    return kinds


class TilemapPipeline:
    """Source selection, fallback, classification and rasterization.

    Args:
        config: Pipeline configuration (defaults if None)
        cache_store: Key-value store for fetched payloads; by default an
            in-memory store, or a DirectoryStore if config.cache.directory is set
        session: requests.Session or compatible object shared by all sources
        clock: Time source for cache expiry
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        cache_store: Optional[CacheStore] = None,
        session=None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or PipelineConfig()

        store = None
        if self.config.cache.enabled:
            if cache_store is not None:
                store = cache_store
            elif self.config.cache.directory is not None:
                store = DirectoryStore(self.config.cache.directory)
            else:
                store = MemoryStore()
        self.cache = TileCache(store, expiration=self.config.cache.expiration, clock=clock)

        self.session = session if session is not None else create_session(self.config.user_agent)
        self._sources: Dict[str, Optional[TileSource]] = {}
        self.last_source: Optional[str] = None

    def source(self, kind: str) -> Optional[TileSource]:
        """Source for a kind, built on first use (None if not configured)."""
        if kind not in self._sources:
            self._sources[kind] = create_source(kind, self.config, self.cache, self.session)
        return self._sources[kind]

    def fetch_features(
        self,
        center: GeoPoint,
        radius_m: float,
        source_preference: SourcePreference = None,
    ) -> List[ClassifiedFeature]:
        """Classified features from the first source that has any.

        A source that fails, or returns nothing renderable, hands over to the
        next one. An empty result is returned only if some source answered.

        Raises:
            InvalidRequest: none of the requested kinds has endpoints
            SourceExhausted: no source answered
        """
        kinds = resolve_source_order(source_preference, self.config.source_order)
        last_error = None
        answered = False
        configured = 0

        for kind in kinds:
            source = self.source(kind)
            if source is None:
                logger.info("No %s endpoints configured, skipping", kind)
                continue
            configured += 1

            try:
                raw_features = source.collect_features(center, radius_m)
            except (SourceExhausted, OutsideArchiveBounds) as e:
                last_error = e
                logger.warning("%s failed, trying next source: %s", source.name, e)
                continue

            answered = True
            features = classify_features(raw_features)
            if features:
                logger.info("Using %d feature(s) from %s", len(features), source.name)
                self.last_source = kind
                return features

            logger.warning("No renderable features from %s, trying next source", source.name)

        if answered:
            logger.warning("Every source was empty, grid will be all grass")
            self.last_source = None
            return []

        if not configured:
            raise InvalidRequest(f"No endpoints configured for any of: {', '.join(kinds)}")
        raise SourceExhausted(str(last_error), last_error=last_error) from last_error

    def generate(
        self,
        center: GeoPoint,
        radius_m: Optional[float] = None,
        cell_size: Optional[float] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        source_preference: SourcePreference = None,
    ) -> TileGrid:
        """Build the terrain grid around center.

        Args:
            center: Grid center
            radius_m: Radius of the region to fetch (meters)
            cell_size: Meters per grid cell
            width, height: Grid size in cells
            source_preference: Source kinds in the order to try them

        Returns:
            TileGrid with exactly width x height cells

        Raises:
            InvalidRequest: bad dimensions or unknown source kind
            SourceExhausted: every source failed
        """
        raster = self.config.raster
        radius_m = raster.radius if radius_m is None else radius_m
        cell_size = raster.cell_size if cell_size is None else cell_size
        width = raster.width if width is None else width
        height = raster.height if height is None else height

        # Bad dimensions are rejected before any network traffic
        validate_dimensions(radius_m, cell_size, width, height)
        resolve_source_order(source_preference, self.config.source_order)

        features = self.fetch_features(center, radius_m, source_preference)

        rasterizer = Rasterizer(center, cell_size, width, height)
        grid = rasterizer.rasterize(features)
        logger.info("Rasterized %d feature(s) onto %dx%d grid", len(features), width, height)
        return grid

    def to_identifiers(self, grid: TileGrid) -> List[List[Any]]:
        """Renderer identifiers for every cell, using the configured table."""
        return grid.to_identifiers(self.config.category_ids, self.config.default_id)


def generate(
    center: GeoPoint,
    radius_m: float,
    cell_size: float,
    width: int,
    height: int,
    source_preference: SourcePreference = None,
    config: Optional[PipelineConfig] = None,
) -> TileGrid:
    """One-shot pipeline run with a fresh TilemapPipeline."""
    pipeline = TilemapPipeline(config)
    return pipeline.generate(center, radius_m, cell_size, width, height, source_preference)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate a terrain tile grid from OpenStreetMap data")
    parser.add_argument("--lat", type=float, required=True, help="Center latitude")
    parser.add_argument("--lon", type=float, required=True, help="Center longitude")
    parser.add_argument("--radius", type=float, help="Region radius in meters")
    parser.add_argument("--cell-size", type=float, help="Meters per grid cell")
    parser.add_argument("--width", type=int, help="Grid width in cells")
    parser.add_argument("--height", type=int, help="Grid height in cells")
    parser.add_argument("--sources", help=f"Comma-separated source order ({', '.join(SOURCE_KINDS)})")
    parser.add_argument("--zoom", type=int, help="Tile zoom level for tile sources")
    parser.add_argument("--config", type=Path, help="JSON pipeline config (e.g. map_config.json)")
    parser.add_argument("--cache-dir", type=Path, help="Directory for the fetch cache")
    parser.add_argument("--output", type=Path, help="Write the grid as JSON to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(message)s")

    try:
        config = PipelineConfig.from_json(args.config) if args.config else PipelineConfig()
        if args.zoom is not None:
            config.tiles.zoom = args.zoom
        if args.cache_dir is not None:
            config.cache.directory = args.cache_dir
        config.validate()

        center = GeoPoint(lat=args.lat, lng=args.lon)
        pipeline = TilemapPipeline(config)

        print(f"Generating tilemap around {center.lat:.5f}, {center.lng:.5f}")
        grid = pipeline.generate(
            center,
            radius_m=args.radius,
            cell_size=args.cell_size,
            width=args.width,
            height=args.height,
            source_preference=args.sources,
        )
    except InvalidRequest as e:
        print(f"Invalid request: {e}", file=sys.stderr)
        return 2
    except TilemapError as e:
        print(f"Tilemap generation failed: {e}", file=sys.stderr)
        return 1

    print(f"  Source: {pipeline.last_source or 'none (empty region)'}")
    print(f"  Grid: {grid.width} x {grid.height}")
    for name, count in sorted(grid.counts().items(), key=lambda item: -item[1]):
        print(f"    {name}: {count}")

    if args.output:
        output = grid.to_dict()
        output["ids"] = pipeline.to_identifiers(grid)
        output["center"] = {"lat": center.lat, "lon": center.lng}
        with open(args.output, "w") as f:
            json.dump(output, f)
        print(f"  Saved to: {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
