"""
tile_sources.py - Fetch map data from Overpass, XYZ tile servers and PMTiles archives

All three strategies share one retry/fallback policy: endpoints are tried
in the configured order on every fetch, each endpoint gets up to
max_attempts tries, timeouts and retryable statuses (429/504) move on to
the next try, any other failure moves on to the next endpoint. When every
endpoint is used up the fetch raises SourceExhausted carrying the last
error seen.

Tile-based sources fetch the tiles covering a region concurrently on a
bounded thread pool. One bad tile only costs that tile's features.
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests
from pmtiles.reader import Reader

from geo_utils import BoundingBox, GeoPoint, TileCoordinate, bounding_box, tiles_covering
from map_config import PipelineConfig
from map_errors import EndpointError, InvalidRequest, OutsideArchiveBounds, SourceExhausted, TransportError
from osm_features import build_overpass_query, osm_to_features
from tile_cache import TileCache
from vector_tiles import DEFAULT_EXTENT, decode_vector_tile, vector_tile_to_features

logger = logging.getLogger(__name__)

TILE_ACCEPT = "application/x-protobuf,application/octet-stream,*/*"


@dataclass(frozen=True)
class RegionQuery:
    """Whole-region request: everything within radius_m of center."""
    center: GeoPoint
    radius_m: float

    @property
    def bbox(self) -> BoundingBox:
        return bounding_box(self.center, self.radius_m)

    @property
    def cache_key(self) -> str:
        return f"osm_{self.center.lat:.4f}_{self.center.lng:.4f}_{self.radius_m:g}"


def is_pmtiles_url(url: str) -> bool:
    return ".pmtiles" in url


def create_session(user_agent: str) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    return session


class TileSource(ABC):
    """One retrieval strategy behind the common fetch contract.

    Args:
        endpoints: Candidate endpoints, tried in this order on every fetch
        timeout: Seconds per try
        max_attempts: Tries per endpoint
        retry_statuses: HTTP statuses that count as a retryable try
        retry_delay: Seconds to wait before retrying the same endpoint
        cache: TTL cache for payloads (None = no caching)
        session: requests.Session or compatible object
    """

    kind = "source"

    def __init__(
        self,
        endpoints: Sequence[str],
        timeout: float = 30.0,
        max_attempts: int = 2,
        retry_statuses: Sequence[int] = (429, 504),
        retry_delay: float = 0.0,
        cache: Optional[TileCache] = None,
        session=None,
    ):
        if not endpoints:
            raise InvalidRequest(f"{self.kind} source needs at least one endpoint")
        self.endpoints = list(endpoints)
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_statuses = set(retry_statuses)
        self.retry_delay = retry_delay
        self.cache = cache or TileCache(None)
        self.session = session if session is not None else requests.Session()

    @property
    def name(self) -> str:
        return f"{self.kind}({self.endpoints[0]})"

    # --- fetch contract -------------------------------------------------

    def fetch(self, request, endpoints: Optional[Sequence[str]] = None) -> Optional[bytes]:
        """Fetch the payload for a request.

        Args:
            request: What to fetch (region or tile)
            endpoints: Endpoints to try, in order (default: all configured)

        Returns:
            Payload bytes, or None if the endpoint reports the data absent

        Raises:
            SourceExhausted: every endpoint failed
        """
        endpoints = list(endpoints or self.endpoints)
        key = self.cache_key(request, endpoints[0])
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit: %s", key)
            return cached

        payload = self._fetch_remote(request, endpoints)
        if payload is not None:
            self.cache.put(key, payload)
        return payload

    @abstractmethod
    def cache_key(self, request, endpoint: str) -> str:
        """Cache key for a request served starting from endpoint."""

    def _fetch_remote(self, request, endpoints: Sequence[str]) -> Optional[bytes]:
        return self._fetch_with_fallback(request, lambda endpoint: self._attempt(endpoint, request), endpoints)

    def _attempt(self, endpoint: str, request) -> Optional[bytes]:
        """One try against one endpoint. Raises TransportError or EndpointError.

        Hook for the default _fetch_remote; sources that override
        _fetch_remote do not use it.
        """
        raise NotImplementedError(f"{type(self).__name__} does not fetch per endpoint")

    @abstractmethod
    def collect_features(self, center: GeoPoint, radius_m: float) -> List[Dict[str, Any]]:
        """GeoJSON features for the region around center."""

    # --- retry policy ---------------------------------------------------

    def _fetch_with_fallback(self, request, attempt: Callable[[str], Optional[bytes]],
                             endpoints: Optional[Sequence[str]] = None) -> Optional[bytes]:
        last_error = None

        for endpoint in endpoints or self.endpoints:
            for try_number in range(1, self.max_attempts + 1):
                try:
                    return attempt(endpoint)
                except TransportError as e:
                    last_error = e
                    logger.warning("%s: %s (try %d/%d at %s)", self.kind, e, try_number, self.max_attempts, endpoint)
                    if try_number < self.max_attempts and self.retry_delay > 0:
                        time.sleep(self.retry_delay)
                except EndpointError as e:
                    last_error = e
                    logger.warning("%s: %s at %s, trying next endpoint", self.kind, e, endpoint)
                    break

        raise SourceExhausted(
            f"{self.kind}: all endpoints failed for {request}: {last_error}" if last_error else None,
            last_error=last_error,
        )

    def _send(self, method: str, url: str, **kwargs):
        """Issue one HTTP request, mapping transport problems onto our errors."""
        try:
            return getattr(self.session, method)(url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransportError(f"Request timeout after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Connection failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise EndpointError(f"Request failed: {e}") from e

    def _check_status(self, response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        reason = getattr(response, "reason", "") or ""
        message = f"HTTP {status} {reason}".strip()
        if status in self.retry_statuses:
            raise TransportError(message)
        raise EndpointError(message, status_code=status)


class OverpassSource(TileSource):
    """Query-based source: one Overpass QL POST per region."""

    kind = "overpass"

    def cache_key(self, request: RegionQuery, endpoint: str) -> str:
        # Every Overpass instance serves the same data
        return request.cache_key

    def _attempt(self, endpoint: str, request: RegionQuery) -> bytes:
        query = build_overpass_query(request.bbox, self.timeout)
        response = self._send(
            "post",
            endpoint,
            data={"data": query},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        self._check_status(response)

        payload = response.content
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise EndpointError(f"Invalid JSON from Overpass: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("elements"), list):
            raise EndpointError("Invalid OSM response format")

        logger.info("Overpass returned %d elements from %s", len(data["elements"]), endpoint)
        return payload

    def collect_features(self, center: GeoPoint, radius_m: float) -> List[Dict[str, Any]]:
        payload = self.fetch(RegionQuery(center=center, radius_m=radius_m))
        if payload is None:
            return []
        return osm_to_features(json.loads(payload))


class TiledSource(TileSource):
    """Shared region logic for sources that serve one tile per request.

    Args:
        zoom: Tile zoom level used for regions
        max_concurrency: Concurrent tile fetches
        max_tile_failures: Failed tiles tolerated before the source is abandoned
        extent: Tile coordinate extent for layers that do not declare one
    """

    def __init__(self, endpoints, zoom: int = 14, max_concurrency: int = 8,
                 max_tile_failures: Optional[int] = None, extent: int = DEFAULT_EXTENT, **kwargs):
        super().__init__(endpoints, **kwargs)
        self.zoom = zoom
        self.max_concurrency = max_concurrency
        self.max_tile_failures = max_tile_failures
        self.extent = extent

    def cache_key(self, request: TileCoordinate, endpoint: str) -> str:
        # Different servers or archives can hold different tiles for one address
        server = hashlib.sha1(endpoint.encode("utf-8")).hexdigest()[:8]
        return f"{self.kind}_{server}_tile_{request.z}_{request.x}_{request.y}"

    def check_coverage(self, center: GeoPoint) -> None:
        """Raise OutsideArchiveBounds if the source cannot serve center."""

    def region_tiles(self, center: GeoPoint, radius_m: float) -> List[TileCoordinate]:
        self.check_coverage(center)
        tiles = sorted(tiles_covering(bounding_box(center, radius_m), self.zoom))
        logger.info("%s: fetching %d tile(s) at zoom %d", self.name, len(tiles), self.zoom)
        return tiles

    def collect_features(self, center: GeoPoint, radius_m: float) -> List[Dict[str, Any]]:
        return self._collect_tiles(self.region_tiles(center, radius_m), self.endpoints)

    def _collect_tiles(self, tiles: Sequence[TileCoordinate], endpoints: Sequence[str]) -> List[Dict[str, Any]]:
        features = []
        succeeded = 0
        failed = 0
        last_error = None

        executor = ThreadPoolExecutor(max_workers=max(1, min(self.max_concurrency, len(tiles))))
        try:
            futures = {executor.submit(self.fetch, tile, endpoints): tile for tile in tiles}

            for future in as_completed(futures):
                tile = futures[future]
                try:
                    payload = future.result()
                except SourceExhausted as e:
                    failed += 1
                    last_error = e
                    logger.warning("Failed to fetch tile %s: %s", tile.key, e)
                    if self.max_tile_failures is not None and failed > self.max_tile_failures:
                        raise SourceExhausted(
                            f"{self.name}: {failed} tile failures, giving up", last_error=e
                        ) from e
                    continue

                succeeded += 1
                if payload is None:
                    continue

                # Decoding runs here, on the calling thread
                tile_data = decode_vector_tile(payload, tile)
                features.extend(vector_tile_to_features(tile_data, tile, self.extent))
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        if succeeded == 0 and failed:
            raise SourceExhausted(f"{self.name}: every tile failed", last_error=last_error)

        logger.info("%s: %d feature(s) from %d tile(s), %d failed",
                    self.name, len(features), succeeded, failed)
        return features


class XYZTileSource(TiledSource):
    """Templated {z}/{x}/{y} tile servers, tried in order per tile.

    A server can answer every request without giving any vector data
    (404 everywhere, raster tiles). When a whole region pass yields no
    features, the pass is repeated starting from the next server.
    """

    kind = "xyz"

    def collect_features(self, center: GeoPoint, radius_m: float) -> List[Dict[str, Any]]:
        tiles = self.region_tiles(center, radius_m)
        answered = False
        last_error = None

        for start in range(len(self.endpoints)):
            endpoints = self.endpoints[start:] + self.endpoints[:start]
            try:
                features = self._collect_tiles(tiles, endpoints)
            except SourceExhausted as e:
                last_error = e
                logger.warning("%s: %s", self.name, e)
                continue

            if features:
                return features
            answered = True
            if start + 1 < len(self.endpoints):
                logger.info("%s: no features from %s, trying next server", self.name, endpoints[0])

        if answered:
            return []
        raise SourceExhausted(f"{self.name}: every server failed", last_error=last_error)

    @staticmethod
    def tile_url(template: str, tile: TileCoordinate) -> str:
        return (template
                .replace("{z}", str(tile.z))
                .replace("{x}", str(tile.x))
                .replace("{y}", str(tile.y)))

    def _attempt(self, endpoint: str, request: TileCoordinate) -> Optional[bytes]:
        response = self._send("get", self.tile_url(endpoint, request), headers={"Accept": TILE_ACCEPT})
        if response.status_code == 404:
            # Sparse tile sets simply have no tile here
            return None
        self._check_status(response)
        return response.content


class PMTilesSource(TiledSource):
    """Single-file tile archive read with HTTP range requests.

    The archive header and directories are read once and reused; tile
    payloads are looked up per tile through pmtiles' Reader. Only ranges
    outside the tile data section are kept in memory, tile payloads go
    through the tile cache instead.
    """

    kind = "pmtiles"

    def __init__(self, endpoints, **kwargs):
        super().__init__(endpoints, **kwargs)
        self._ranges: Dict[Tuple[int, int], bytes] = {}
        self._lock = threading.Lock()
        self._header = None
        self.reader = Reader(self.read_range)

    def read_range(self, offset: int, length: int) -> bytes:
        """Read bytes [offset, offset + length) of the archive, with retry and mirrors."""
        key = (offset, length)
        memoize = not self._is_tile_data(offset, length)
        if memoize:
            with self._lock:
                if key in self._ranges:
                    return self._ranges[key]

        data = self._fetch_with_fallback(
            f"bytes {offset}-{offset + length - 1}",
            lambda endpoint: self._range_attempt(endpoint, offset, length),
        )
        if memoize:
            with self._lock:
                self._ranges[key] = data
        return data

    def _is_tile_data(self, offset: int, length: int) -> bool:
        # Before the header is known every read is header or directory
        if self._header is None:
            return False
        start = self._header.get("tile_data_offset")
        size = self._header.get("tile_data_length")
        if start is None or size is None:
            return False
        return start <= offset and offset + length <= start + size

    def _range_attempt(self, endpoint: str, offset: int, length: int) -> bytes:
        response = self._send(
            "get",
            endpoint,
            headers={"Range": f"bytes={offset}-{offset + length - 1}"},
        )
        self._check_status(response)
        content = response.content
        if response.status_code == 200:
            # Server ignored the Range header and sent the whole archive
            content = content[offset:offset + length]
        if len(content) < length:
            raise EndpointError(f"Short range read: wanted {length} bytes, got {len(content)}")
        return content

    def header(self) -> Dict[str, Any]:
        """Archive header (fetched on first use)."""
        if self._header is None:
            try:
                self._header = self.reader.header()
            except SourceExhausted:
                raise
            except Exception as e:
                raise SourceExhausted(f"{self.name}: unreadable archive header: {e}", last_error=e) from e
        return self._header

    def bounds(self) -> BoundingBox:
        header = self.header()
        return BoundingBox(
            min_lat=header["min_lat_e7"] / 1e7,
            min_lng=header["min_lon_e7"] / 1e7,
            max_lat=header["max_lat_e7"] / 1e7,
            max_lng=header["max_lon_e7"] / 1e7,
        )

    def check_coverage(self, center: GeoPoint) -> None:
        if not self.bounds().contains(center):
            raise OutsideArchiveBounds(f"Location {center.lat}, {center.lng} is outside {self.name} bounds")

    def _fetch_remote(self, request: TileCoordinate, endpoints: Sequence[str]) -> Optional[bytes]:
        # Mirrors hold the same archive; read_range does its own fallback
        self.header()
        try:
            payload = self.reader.get(request.z, request.x, request.y)
        except SourceExhausted:
            raise
        except Exception as e:
            raise SourceExhausted(f"{self.name}: bad directory for {request.key}: {e}", last_error=e) from e

        return bytes(payload) if payload is not None else None


def split_server_urls(servers: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Separate XYZ templates from PMTiles archive URLs."""
    xyz = [url for url in servers if not is_pmtiles_url(url)]
    archives = [url for url in servers if is_pmtiles_url(url)]
    return xyz, archives


def create_source(kind: str, config: PipelineConfig, cache: TileCache, session=None) -> Optional[TileSource]:
    """Build the source for a kind, or None if the config has no endpoints for it."""
    tiles = config.tiles
    tile_kwargs = dict(
        zoom=tiles.zoom,
        max_concurrency=tiles.max_concurrency,
        max_tile_failures=tiles.max_tile_failures,
        extent=tiles.extent,
        timeout=tiles.timeout,
        max_attempts=tiles.max_attempts,
        retry_statuses=tiles.retry_statuses,
        retry_delay=tiles.retry_delay,
        cache=cache,
        session=session,
    )
    xyz_servers, archive_servers = split_server_urls(tiles.servers)

    if kind == "overpass":
        overpass = config.overpass
        if not overpass.endpoints:
            return None
        return OverpassSource(
            overpass.endpoints,
            timeout=overpass.timeout,
            max_attempts=overpass.max_attempts,
            retry_statuses=overpass.retry_statuses,
            retry_delay=overpass.retry_delay,
            cache=cache,
            session=session,
        )
    if kind == "xyz":
        return XYZTileSource(xyz_servers, **tile_kwargs) if xyz_servers else None
    if kind == "pmtiles":
        urls = list(tiles.pmtiles_urls) + archive_servers
        return PMTilesSource(urls, **tile_kwargs) if urls else None

    raise InvalidRequest(f"Unknown source kind: {kind}")
