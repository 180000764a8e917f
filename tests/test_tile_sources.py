"""
Tests for tile_sources module.

No network access: every source gets a fake session that answers from a
handler function.

Run with: pytest tests/test_tile_sources.py -v
"""

import json
import threading

import mapbox_vector_tile
import pytest
import requests
from geo_utils import GeoPoint, TileCoordinate, bounding_box, tiles_covering
from map_config import PipelineConfig, TileServerConfig
from map_errors import EndpointError, InvalidRequest, OutsideArchiveBounds, SourceExhausted, TransportError
from tile_cache import MemoryStore, TileCache
from tile_sources import (
    OverpassSource,
    PMTilesSource,
    RegionQuery,
    XYZTileSource,
    create_source,
    split_server_urls,
)


ZURICH = GeoPoint(lat=47.3769, lng=8.5417)

OSM_RESPONSE = json.dumps({"elements": [
    {"type": "way", "id": 1, "tags": {"building": "yes"},
     "geometry": [{"lat": 47.3768, "lon": 8.5416}, {"lat": 47.3768, "lon": 8.5418},
                  {"lat": 47.3770, "lon": 8.5418}, {"lat": 47.3770, "lon": 8.5416},
                  {"lat": 47.3768, "lon": 8.5416}]},
]}).encode()

TILE_PAYLOAD = mapbox_vector_tile.encode([
    {"name": "building", "features": [
        {"geometry": "POLYGON ((100 100, 400 100, 400 400, 100 400, 100 100))", "properties": {}},
    ]},
], default_options={"y_coord_down": True})


class FakeResponse:
    def __init__(self, status_code=200, content=b"", reason=""):
        self.status_code = status_code
        self.content = content
        self.reason = reason


class FakeSession:
    """Records calls and answers them with handler(method, url, kwargs)."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def _call(self, method, url, kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
        result = self.handler(method, url, kwargs)
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url, **kwargs):
        return self._call("get", url, kwargs)

    def post(self, url, **kwargs):
        return self._call("post", url, kwargs)

    @property
    def urls(self):
        return [url for _, url, _ in self.calls]


def scripted(*responses):
    """Handler returning the given responses in order."""
    remaining = list(responses)

    def handler(method, url, kwargs):
        return remaining.pop(0)

    return handler


def overpass(session, endpoints=("http://a", "http://b", "http://c"), **kwargs):
    kwargs.setdefault("max_attempts", 2)
    return OverpassSource(list(endpoints), session=session, retry_delay=0, **kwargs)


def xyz(session, servers=("http://tiles/{z}/{x}/{y}.pbf",), **kwargs):
    kwargs.setdefault("max_attempts", 1)
    return XYZTileSource(list(servers), session=session, retry_delay=0, zoom=14, **kwargs)


class TestRetryPolicy:
    """Endpoint fallback shared by every source."""

    def test_retryable_then_fallback(self):
        """Test 504 on two endpoints, success on the third."""
        session = FakeSession(scripted(FakeResponse(504), FakeResponse(504), FakeResponse(200, OSM_RESPONSE)))
        source = overpass(session, max_attempts=1)
        assert source.fetch(RegionQuery(ZURICH, 100)) == OSM_RESPONSE
        assert session.urls == ["http://a", "http://b", "http://c"]

    def test_retryable_twice_per_endpoint(self):
        """Test 504 on every try at two endpoints, success on the third."""
        session = FakeSession(scripted(FakeResponse(504), FakeResponse(504), FakeResponse(504),
                                       FakeResponse(504), FakeResponse(200, OSM_RESPONSE)))
        source = overpass(session, max_attempts=2)
        assert source.fetch(RegionQuery(ZURICH, 100)) == OSM_RESPONSE
        assert session.urls == ["http://a", "http://a", "http://b", "http://b", "http://c"]

    def test_timeout_retried_on_same_endpoint(self):
        """Test that a timeout is retried at the same endpoint."""
        session = FakeSession(scripted(requests.exceptions.Timeout(), FakeResponse(200, OSM_RESPONSE)))
        source = overpass(session)
        assert source.fetch(RegionQuery(ZURICH, 100)) == OSM_RESPONSE
        assert session.urls == ["http://a", "http://a"]

    def test_connection_error_retried(self):
        """Test that connection failures are retryable."""
        session = FakeSession(scripted(requests.exceptions.ConnectionError("refused"), FakeResponse(200, OSM_RESPONSE)))
        assert overpass(session).fetch(RegionQuery(ZURICH, 100)) == OSM_RESPONSE

    def test_hard_failure_moves_to_next_endpoint(self):
        """Test that a 500 is not retried at the same endpoint."""
        session = FakeSession(scripted(FakeResponse(500), FakeResponse(200, OSM_RESPONSE)))
        source = overpass(session)
        assert source.fetch(RegionQuery(ZURICH, 100)) == OSM_RESPONSE
        assert session.urls == ["http://a", "http://b"]

    def test_all_endpoints_exhausted(self):
        """Test that running out of endpoints raises with the last error."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(429))
        source = overpass(session)
        with pytest.raises(SourceExhausted) as excinfo:
            source.fetch(RegionQuery(ZURICH, 100))
        assert isinstance(excinfo.value.last_error, TransportError)
        # 3 endpoints x 2 tries
        assert len(session.calls) == 6

    def test_last_error_is_endpoint_error(self):
        """Test that the last hard failure is reported."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(503))
        with pytest.raises(SourceExhausted) as excinfo:
            overpass(session).fetch(RegionQuery(ZURICH, 100))
        assert isinstance(excinfo.value.last_error, EndpointError)
        assert excinfo.value.last_error.status_code == 503

    def test_needs_endpoints(self):
        """Test that a source without endpoints is rejected."""
        with pytest.raises(InvalidRequest):
            OverpassSource([])


class TestOverpassSource:
    """Tests for the query-based source."""

    def test_query_posted_as_form(self):
        """Test the request shape."""
        session = FakeSession(scripted(FakeResponse(200, OSM_RESPONSE)))
        overpass(session).fetch(RegionQuery(ZURICH, 100))
        method, url, kwargs = session.calls[0]
        assert method == "post"
        assert "out geom;" in kwargs["data"]["data"]
        assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"

    def test_invalid_json_is_hard_failure(self):
        """Test that a non-JSON body moves on to the next endpoint."""
        session = FakeSession(scripted(FakeResponse(200, b"<html>busy</html>"), FakeResponse(200, OSM_RESPONSE)))
        assert overpass(session).fetch(RegionQuery(ZURICH, 100)) == OSM_RESPONSE
        assert session.urls == ["http://a", "http://b"]

    def test_missing_elements_is_hard_failure(self):
        """Test that JSON without an elements list is rejected."""
        session = FakeSession(scripted(FakeResponse(200, b'{"remark": "runtime error"}'), FakeResponse(200, OSM_RESPONSE)))
        assert overpass(session).fetch(RegionQuery(ZURICH, 100)) == OSM_RESPONSE

    def test_collect_features(self):
        """Test that the response becomes GeoJSON features."""
        session = FakeSession(scripted(FakeResponse(200, OSM_RESPONSE)))
        features = overpass(session).collect_features(ZURICH, 100)
        assert len(features) == 1
        assert features[0]["geometry"]["type"] == "Polygon"
        assert features[0]["properties"]["building"] == "yes"

    def test_cached_response(self):
        """Test that a repeated region is served from the cache."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(200, OSM_RESPONSE))
        source = overpass(session, cache=TileCache(MemoryStore()))
        source.collect_features(ZURICH, 100)
        source.collect_features(ZURICH, 100)
        assert len(session.calls) == 1

    def test_failures_not_cached(self):
        """Test that a failed fetch leaves nothing in the cache."""
        store = MemoryStore()
        session = FakeSession(lambda method, url, kwargs: FakeResponse(500))
        with pytest.raises(SourceExhausted):
            overpass(session, cache=TileCache(store)).collect_features(ZURICH, 100)
        assert len(store) == 0


class TestXYZTileSource:
    """Tests for templated tile servers."""

    def region_tiles(self, radius_m):
        return tiles_covering(bounding_box(ZURICH, radius_m), 14)

    def test_tile_url(self):
        """Test placeholder substitution."""
        url = XYZTileSource.tile_url("https://t/{z}/{x}/{y}.pbf?key=1", TileCoordinate(14, 8580, 5735))
        assert url == "https://t/14/8580/5735.pbf?key=1"

    def test_every_tile_fetched_once(self):
        """Test that each covering tile is requested exactly once."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(200, TILE_PAYLOAD))
        source = xyz(session)
        features = source.collect_features(ZURICH, 2000)

        tiles = self.region_tiles(2000)
        expected = {XYZTileSource.tile_url("http://tiles/{z}/{x}/{y}.pbf", tile) for tile in tiles}
        assert sorted(session.urls) == sorted(expected)
        assert len(features) == len(tiles)
        assert all(feature["properties"]["building"] == "yes" for feature in features)

    def test_missing_tile(self):
        """Test that 404 means no tile, not a failure."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(404))
        assert xyz(session).collect_features(ZURICH, 100) == []

    def test_raster_server_yields_nothing(self):
        """Test that PNG tiles decode to no features."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(200, b"\x89PNG\r\n\x1a\n"))
        assert xyz(session).collect_features(ZURICH, 100) == []

    def test_server_fallback_per_tile(self):
        """Test that a throttled server hands over to the next template."""
        def handler(method, url, kwargs):
            if url.startswith("http://a/"):
                return FakeResponse(429)
            return FakeResponse(200, TILE_PAYLOAD)

        session = FakeSession(handler)
        source = xyz(session, servers=("http://a/{z}/{x}/{y}", "http://b/{z}/{x}/{y}"))
        features = source.collect_features(ZURICH, 100)
        assert len(features) == len(self.region_tiles(100))

    @pytest.mark.parametrize("first_response", [
        FakeResponse(404),
        FakeResponse(200, b"\x89PNG\r\n\x1a\n"),
    ])
    def test_empty_server_hands_region_to_next(self, first_response):
        """Test that a server with no vector data for the region is replaced by the next one."""
        def handler(method, url, kwargs):
            if url.startswith("http://first/"):
                return first_response
            return FakeResponse(200, TILE_PAYLOAD)

        session = FakeSession(handler)
        source = xyz(session, servers=("http://first/{z}/{x}/{y}", "http://second/{z}/{x}/{y}"))
        features = source.collect_features(ZURICH, 100)

        assert len(features) == len(self.region_tiles(100))
        assert any(url.startswith("http://first/") for url in session.urls)
        assert any(url.startswith("http://second/") for url in session.urls)

    def test_every_server_empty(self):
        """Test that servers answering with no data give an empty region, not an error."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(404))
        source = xyz(session, servers=("http://first/{z}/{x}/{y}", "http://second/{z}/{x}/{y}"))
        assert source.collect_features(ZURICH, 100) == []

    def test_cache_key_per_server(self):
        """Test that one tile cached from one server is not reused for another."""
        tile = TileCoordinate(14, 8580, 5735)
        source = xyz(FakeSession(scripted()))
        assert source.cache_key(tile, "http://a/{z}/{x}/{y}") != source.cache_key(tile, "http://b/{z}/{x}/{y}")
        assert source.cache_key(tile, "http://a/{z}/{x}/{y}") == source.cache_key(tile, "http://a/{z}/{x}/{y}")

    def test_shared_cache_across_servers(self):
        """Test that a raster server's cached tiles do not shadow a vector server."""
        cache = TileCache(MemoryStore())
        raster = FakeSession(lambda method, url, kwargs: FakeResponse(200, b"\x89PNG\r\n\x1a\n"))
        assert xyz(raster, servers=("http://raster/{z}/{x}/{y}",), cache=cache).collect_features(ZURICH, 100) == []

        vector = FakeSession(lambda method, url, kwargs: FakeResponse(200, TILE_PAYLOAD))
        features = xyz(vector, servers=("http://vector/{z}/{x}/{y}",), cache=cache).collect_features(ZURICH, 100)
        assert len(vector.calls) == len(self.region_tiles(100))
        assert len(features) == len(self.region_tiles(100))

    def test_one_bad_tile_costs_only_its_features(self):
        """Test that a failing tile is skipped within the budget."""
        tiles = sorted(self.region_tiles(2000))
        assert len(tiles) > 1
        bad_url = XYZTileSource.tile_url("http://tiles/{z}/{x}/{y}.pbf", tiles[0])

        def handler(method, url, kwargs):
            if url == bad_url:
                return FakeResponse(500)
            return FakeResponse(200, TILE_PAYLOAD)

        features = xyz(FakeSession(handler), max_tile_failures=None).collect_features(ZURICH, 2000)
        assert len(features) == len(tiles) - 1

    def test_failure_budget(self):
        """Test that exceeding the tile failure budget abandons the source."""
        tiles = sorted(self.region_tiles(2000))
        bad_url = XYZTileSource.tile_url("http://tiles/{z}/{x}/{y}.pbf", tiles[0])

        def handler(method, url, kwargs):
            if url == bad_url:
                return FakeResponse(500)
            return FakeResponse(200, TILE_PAYLOAD)

        with pytest.raises(SourceExhausted):
            xyz(FakeSession(handler), max_tile_failures=0).collect_features(ZURICH, 2000)

    def test_every_tile_failed(self):
        """Test that a source with no successful tile is exhausted."""
        session = FakeSession(lambda method, url, kwargs: requests.exceptions.Timeout())
        with pytest.raises(SourceExhausted):
            xyz(session, max_tile_failures=None).collect_features(ZURICH, 100)

    def test_tiles_cached(self):
        """Test that tiles come from the cache on a second run."""
        session = FakeSession(lambda method, url, kwargs: FakeResponse(200, TILE_PAYLOAD))
        source = xyz(session, cache=TileCache(MemoryStore()))
        first = source.collect_features(ZURICH, 100)
        calls = len(session.calls)
        second = source.collect_features(ZURICH, 100)
        assert len(session.calls) == calls
        assert len(first) == len(second)


class FakeReader:
    """Stands in for pmtiles.reader.Reader."""

    def __init__(self, bounds, tiles=None, error=None):
        min_lat, min_lng, max_lat, max_lng = bounds
        self._header = {
            "min_lat_e7": int(min_lat * 1e7),
            "min_lon_e7": int(min_lng * 1e7),
            "max_lat_e7": int(max_lat * 1e7),
            "max_lon_e7": int(max_lng * 1e7),
        }
        self.tiles = tiles or {}
        self.error = error
        self.header_reads = 0

    def header(self):
        self.header_reads += 1
        return self._header

    def get(self, z, x, y):
        if self.error is not None:
            raise self.error
        return self.tiles.get((z, x, y))


def archive_handler(archive, status=206):
    def handler(method, url, kwargs):
        start, end = kwargs["headers"]["Range"][len("bytes="):].split("-")
        if status == 200:
            return FakeResponse(200, archive)
        return FakeResponse(status, archive[int(start):int(end) + 1])

    return handler


class TestPMTilesSource:
    """Tests for the range-request archive source."""

    ARCHIVE = bytes(range(256)) * 4

    def pmtiles(self, session, urls=("http://mirror-a/map.pmtiles",), **kwargs):
        return PMTilesSource(list(urls), session=session, retry_delay=0, max_attempts=1, zoom=14, **kwargs)

    def test_range_read(self):
        """Test that a range read returns exactly the requested bytes."""
        session = FakeSession(archive_handler(self.ARCHIVE))
        source = self.pmtiles(session)
        assert source.read_range(10, 5) == self.ARCHIVE[10:15]
        assert session.calls[0][2]["headers"]["Range"] == "bytes=10-14"

    def test_range_reads_memoized(self):
        """Test that repeated ranges are fetched once."""
        session = FakeSession(archive_handler(self.ARCHIVE))
        source = self.pmtiles(session)
        source.read_range(0, 127)
        source.read_range(0, 127)
        assert len(session.calls) == 1

    def test_tile_data_ranges_not_memoized(self):
        """Test that only header and directory ranges stay in memory."""
        session = FakeSession(archive_handler(self.ARCHIVE))
        source = self.pmtiles(session)
        source._header = {"tile_data_offset": 512, "tile_data_length": 256}

        source.read_range(520, 10)
        source.read_range(520, 10)
        assert len(session.calls) == 2

        source.read_range(0, 127)
        source.read_range(0, 127)
        assert len(session.calls) == 3
        assert list(source._ranges) == [(0, 127)]

    def test_no_per_endpoint_attempt(self):
        """Test that archive tiles are not fetched through the per-endpoint hook."""
        source = self.pmtiles(FakeSession(scripted()))
        with pytest.raises(NotImplementedError):
            source._attempt("http://mirror-a/map.pmtiles", TileCoordinate(14, 8580, 5735))

    def test_range_ignored_by_server(self):
        """Test that a full-body 200 is sliced to the range."""
        source = self.pmtiles(FakeSession(archive_handler(self.ARCHIVE, status=200)))
        assert source.read_range(300, 20) == self.ARCHIVE[300:320]

    def test_short_read_tries_mirror(self):
        """Test that a truncated range moves on to the next mirror."""
        def handler(method, url, kwargs):
            if "mirror-a" in url:
                return FakeResponse(206, b"\x00")
            return archive_handler(self.ARCHIVE)(method, url, kwargs)

        session = FakeSession(handler)
        source = self.pmtiles(session, urls=("http://mirror-a/map.pmtiles", "http://mirror-b/map.pmtiles"))
        assert source.read_range(0, 16) == self.ARCHIVE[:16]
        assert len(session.calls) == 2

    def test_bounds(self):
        """Test that header bounds are read once and converted to degrees."""
        source = self.pmtiles(FakeSession(scripted()))
        source.reader = FakeReader((47.0, 8.0, 48.0, 9.0))
        bounds = source.bounds()
        source.bounds()
        assert bounds.min_lat == pytest.approx(47.0)
        assert bounds.max_lng == pytest.approx(9.0)
        assert source.reader.header_reads == 1

    def test_outside_bounds(self):
        """Test that a point outside the archive is refused before any tile fetch."""
        source = self.pmtiles(FakeSession(scripted()))
        source.reader = FakeReader((0.0, 0.0, 1.0, 1.0))
        with pytest.raises(OutsideArchiveBounds):
            source.collect_features(ZURICH, 100)

    def test_collect_features(self):
        """Test that archive tiles are decoded and projected."""
        tiles = tiles_covering(bounding_box(ZURICH, 100), 14)
        source = self.pmtiles(FakeSession(scripted()))
        source.reader = FakeReader((47.0, 8.0, 48.0, 9.0),
                                   tiles={(t.z, t.x, t.y): TILE_PAYLOAD for t in tiles})
        features = source.collect_features(ZURICH, 100)
        assert len(features) == len(tiles)

    def test_absent_tiles(self):
        """Test that tiles missing from the archive contribute nothing."""
        source = self.pmtiles(FakeSession(scripted()))
        source.reader = FakeReader((47.0, 8.0, 48.0, 9.0))
        assert source.collect_features(ZURICH, 100) == []

    def test_corrupt_directory(self):
        """Test that reader errors exhaust the source."""
        source = self.pmtiles(FakeSession(scripted()))
        source.reader = FakeReader((47.0, 8.0, 48.0, 9.0), error=ValueError("bad varint"))
        with pytest.raises(SourceExhausted):
            source.collect_features(ZURICH, 100)


class TestCreateSource:
    """Tests for building sources from configuration."""

    def test_split_server_urls(self):
        """Test that archive URLs are separated from XYZ templates."""
        xyz_urls, archives = split_server_urls(["http://t/{z}/{x}/{y}.pbf", "http://t/world.pmtiles"])
        assert xyz_urls == ["http://t/{z}/{x}/{y}.pbf"]
        assert archives == ["http://t/world.pmtiles"]

    def test_kinds(self):
        """Test each kind with the default config."""
        config = PipelineConfig()
        cache = TileCache(None)
        assert isinstance(create_source("overpass", config, cache), OverpassSource)
        assert isinstance(create_source("xyz", config, cache), XYZTileSource)
        assert create_source("pmtiles", config, cache) is None

    def test_pmtiles_from_server_list(self):
        """Test that a .pmtiles entry among the servers makes an archive source."""
        config = PipelineConfig(tiles=TileServerConfig(servers=("http://t/world.pmtiles",)))
        source = create_source("pmtiles", config, TileCache(None))
        assert isinstance(source, PMTilesSource)
        assert source.endpoints == ["http://t/world.pmtiles"]
        assert create_source("xyz", config, TileCache(None)) is None

    def test_unknown_kind(self):
        """Test that unknown kinds are rejected."""
        with pytest.raises(InvalidRequest):
            create_source("wms", PipelineConfig(), TileCache(None))
