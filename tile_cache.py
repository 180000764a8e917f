"""
tile_cache.py - Best-effort TTL cache for fetched tiles and query results

The cache never breaks a fetch: a store that raises on read or write is
logged and treated as a miss. Entries are written whole and never patched.
"""

import hashlib
import logging
import struct
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

# Entry header: stored_at as little-endian double
_HEADER = struct.Struct("<d")


class CacheStore(Protocol):
    """Key-value persistence injected into the pipeline."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload and the time it was stored (epoch seconds)."""
    key: str
    payload: bytes
    stored_at: float

    def is_fresh(self, now: float, expiration: float) -> bool:
        return now - self.stored_at < expiration

    def serialize(self) -> bytes:
        return _HEADER.pack(self.stored_at) + self.payload

    @classmethod
    def deserialize(cls, key: str, raw: bytes) -> 'CacheEntry':
        if len(raw) < _HEADER.size:
            raise ValueError(f"Truncated cache entry for {key}")
        (stored_at,) = _HEADER.unpack_from(raw)
        return cls(key=key, payload=bytes(raw[_HEADER.size:]), stored_at=stored_at)


class MemoryStore:
    """In-process store, safe to share between fetch threads."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = value

    def __len__(self) -> int:
        return len(self._data)


class DirectoryStore:
    """One file per key under a cache directory."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        # Keys contain characters that are not safe in file names
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self.cache_dir / digest[:2] / f"{digest}.bin"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(value)
        tmp_path.replace(path)


class TileCache:
    """TTL semantics on top of a CacheStore.

    Args:
        store: Backing key-value store (None disables caching)
        expiration: Entry lifetime in seconds
        clock: Time source, epoch seconds
    """

    def __init__(
        self,
        store: Optional[CacheStore],
        expiration: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.expiration = expiration
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.store is not None

    def get(self, key: str) -> Optional[bytes]:
        """Fresh payload for key, or None on miss, expiry or store failure."""
        if self.store is None:
            return None
        try:
            raw = self.store.get(key)
            if raw is None:
                return None
            entry = CacheEntry.deserialize(key, raw)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None

        if not entry.is_fresh(self.clock(), self.expiration):
            logger.debug("Cache entry expired: %s", key)
            return None
        return entry.payload

    def put(self, key: str, payload: bytes) -> None:
        """Store or replace the entry for key. Failures are logged, never raised."""
        if self.store is None:
            return
        entry = CacheEntry(key=key, payload=payload, stored_at=self.clock())
        try:
            self.store.set(key, entry.serialize())
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, e)
