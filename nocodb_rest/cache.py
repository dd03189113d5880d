"""
On-disk cache for per-base swagger documents.

One JSON file per base (``swagger-<baseId>.json``) under the cache directory.
The file's modification time is the only metadata: it drives both TTL expiry
and oldest-first eviction. Concurrent CLI processes may race on the same file;
a torn read simply counts as a cache miss.
"""

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from nocodb_rest import NocoDBError, get_config_dir
from nocodb_rest.swagger import SwaggerDoc, is_swagger_doc

logger = logging.getLogger(__name__)

CACHE_FILE_PREFIX = "swagger-"
CACHE_FILE_SUFFIX = ".json"
DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 50


def cache_key(base_id: str) -> str:
    return f"{CACHE_FILE_PREFIX}{base_id}{CACHE_FILE_SUFFIX}"


def is_cache_key(name: str) -> bool:
    return name.startswith(CACHE_FILE_PREFIX) and name.endswith(CACHE_FILE_SUFFIX)


def default_cache_dir() -> str:
    return os.path.join(get_config_dir(), "cache")


# --- Stores ---


class CacheStore(ABC):
    """Flat key -> text storage with a last-write time per key."""

    @abstractmethod
    def read(self, key: str) -> str:
        """Returns the stored text. Raises OSError if it cannot be read."""

    @abstractmethod
    def write(self, key: str, text: str) -> None:
        """Stores ``text`` and stamps the key with the current time."""

    @abstractmethod
    def mtime(self, key: str) -> Optional[float]:
        """Last-write time in epoch seconds, None if the key is absent."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Removes a key. True if something was deleted."""

    @abstractmethod
    def keys(self) -> List[str]:
        """All stored keys, in no particular order."""

    def exists(self, key: str) -> bool:
        return self.mtime(key) is not None


class FileCacheStore(CacheStore):
    """One file per key inside ``directory``."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or default_cache_dir()

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, key)

    def read(self, key: str) -> str:
        with open(self._path(key), "r", encoding="utf-8") as f:
            return f.read()

    def write(self, key: str, text: str) -> None:
        os.makedirs(self.directory, exist_ok=True)
        with open(self._path(key), "w", encoding="utf-8") as f:
            f.write(text)

    def mtime(self, key: str) -> Optional[float]:
        try:
            return os.stat(self._path(key)).st_mtime
        except OSError:
            return None

    def delete(self, key: str) -> bool:
        try:
            os.unlink(self._path(key))
        except FileNotFoundError:
            return False
        return True

    def keys(self) -> List[str]:
        if not os.path.isdir(self.directory):
            return []
        return os.listdir(self.directory)


class MemoryCacheStore(CacheStore):
    """In-process store, stamped by an injectable clock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def read(self, key: str) -> str:
        try:
            return self._entries[key][0]
        except KeyError:
            raise FileNotFoundError(key) from None

    def write(self, key: str, text: str) -> None:
        self._entries[key] = (text, self.clock())

    def mtime(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        return entry[1] if entry else None

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def keys(self) -> List[str]:
        return list(self._entries)


# --- Swagger cache ---


class SwaggerCache:
    """
    Fetches swagger documents through a client and caches them in a store.

    Args:
        client: Anything with ``get_base_swagger(base_id)``, normally a
                NocoDBClient.
        store: Where documents are kept. Defaults to a FileCacheStore in
               ``<config dir>/cache``.
        ttl: Seconds a cached document stays fresh.
        max_entries: Cached documents kept before the oldest are evicted.
        clock: Current time in epoch seconds; must agree with the store's
               timestamps.
    """

    def __init__(
        self,
        client: Any,
        store: Optional[CacheStore] = None,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.client = client
        self.store = store if store is not None else FileCacheStore()
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock

    def get(self, base_id: str, use_cache: bool = True) -> SwaggerDoc:
        """
        Returns the swagger document for ``base_id``.

        With ``use_cache`` a fresh, well-formed cached copy is returned without
        a request. Otherwise the document is fetched, written to the cache
        (best-effort) and the cache is trimmed to ``max_entries``.

        Raises:
            NocoDBError: If the server returns something that is not a swagger
                document, or the request itself fails.
        """
        key = cache_key(base_id)
        if use_cache:
            cached = self._read_fresh(key)
            if cached is not None:
                logger.debug(f"Using cached swagger for base {base_id}")
                return cached

        swagger = self._fetch(base_id)
        self._write(key, swagger)
        self._evict()
        return swagger

    def ensure_cached(self, base_id: str) -> None:
        """Fetches and stores the document only if no entry exists yet."""
        if not self.store.exists(cache_key(base_id)):
            self.get(base_id, use_cache=True)

    def invalidate(self, base_id: str) -> bool:
        try:
            return self.store.delete(cache_key(base_id))
        except OSError as e:
            logger.warning(f"Could not remove cached swagger for base {base_id}: {e}")
            return False

    def invalidate_all(self) -> int:
        deleted = 0
        try:
            for key in self.store.keys():
                if is_cache_key(key) and self.store.delete(key):
                    deleted += 1
        except OSError as e:
            logger.warning(f"Could not clear swagger cache: {e}")
        return deleted

    def _fetch(self, base_id: str) -> SwaggerDoc:
        logger.info(f"Fetching swagger for base {base_id}")
        doc = self.client.get_base_swagger(base_id)
        if not is_swagger_doc(doc):
            raise NocoDBError(f"Invalid swagger document received for base {base_id}")
        return doc

    def _read_fresh(self, key: str) -> Optional[SwaggerDoc]:
        try:
            written_at = self.store.mtime(key)
            if written_at is None or self.clock() - written_at > self.ttl:
                return None
            doc = json.loads(self.store.read(key))
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring unreadable cache entry {key}: {e}")
            return None
        return doc if is_swagger_doc(doc) else None

    def _write(self, key: str, swagger: SwaggerDoc) -> None:
        try:
            self.store.write(key, json.dumps(swagger, indent=2))
        except OSError as e:
            logger.warning(f"Could not write swagger cache entry {key}: {e}")

    def _evict(self) -> None:
        try:
            entries = []
            for key in self.store.keys():
                if not is_cache_key(key):
                    continue
                written_at = self.store.mtime(key)
                if written_at is not None:
                    entries.append((written_at, key))
            if len(entries) <= self.max_entries:
                return
            entries.sort()
            for _, key in entries[: len(entries) - self.max_entries]:
                try:
                    self.store.delete(key)
                except OSError as e:
                    logger.debug(f"Could not evict swagger cache entry {key}: {e}")
                    continue
                logger.debug(f"Evicted swagger cache entry {key}")
        except OSError as e:
            logger.debug(f"Swagger cache eviction failed: {e}")
