"""
Cache backends consumed by the operation watchdog.

The watchdog never owns these stores: the host application reads and writes
them concurrently. Each capability is an abstract base class with one or more
concrete adapters:

- QueryCache: in-memory cache of completed asynchronous results
  (MemoryQueryCache, on top of cachetools).
- SessionProvider: session/credential refresh (CallbackSessionProvider).
- ResponseCacheStore: named network response caches
  (DiskResponseCacheStore, diskcache with one tag per cache name).
- KeyValueStore: durable or session-scoped key/value storage
  (DiskKeyValueStore, MemoryKeyValueStore).
- ObjectDatabaseRegistry: structured local databases
  (DirectoryDatabaseRegistry).
- ProcessRestarter: the full reload primitive (ExecRestarter,
  CallbackRestarter).
"""

import asyncio
import logging
import os
import shutil
import sqlite3
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple, Union

import diskcache
from cachetools import LRUCache, TTLCache

logger = logging.getLogger(__name__)

QueryKey = Tuple[Hashable, ...]


class StorageBackendUnavailable(Exception):
    """Raised when an underlying store cannot be reached."""

    pass


@contextmanager
def _disk_errors(backend_name: str):
    """Translate low-level disk cache failures into StorageBackendUnavailable."""
    try:
        yield
    except (diskcache.Timeout, sqlite3.Error, OSError) as e:
        raise StorageBackendUnavailable(f"{backend_name} unavailable: {e}") from e


# -----------------------------------------------------------------------------
# Query result cache
# -----------------------------------------------------------------------------


class QueryCache:
    """Abstract in-memory cache of completed asynchronous results."""

    def clear(self) -> None:
        """Drop every cached result."""
        raise NotImplementedError

    def remove_matching(self, predicate: Callable[[QueryKey], bool]) -> int:
        """Drop the results whose key satisfies predicate."""
        raise NotImplementedError

    def set_default_freshness(
        self, stale_time: float, gc_time: Optional[float] = None
    ) -> None:
        """Change how long results stay fresh and how long they are retained."""
        raise NotImplementedError


class MemoryQueryCache(QueryCache):
    """Query cache stored in memory with cachetools."""

    def __init__(
        self,
        max_size: int = 1000,
        stale_time: Optional[float] = 300.0,
        gc_time: Optional[float] = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the query cache.

        Args:
            max_size: Maximum number of cached results
            stale_time: Seconds a result stays fresh (None: never stale)
            gc_time: Seconds a result is retained (None: until evicted by size)
            clock: Monotonic clock used to age entries
        """
        self.max_size = max_size
        self.stale_time = stale_time
        self.gc_time = gc_time
        self._clock = clock
        self._entries = self._create_store(gc_time)

    def _create_store(self, gc_time: Optional[float]):
        if gc_time:
            return TTLCache(maxsize=self.max_size, ttl=gc_time)
        return LRUCache(maxsize=self.max_size)

    def set(self, key: QueryKey, value: Any) -> None:
        self._entries[tuple(key)] = (value, self._clock())

    def get(self, key: QueryKey) -> Optional[Any]:
        """Return a fresh cached result, or None when missing or stale."""
        entry = self._entries.get(tuple(key))
        if entry is None:
            return None

        value, stored_at = entry
        if self.stale_time is not None and self._clock() - stored_at >= self.stale_time:
            return None
        return value

    def contains(self, key: QueryKey) -> bool:
        """Check presence regardless of freshness."""
        return tuple(key) in self._entries

    def keys(self) -> List[QueryKey]:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def remove_matching(self, predicate: Callable[[QueryKey], bool]) -> int:
        matching = [key for key in list(self._entries.keys()) if predicate(key)]
        for key in matching:
            self._entries.pop(key, None)
        return len(matching)

    def set_default_freshness(
        self, stale_time: float, gc_time: Optional[float] = None
    ) -> None:
        self.stale_time = stale_time

        if gc_time != self.gc_time:
            # Rebuild the backing store with the new retention, keeping entries
            new_entries = self._create_store(gc_time)
            for key, entry in list(self._entries.items()):
                new_entries[key] = entry
            self._entries = new_entries
            self.gc_time = gc_time


# -----------------------------------------------------------------------------
# Session provider
# -----------------------------------------------------------------------------


class SessionProvider:
    """Abstract session/credential provider."""

    async def refresh(self) -> None:
        """Refresh the session. Must never delete the stored credentials."""
        raise NotImplementedError


class CallbackSessionProvider(SessionProvider):
    """Session provider delegating to a host coroutine function."""

    def __init__(self, refresh_callback: Callable[[], Awaitable[Any]]):
        self._refresh_callback = refresh_callback
        self.refresh_count = 0

    async def refresh(self) -> None:
        await self._refresh_callback()
        self.refresh_count += 1


# -----------------------------------------------------------------------------
# Response caches
# -----------------------------------------------------------------------------


class ResponseCacheStore:
    """Abstract store of named network response caches."""

    async def names(self) -> List[str]:
        """List the names of all response caches currently present."""
        raise NotImplementedError

    async def delete(self, name: str) -> int:
        """Delete one named cache, returning the number of entries removed."""
        raise NotImplementedError


class DiskResponseCacheStore(ResponseCacheStore):
    """
    Response caches kept in a single diskcache directory.

    Every entry is tagged with its cache name so a named cache is deleted
    by evicting its tag, whatever entries it holds at that moment.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = str(directory)
        self._cache = diskcache.Cache(self.directory, tag_index=True)

    def put(self, cache_name: str, key: str, value: Any) -> None:
        with _disk_errors("response cache"):
            self._cache.set((cache_name, key), value, tag=cache_name)

    def fetch(self, cache_name: str, key: str) -> Optional[Any]:
        with _disk_errors("response cache"):
            return self._cache.get((cache_name, key))

    async def names(self) -> List[str]:
        return await asyncio.to_thread(self._names)

    async def delete(self, name: str) -> int:
        return await asyncio.to_thread(self._evict, name)

    def _names(self) -> List[str]:
        names = set()
        with _disk_errors("response cache"):
            for key in self._cache.iterkeys():
                _, tag = self._cache.get(key, default=(None, None), tag=True)
                # Entry may have been removed by the host since iteration began
                if tag is not None:
                    names.add(tag)
        return sorted(names)

    def _evict(self, name: str) -> int:
        with _disk_errors("response cache"):
            return self._cache.evict(name)

    def close(self) -> None:
        self._cache.close()


# -----------------------------------------------------------------------------
# Key/value storage
# -----------------------------------------------------------------------------


class KeyValueStore:
    """Abstract enumerable key/value store."""

    def keys(self) -> List[str]:
        raise NotImplementedError

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> bool:
        """Remove a key; missing keys are not an error."""
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """Session-scoped key/value store held in process memory."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        return True

    def clear(self) -> None:
        self._data.clear()


class DiskKeyValueStore(KeyValueStore):
    """Durable key/value store backed by diskcache."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = str(directory)
        self._cache = diskcache.Cache(self.directory)

    def keys(self) -> List[str]:
        with _disk_errors("durable storage"):
            return list(self._cache.iterkeys())

    def get(self, key: str) -> Optional[Any]:
        with _disk_errors("durable storage"):
            return self._cache.get(key)

    def set(self, key: str, value: Any) -> None:
        with _disk_errors("durable storage"):
            self._cache.set(key, value)

    def remove(self, key: str) -> bool:
        with _disk_errors("durable storage"):
            return self._cache.delete(key)

    def clear(self) -> None:
        with _disk_errors("durable storage"):
            self._cache.clear()

    def close(self) -> None:
        self._cache.close()


# -----------------------------------------------------------------------------
# Structured local databases
# -----------------------------------------------------------------------------


class ObjectDatabaseRegistry:
    """Abstract registry of structured local databases."""

    async def list_databases(self) -> List[str]:
        raise NotImplementedError

    async def delete_database(self, name: str) -> bool:
        raise NotImplementedError


class DirectoryDatabaseRegistry(ObjectDatabaseRegistry):
    """Treats every entry below a root directory as one local database."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    async def list_databases(self) -> List[str]:
        return await asyncio.to_thread(self._list)

    async def delete_database(self, name: str) -> bool:
        return await asyncio.to_thread(self._delete, name)

    def _list(self) -> List[str]:
        with _disk_errors("database registry"):
            return sorted(entry.name for entry in self.root.iterdir())

    def _delete(self, name: str) -> bool:
        path = self.root / name
        with _disk_errors("database registry"):
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()
            else:
                return False
        logger.debug(f"Deleted local database {name}")
        return True


# -----------------------------------------------------------------------------
# Process restart
# -----------------------------------------------------------------------------


class ProcessRestarter:
    """Abstract full-reload primitive."""

    def restart(self) -> None:
        raise NotImplementedError


class ExecRestarter(ProcessRestarter):
    """Replace the running process with a fresh interpreter on the same argv."""

    def restart(self) -> None:
        logger.warning("Restarting process")
        sys.stdout.flush()
        sys.stderr.flush()
        os.execv(sys.executable, [sys.executable] + sys.argv)


class CallbackRestarter(ProcessRestarter):
    """Delegate the reload to a host callback (e.g. an application supervisor)."""

    def __init__(self, callback: Callable[[], Any]):
        self._callback = callback
        self.restart_count = 0

    def restart(self) -> None:
        self.restart_count += 1
        self._callback()


# -----------------------------------------------------------------------------
# Composition
# -----------------------------------------------------------------------------


class WatchdogBackends:
    """Bundle of the stores the tiers invalidate, supplied by the host."""

    def __init__(
        self,
        query_cache: QueryCache,
        session_provider: SessionProvider,
        response_caches: ResponseCacheStore,
        local_storage: KeyValueStore,
        session_storage: KeyValueStore,
        databases: ObjectDatabaseRegistry,
        restarter: ProcessRestarter,
    ):
        self.query_cache = query_cache
        self.session_provider = session_provider
        self.response_caches = response_caches
        self.local_storage = local_storage
        self.session_storage = session_storage
        self.databases = databases
        self.restarter = restarter


def create_disk_backends(
    base_dir: Union[str, Path],
    refresh_session: Callable[[], Awaitable[Any]],
    restarter: Optional[ProcessRestarter] = None,
    query_cache: Optional[QueryCache] = None,
) -> WatchdogBackends:
    """
    Create the default disk-backed stores under one base directory.

    Args:
        base_dir: Directory holding the durable stores
        refresh_session: Host coroutine function that refreshes the session
        restarter: Reload primitive (defaults to re-executing the process)
        query_cache: Existing query cache to watch (defaults to a new one)

    Returns:
        WatchdogBackends ready to hand to CacheWatchdog
    """
    base = Path(base_dir)
    base.mkdir(parents=True, exist_ok=True)

    return WatchdogBackends(
        query_cache=query_cache or MemoryQueryCache(),
        session_provider=CallbackSessionProvider(refresh_session),
        response_caches=DiskResponseCacheStore(base / "responses"),
        local_storage=DiskKeyValueStore(base / "local"),
        # Session storage must outlive a restart so the reload marker is seen
        session_storage=DiskKeyValueStore(base / "session"),
        databases=DirectoryDatabaseRegistry(base / "databases"),
        restarter=restarter or ExecRestarter(),
    )
