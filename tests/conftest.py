"""
Shared fixtures for the watchdog tests: a manual timer scheduler for
simulated time, and backends built on temporary directories.
"""

import heapq
import itertools
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cache_backends import (
    CallbackRestarter,
    DirectoryDatabaseRegistry,
    DiskKeyValueStore,
    DiskResponseCacheStore,
    MemoryKeyValueStore,
    MemoryQueryCache,
    SessionProvider,
    WatchdogBackends,
)
from operation_watchdog import CacheWatchdog, TimerScheduler


class ManualTimer:
    """Timer handle returned by ManualScheduler."""

    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler(TimerScheduler):
    """Simulated clock: timers only fire when the test advances time."""

    def __init__(self):
        self._now = 0.0
        self._timers = []
        self._sequence = itertools.count()

    def now(self):
        return self._now

    def call_later(self, delay, callback, *args):
        timer = ManualTimer(self._now + delay, callback, args)
        heapq.heappush(self._timers, (timer.when, next(self._sequence), timer))
        return timer

    @property
    def pending(self):
        return sum(1 for _, _, timer in self._timers if not timer.cancelled)

    def advance(self, seconds):
        """Move the clock forward, firing due timers in deadline order."""
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = when
            timer.callback(*timer.args)
        self._now = target


class CountingSessionProvider(SessionProvider):
    """Session provider that records refreshes and can be made to fail."""

    def __init__(self, error=None):
        self.refresh_count = 0
        self.error = error

    async def refresh(self):
        self.refresh_count += 1
        if self.error is not None:
            raise self.error


class WallClock:
    """Settable wall clock."""

    def __init__(self, start=1_700_000_000.0):
        self.value = start

    def __call__(self):
        return self.value


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def restarts():
    return []


@pytest.fixture
def backends(tmp_path, restarts):
    response_caches = DiskResponseCacheStore(tmp_path / "responses")
    local_storage = DiskKeyValueStore(tmp_path / "local")

    yield WatchdogBackends(
        query_cache=MemoryQueryCache(),
        session_provider=CountingSessionProvider(),
        response_caches=response_caches,
        local_storage=local_storage,
        session_storage=MemoryKeyValueStore(),
        databases=DirectoryDatabaseRegistry(tmp_path / "databases"),
        restarter=CallbackRestarter(lambda: restarts.append("restart")),
    )

    response_caches.close()
    local_storage.close()


@pytest.fixture
def populated_backends(backends, tmp_path):
    """Backends holding auth-critical and disposable data in every store."""
    backends.query_cache.set(("patients", "list"), ["p1", "p2"])
    backends.query_cache.set(("auth", "user"), {"id": "u1"})
    backends.query_cache.set(("profile", "u1"), {"name": "Dr. Rao"})
    backends.query_cache.set(("critical", "config"), {"flag": True})

    backends.local_storage.set("sb-access-token", "access")
    backends.local_storage.set("sb-refresh-token", "refresh")
    backends.local_storage.set("draft-prescription", {"rx": "amoxicillin"})
    backends.local_storage.set("ui-theme", "dark")

    backends.session_storage.set("sb-access-token", "access")
    backends.session_storage.set("temp-upload", "data")
    backends.session_storage.set("search-cache", ["a"])
    backends.session_storage.set("wizard-step", 3)

    backends.response_caches.put("supabase-api", "/rest/v1/patients", "[...]")
    backends.response_caches.put("postgrest-v1", "/rpc/search", "[...]")
    backends.response_caches.put("auth-tokens", "/auth/v1/token", "{...}")
    backends.response_caches.put("critical-assets", "/index.html", "<html>")
    backends.response_caches.put("static-assets", "/logo.png", b"png")

    db_root = tmp_path / "databases"
    (db_root / "supabase-auth-db").mkdir()
    (db_root / "drafts-db").mkdir()
    (db_root / "drafts-db" / "data.sqlite").write_bytes(b"rows")
    (db_root / "voice-notes-db").mkdir()

    return backends


@pytest.fixture
def memory_usage():
    """Mutable memory sample fed to the watchdog instead of psutil."""
    return {"percent": 40.0}


@pytest.fixture
def watchdog(backends, scheduler, wall_clock, memory_usage):
    return CacheWatchdog(
        backends,
        scheduler=scheduler,
        memory_sampler=lambda: memory_usage["percent"],
        wall_clock=wall_clock,
    )
