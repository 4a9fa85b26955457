"""
Tiered cache invalidation for the operation watchdog.
Provides the four escalation tiers, from the cheapest (query cache) to the
most destructive (full reload), plus the lightweight invalidation used by
the passive health monitors.

Every tier is idempotent and tolerant of partial failure: each sub-step is
attempted on its own, failures are logged, and the completion action is
recorded once the tier has run through all of its steps.
"""

import inspect
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from cache_backends import KeyValueStore, QueryKey, WatchdogBackends
from cache_telemetry import CacheTelemetry
from lock_utils import SingleFlightGuard, single_flight

logger = logging.getLogger(__name__)


def matches_any(name: str, patterns: Iterable[str]) -> bool:
    """Check whether any pattern occurs in name."""
    return any(pattern in name for pattern in patterns)


class CacheTier:
    """Base class for a single invalidation tier."""

    tier = 0
    action_name = ""

    def __init__(
        self,
        config: Dict[str, Any],
        backends: WatchdogBackends,
        telemetry: CacheTelemetry,
    ):
        """
        Initialize the tier.

        Args:
            config: Watchdog configuration dictionary
            backends: Stores this tier invalidates
            telemetry: Sink for the completion action
        """
        self.storage_config = config.get("storage", {})
        self.backends = backends
        self.telemetry = telemetry

    async def invalidate(self) -> bool:
        """
        Invalidate this tier.

        Returns:
            bool: True if the tier ran to completion (sub-step failures included)
        """
        logger.info(f"CacheWatchdog: Running tier {self.tier} ({self.action_name})")

        try:
            await self._invalidate()
        except Exception as e:
            logger.error(f"CacheWatchdog: Tier {self.tier} invalidation failed: {e}")
            return False

        self.telemetry.record_action(self.action_name)
        return True

    async def _invalidate(self) -> None:
        raise NotImplementedError

    async def _step(self, description: str, func: Callable, *args) -> Optional[Any]:
        """Run one sub-step, logging instead of raising on failure."""
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.error(f"CacheWatchdog: Failed to {description}: {e}")
            return None

    async def _remove_keys(
        self, store: KeyValueStore, keep: Callable[[str], bool], store_name: str
    ) -> int:
        """Remove every key of store that keep() rejects, one key at a time."""
        keys = await self._step(f"list {store_name} keys", store.keys) or []
        removed = 0

        for key in keys:
            if keep(key):
                continue
            if await self._step(f"remove {store_name} key {key}", store.remove, key):
                removed += 1

        return removed

    async def _delete_response_caches(self, select: Callable[[str], bool]) -> int:
        """Delete the named response caches that select() accepts."""
        caches = self.backends.response_caches
        names = await self._step("list response caches", caches.names) or []
        deleted = 0

        for name in names:
            if not select(name):
                continue
            if await self._step(f"delete response cache {name}", caches.delete, name) is not None:
                deleted += 1

        return deleted


class QueryCacheTier(CacheTier):
    """Tier 1: drop every cached query result and make future reads stale."""

    tier = 1
    action_name = "query-cache-clear"

    async def _invalidate(self) -> None:
        query_cache = self.backends.query_cache
        await self._step("clear query cache", query_cache.clear)
        await self._step("reset query freshness", query_cache.set_default_freshness, 0, 0)


class SessionCacheTier(CacheTier):
    """
    Tier 2: refresh the session and drop the session's response caches.

    The refresh is what frees a stuck authentication round-trip; credentials
    themselves are never deleted here.
    """

    tier = 2
    action_name = "session-cache-clear"

    async def _invalidate(self) -> None:
        await self._step("refresh session", self.backends.session_provider.refresh)

        session_tags = self.storage_config.get("session_cache_tags", [])
        deleted = await self._delete_response_caches(
            lambda name: matches_any(name, session_tags)
        )
        logger.debug(f"CacheWatchdog: Deleted {deleted} session response caches")


class DurableStorageTier(CacheTier):
    """Tier 3: clear durable storage, keeping authentication-critical entries."""

    tier = 3
    action_name = "durable-storage-clear"

    async def _invalidate(self) -> None:
        auth_keys = self.storage_config.get("auth_key_patterns", [])
        auth_databases = self.storage_config.get("auth_database_patterns", [])
        protected_tags = self.storage_config.get("protected_cache_tags", [])

        def is_auth_key(key: str) -> bool:
            return matches_any(str(key), auth_keys)

        await self._remove_keys(self.backends.local_storage, is_auth_key, "durable storage")
        await self._remove_keys(self.backends.session_storage, is_auth_key, "session storage")

        databases = self.backends.databases
        names = await self._step("list local databases", databases.list_databases) or []
        for name in names:
            if not matches_any(name, auth_databases):
                await self._step(f"delete local database {name}", databases.delete_database, name)

        await self._delete_response_caches(lambda name: not matches_any(name, protected_tags))


class FullReloadTier(CacheTier):
    """
    Tier 4: wipe everything reachable and restart the process.

    Runs at most once per process (single-flight), and is suppressed during
    the grace period that follows a detected recent reload.
    """

    tier = 4
    action_name = "force-reload"
    suppressed_action_name = "force-reload-suppressed"

    def __init__(
        self,
        config: Dict[str, Any],
        backends: WatchdogBackends,
        telemetry: CacheTelemetry,
        reload_guard: SingleFlightGuard,
        wall_clock: Callable[[], float] = time.time,
    ):
        super().__init__(config, backends, telemetry)
        watchdog_config = config.get("watchdog", {})
        self.marker_key = watchdog_config.get("reload_marker_key", "cache-manager-reload")
        self.reload_guard = reload_guard
        self._wall_clock = wall_clock
        self._suppressed_until: Optional[float] = None

    def suppress_until(self, deadline: float) -> None:
        """Ignore reload requests until the given wall-clock time."""
        self._suppressed_until = deadline

    @property
    def suppressed(self) -> bool:
        return (
            self._suppressed_until is not None
            and self._wall_clock() < self._suppressed_until
        )

    async def invalidate(self) -> bool:
        if self.reload_guard.in_flight:
            logger.debug("CacheWatchdog: Reload already initiated, ignoring request")
            return False

        if self.suppressed:
            logger.warning("CacheWatchdog: Reload suppressed, process was just reloaded")
            self.telemetry.record_action(self.suppressed_action_name)
            return False

        return bool(await self._reload())

    @single_flight("reload_guard")
    async def _reload(self) -> bool:
        logger.warning("CacheWatchdog: Forcing reload due to persistent slow operation")

        await self._step("refresh session", self.backends.session_provider.refresh)
        await self._step("clear query cache", self.backends.query_cache.clear)
        await self._step(
            "reset query freshness", self.backends.query_cache.set_default_freshness, 0, 0
        )
        await self._delete_response_caches(lambda name: True)
        await self._step("clear durable storage", self.backends.local_storage.clear)
        await self._step("clear session storage", self.backends.session_storage.clear)

        databases = self.backends.databases
        names = await self._step("list local databases", databases.list_databases) or []
        for name in names:
            await self._step(f"delete local database {name}", databases.delete_database, name)

        self.telemetry.record_action(self.action_name)
        await self._step(
            "write reload marker",
            self.backends.session_storage.set,
            self.marker_key,
            self._wall_clock(),
        )

        self.backends.restarter.restart()
        return True


class LightweightInvalidator(CacheTier):
    """
    Reduced tier 1 used by the health monitors.

    Only drops query results not tagged auth/profile/critical and temporary
    session entries.
    """

    tier = 1
    action_name = "lightweight-clear"

    def _is_disposable_query(self, key: QueryKey) -> bool:
        protected = self.storage_config.get("lightweight_protected_markers", [])
        return not any(
            isinstance(part, str) and matches_any(part, protected) for part in key
        )

    async def _invalidate(self) -> None:
        removed = await self._step(
            "remove unprotected query results",
            self.backends.query_cache.remove_matching,
            self._is_disposable_query,
        )
        logger.debug(f"CacheWatchdog: Lightweight clear removed {removed or 0} query results")

        temp_markers = self.storage_config.get("temporary_key_markers", [])
        await self._remove_keys(
            self.backends.session_storage,
            lambda key: not matches_any(str(key), temp_markers),
            "session storage",
        )


def build_cache_tiers(
    config: Dict[str, Any],
    backends: WatchdogBackends,
    telemetry: CacheTelemetry,
    reload_guard: SingleFlightGuard,
    wall_clock: Callable[[], float] = time.time,
) -> Dict[int, CacheTier]:
    """
    Create the four escalation tiers.

    Returns:
        Dict mapping tier number to its invalidator
    """
    tiers: List[CacheTier] = [
        QueryCacheTier(config, backends, telemetry),
        SessionCacheTier(config, backends, telemetry),
        DurableStorageTier(config, backends, telemetry),
        FullReloadTier(config, backends, telemetry, reload_guard, wall_clock),
    ]
    return {tier.tier: tier for tier in tiers}
