"""
Operation Watchdog with Progressive Cache Degradation
======================================================

This module times long-running asynchronous operations of a client
application and, when one of them overruns, escalates through increasingly
destructive tiers of cache invalidation until the application responds
again.

Key Features:
-------------
- **Operation Tracking**: Named operations are registered with a start time
  and a cancellable timer armed for the first escalation threshold.
- **Cumulative Escalation**: Crossing tier k's threshold runs the invalidators
  for tiers 1..k in ascending order; a failing tier never blocks the next one.
- **Single-flight Reload**: The terminal full-reload tier runs at most once per
  process, and not at all during the grace period after a recent reload.
- **Passive Health Monitors**: Event-loop stalls and memory pressure trigger a
  lightweight invalidation outside the escalation path.
- **Diagnostics**: Per-class hit/miss statistics and a bounded action log.

Escalation Tiers:
-----------------
1. Query cache: drop all cached query results, make future reads stale.
2. Session cache: refresh the session, drop the session's response caches.
3. Durable storage: clear durable and session storage, local databases and
   response caches, keeping authentication-critical entries.
4. Full reload: wipe everything and restart the process.

Concurrency:
------------
Everything runs on one asyncio event loop. Timers are loop callbacks and each
escalation is a task. Escalations of one operation are serialized; escalations
of different operations may interleave at await points. An escalation that has
started always runs to the end of its tier chain.

Usage:
------
    watchdog = CacheWatchdog(create_disk_backends(base_dir, refresh_session))
    watchdog.start()

    async with watchdog.tracked_operation("patient-list-fetch"):
        await fetch_patients()
"""

import asyncio
import copy
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Set

from cache_backends import WatchdogBackends
from cache_invalidation import CacheTier, LightweightInvalidator, build_cache_tiers
from cache_telemetry import CacheTelemetry
from escalation import EscalationPolicy, EscalationThresholds
from health_monitors import LongTaskMonitor, MemoryPressureMonitor
from lock_utils import SingleFlightGuard
from memory_utils import MemorySampler
from watchdog_config import build_watchdog_config, config_fingerprint
from watchdog_types import CLEAR_LEVEL_TIERS, WatchdogStats

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Timers
# -----------------------------------------------------------------------------


class TimerScheduler:
    """Clock and single-shot timer source used by the tracker."""

    def now(self) -> float:
        """Monotonic time in seconds."""
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable, *args) -> Any:
        """Run callback after delay seconds; return a handle with cancel()."""
        raise NotImplementedError


class AsyncioScheduler(TimerScheduler):
    """Timers on the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self.loop or asyncio.get_running_loop()

    def now(self) -> float:
        # Same clock asyncio uses for call_later deadlines
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable, *args) -> asyncio.TimerHandle:
        return self._get_loop().call_later(delay, callback, *args)


# -----------------------------------------------------------------------------
# Operation tracking
# -----------------------------------------------------------------------------


class TrackedOperation:
    """An in-flight unit of work being timed."""

    def __init__(self, op_id: str, class_name: str, started_at: float):
        self.op_id = op_id
        self.class_name = class_name
        self.started_at = started_at
        self.timer: Optional[Any] = None
        self.escalated_tier = 0
        self.escalation: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return (
            f"TrackedOperation({self.op_id!r}, {self.class_name!r}, "
            f"escalated_tier={self.escalated_tier})"
        )


class OperationTracker:
    """
    Registers in-flight operations and escalates the ones that overrun.

    Cancel wins: completing an operation before its timer callback starts
    prevents that escalation. A timer callback belonging to a completed or
    superseded operation does nothing.
    """

    def __init__(
        self,
        thresholds: EscalationThresholds,
        policy: EscalationPolicy,
        telemetry: CacheTelemetry,
        scheduler: Optional[TimerScheduler] = None,
    ):
        self.thresholds = thresholds
        self.policy = policy
        self.telemetry = telemetry
        self.scheduler = scheduler or AsyncioScheduler()

        self._operations: Dict[str, TrackedOperation] = {}
        self._escalations: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._operations)

    def is_tracked(self, op_id: str) -> bool:
        return op_id in self._operations

    def get(self, op_id: str) -> Optional[TrackedOperation]:
        return self._operations.get(op_id)

    def start_operation(self, op_id: str, class_name: str) -> None:
        """Track an operation; an existing entry with the same id is superseded."""
        logger.debug(f"CacheWatchdog: Starting operation {op_id} ({class_name})")

        previous = self._operations.pop(op_id, None)
        if previous is not None:
            self._disarm(previous)
            logger.debug(f"CacheWatchdog: Operation {op_id} restarted, previous timer dropped")

        operation = TrackedOperation(op_id, class_name, self.scheduler.now())
        self._operations[op_id] = operation
        self._arm(operation, self.thresholds.first_threshold_ms)

    def complete_operation(self, op_id: str) -> None:
        """Stop tracking an operation and record its duration. Unknown ids are ignored."""
        operation = self._operations.pop(op_id, None)
        if operation is None:
            return

        duration_ms = self._elapsed_ms(operation)
        self._disarm(operation)
        logger.debug(f"CacheWatchdog: Completed operation {op_id} in {duration_ms:.0f}ms")
        self.telemetry.record_completion(operation.class_name, duration_ms)

    def cancel_all(self) -> None:
        """Disarm every timer. Escalations already running are left to finish."""
        for operation in self._operations.values():
            self._disarm(operation)

    async def wait_for_escalations(self) -> None:
        """Wait until every started escalation has run its tier chain."""
        while self._escalations:
            await asyncio.gather(*list(self._escalations), return_exceptions=True)

    def _elapsed_ms(self, operation: TrackedOperation) -> float:
        return (self.scheduler.now() - operation.started_at) * 1000

    def _arm(self, operation: TrackedOperation, threshold_ms: float) -> None:
        delay = max(0.0, threshold_ms / 1000 - (self.scheduler.now() - operation.started_at))
        try:
            operation.timer = self.scheduler.call_later(delay, self._on_timeout, operation)
        except Exception as e:
            logger.error(f"CacheWatchdog: Could not arm timer for {operation.op_id}: {e}")

    def _disarm(self, operation: TrackedOperation) -> None:
        if operation.timer is not None:
            operation.timer.cancel()
            operation.timer = None

    def _on_timeout(self, operation: TrackedOperation) -> None:
        operation.timer = None
        if self._operations.get(operation.op_id) is not operation:
            return

        elapsed_ms = self._elapsed_ms(operation)
        start_tier = operation.escalated_tier + 1
        reached = self.thresholds.highest_tier(elapsed_ms)

        if reached >= start_tier:
            logger.warning(
                f"CacheWatchdog: Slow operation detected - {operation.op_id} ({elapsed_ms:.0f}ms)"
            )
            operation.escalated_tier = reached
            self.telemetry.record_timeout(operation.class_name)
            self._spawn_escalation(operation, elapsed_ms, start_tier)

        # The operation stays tracked; wait for the next tier's threshold
        next_threshold = self.thresholds.next_threshold_after(operation.escalated_tier)
        if next_threshold is not None:
            self._arm(operation, next_threshold)

    def _spawn_escalation(
        self, operation: TrackedOperation, elapsed_ms: float, start_tier: int
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"CacheWatchdog: No event loop to escalate {operation.op_id}")
            return

        task = loop.create_task(
            self._escalate(operation.op_id, elapsed_ms, start_tier, operation.escalation)
        )
        operation.escalation = task
        self._escalations.add(task)
        task.add_done_callback(self._escalations.discard)

    async def _escalate(
        self,
        op_id: str,
        elapsed_ms: float,
        start_tier: int,
        previous: Optional[asyncio.Task],
    ) -> None:
        # Lower tiers of the same operation finish first
        if previous is not None and not previous.done():
            await asyncio.wait([previous])

        try:
            await self.policy.escalate(elapsed_ms, start_tier)
        except Exception as e:
            logger.error(f"CacheWatchdog: Escalation for {op_id} failed: {e}")


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------


class CacheWatchdog:
    """
    Watchdog controller owned by the application's composition root.

    Create one per running process and pass it to whatever starts and
    completes operations. None of its public calls raise into the host.
    """

    def __init__(
        self,
        backends: WatchdogBackends,
        config: Optional[Dict[str, Any]] = None,
        scheduler: Optional[TimerScheduler] = None,
        memory_sampler: Optional[MemorySampler] = None,
        wall_clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the watchdog.

        Args:
            backends: Stores invalidated by the tiers
            config: Overrides merged onto the default configuration
            scheduler: Timer source (asyncio loop timers by default)
            memory_sampler: Memory utilisation source (psutil by default)
            wall_clock: Wall clock for log timestamps and the reload marker

        Raises:
            WatchdogConfigurationError: If the configuration is invalid
        """
        self.config = build_watchdog_config(config)
        self.backends = backends
        self._wall_clock = wall_clock

        watchdog_config = self.config["watchdog"]
        self.thresholds = EscalationThresholds.from_durations(
            watchdog_config["escalation_thresholds_ms"]
        )
        self.telemetry = CacheTelemetry(
            self.thresholds.first_threshold_ms,
            log_size=watchdog_config["action_log_size"],
            clock=wall_clock,
        )

        self.reload_guard = SingleFlightGuard("force_reload")
        self.tiers: Dict[int, CacheTier] = build_cache_tiers(
            self.config, backends, self.telemetry, self.reload_guard, wall_clock
        )
        self.lightweight = LightweightInvalidator(self.config, backends, self.telemetry)
        self.policy = EscalationPolicy(self.thresholds, self.tiers)
        self.tracker = OperationTracker(self.thresholds, self.policy, self.telemetry, scheduler)

        self.long_task_monitor = LongTaskMonitor(self.config, self.clear_lightweight_caches)
        self.memory_monitor = MemoryPressureMonitor(
            self.config, self.clear_lightweight_caches, memory_sampler
        )

        self._config_hash = config_fingerprint(self.config)
        logger.info(
            f"CacheWatchdog initialized (thresholds: {list(self.thresholds.pairs)}, "
            f"config: {self._config_hash})"
        )

    # Lifecycle

    def start(self, monitors: bool = True) -> None:
        """
        Check for a recent forced reload and start the health monitors.
        Must be called from the event loop when monitors is True.
        """
        self.check_reload_marker()

        if monitors:
            self.long_task_monitor.start()
            self.memory_monitor.start()

    async def stop(self) -> None:
        """Disarm timers, let running escalations finish and stop the monitors."""
        self.tracker.cancel_all()
        await self.tracker.wait_for_escalations()
        await self.long_task_monitor.stop()
        await self.memory_monitor.stop()

    def check_reload_marker(self) -> bool:
        """
        Consume the marker written before a forced reload.

        If the reload happened within the grace period, further reloads are
        suppressed until the grace period has passed.

        Returns:
            bool: True if a recent forced reload was detected
        """
        watchdog_config = self.config["watchdog"]
        marker_key = watchdog_config["reload_marker_key"]
        grace_seconds = watchdog_config["reload_grace_period_ms"] / 1000
        session_storage = self.backends.session_storage

        try:
            marker = session_storage.get(marker_key)
            if marker is None:
                return False
            session_storage.remove(marker_key)
            reloaded_at = float(marker)
        except Exception as e:
            logger.warning(f"CacheWatchdog: Could not read reload marker: {e}")
            return False

        if self._wall_clock() - reloaded_at >= grace_seconds:
            return False

        self.tiers[4].suppress_until(reloaded_at + grace_seconds)
        self.telemetry.record_action("reload-recovered")
        logger.info("CacheWatchdog: Caches were cleared by a forced reload; reloads paused")
        return True

    # Operation tracking

    def start_operation(self, op_id: str, class_name: str) -> None:
        """Start watching an operation."""
        try:
            self.tracker.start_operation(op_id, class_name)
        except Exception as e:
            logger.error(f"CacheWatchdog: Failed to start operation {op_id}: {e}")

    def complete_operation(self, op_id: str) -> None:
        """Stop watching an operation; unknown or completed ids are ignored."""
        try:
            self.tracker.complete_operation(op_id)
        except Exception as e:
            logger.error(f"CacheWatchdog: Failed to complete operation {op_id}: {e}")

    def start_loading(self, operation_name: str, op_id: Optional[str] = None) -> str:
        """
        Start watching an operation, generating an id when none is given.

        Returns:
            str: The operation id to pass to complete_operation()
        """
        operation_id = op_id or f"{operation_name}-{int(self._wall_clock() * 1000)}"
        self.start_operation(operation_id, operation_name)
        return operation_id

    @asynccontextmanager
    async def tracked_operation(self, class_name: str, op_id: Optional[str] = None):
        """Watch the body of an async with block as one operation."""
        operation_id = self.start_loading(class_name, op_id)
        try:
            yield operation_id
        finally:
            self.complete_operation(operation_id)

    # Invalidation

    async def clear_cache(self, level: str = "medium") -> List[int]:
        """
        Manually clear caches.

        Args:
            level: "light" (tier 1), "medium" (tiers 1-2) or "full" (tiers 1-3)

        Returns:
            List[int]: Tiers that were invoked
        """
        last_tier = CLEAR_LEVEL_TIERS.get(level)
        if last_tier is None:
            logger.error(f"CacheWatchdog: Unknown cache clear level {level!r}")
            return []

        logger.info(f"CacheWatchdog: Manual cache clear ({level})")
        try:
            return await self.policy.run_tiers(1, last_tier)
        except Exception as e:
            logger.error(f"CacheWatchdog: Manual cache clear failed: {e}")
            return []

    async def clear_lightweight_caches(self) -> bool:
        """Drop non-critical cached data only."""
        return await self.lightweight.invalidate()

    def record_long_task(self, duration_ms: float) -> Optional[asyncio.Task]:
        """Forward a long task notification from the host to the monitor."""
        return self.long_task_monitor.record_long_task(duration_ms)

    # Diagnostics

    def health_status(self) -> str:
        """Coarse status from the number of operations in flight."""
        watchdog_config = self.config["watchdog"]
        active = self.tracker.active_count

        if active > watchdog_config["busy_operations_critical"]:
            return "overloaded"
        if active > watchdog_config["busy_operations_warning"]:
            return "busy"
        return "healthy"

    def get_stats(self) -> WatchdogStats:
        """Snapshot of counters, configuration and the most recent actions."""
        cache_stats, last_log = self.telemetry.snapshot(
            self.config["watchdog"]["stats_log_tail"]
        )
        return {
            "active_operations": self.tracker.active_count,
            "health": self.health_status(),
            "cache_stats": cache_stats,
            "config": copy.deepcopy(self.config),
            "config_hash": self._config_hash,
            "last_log": last_log,
        }
