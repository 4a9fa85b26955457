"""
Passive health monitors for the operation watchdog.

Two monitors run for the lifetime of the process, independent of the
operation tracker and the escalation policy:

- LongTaskMonitor: watches event-loop stalls. Stalls above the warning
  threshold are logged; stalls above the critical threshold trigger the
  lightweight invalidation.
- MemoryPressureMonitor: samples memory utilisation on a fixed interval and
  triggers the same lightweight invalidation above the high-water mark.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from memory_utils import MemorySampler, create_memory_sampler

logger = logging.getLogger(__name__)

InvalidationHandler = Callable[[], Awaitable[Any]]


class LongTaskMonitor:
    """Reacts to long scheduler turns reported by a probe or by the host."""

    def __init__(self, config: Dict[str, Any], on_critical: InvalidationHandler):
        """
        Initialize the long task monitor.

        Args:
            config: Watchdog configuration dictionary
            on_critical: Coroutine function run for a critical stall
        """
        health = config.get("health_monitoring", {})
        self.warning_ms = health.get("long_task_warning_ms", 50)
        self.critical_ms = health.get("long_task_critical_ms", 200)
        self.probe_interval = health.get("loop_probe_interval", 0.1)

        self._on_critical = on_critical
        self._probe_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

        self.stats = {"long_tasks": 0, "critical_tasks": 0, "longest_ms": 0.0}

    @property
    def running(self) -> bool:
        return self._probe_task is not None and not self._probe_task.done()

    def record_long_task(self, duration_ms: float) -> Optional[asyncio.Task]:
        """
        Handle one long task notification. Must be called from the event loop.

        Args:
            duration_ms: Duration of the stall

        Returns:
            The scheduled invalidation task for a critical stall, otherwise None
        """
        if duration_ms <= self.warning_ms:
            return None

        self.stats["long_tasks"] += 1
        self.stats["longest_ms"] = max(self.stats["longest_ms"], duration_ms)
        logger.warning(f"CacheWatchdog: Long task detected: {duration_ms:.0f}ms")

        if duration_ms <= self.critical_ms:
            return None

        self.stats["critical_tasks"] += 1
        logger.warning("CacheWatchdog: Very long task detected, clearing lightweight caches")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("CacheWatchdog: No event loop to clear lightweight caches")
            return None

        task = loop.create_task(self._run_handler())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run_handler(self) -> None:
        try:
            await self._on_critical()
        except Exception as e:
            logger.error(f"CacheWatchdog: Long task handler failed: {e}")

    async def wait_idle(self) -> None:
        """Wait for every scheduled invalidation to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def start(self) -> None:
        """Start the event-loop lag probe."""
        if self.running:
            return
        self._probe_task = asyncio.get_running_loop().create_task(self._probe_loop())
        logger.debug("Long task probe started")

    async def stop(self) -> None:
        """Stop the probe and wait for pending invalidations."""
        if self._probe_task is not None:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None
            logger.debug("Long task probe stopped")
        await self.wait_idle()

    async def _probe_loop(self) -> None:
        """Measure how late the loop wakes us up; the overshoot is a stall."""
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            await asyncio.sleep(self.probe_interval)
            lag_ms = (loop.time() - started - self.probe_interval) * 1000
            if lag_ms > self.warning_ms:
                self.record_long_task(lag_ms)


class MemoryPressureMonitor:
    """Samples memory on a fixed interval and trims caches under pressure."""

    def __init__(
        self,
        config: Dict[str, Any],
        on_pressure: InvalidationHandler,
        sampler: Optional[MemorySampler] = None,
    ):
        """
        Initialize the memory pressure monitor.

        Args:
            config: Watchdog configuration dictionary
            on_pressure: Coroutine function run when usage crosses the high-water mark
            sampler: Callable returning utilisation in percent (psutil by default)
        """
        health = config.get("health_monitoring", {})
        self.check_interval = health.get("memory_check_interval", 30)
        self.high_water_percent = health.get("memory_high_water_percent", 85)

        self._on_pressure = on_pressure
        self._sampler = sampler or create_memory_sampler(config)
        self._monitor_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self.last_sample: Optional[float] = None
        self.stats = {"samples": 0, "pressure_events": 0}

    @property
    def running(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def check_once(self) -> bool:
        """
        Take one sample and react to it.

        Returns:
            bool: True if the lightweight invalidation was triggered
        """
        try:
            usage = self._sampler()
        except Exception as e:
            logger.error(f"Error in memory monitoring: {e}")
            return False

        self.last_sample = usage
        self.stats["samples"] += 1

        if usage <= self.high_water_percent:
            return False

        self.stats["pressure_events"] += 1
        logger.warning(f"CacheWatchdog: High memory usage detected: {usage:.1f}%")

        try:
            await self._on_pressure()
        except Exception as e:
            logger.error(f"CacheWatchdog: Memory pressure handler failed: {e}")
        return True

    def start(self) -> None:
        """Start the sampling loop."""
        if self.running:
            return

        # Bound to the loop running this start()
        self._stop_event = asyncio.Event()
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_memory())
        logger.debug("Memory monitoring started")

    async def stop(self) -> None:
        """Stop the sampling loop."""
        if self._monitor_task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._monitor_task, timeout=2.0)
        except asyncio.TimeoutError:
            logger.warning("Memory monitor did not stop in time")
        self._monitor_task = None
        logger.debug("Memory monitoring stopped")

    async def _monitor_memory(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            await self.check_once()

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass
