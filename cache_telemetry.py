"""
Telemetry sink for the operation watchdog.
Keeps per-operation-class duration statistics and a bounded log of
invalidation actions. Purely observational: no invalidation logic lives here.
"""

import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Tuple, Optional, Callable

from watchdog_types import ActionLogEntry, OperationStatsDict

logger = logging.getLogger(__name__)


class OperationStats:
    """Hit/miss counters for one operation class."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.last_clear: Optional[float] = None

    def as_dict(self) -> OperationStatsDict:
        return {"hits": self.hits, "misses": self.misses, "last_clear": self.last_clear}


class CacheTelemetry:
    """
    Stats sink shared by the tracker, the tiers and the health monitors.
    """

    def __init__(
        self,
        hit_threshold_ms: float,
        log_size: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the telemetry sink.

        Args:
            hit_threshold_ms: Completions below this duration count as hits
            log_size: Maximum number of retained action log entries
            clock: Wall clock used for timestamps
        """
        self.hit_threshold_ms = hit_threshold_ms
        self.log_size = log_size
        self._clock = clock
        self._stats: Dict[str, OperationStats] = {}
        self._action_log: deque = deque(maxlen=log_size)

    def record_completion(self, class_name: str, duration_ms: float) -> None:
        """Classify a completed operation as a hit or a miss."""
        stats = self._stats.setdefault(class_name, OperationStats())

        if duration_ms >= self.hit_threshold_ms:
            stats.misses += 1
        else:
            stats.hits += 1

    def record_timeout(self, class_name: str) -> None:
        """Stamp the time an escalation cleared caches for this class."""
        stats = self._stats.setdefault(class_name, OperationStats())
        stats.last_clear = self._clock()

    def record_action(self, action: str) -> None:
        """Append an invalidation action, evicting the oldest entry at capacity."""
        timestamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()
        logger.info(f"CacheWatchdog: {action} at {timestamp}")
        self._action_log.append({"action": action, "timestamp": timestamp})

    @property
    def action_log(self) -> Tuple[ActionLogEntry, ...]:
        """All retained log entries, oldest first."""
        return tuple(dict(entry) for entry in self._action_log)

    def actions(self) -> List[str]:
        """Action names of all retained entries, oldest first."""
        return [entry["action"] for entry in self._action_log]

    def snapshot(self, tail: int = 10) -> Tuple[Dict[str, OperationStatsDict], List[ActionLogEntry]]:
        """
        Copy the current counters and the most recent log entries.

        Args:
            tail: Number of most recent log entries to include

        Returns:
            Tuple of (per-class stats, last log entries oldest first)
        """
        cache_stats = {name: stats.as_dict() for name, stats in self._stats.items()}
        recent = list(self._action_log)[-tail:] if tail > 0 else []
        return cache_stats, [dict(entry) for entry in recent]
