"""
Type definitions for the operation watchdog.
"""

from typing import Dict, Any, List, Optional, TypedDict


class ClearLevel:
    """Manual cache clear levels accepted by CacheWatchdog.clear_cache()."""

    LIGHT = "light"
    MEDIUM = "medium"
    FULL = "full"


# Tiers run for each manual level; tier 4 is never manually reachable
CLEAR_LEVEL_TIERS: Dict[str, int] = {
    ClearLevel.LIGHT: 1,
    ClearLevel.MEDIUM: 2,
    ClearLevel.FULL: 3,
}


class ActionLogEntry(TypedDict):
    action: str
    timestamp: str


class OperationStatsDict(TypedDict):
    hits: int
    misses: int
    last_clear: Optional[float]


class WatchdogStats(TypedDict):
    active_operations: int
    health: str
    cache_stats: Dict[str, OperationStatsDict]
    config: Dict[str, Any]
    config_hash: str
    last_log: List[ActionLogEntry]
