"""
Memory sampling sources for the health monitors.
Provides standardized ways to read memory utilisation with psutil.
"""

import logging
from typing import Any, Callable, Dict, Optional

import psutil

logger = logging.getLogger(__name__)

MemorySampler = Callable[[], float]


def system_memory_percent() -> float:
    """Percentage of system memory in use."""
    return psutil.virtual_memory().percent


def process_memory_percent(limit_mb: Optional[float] = None) -> float:
    """
    Percentage of the memory budget used by this process.

    Args:
        limit_mb: Memory budget in MB; defaults to total system memory

    Returns:
        float: Resident set size as a percentage of the budget
    """
    process = psutil.Process()
    if limit_mb:
        return process.memory_info().rss / (limit_mb * 1024 * 1024) * 100
    return process.memory_percent()


def create_memory_sampler(config: Dict[str, Any]) -> MemorySampler:
    """
    Create the memory sampler selected by the configuration.

    Args:
        config: Watchdog configuration dictionary

    Returns:
        Zero-argument callable returning utilisation in percent
    """
    health = config.get("health_monitoring", {})
    source = health.get("memory_source", "process")

    if source == "system":
        return system_memory_percent

    limit_mb = health.get("memory_limit_mb")
    logger.debug(f"Sampling process memory (limit: {limit_mb or 'system total'} MB)")
    return lambda: process_memory_percent(limit_mb)
