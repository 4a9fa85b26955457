"""
Configuration for the operation watchdog.
Provides default settings, deep-merging of overrides and fail-fast validation.
"""

import copy
import json
import logging
from typing import Dict, Any, Optional

import xxhash

logger = logging.getLogger(__name__)


class WatchdogConfigurationError(ValueError):
    """Raised when the watchdog is constructed with an invalid configuration."""

    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    "watchdog": {
        # Tier 1..4 escalation points, in milliseconds since operation start
        "escalation_thresholds_ms": [15000, 25000, 35000, 45000],
        "action_log_size": 50,
        "stats_log_tail": 10,
        "reload_grace_period_ms": 60000,
        "reload_marker_key": "cache-manager-reload",
        "busy_operations_warning": 1,
        "busy_operations_critical": 3,
    },
    "health_monitoring": {
        "long_task_warning_ms": 50,
        "long_task_critical_ms": 200,
        "loop_probe_interval": 0.1,  # seconds
        "memory_check_interval": 30,  # seconds
        "memory_high_water_percent": 85,
        "memory_source": "process",
        "memory_limit_mb": None,
    },
    "storage": {
        "auth_key_patterns": ["sb-access-token", "sb-refresh-token"],
        "auth_database_patterns": ["supabase-auth"],
        "session_cache_tags": ["supabase", "postgrest"],
        "protected_cache_tags": ["auth", "critical"],
        "lightweight_protected_markers": ["auth", "profile", "critical"],
        "temporary_key_markers": ["temp", "cache"],
    },
}

TIER_COUNT = 4


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate a merged watchdog configuration.

    Args:
        config: Fully merged configuration dictionary

    Raises:
        WatchdogConfigurationError: If any setting is unusable
    """
    watchdog = config.get("watchdog", {})
    thresholds = watchdog.get("escalation_thresholds_ms", [])

    if len(thresholds) != TIER_COUNT:
        raise WatchdogConfigurationError(
            f"Expected {TIER_COUNT} escalation thresholds, got {len(thresholds)}"
        )

    previous = 0
    for index, threshold in enumerate(thresholds):
        if not isinstance(threshold, (int, float)) or threshold <= previous:
            raise WatchdogConfigurationError(
                f"Escalation thresholds must be positive and strictly ascending "
                f"(tier {index + 1}: {threshold!r} after {previous!r})"
            )
        previous = threshold

    for key in ("action_log_size", "stats_log_tail"):
        if watchdog.get(key, 0) <= 0:
            raise WatchdogConfigurationError(f"watchdog.{key} must be positive")

    if watchdog.get("reload_grace_period_ms", 0) < 0:
        raise WatchdogConfigurationError(
            "watchdog.reload_grace_period_ms cannot be negative"
        )

    health = config.get("health_monitoring", {})
    warning_ms = health.get("long_task_warning_ms", 0)
    critical_ms = health.get("long_task_critical_ms", 0)
    if warning_ms <= 0 or critical_ms < warning_ms:
        raise WatchdogConfigurationError(
            f"Long task thresholds invalid (warning={warning_ms}, critical={critical_ms})"
        )

    if health.get("memory_source") not in ("process", "system"):
        raise WatchdogConfigurationError(
            f"Unknown memory source: {health.get('memory_source')!r}"
        )

    high_water = health.get("memory_high_water_percent", 0)
    if not 0 < high_water <= 100:
        raise WatchdogConfigurationError(
            f"memory_high_water_percent must be within (0, 100], got {high_water}"
        )


def build_watchdog_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Build a validated watchdog configuration.

    Args:
        overrides: Partial configuration merged on top of DEFAULT_CONFIG

    Returns:
        Dict[str, Any]: Merged configuration

    Raises:
        WatchdogConfigurationError: If the merged configuration is invalid
    """
    config = _deep_merge(DEFAULT_CONFIG, overrides or {})
    validate_config(config)

    logger.debug(
        f"Watchdog configuration built "
        f"(thresholds: {config['watchdog']['escalation_thresholds_ms']})"
    )
    return config


def config_fingerprint(config: Dict[str, Any]) -> str:
    """Return a short stable hash of the configuration for diagnostics."""
    config_str = json.dumps(config, sort_keys=True, default=str)
    return xxhash.xxh3_64(config_str.encode()).hexdigest()[:16]
