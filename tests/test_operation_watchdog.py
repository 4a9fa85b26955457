"""
Tests for the operation tracker and the CacheWatchdog controller,
including the end-to-end escalation scenarios on a simulated clock.
"""

import asyncio

import pytest

from operation_watchdog import CacheWatchdog
from watchdog_config import WatchdogConfigurationError

ALL_TIER_ACTIONS = [
    "query-cache-clear",
    "session-cache-clear",
    "durable-storage-clear",
    "force-reload",
]


@pytest.mark.asyncio
class TestOperationTracking:
    """start_operation / complete_operation semantics."""

    async def test_fast_operation_is_a_hit(self, watchdog, scheduler):
        watchdog.start_operation("op1", "fetch-patients")
        scheduler.advance(2)
        watchdog.complete_operation("op1")

        stats = watchdog.get_stats()
        assert stats["active_operations"] == 0
        assert stats["cache_stats"] == {
            "fetch-patients": {"hits": 1, "misses": 0, "last_clear": None}
        }
        assert stats["last_log"] == []
        assert scheduler.pending == 0

    async def test_completion_never_escalates(self, watchdog, scheduler):
        watchdog.start_operation("op1", "fetch-patients")
        scheduler.advance(14.9)
        watchdog.complete_operation("op1")
        scheduler.advance(100)
        await watchdog.tracker.wait_for_escalations()

        assert watchdog.telemetry.actions() == []

    async def test_double_and_unknown_completion_are_noops(self, watchdog, scheduler):
        watchdog.start_operation("op1", "fetch-patients")
        watchdog.start_operation("op2", "fetch-patients")
        watchdog.complete_operation("op1")

        watchdog.complete_operation("op1")
        watchdog.complete_operation("never-started")

        assert watchdog.tracker.active_count == 1
        assert watchdog.get_stats()["cache_stats"]["fetch-patients"]["hits"] == 1

    async def test_duplicate_id_supersedes_previous_timer(self, watchdog, scheduler):
        watchdog.start_operation("op1", "fetch-patients")
        scheduler.advance(10)
        watchdog.start_operation("op1", "render-pdf")

        # The first timer (due at 15s) was dropped with the old entry
        scheduler.advance(10)
        await watchdog.tracker.wait_for_escalations()
        assert watchdog.telemetry.actions() == []
        assert watchdog.tracker.active_count == 1
        assert watchdog.tracker.get("op1").class_name == "render-pdf"

        scheduler.advance(5.5)
        await watchdog.tracker.wait_for_escalations()
        assert watchdog.telemetry.actions() == ["query-cache-clear"]

    async def test_late_completion_is_a_miss(self, watchdog, scheduler, wall_clock):
        watchdog.start_operation("op1", "fetch-patients")
        scheduler.advance(16)
        await watchdog.tracker.wait_for_escalations()

        assert watchdog.tracker.is_tracked("op1")
        watchdog.complete_operation("op1")

        assert watchdog.get_stats()["cache_stats"]["fetch-patients"] == {
            "hits": 0,
            "misses": 1,
            "last_clear": wall_clock.value,
        }


@pytest.mark.asyncio
class TestEscalationScenarios:
    """Timer-driven escalation through the tiers."""

    async def test_past_second_threshold_runs_two_tiers(self, watchdog, scheduler, restarts):
        watchdog.start_operation("op2", "fetch-patients")
        scheduler.advance(26)
        await watchdog.tracker.wait_for_escalations()

        assert watchdog.telemetry.actions() == ["query-cache-clear", "session-cache-clear"]
        assert restarts == []
        assert watchdog.tracker.is_tracked("op2")
        assert watchdog.tracker.get("op2").escalated_tier == 2

    async def test_stuck_operation_escalates_to_reload_once(self, watchdog, scheduler, restarts):
        watchdog.start_operation("op3", "fetch-patients")
        scheduler.advance(50)
        await watchdog.tracker.wait_for_escalations()

        assert watchdog.telemetry.actions() == ALL_TIER_ACTIONS
        assert restarts == ["restart"]

        scheduler.advance(500)
        await watchdog.tracker.wait_for_escalations()
        assert watchdog.telemetry.actions().count("force-reload") == 1
        assert scheduler.pending == 0

    async def test_tiers_run_once_per_operation(self, watchdog, scheduler):
        watchdog.start_operation("op4", "fetch-patients")
        for _ in range(40):
            scheduler.advance(1)
        await watchdog.tracker.wait_for_escalations()

        assert watchdog.telemetry.actions() == ALL_TIER_ACTIONS[:3]

    async def test_two_operations_escalate_independently(self, watchdog, scheduler, restarts):
        watchdog.start_operation("a", "fetch-patients")
        scheduler.advance(5)
        watchdog.start_operation("b", "render-pdf")
        scheduler.advance(45)
        await watchdog.tracker.wait_for_escalations()

        actions = watchdog.telemetry.actions()
        assert actions.count("query-cache-clear") == 2
        assert actions.count("force-reload") == 1
        assert restarts == ["restart"]

    async def test_auth_entries_survive_until_reload(self, watchdog, populated_backends, scheduler):
        watchdog.start_operation("op5", "fetch-patients")
        scheduler.advance(40)
        await watchdog.tracker.wait_for_escalations()

        assert populated_backends.local_storage.get("sb-access-token") == "access"
        assert populated_backends.local_storage.get("sb-refresh-token") == "refresh"
        assert "draft-prescription" not in populated_backends.local_storage.keys()

        scheduler.advance(10)
        await watchdog.tracker.wait_for_escalations()
        assert populated_backends.local_storage.keys() == []

    async def test_failed_session_refresh_does_not_block_escalation(
        self, watchdog, populated_backends, scheduler
    ):
        async def broken_refresh():
            raise ConnectionError("auth endpoint unreachable")

        populated_backends.session_provider.refresh = broken_refresh

        watchdog.start_operation("op6", "fetch-patients")
        scheduler.advance(36)
        await watchdog.tracker.wait_for_escalations()

        assert watchdog.telemetry.actions() == ALL_TIER_ACTIONS[:3]


@pytest.mark.asyncio
class TestManualClear:
    """clear_cache() levels."""

    @pytest.mark.parametrize(
        "level, expected_tiers",
        [("light", [1]), ("medium", [1, 2]), ("full", [1, 2, 3])],
    )
    async def test_levels(self, watchdog, restarts, level, expected_tiers):
        assert await watchdog.clear_cache(level) == expected_tiers
        assert watchdog.telemetry.actions() == ALL_TIER_ACTIONS[: len(expected_tiers)]
        assert restarts == []

    async def test_unknown_level_is_ignored(self, watchdog):
        assert await watchdog.clear_cache("reload") == []
        assert watchdog.telemetry.actions() == []


@pytest.mark.asyncio
class TestStatsAndHelpers:
    """Diagnostics snapshot and convenience helpers."""

    async def test_stats_snapshot_is_detached(self, watchdog):
        stats = watchdog.get_stats()
        stats["config"]["watchdog"]["escalation_thresholds_ms"].append(1)
        stats["cache_stats"]["injected"] = {"hits": 9, "misses": 9, "last_clear": None}

        fresh = watchdog.get_stats()
        assert fresh["config"]["watchdog"]["escalation_thresholds_ms"] == [15000, 25000, 35000, 45000]
        assert "injected" not in fresh["cache_stats"]
        assert len(fresh["config_hash"]) == 16

    async def test_stats_show_most_recent_log_entries(self, watchdog):
        for index in range(60):
            watchdog.telemetry.record_action(f"action-{index}")

        last_log = watchdog.get_stats()["last_log"]
        assert [entry["action"] for entry in last_log] == [f"action-{i}" for i in range(50, 60)]
        assert len(watchdog.telemetry.action_log) == 50
        assert watchdog.telemetry.action_log[0]["action"] == "action-10"

    async def test_health_status(self, watchdog):
        assert watchdog.health_status() == "healthy"

        for index in range(2):
            watchdog.start_operation(f"op{index}", "fetch-patients")
        assert watchdog.health_status() == "busy"

        for index in range(2, 4):
            watchdog.start_operation(f"op{index}", "fetch-patients")
        assert watchdog.get_stats()["health"] == "overloaded"

    async def test_start_loading_generates_id(self, watchdog, wall_clock):
        op_id = watchdog.start_loading("render-pdf")

        assert op_id == f"render-pdf-{int(wall_clock.value * 1000)}"
        assert watchdog.tracker.is_tracked(op_id)

    async def test_tracked_operation_completes_on_error(self, watchdog, scheduler):
        with pytest.raises(ValueError):
            async with watchdog.tracked_operation("render-pdf", op_id="pdf-1") as op_id:
                assert watchdog.tracker.is_tracked(op_id)
                scheduler.advance(1)
                raise ValueError("template missing")

        assert not watchdog.tracker.is_tracked("pdf-1")
        assert watchdog.get_stats()["cache_stats"]["render-pdf"]["hits"] == 1


@pytest.mark.asyncio
class TestReloadMarker:
    """Read-back of the marker written before a forced reload."""

    async def test_recent_reload_pauses_further_reloads(self, watchdog, backends, scheduler, restarts, wall_clock):
        backends.session_storage.set("cache-manager-reload", wall_clock.value - 10)

        assert watchdog.check_reload_marker() is True
        assert backends.session_storage.get("cache-manager-reload") is None

        watchdog.start_operation("op1", "fetch-patients")
        scheduler.advance(50)
        await watchdog.tracker.wait_for_escalations()

        actions = watchdog.telemetry.actions()
        assert actions[0] == "reload-recovered"
        assert "force-reload-suppressed" in actions
        assert "force-reload" not in actions
        assert restarts == []

    async def test_old_marker_is_discarded(self, watchdog, backends, wall_clock):
        backends.session_storage.set("cache-manager-reload", wall_clock.value - 120)

        assert watchdog.check_reload_marker() is False
        assert backends.session_storage.get("cache-manager-reload") is None
        assert watchdog.telemetry.actions() == []

    async def test_start_without_monitors_checks_marker(self, watchdog, backends, wall_clock):
        backends.session_storage.set("cache-manager-reload", wall_clock.value)

        watchdog.start(monitors=False)

        assert watchdog.telemetry.actions() == ["reload-recovered"]
        assert not watchdog.long_task_monitor.running


def test_invalid_thresholds_fail_fast(backends):
    with pytest.raises(WatchdogConfigurationError):
        CacheWatchdog(
            backends,
            config={"watchdog": {"escalation_thresholds_ms": [15000, 10000, 35000, 45000]}},
        )


def test_start_operation_outside_event_loop_does_not_raise(backends):
    watchdog = CacheWatchdog(backends)

    watchdog.start_operation("op1", "fetch-patients")
    watchdog.complete_operation("op1")

    assert watchdog.get_stats()["cache_stats"]["fetch-patients"]["hits"] == 1


@pytest.mark.asyncio
async def test_asyncio_timers_escalate_in_real_time(backends):
    watchdog = CacheWatchdog(
        backends,
        config={"watchdog": {"escalation_thresholds_ms": [20, 400, 600, 800]}},
        memory_sampler=lambda: 10.0,
    )

    watchdog.start(monitors=False)
    watchdog.start_operation("op1", "fetch-patients")
    await asyncio.sleep(0.15)
    watchdog.complete_operation("op1")
    await watchdog.stop()

    assert watchdog.telemetry.actions() == ["query-cache-clear"]
    assert watchdog.get_stats()["cache_stats"]["fetch-patients"]["misses"] == 1


@pytest.mark.asyncio
async def test_stop_shuts_down_monitors(watchdog):
    watchdog.start()
    assert watchdog.long_task_monitor.running
    assert watchdog.memory_monitor.running

    await watchdog.stop()

    assert not watchdog.long_task_monitor.running
    assert not watchdog.memory_monitor.running
