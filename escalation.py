"""
Escalation policy for slow operations.
Maps the elapsed time of a stuck operation to the cache tiers that must be
invalidated, and runs them cumulatively from the cheapest upward.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from cache_invalidation import CacheTier
from watchdog_config import WatchdogConfigurationError

logger = logging.getLogger(__name__)


class EscalationThresholds:
    """Immutable ascending sequence of (duration_ms, tier) pairs."""

    def __init__(self, pairs: Iterable[Tuple[float, int]]):
        """
        Initialize and validate the thresholds.

        Args:
            pairs: (duration_ms, tier) pairs in ascending order

        Raises:
            WatchdogConfigurationError: If durations or tiers are not strictly ascending
        """
        self._pairs: Tuple[Tuple[float, int], ...] = tuple(
            (duration, tier) for duration, tier in pairs
        )

        if not self._pairs:
            raise WatchdogConfigurationError("At least one escalation threshold is required")

        previous_duration, previous_tier = 0, 0
        for duration, tier in self._pairs:
            if duration <= previous_duration or tier <= previous_tier:
                raise WatchdogConfigurationError(
                    f"Escalation thresholds must strictly increase: "
                    f"({duration}, tier {tier}) after ({previous_duration}, tier {previous_tier})"
                )
            previous_duration, previous_tier = duration, tier

    @classmethod
    def from_durations(cls, durations_ms: Sequence[float]) -> "EscalationThresholds":
        """Build thresholds for tiers 1..n from a list of durations."""
        return cls((duration, index + 1) for index, duration in enumerate(durations_ms))

    @property
    def pairs(self) -> Tuple[Tuple[float, int], ...]:
        return self._pairs

    @property
    def first_threshold_ms(self) -> float:
        return self._pairs[0][0]

    @property
    def tiers(self) -> List[int]:
        return [tier for _, tier in self._pairs]

    def highest_tier(self, elapsed_ms: float) -> int:
        """Highest tier whose threshold has been reached, or 0 if none."""
        highest = 0
        for duration, tier in self._pairs:
            if elapsed_ms >= duration:
                highest = tier
        return highest

    def next_threshold_after(self, tier: int) -> Optional[float]:
        """Duration of the first threshold above the given tier, if any."""
        for duration, candidate in self._pairs:
            if candidate > tier:
                return duration
        return None

    def __repr__(self) -> str:
        return f"EscalationThresholds({list(self._pairs)!r})"


class EscalationPolicy:
    """
    Runs tiers 1..k for an elapsed duration, in order, one at a time.

    A failing tier never blocks a more drastic one: every tier is attempted
    when the elapsed time warrants it.
    """

    def __init__(self, thresholds: EscalationThresholds, tiers: Dict[int, CacheTier]):
        missing = [tier for tier in thresholds.tiers if tier not in tiers]
        if missing:
            raise WatchdogConfigurationError(f"No invalidator configured for tiers {missing}")

        self.thresholds = thresholds
        self.tiers = tiers

    async def escalate(self, elapsed_ms: float, start_tier: int = 1) -> List[int]:
        """
        Invalidate every tier from start_tier up to the highest crossed tier.

        Args:
            elapsed_ms: Time the operation has been running
            start_tier: Lowest tier to run (tiers below it already ran)

        Returns:
            List[int]: Tiers that were invoked, in order
        """
        highest = self.thresholds.highest_tier(elapsed_ms)
        invoked = await self.run_tiers(start_tier, highest)

        if invoked:
            logger.info(
                f"CacheWatchdog: Escalation at {elapsed_ms:.0f}ms ran tiers {invoked}"
            )
        return invoked

    async def run_tiers(self, first: int, last: int) -> List[int]:
        """Invoke the configured tiers first..last sequentially, each guarded."""
        invoked = []

        for tier in self.thresholds.tiers:
            if tier < first or tier > last:
                continue

            invoked.append(tier)
            try:
                completed = await self.tiers[tier].invalidate()
                if not completed:
                    logger.warning(f"CacheWatchdog: Tier {tier} did not complete")
            except Exception as e:
                logger.error(f"CacheWatchdog: Error during tier {tier} invalidation: {e}")

        return invoked
