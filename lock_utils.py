"""
Single-flight guards for the operation watchdog.
Ensures a destructive action runs at most once even when it is requested
by several cooperative escalation chains at the same time.
"""

import functools
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class SingleFlightGuard:
    """
    Process-wide flag that lets exactly one caller through.

    All callers share one event loop, so the check-and-set in acquire() is
    atomic as long as no await happens between the check and the set.
    """

    def __init__(self, name: str):
        self.name = name
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def acquire(self) -> bool:
        """
        Try to take the guard.

        Returns:
            bool: True if the caller now owns the guard, False if already held
        """
        if self._in_flight:
            logger.debug(f"Single-flight guard {self.name} already held")
            return False
        self._in_flight = True
        return True

    def release(self) -> None:
        """Release the guard so the action may run again."""
        self._in_flight = False


def single_flight(guard_attr: str, release: bool = False):
    """
    Decorator for coroutine methods guarded by a SingleFlightGuard attribute.

    Args:
        guard_attr: Name of the instance attribute holding the guard
        release: Release the guard when the call finishes. Leave False for
            terminal actions that must never run twice in one process.

    Returns:
        Decorator function; a blocked call returns None without running
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            guard: Optional[SingleFlightGuard] = getattr(self, guard_attr)
            if not guard.acquire():
                return None

            try:
                return await func(self, *args, **kwargs)
            finally:
                if release:
                    guard.release()

        return wrapper

    return decorator
