"""
Run-level deadline and cancellation for AutoSpotting.

Every polling wait goes through a Deadline so that an expired run or an
external cancellation stops waits promptly instead of sleeping them out.
"""

import logging
import random
import threading
import time
from typing import Callable, Optional, TypeVar

from autospotting.core.exceptions import ReplacementTimeout


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """A cancellable point in time after which no new work should start."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Optional[Callable[[float], None]] = None,
    ):
        """Initialize the deadline.

        Args:
            timeout: Seconds from now until expiry, None for no deadline
            clock: Monotonic clock, replaceable in tests
            sleeper: Sleep function, defaults to an interruptible wait
        """
        self._clock = clock
        self._expires_at = None if timeout is None else clock() + timeout
        self._cancel_requested = threading.Event()
        self._sleeper = sleeper

    def cancel(self) -> None:
        """Request cancellation of the run."""
        self._cancel_requested.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def expired(self) -> bool:
        if self._cancel_requested.is_set():
            return True
        return self._expires_at is not None and self._clock() >= self._expires_at

    def remaining(self) -> Optional[float]:
        """Seconds left before expiry, None when unbounded."""
        if self._cancel_requested.is_set():
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def check(self, what: str) -> None:
        """Raise ReplacementTimeout if the deadline has passed."""
        if self.expired:
            raise ReplacementTimeout(f"Run deadline reached while {what}")

    def sleep(self, seconds: float) -> None:
        """Sleep for up to `seconds`, never past the deadline."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds <= 0:
            return
        if self._sleeper is not None:
            self._sleeper(seconds)
        else:
            self._cancel_requested.wait(seconds)

    def now(self) -> float:
        return self._clock()


def wait_until(
    condition: Callable[[], Optional[T]],
    *,
    timeout: float,
    interval: float,
    deadline: Deadline,
    description: str,
    max_interval: float = 60.0,
) -> T:
    """Poll `condition` until it returns a truthy value.

    Intervals grow by half on each round and carry +/-20% jitter.

    Args:
        condition: Callable returning a truthy value once the condition holds
        timeout: Local bound for this wait in seconds
        interval: Initial polling interval in seconds
        deadline: Run deadline
        description: Human readable description used in logs and errors

    Returns:
        The first truthy value returned by condition

    Raises:
        ReplacementTimeout: If the local bound or the run deadline expires
    """
    started = deadline.now()
    current = interval

    while True:
        deadline.check(description)
        result = condition()
        if result:
            return result

        elapsed = deadline.now() - started
        if elapsed >= timeout:
            raise ReplacementTimeout(f"Timed out after {elapsed:.0f}s {description}")

        delay = min(current, max_interval, timeout - elapsed)
        delay *= random.uniform(0.8, 1.2)
        logger.debug(f"Still {description}, checking again in {delay:.1f}s")
        deadline.sleep(delay)
        current = current * 1.5 if current > 0 else 0.0
