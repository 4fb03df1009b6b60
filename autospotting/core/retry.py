"""
Bounded exponential backoff for AWS mutations.
"""

import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from autospotting.core.config import Config
from autospotting.core.deadline import Deadline
from autospotting.core.exceptions import TransientProviderError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failed mutation is retried."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: Config) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), with full jitter on the upper half."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return random.uniform(ceiling / 2, ceiling)

    def call(
        self,
        func: Callable[[], T],
        deadline: Deadline,
        description: str,
        already_done: Optional[Callable[[], bool]] = None,
    ) -> Optional[T]:
        """Run `func`, retrying transient provider failures.

        Before every retry the live cloud state is consulted through
        `already_done`; if the previous attempt took effect after all, the
        call is not reissued and None is returned.

        Args:
            func: The mutation to perform
            deadline: Run deadline bounding the backoff sleeps
            description: Used in log messages
            already_done: Optional check of current cloud state

        Returns:
            The result of func, or None if already_done showed the
            mutation had already been applied

        Raises:
            TransientProviderError: When attempts are exhausted
            ServiceError: Immediately, for non-retryable failures
        """
        attempt = 1
        while True:
            try:
                return func()
            except TransientProviderError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up on {description} after {attempt} attempts: {e}")
                    raise

                delay = self.delay_for(attempt)
                logger.warning(
                    f"Transient failure during {description} (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                deadline.check(description)
                deadline.sleep(delay)
                deadline.check(description)
                attempt += 1

                if already_done is not None and self._took_effect(already_done, description):
                    logger.info(f"{description} already took effect, not reissuing")
                    return None

    @staticmethod
    def _took_effect(already_done: Callable[[], bool], description: str) -> bool:
        try:
            return bool(already_done())
        except TransientProviderError as e:
            logger.debug(f"Could not re-read state before retrying {description}: {e}")
            return False
