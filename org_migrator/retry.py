"""Bounded exponential backoff for transient platform failures."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from .config import EngineConfig
from .errors import TransientApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry settings applied to TransientApiError only."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, config.max_attempts),
            base_delay=config.backoff_base_seconds,
            max_delay=config.backoff_max_seconds,
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if retry_after:
            delay = max(delay, min(retry_after, self.max_delay))
        return delay

    def call(self, func: Callable[[], T], description: str = "Platform call") -> T:
        """
        Call `func`, retrying on TransientApiError with exponential backoff.

        Args:
            func: Zero-argument callable performing one network operation
            description: Label used in log messages

        Returns:
            Whatever `func` returns

        Raises:
            TransientApiError: when every attempt failed
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return func()
            except TransientApiError as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt, e.retry_after)
                logger.warning(
                    f"{description} hit a transient error (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                self.sleep(delay)
