"""
Respawn backoff strategies.

The crash monitor retries a failed respawn forever. How long it waits
between attempts is an injectable BackoffStrategy so production can use a
fixed or stepped delay while tests use NoBackoff.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence


DEFAULT_RESPAWN_BACKOFF_SEC = 1.0


class BackoffStrategy(ABC):
    """Abstract delay policy between respawn attempts."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """
        Return the delay before the next attempt.

        Args:
            attempt: 1-based count of consecutive failed attempts

        Returns:
            Delay in seconds (>= 0)
        """
        pass

    def reset(self) -> None:
        """Forget any state after a successful respawn."""
        pass


class FixedBackoff(BackoffStrategy):
    """Same delay after every failed attempt."""

    def __init__(self, delay_sec: float = DEFAULT_RESPAWN_BACKOFF_SEC) -> None:
        if delay_sec < 0:
            raise ValueError(f"Backoff delay must be >= 0, got {delay_sec}")
        self.delay_sec = delay_sec

    def next_delay(self, attempt: int) -> float:
        return self.delay_sec

    def __repr__(self) -> str:
        return f"FixedBackoff(delay_sec={self.delay_sec})"


class ScheduleBackoff(BackoffStrategy):
    """
    Walk a schedule of delays, repeating the last entry once exhausted.

    ScheduleBackoff([1, 2, 4]) waits 1s, 2s, 4s, 4s, 4s, ...
    """

    def __init__(self, schedule_sec: Sequence[float]) -> None:
        if not schedule_sec:
            raise ValueError("Backoff schedule cannot be empty")
        if any(d < 0 for d in schedule_sec):
            raise ValueError("All backoff delays must be >= 0")
        self.schedule_sec: List[float] = list(schedule_sec)

    def next_delay(self, attempt: int) -> float:
        index = min(max(attempt, 1), len(self.schedule_sec)) - 1
        return self.schedule_sec[index]

    def __repr__(self) -> str:
        return f"ScheduleBackoff(schedule_sec={self.schedule_sec})"


class NoBackoff(BackoffStrategy):
    """Retry immediately. Intended for tests."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def __repr__(self) -> str:
        return "NoBackoff()"


def parse_backoff_schedule(backoff_str: str) -> List[float]:
    """
    Parse a backoff schedule from a comma-separated string of milliseconds.

    Args:
        backoff_str: Comma-separated list of milliseconds (e.g., "1000,2000,4000")

    Returns:
        List of backoff delays in seconds

    Raises:
        ValueError: If parsing fails or values are invalid
    """
    if not backoff_str or not backoff_str.strip():
        raise ValueError("Backoff schedule cannot be empty")

    try:
        delays_ms = [int(x.strip()) for x in backoff_str.split(",")]
    except ValueError:
        raise ValueError(
            f"Invalid backoff schedule format: {backoff_str} (must be comma-separated integers)"
        )
    if any(d < 0 for d in delays_ms):
        raise ValueError("All backoff delays must be >= 0")
    return [d / 1000.0 for d in delays_ms]


def backoff_from_schedule(schedule_sec: Sequence[float]) -> BackoffStrategy:
    """Build the simplest strategy that follows schedule_sec."""
    if len(schedule_sec) == 1:
        if schedule_sec[0] == 0:
            return NoBackoff()
        return FixedBackoff(schedule_sec[0])
    return ScheduleBackoff(schedule_sec)
