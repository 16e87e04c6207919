"""Retry cap and backoff schedule for messages that failed to route."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""

    max_retries: int = 3
    """Failed re-routing attempts allowed before a record is dead-lettered."""

    base_delay_seconds: float = 60.0
    """Delay before the first retry; doubles with each failed attempt."""

    def __post_init__(self) -> None:
        if self.max_retries <= 0:
            raise ValueError(f"max_retries must be positive, got {self.max_retries}")
        if self.base_delay_seconds < 0:
            raise ValueError(f"base_delay_seconds must be >= 0, got {self.base_delay_seconds}")

    def backoff(self, retry_count: int) -> timedelta:
        """Delay after ``created_at`` before attempt ``retry_count + 1``.

        ``base * 2 ** retry_count``: 60s, 120s, 240s with the defaults.
        """
        return timedelta(seconds=self.base_delay_seconds * (2 ** max(retry_count, 0)))

    def next_eligible_at(self, created_at: datetime, retry_count: int) -> datetime:
        return created_at + self.backoff(retry_count)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> RetryPolicy:
        """Create a RetryPolicy from a mapping with optional overrides.

        Keys: ``max_retries``, ``base_delay_seconds``.
        """
        return cls(
            max_retries=int(config.get("max_retries", 3)),
            base_delay_seconds=float(config.get("base_delay_seconds", 60.0)),
        )


__all__ = ["RetryPolicy"]
