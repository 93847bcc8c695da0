"""Exponential backoff for task retries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    base_delay_seconds: int = 10
    max_delay_seconds: int = 300

    def delay_seconds(self, retry_count: int) -> int:
        """Delay before retry number ``retry_count`` (1 for the first retry)."""
        return min(self.max_delay_seconds, (2 ** max(retry_count, 0)) * self.base_delay_seconds)

    def delay_for(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self.delay_seconds(retry_count))
