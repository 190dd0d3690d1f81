"""
Admission limiter type definitions.
"""

from dataclasses import dataclass

from pydantic import BaseModel


@dataclass(frozen=True)
class WindowState:
    """
    Result of an atomic increment-and-check against a rate-limit window.

    `count` is the number of grants in the current window (never above
    `limit`); `reset_after_ms` is the time until the window expires.
    """

    count: int
    limit: int
    permitted: bool
    reset_after_ms: float


@dataclass(frozen=True)
class Admission:
    """Outcome of a successful limiter acquire."""

    key: str
    queued: bool = False
    degraded: bool = False
    waited_ms: float = 0.0


class LimiterMetrics(BaseModel):
    """Monotonic admission counters for one limiter service."""

    allowed: int = 0
    queued: int = 0
    rejected: int = 0

    @property
    def total(self) -> int:
        return self.allowed + self.queued + self.rejected

    @property
    def queued_ratio(self) -> float:
        """Share of admissions that had to wait."""
        if self.total == 0:
            return 0.0
        return self.queued / self.total
