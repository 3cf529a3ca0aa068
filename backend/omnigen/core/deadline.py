"""Wall-clock budget shared by every stage of one job run."""

from __future__ import annotations

import time
from typing import Callable, Optional


class DeadlineExceeded(TimeoutError):
    def __init__(self, budget_s: float, where: str = "") -> None:
        self.budget_s = budget_s
        self.where = where
        suffix = f" during {where}" if where else ""
        super().__init__(f"job time budget of {budget_s:.0f}s exceeded{suffix}")


class Deadline:
    def __init__(self, budget_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget_s = float(budget_s)
        self._clock = clock
        self._expires_at = clock() + self.budget_s

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(float("inf"))

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, where: str = "") -> None:
        if self.expired():
            raise DeadlineExceeded(self.budget_s, where)

    def timeout(self, cap: Optional[float] = None) -> Optional[float]:
        """Seconds a blocking call may take, or None when unbounded."""
        remaining = self.remaining()
        if remaining == float("inf"):
            return cap
        if cap is None:
            return remaining
        return min(cap, remaining)

    def sleep(self, seconds: float, sleeper: Callable[[float], None] = time.sleep, where: str = "") -> None:
        self.check(where)
        remaining = self.remaining()
        if seconds >= remaining:
            sleeper(remaining)
            raise DeadlineExceeded(self.budget_s, where)
        sleeper(seconds)
