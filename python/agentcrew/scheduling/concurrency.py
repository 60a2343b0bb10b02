"""Global concurrency bound for sub-task execution."""

from __future__ import annotations

from typing import Any, Dict


class ConcurrencySlot:
    """Counting limiter shared by every task of one orchestrator.

    Tracks active slots and provides acquire/release semantics.
    When all slots are occupied, acquire() returns False (backpressure).
    """

    def __init__(self, name: str = "global", max_concurrent: int = 3) -> None:
        self.name = name
        self.max_concurrent = max_concurrent
        self._active: int = 0
        self._total_acquired: int = 0
        self._total_rejected: int = 0
        self._peak: int = 0

    def acquire(self) -> bool:
        if self._active < self.max_concurrent:
            self._active += 1
            self._total_acquired += 1
            self._peak = max(self._peak, self._active)
            return True
        self._total_rejected += 1
        return False

    def release(self) -> None:
        self._active = max(0, self._active - 1)

    def resize(self, max_concurrent: int) -> None:
        # Shrinking never preempts running work; it only delays new starts.
        self.max_concurrent = max_concurrent

    @property
    def active(self) -> int:
        return self._active

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def available(self) -> int:
        return max(0, self.max_concurrent - self._active)

    @property
    def utilization(self) -> float:
        return self._active / self.max_concurrent if self.max_concurrent else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "max_concurrent": self.max_concurrent,
            "active": self._active,
            "available": self.available,
            "utilization": round(self.utilization, 2),
            "peak": self._peak,
            "total_acquired": self._total_acquired,
            "total_rejected": self._total_rejected,
        }
