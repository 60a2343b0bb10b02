"""Explicit backoff policies and per-key retry bookkeeping.

Decouples *what* is retried (the caller owns the work) from *when*
(the policy's delay function).  Two policies are used by the engine:

- the executor's in-run policy: up to 3 re-attempts, linear delay
- the exception handler's auto-retry ceiling: up to 2 resubmissions
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Hashable, List

logger = logging.getLogger(__name__)


# ── Strategy types ───────────────────────────────────────────────────


class RetryReason(str, Enum):
    """Why a retry was considered."""

    EXECUTION_FAILURE = "execution_failure"  # Worker raised or returned an error
    AGENT_ERROR = "agent_error"  # Worker capability unreachable
    TIMEOUT = "timeout"  # Run exceeded its wall-clock budget
    MANUAL = "manual"  # Operator asked for it


@dataclass(frozen=True)
class BackoffPolicy:
    """Attempt ceiling plus a linear delay function.

    ``attempt`` is the 1-based number of the retry about to happen.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 300.0

    def allows(self, attempt: int) -> bool:
        return attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * max(1, attempt), self.max_delay)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of asking a tracker whether to retry."""

    should_retry: bool
    reason: RetryReason
    attempt: int  # Retry number this decision is about (1-indexed)
    delay: float = 0.0
    message: str = ""


# ── Retry tracker ────────────────────────────────────────────────────


class RetryTracker:
    """Counts retries per key and decides against a BackoffPolicy.

    Keys are usually ``(task_id, subtask_id)`` pairs.
    """

    def __init__(self, policy: BackoffPolicy) -> None:
        self.policy = policy
        self._counts: Dict[Hashable, int] = {}
        self._history: Dict[Hashable, List[RetryDecision]] = {}

    def count(self, key: Hashable) -> int:
        return self._counts.get(key, 0)

    def decide(self, key: Hashable, reason: RetryReason, eligible: bool = True) -> RetryDecision:
        """Consume one retry if the ceiling allows it.

        Args:
            key: What is being retried.
            reason: Why a retry is being considered.
            eligible: Caller-side precondition (e.g. error type is retryable).

        Returns:
            RetryDecision; the counter only advances when ``should_retry``.
        """
        attempt = self.count(key) + 1
        if not eligible:
            decision = RetryDecision(False, reason, attempt, message=f"{reason.value} is not retryable")
        elif not self.policy.allows(attempt):
            decision = RetryDecision(
                False, reason, attempt,
                message=f"Retry ceiling reached ({self.policy.max_attempts})",
            )
        else:
            self._counts[key] = attempt
            decision = RetryDecision(
                True, reason, attempt,
                delay=self.policy.delay_for(attempt),
                message=f"Retry {attempt}/{self.policy.max_attempts}",
            )
        self._history.setdefault(key, []).append(decision)
        return decision

    def reset(self, key: Hashable) -> None:
        """Forget the counter."""
        self._counts.pop(key, None)

    def record_manual(self, key: Hashable) -> RetryDecision:
        """Log an operator-requested retry and restore the automatic budget."""
        decision = RetryDecision(True, RetryReason.MANUAL, self.count(key) + 1, message="Manual retry")
        self._history.setdefault(key, []).append(decision)
        self.reset(key)
        return decision

    def get_history(self, key: Hashable) -> List[RetryDecision]:
        return self._history.get(key, [])

    @property
    def stats(self) -> Dict[str, Any]:
        """Summary statistics."""
        total = sum(len(h) for h in self._history.values())
        approved = sum(1 for h in self._history.values() for d in h if d.should_retry)
        return {
            "keys_with_retries": len(self._history),
            "total_retry_decisions": total,
            "retries_approved": approved,
            "retries_denied": total - approved,
        }
