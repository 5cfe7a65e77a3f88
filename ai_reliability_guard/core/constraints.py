"""
Execution-wide deadline and cooperative cancellation.

One ExecutionConstraints instance governs every attempt of a logical call,
across all models and retries.
"""

import threading
import time
from typing import Callable, List, Optional, Sequence

from ai_reliability_guard.errors import ExecutionCancelled, TotalTimeoutExceeded


class CancellationToken:
    """Caller-side signal to stop a logical call."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if woken by cancellation."""
        return self._event.wait(seconds)


class ExecutionConstraints:
    """Total timeout tracker; the deadline is fixed at construction."""

    def __init__(
        self,
        total_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[CancellationToken] = None
    ):
        self.total_timeout = total_timeout
        self.cancel = cancel
        self._clock = clock
        self.started_at = clock()
        self.deadline = None if total_timeout is None else self.started_at + total_timeout

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a timeout."""
        if self.deadline is None:
            return None
        return max(self.deadline - self._clock(), 0.0)

    def timeout_exceeded(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    def enforce(self, attempts: Optional[Sequence] = None, deadline_reached: bool = False) -> None:
        """Raise if the call was cancelled or the deadline has passed.

        ``deadline_reached`` forces the timeout once the caller has waited out
        the remaining time.

        Raises:
            ExecutionCancelled: If the cancellation token is set
            TotalTimeoutExceeded: If the total timeout has elapsed
        """
        history: List = list(attempts or [])
        if self.cancelled():
            raise ExecutionCancelled(self.elapsed(), history)
        if deadline_reached or self.timeout_exceeded():
            raise TotalTimeoutExceeded(self.total_timeout, self.elapsed(), history)

