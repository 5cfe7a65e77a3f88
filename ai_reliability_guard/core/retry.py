"""
Retry decisions and backoff delays.

Pure logic: given an attempt index and an error, decide whether to retry and
how long to wait first. Classification is by ErrorKind plus message patterns,
never by exception class ancestry.
"""

import random
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Pattern, Tuple

from ai_reliability_guard.config.loader import BackoffKind, ReliabilityConfig
from ai_reliability_guard.errors import (
    DEFAULT_RETRYABLE_KINDS,
    FATAL_KINDS,
    ErrorKind,
    classify_error,
)

# Provider messages that indicate a transient failure
DEFAULT_RETRYABLE_PATTERNS: Tuple[str, ...] = (
    r"timed? ?out",
    r"connection (reset|refused|error)",
    r"rate.?limit",
    r"too many requests",
    r"\b(429|500|502|503|504|529)\b",
    r"overloaded",
    r"service unavailable",
    r"capacity",
)

# Jitter is a uniform fraction of the capped delay in [0, JITTER_RATIO]
JITTER_RATIO = 0.5


def _compile(patterns: Iterable[str]) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry settings for one agent."""
    max_attempts: int = 0
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    base_delay: float = 0.4
    max_delay: float = 3.0
    retryable_error_kinds: FrozenSet[ErrorKind] = frozenset()
    retryable_patterns: Tuple[Pattern, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: ReliabilityConfig) -> "RetryPolicy":
        """Build a policy from resolved reliability settings.

        Custom patterns are added to the defaults, never replacing them.
        """
        return cls(
            max_attempts=config.max_retries,
            backoff=config.backoff,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            retryable_error_kinds=config.retryable_errors,
            retryable_patterns=_compile(DEFAULT_RETRYABLE_PATTERNS + config.retryable_patterns)
        )


class RetryStrategy:
    """Decides retry-or-stop and computes backoff delays for a policy."""

    def __init__(self, policy: RetryPolicy, rng: Optional[random.Random] = None):
        self.policy = policy
        self._rng = rng or random.Random()

    def should_retry(self, attempt_index: int, max_attempts: Optional[int] = None) -> bool:
        """True iff another attempt is allowed after ``attempt_index`` (zero-based)."""
        limit = self.policy.max_attempts if max_attempts is None else max_attempts
        return attempt_index < limit

    def base_delay_for(self, attempt_index: int) -> float:
        """Capped delay before jitter."""
        if self.policy.backoff is BackoffKind.CONSTANT:
            return self.policy.base_delay
        return min(self.policy.base_delay * (2 ** attempt_index), self.policy.max_delay)

    def delay_for(self, attempt_index: int) -> float:
        """Seconds to wait before the retry following ``attempt_index``.

        The cap applies before jitter; jitter is additive and never negative.
        """
        delay = self.base_delay_for(attempt_index)
        return delay + self._rng.uniform(0, JITTER_RATIO * delay)

    def is_retryable(self, error: BaseException) -> bool:
        """Whether an error is worth retrying on the same model.

        Fatal kinds are never retryable, whatever the custom configuration says.
        """
        kind = classify_error(error)
        if kind in FATAL_KINDS or kind is ErrorKind.CIRCUIT_OPEN:
            return False
        if kind in DEFAULT_RETRYABLE_KINDS or kind in self.policy.retryable_error_kinds:
            return True
        message = str(error)
        return any(pattern.search(message) for pattern in self.policy.retryable_patterns)
