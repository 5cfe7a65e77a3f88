"""
Attempt loop for one logical call.

Walks the model chain (primary, then fallbacks) strictly in order:

1. Enforce the total timeout and cancellation before every attempt, including
   short-circuited ones
2. Skip a model whose breaker is open, recording a short-circuited attempt
3. Call the provider; on success record it and return
4. On failure retry the same model with backoff while the error is retryable
   and retries remain, otherwise advance to the next model

Non-fallback errors (programming errors by default) are re-raised at once.
Every terminal error carries the complete ordered attempt history.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, List, Optional

import structlog

from ai_reliability_guard.config.loader import ReliabilityConfig
from ai_reliability_guard.errors import AllModelsExhausted, CircuitOpenError, classify_error

from .attempts import AttemptRecord, AttemptTracker
from .breaker_manager import BreakerManager
from .constraints import CancellationToken, ExecutionConstraints
from .pricing import DEFAULT_PRICING_TABLE, PricingTable
from .provider import ProviderInvoker, ProviderResponse
from .retry import RetryPolicy, RetryStrategy
from .token_counter import TokenUsage

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """Successful outcome of a logical call."""
    response: ProviderResponse
    requested_model: str
    chosen_model: str
    attempts: List[AttemptRecord] = field(default_factory=list)
    duration_ms: int = 0
    total_cost: Decimal = Decimal("0")
    chosen_cost: Decimal = Decimal("0")
    tenant_id: Optional[str] = None
    status: str = "success"

    @property
    def content(self) -> Any:
        return self.response.content

    @property
    def total_usage(self) -> TokenUsage:
        total = TokenUsage()
        for record in self.attempts:
            if not record.short_circuited:
                total = total + record.usage
        return total

    @property
    def attempts_count(self) -> int:
        return len(self.attempts)


def model_chain(primary: str, fallbacks) -> List[str]:
    """Primary model followed by fallbacks, de-duplicated in order."""
    chain: List[str] = []
    for model in [primary, *fallbacks]:
        if model not in chain:
            chain.append(model)
    return chain


class ReliabilityOrchestrator:
    """Drives retries, fallbacks, breakers and the total timeout for an agent."""

    def __init__(
        self,
        agent_type: str,
        config: ReliabilityConfig,
        invoke: ProviderInvoker,
        breakers: BreakerManager,
        strategy: Optional[RetryStrategy] = None,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        sleeper: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.agent_type = agent_type
        self.config = config
        self.invoke = invoke
        self.breakers = breakers
        self.strategy = strategy or RetryStrategy(RetryPolicy.from_config(config))
        self.pricing = pricing
        self.sleeper = sleeper
        self.clock = clock
        self.attempts: List[AttemptRecord] = []

    def execute(
        self,
        model: str,
        request: Any,
        cancel: Optional[CancellationToken] = None
    ) -> ExecutionResult:
        """Run the attempt loop.

        ``self.attempts`` holds the history of the most recent call, including
        when a non-fallback error propagates unwrapped.

        Raises:
            TotalTimeoutExceeded: If the total timeout elapses
            ExecutionCancelled: If the cancellation token is set
            AllModelsExhausted: If every model failed or was blocked
            Exception: Any of the configured non-fallback errors, as raised
        """
        models = model_chain(model, self.config.fallback_models)
        constraints = ExecutionConstraints(self.config.total_timeout, self.clock, cancel)
        tracker = AttemptTracker(clock=self.clock)
        self.attempts = tracker.attempts
        non_fallback = self.config.all_non_fallback_errors
        last_error: Optional[BaseException] = None

        for model_id in models:
            if self.breakers.is_open(model_id):
                constraints.enforce(tracker.attempts)
                last_error = CircuitOpenError(
                    self.agent_type,
                    model_id,
                    time_until_close=self.breakers.time_until_close(model_id),
                    tenant_id=self.breakers.tenant_id
                )
                tracker.short_circuit(model_id, last_error)
                logger.info("attempt_short_circuited", model_id=model_id)
                continue

            attempt_index = 0
            while True:
                constraints.enforce(tracker.attempts)
                pending = tracker.start(model_id)
                try:
                    response = self.invoke(model_id, request)
                except non_fallback as e:
                    tracker.complete(pending, error=e)
                    logger.error(
                        "attempt_non_fallback_error",
                        model_id=model_id,
                        attempt_index=attempt_index,
                        error_class=type(e).__name__
                    )
                    raise
                except Exception as e:
                    tracker.complete(pending, error=e)
                    last_error = e
                    breaker_opened = self.breakers.record_failure(model_id)
                    retryable = self.strategy.is_retryable(e)
                    logger.warning(
                        "attempt_failed",
                        model_id=model_id,
                        attempt_index=attempt_index,
                        error_class=type(e).__name__,
                        error_kind=classify_error(e).value,
                        retryable=retryable
                    )
                    if breaker_opened or not retryable or not self.strategy.should_retry(attempt_index):
                        break

                    delay = self.strategy.delay_for(attempt_index)
                    constraints.enforce(tracker.attempts)
                    remaining = constraints.remaining()
                    if remaining is not None and delay >= remaining:
                        # The retry could not start before the deadline
                        self._sleep(remaining, constraints)
                        constraints.enforce(tracker.attempts, deadline_reached=True)
                    logger.info(
                        "retry_scheduled",
                        model_id=model_id,
                        attempt_index=attempt_index,
                        delay=round(delay, 3)
                    )
                    self._sleep(delay, constraints)
                    attempt_index += 1
                    continue

                record = tracker.complete(pending, response=response)
                self.breakers.record_success(model_id)
                logger.info(
                    "attempt_succeeded",
                    model_id=model_id,
                    attempt_index=attempt_index,
                    duration_ms=record.duration_ms
                )
                return ExecutionResult(
                    response=response,
                    requested_model=model,
                    chosen_model=model_id,
                    attempts=list(tracker.attempts),
                    duration_ms=int(constraints.elapsed() * 1000),
                    total_cost=tracker.total_cost(self.pricing),
                    chosen_cost=record.cost(self.pricing),
                    tenant_id=self.breakers.tenant_id
                )

            logger.info("model_exhausted", model_id=model_id)

        raise AllModelsExhausted(models, last_error, tracker.attempts)

    def _sleep(self, delay: float, constraints: ExecutionConstraints) -> None:
        """Wait between retries on the injected sleeper when one is given.

        Without one, a cancellation token wakes the wait early; the next
        ``enforce`` turns that into ExecutionCancelled.
        """
        if delay <= 0:
            return
        if self.sleeper is not None:
            self.sleeper(delay)
        elif constraints.cancel is not None:
            constraints.cancel.wait(delay)
        else:
            time.sleep(delay)
