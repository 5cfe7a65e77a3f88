"""
Attempt history for one logical call.

Every attempt, including breaker short-circuits, is appended in order. The
list is the audit trail used for cost aggregation and attached to every
terminal error.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from ai_reliability_guard.errors import classify_error

from .pricing import DEFAULT_PRICING_TABLE, PricingTable, calculate_cost
from .provider import ProviderResponse
from .token_counter import TokenUsage


@dataclass(frozen=True)
class AttemptRecord:
    """One attempt against one model."""
    model_id: str
    started_at: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    error_class: Optional[str] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    short_circuited: bool = False
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return not self.short_circuited and self.error_class is None

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(self.input_tokens, self.output_tokens)

    def cost(self, pricing: PricingTable = DEFAULT_PRICING_TABLE) -> Decimal:
        """Cost at this attempt's own model price; zero when short-circuited."""
        if self.short_circuited:
            return Decimal("0")
        return calculate_cost(self.model_id, self.usage, pricing)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


@dataclass
class _PendingAttempt:
    model_id: str
    started_at: datetime
    started_clock: float


@dataclass
class AttemptTracker:
    """Accumulates AttemptRecords for a logical call."""
    clock: Callable[[], float] = time.monotonic
    attempts: List[AttemptRecord] = field(default_factory=list)

    def start(self, model_id: str) -> _PendingAttempt:
        return _PendingAttempt(model_id, datetime.now(timezone.utc), self.clock())

    def complete(
        self,
        pending: _PendingAttempt,
        response: Optional[ProviderResponse] = None,
        error: Optional[BaseException] = None
    ) -> AttemptRecord:
        """Record the outcome of a started attempt."""
        record = AttemptRecord(
            model_id=pending.model_id,
            started_at=pending.started_at,
            input_tokens=response.input_tokens if response else 0,
            output_tokens=response.output_tokens if response else 0,
            error_class=type(error).__name__ if error else None,
            error_message=str(error)[:1000] if error else None,
            error_kind=classify_error(error).value if error else None,
            duration_ms=int((self.clock() - pending.started_clock) * 1000)
        )
        self.attempts.append(record)
        return record

    def short_circuit(self, model_id: str, error: Optional[BaseException] = None) -> AttemptRecord:
        """Record a model skipped because its breaker is open."""
        record = AttemptRecord(
            model_id=model_id,
            started_at=datetime.now(timezone.utc),
            error_class=type(error).__name__ if error else "CircuitOpenError",
            error_message=str(error) if error else None,
            error_kind="circuit_open",
            short_circuited=True
        )
        self.attempts.append(record)
        return record

    def successful_attempt(self) -> Optional[AttemptRecord]:
        for record in reversed(self.attempts):
            if record.succeeded:
                return record
        return None

    def chosen_model(self) -> Optional[str]:
        successful = self.successful_attempt()
        return successful.model_id if successful else None

    def total_usage(self) -> TokenUsage:
        """Tokens across every real attempt."""
        total = TokenUsage()
        for record in self.attempts:
            if not record.short_circuited:
                total = total + record.usage
        return total

    def total_cost(self, pricing: PricingTable = DEFAULT_PRICING_TABLE) -> Decimal:
        """Cost across every real attempt, each priced at its own model."""
        return sum((record.cost(pricing) for record in self.attempts), Decimal("0"))

    def models_tried(self) -> List[str]:
        seen: List[str] = []
        for record in self.attempts:
            if record.model_id not in seen:
                seen.append(record.model_id)
        return seen

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.attempts]
