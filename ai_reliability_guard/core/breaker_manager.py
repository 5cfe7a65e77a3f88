"""
Per-call cache of circuit breakers keyed by model.
"""

from typing import Dict, Optional

from ai_reliability_guard.config.loader import CircuitBreakerConfig
from ai_reliability_guard.storage.counter_store import CounterStore

from .alerts import AlertManager
from .circuit_breaker import CircuitBreaker


class BreakerManager:
    """Hands out one CircuitBreaker per model for the duration of a logical call.

    With no breaker config every model reads as closed and recording is a no-op.
    """

    def __init__(
        self,
        agent_type: str,
        store: CounterStore,
        config: Optional[CircuitBreakerConfig] = None,
        tenant_id: Optional[str] = None,
        alerts: Optional[AlertManager] = None
    ):
        self.agent_type = agent_type
        self.store = store
        self.config = config
        self.tenant_id = tenant_id
        self.alerts = alerts
        self._breakers: Dict[str, CircuitBreaker] = {}

    def enabled(self) -> bool:
        return self.config is not None

    def for_model(self, model_id: str) -> Optional[CircuitBreaker]:
        if not self.enabled():
            return None
        breaker = self._breakers.get(model_id)
        if breaker is None:
            breaker = CircuitBreaker(
                self.agent_type,
                model_id,
                self.store,
                config=self.config,
                tenant_id=self.tenant_id,
                alerts=self.alerts
            )
            self._breakers[model_id] = breaker
        return breaker

    def is_open(self, model_id: str) -> bool:
        breaker = self.for_model(model_id)
        return breaker is not None and breaker.is_open()

    def time_until_close(self, model_id: str) -> Optional[float]:
        breaker = self.for_model(model_id)
        return breaker.time_until_close() if breaker else None

    def record_success(self, model_id: str) -> None:
        breaker = self.for_model(model_id)
        if breaker is not None:
            breaker.record_success()

    def record_failure(self, model_id: str) -> bool:
        breaker = self.for_model(model_id)
        return breaker.record_failure() if breaker is not None else False
