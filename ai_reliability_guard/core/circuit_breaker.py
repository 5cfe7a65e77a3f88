"""
Circuit breaker for (agent, model[, tenant]).

State lives entirely in the counter store:

- a failure counter whose TTL is the rolling window, and
- an open marker whose TTL is the cooldown.

The breaker is open while the marker exists. There is no half-open state: once
the marker expires the next call is a normal closed-state call, and reopening
needs the failure count to reach the threshold again.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from ai_reliability_guard.config.loader import CircuitBreakerConfig
from ai_reliability_guard.errors import CircuitOpenError
from ai_reliability_guard.storage.counter_store import CounterStore, make_key

from .alerts import BREAKER_OPEN, AlertManager

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """Failure-window breaker for one agent/model pair, optionally per tenant."""

    def __init__(
        self,
        agent_type: str,
        model_id: str,
        store: CounterStore,
        config: Optional[CircuitBreakerConfig] = None,
        tenant_id: Optional[str] = None,
        alerts: Optional[AlertManager] = None
    ):
        self.agent_type = agent_type
        self.model_id = model_id
        self.store = store
        self.config = config or CircuitBreakerConfig()
        self.tenant_id = tenant_id
        self.alerts = alerts

    def _key(self, kind: str) -> str:
        if self.tenant_id:
            return make_key("cb", kind, self.tenant_id, self.agent_type, self.model_id)
        return make_key("cb", kind, self.agent_type, self.model_id)

    @property
    def count_key(self) -> str:
        return self._key("count")

    @property
    def open_key(self) -> str:
        return self._key("open")

    def record_failure(self) -> bool:
        """Count a failure and open the breaker once the threshold is reached.

        Returns:
            True if the breaker is open after this failure
        """
        count = self.store.increment(self.count_key, 1, ttl=self.config.within_seconds)
        logger.debug(
            "breaker_failure_recorded",
            agent_type=self.agent_type,
            model_id=self.model_id,
            tenant_id=self.tenant_id,
            failure_count=count
        )

        if count >= self.config.errors and not self.is_open():
            self._open(count)
            return True
        return self.is_open()

    def record_success(self, reset_counter: bool = True) -> None:
        if reset_counter:
            self.store.delete(self.count_key)

    def is_open(self) -> bool:
        return self.store.exists(self.open_key)

    def ensure_closed(self) -> None:
        """Raise CircuitOpenError if the breaker is open."""
        if self.is_open():
            raise CircuitOpenError(
                self.agent_type,
                self.model_id,
                time_until_close=self.time_until_close(),
                tenant_id=self.tenant_id
            )

    def reset(self) -> None:
        """Close the breaker and forget recorded failures."""
        self.store.delete(self.open_key)
        self.store.delete(self.count_key)
        logger.info(
            "breaker_reset",
            agent_type=self.agent_type,
            model_id=self.model_id,
            tenant_id=self.tenant_id
        )

    def failure_count(self) -> int:
        return int(self.store.read(self.count_key) or 0)

    def time_until_close(self) -> Optional[float]:
        """Seconds until the open marker expires, or None when closed."""
        return self.store.ttl(self.open_key)

    def status(self) -> Dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "model_id": self.model_id,
            "tenant_id": self.tenant_id,
            "open": self.is_open(),
            "failure_count": self.failure_count(),
            "time_until_close": self.time_until_close(),
            "errors_threshold": self.config.errors,
            "within_seconds": self.config.within_seconds,
            "cooldown_seconds": self.config.cooldown_seconds,
        }

    def _open(self, failure_count: int) -> None:
        self.store.write(
            self.open_key,
            datetime.now(timezone.utc).isoformat(),
            ttl=self.config.cooldown_seconds
        )
        logger.warning(
            "breaker_opened",
            agent_type=self.agent_type,
            model_id=self.model_id,
            tenant_id=self.tenant_id,
            failure_count=failure_count,
            cooldown_seconds=self.config.cooldown_seconds
        )
        if self.alerts is not None:
            self.alerts.notify(BREAKER_OPEN, {
                "agent_type": self.agent_type,
                "model_id": self.model_id,
                "tenant_id": self.tenant_id,
                "errors_threshold": self.config.errors,
                "within_seconds": self.config.within_seconds,
                "cooldown_seconds": self.config.cooldown_seconds,
                "opened_at": datetime.now(timezone.utc).isoformat(),
            })
