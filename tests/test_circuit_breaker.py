"""
Unit tests for circuit breakers and the breaker manager.
"""

import pytest

from ai_reliability_guard.config.loader import CircuitBreakerConfig
from ai_reliability_guard.core.alerts import BREAKER_OPEN, AlertManager
from ai_reliability_guard.core.breaker_manager import BreakerManager
from ai_reliability_guard.core.circuit_breaker import CircuitBreaker
from ai_reliability_guard.errors import CircuitOpenError
from ai_reliability_guard.storage.counter_store import InMemoryCounterStore


class TestCircuitBreaker:
    """Test closed/open transitions."""

    def setup_method(self):
        self.now = [0.0]
        self.store = InMemoryCounterStore(clock=lambda: self.now[0])
        self.delivered = []
        self.alerts = AlertManager(handler=lambda event, payload: self.delivered.append((event, payload)))
        self.config = CircuitBreakerConfig(errors=5, within_seconds=60, cooldown_seconds=300)

    def _breaker(self, tenant_id=None) -> CircuitBreaker:
        return CircuitBreaker(
            "SummaryAgent", "gpt-4o", self.store,
            config=self.config, tenant_id=tenant_id, alerts=self.alerts
        )

    def _advance(self, seconds):
        self.now[0] += seconds

    def test_opens_at_threshold(self):
        breaker = self._breaker()
        for _ in range(4):
            assert breaker.record_failure() is False
        assert breaker.is_open() is False
        assert breaker.failure_count() == 4

        assert breaker.record_failure() is True
        assert breaker.is_open() is True

    def test_open_emits_single_alert(self):
        breaker = self._breaker()
        for _ in range(7):
            breaker.record_failure()

        assert len(self.delivered) == 1
        event, payload = self.delivered[0]
        assert event == BREAKER_OPEN
        assert payload["agent_type"] == "SummaryAgent"
        assert payload["model_id"] == "gpt-4o"
        assert payload["errors_threshold"] == 5
        assert payload["cooldown_seconds"] == 300

    def test_closes_after_cooldown(self):
        breaker = self._breaker()
        for _ in range(5):
            breaker.record_failure()
        self._advance(299)
        assert breaker.is_open() is True
        assert breaker.time_until_close() == pytest.approx(1)

        self._advance(1)
        assert breaker.is_open() is False
        assert breaker.time_until_close() is None

    def test_failures_outside_window_decay(self):
        breaker = self._breaker()
        for _ in range(4):
            breaker.record_failure()
        self._advance(60)

        assert breaker.failure_count() == 0
        assert breaker.record_failure() is False

    def test_success_resets_failure_count(self):
        breaker = self._breaker()
        for _ in range(4):
            breaker.record_failure()
        breaker.record_success()

        assert breaker.failure_count() == 0
        assert breaker.record_failure() is False

    def test_success_without_reset_keeps_count(self):
        breaker = self._breaker()
        breaker.record_failure()
        breaker.record_success(reset_counter=False)
        assert breaker.failure_count() == 1

    def test_reset_closes_breaker(self):
        breaker = self._breaker()
        for _ in range(5):
            breaker.record_failure()
        breaker.reset()

        assert breaker.is_open() is False
        assert breaker.failure_count() == 0

    def test_ensure_closed_raises_with_time_until_close(self):
        breaker = self._breaker()
        breaker.ensure_closed()
        for _ in range(5):
            breaker.record_failure()
        self._advance(100)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.ensure_closed()
        assert exc_info.value.time_until_close == pytest.approx(200)
        assert exc_info.value.model_id == "gpt-4o"

    def test_tenants_are_isolated(self):
        acme = self._breaker(tenant_id="acme")
        globex = self._breaker(tenant_id="globex")
        for _ in range(5):
            acme.record_failure()
        globex.record_failure()

        assert acme.is_open() is True
        assert globex.is_open() is False
        assert globex.failure_count() == 1
        assert acme.failure_count() == 5

    def test_tenant_key_differs_from_global_key(self):
        assert self._breaker().open_key != self._breaker(tenant_id="acme").open_key
        assert "acme" in self._breaker(tenant_id="acme").count_key

    def test_status(self):
        breaker = self._breaker()
        breaker.record_failure()
        status = breaker.status()
        assert status["open"] is False
        assert status["failure_count"] == 1
        assert status["errors_threshold"] == 5


class TestBreakerManager:
    """Test the per-call breaker cache."""

    def setup_method(self):
        self.store = InMemoryCounterStore()

    def test_disabled_without_config(self):
        manager = BreakerManager("Agent", self.store)
        assert manager.enabled() is False
        assert manager.for_model("gpt-4o") is None
        for _ in range(50):
            assert manager.record_failure("gpt-4o") is False
        assert manager.is_open("gpt-4o") is False
        manager.record_success("gpt-4o")

    def test_reuses_breaker_per_model(self):
        manager = BreakerManager("Agent", self.store, config=CircuitBreakerConfig(errors=2))
        assert manager.enabled() is True
        assert manager.for_model("gpt-4o") is manager.for_model("gpt-4o")
        assert manager.for_model("gpt-4o") is not manager.for_model("gpt-4o-mini")

    def test_records_through_breakers(self):
        manager = BreakerManager("Agent", self.store, config=CircuitBreakerConfig(errors=2))
        manager.record_failure("gpt-4o")
        assert manager.record_failure("gpt-4o") is True
        assert manager.is_open("gpt-4o") is True
        assert manager.is_open("gpt-4o-mini") is False
        assert manager.time_until_close("gpt-4o") == pytest.approx(300, abs=1)

    def test_tenant_scope_passed_to_breakers(self):
        manager = BreakerManager("Agent", self.store, config=CircuitBreakerConfig(), tenant_id="acme")
        assert manager.for_model("gpt-4o").tenant_id == "acme"
