"""
Unit tests for budget checks, spend recording and forecasting.
"""

import os
import tempfile
from datetime import date, datetime
from decimal import Decimal

import pytest

from ai_reliability_guard.config.loader import BudgetConfig, Enforcement
from ai_reliability_guard.core.alerts import (
    BUDGET_HARD_CAP,
    BUDGET_SOFT_CAP,
    BUDGET_WARNING,
    AlertManager,
)
from ai_reliability_guard.core.budget_config import BudgetConfigResolver
from ai_reliability_guard.core.budget_tracker import BudgetTracker
from ai_reliability_guard.core.forecast import forecast_spend
from ai_reliability_guard.errors import BudgetExceeded
from ai_reliability_guard.storage.counter_store import InMemoryCounterStore
from ai_reliability_guard.storage.models import GLOBAL_TENANT, TENANT_SCOPE, UsageCounters
from ai_reliability_guard.storage.repository import TenantUsageRepository, initialize_schema

AGENT = "SummaryAgent"


class TestBudgetTracker:
    """Test enforcement modes against usage counters."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.usage = TenantUsageRepository(self.db_path)
        self.today = date(2026, 3, 15)
        self.delivered = []

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _tracker(self, multi_tenancy=False, **budget) -> BudgetTracker:
        resolver = BudgetConfigResolver(BudgetConfig(**budget), multi_tenancy_enabled=multi_tenancy)
        alerts = AlertManager(handler=lambda event, payload: self.delivered.append((event, payload)))
        return BudgetTracker(
            resolver, self.usage, InMemoryCounterStore(), alerts=alerts, today=lambda: self.today
        )

    def _spend(self, cost, tenant_id=GLOBAL_TENANT, agent_type=AGENT, tokens=0):
        self.usage.record_usage(tenant_id, agent_type, cost=cost, tokens=tokens, today=self.today)

    def _events(self):
        return [event for event, _ in self.delivered]

    def test_hard_enforcement_blocks_when_limit_would_be_reached(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, global_daily_cost=5.0)
        self._spend(4.9)

        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget(AGENT, proposed_cost=0.2)

        error = exc_info.value
        assert error.scope == "global_daily_cost"
        assert error.limit == 5.0
        assert error.current == pytest.approx(4.9)
        assert error.agent_type == AGENT
        assert BUDGET_HARD_CAP in self._events()

    def test_soft_enforcement_allows_and_alerts(self):
        tracker = self._tracker(enforcement=Enforcement.SOFT, global_daily_cost=5.0)
        self._spend(4.9)

        result = tracker.check_budget(AGENT, proposed_cost=0.2)

        assert result.allowed is True
        assert result.is_exceeded is True
        assert result.exceeded[0].scope == "global_daily_cost"
        assert BUDGET_SOFT_CAP in self._events()

    def test_none_enforcement_never_alerts(self):
        tracker = self._tracker(enforcement=Enforcement.NONE, global_daily_cost=5.0)
        self._spend(10.0)

        result = tracker.check_budget(AGENT, proposed_cost=1.0)
        assert result.allowed is True
        assert result.is_exceeded is True
        assert self.delivered == []

    def test_fractional_spends_block_exactly_at_limit(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, global_daily_cost=1.0)
        for _ in range(9):
            tracker.record_spend(AGENT, actual_cost=0.1)
        assert tracker.check_budget(AGENT).allowed is True

        tracker.record_spend(AGENT, actual_cost=0.1)
        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget(AGENT)
        assert exc_info.value.scope == "global_daily_cost"
        assert exc_info.value.current == 1.0

    def test_under_limit_passes(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, global_daily_cost=5.0)
        self._spend(1.0)

        result = tracker.check_budget(AGENT, proposed_cost=0.5)
        assert result.allowed is True
        assert result.is_exceeded is False
        check = result.checks[0]
        assert check.projected == Decimal("1.5")
        assert check.percentage == pytest.approx(30.0)

    def test_warning_threshold_alerts_once(self):
        tracker = self._tracker(enforcement=Enforcement.SOFT, global_daily_cost=10.0)
        self._spend(8.5)

        first = tracker.check_budget(AGENT)
        tracker.check_budget(AGENT)

        assert first.warnings[0].scope == "global_daily_cost"
        assert self._events() == [BUDGET_WARNING]

    def test_per_agent_limit(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, per_agent_daily_cost={AGENT: 1.0})
        self._spend(1.0, agent_type="OtherAgent")
        tracker.check_budget(AGENT)

        self._spend(1.0)
        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget(AGENT)
        assert exc_info.value.scope == "per_agent_daily_cost"

    def test_token_limit(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, daily_tokens=1000)
        self._spend(0.0, tokens=900)

        tracker.check_budget(AGENT, proposed_tokens=50)
        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget(AGENT, proposed_tokens=100)
        assert exc_info.value.scope == "daily_tokens"

    def test_execution_limit_blocks_at_count(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, daily_executions=2)
        self._spend(0.0)
        tracker.check_budget(AGENT)

        self._spend(0.0)
        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget(AGENT)
        assert exc_info.value.scope == "daily_executions"

    def test_monthly_limit_counts_previous_days(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, global_monthly_cost=3.0)
        self.usage.record_usage(GLOBAL_TENANT, AGENT, cost=2.5, tokens=0, today=date(2026, 3, 2))

        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget(AGENT, proposed_cost=0.5)
        assert exc_info.value.scope == "global_monthly_cost"

    def test_stale_daily_window_resets_before_check(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, global_daily_cost=5.0)
        self.usage.record_usage(GLOBAL_TENANT, AGENT, cost=5.0, tokens=0, today=date(2026, 3, 14))

        result = tracker.check_budget(AGENT, proposed_cost=1.0)
        assert result.allowed is True

    def test_record_spend_updates_tenant_and_agent_rows(self):
        tracker = self._tracker(multi_tenancy=True, global_daily_cost=100.0)
        tracker.record_spend(AGENT, "acme", actual_cost=1.25, actual_tokens=300)

        tenant_row = self.usage.get_usage("acme", TENANT_SCOPE, self.today)
        agent_row = self.usage.get_usage("acme", AGENT, self.today)
        assert tenant_row.daily_cost_spent == Decimal("1.25")
        assert tenant_row.daily_tokens_used == 300
        assert tenant_row.daily_executions_count == 1
        assert agent_row.monthly_cost_spent == Decimal("1.25")

    def test_record_spend_alerts_when_limit_crossed(self):
        tracker = self._tracker(enforcement=Enforcement.HARD, global_daily_cost=1.0)
        tracker.record_spend(AGENT, actual_cost=1.5)
        assert self._events() == [BUDGET_SOFT_CAP]

    def test_disabled_budget_skips_tracking(self):
        tracker = self._tracker(enabled=False, global_daily_cost=1.0)
        tracker.record_spend(AGENT, actual_cost=5.0)
        result = tracker.check_budget(AGENT, proposed_cost=5.0)

        assert result.enabled is False
        assert result.checks == []
        assert self.usage.get_usage(GLOBAL_TENANT, TENANT_SCOPE, self.today).daily_cost_spent == 0

    def test_tenants_tracked_separately(self):
        tracker = self._tracker(multi_tenancy=True, enforcement=Enforcement.HARD, global_daily_cost=5.0)
        tracker.record_spend(AGENT, "acme", actual_cost=5.0)

        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget(AGENT, "acme")
        assert exc_info.value.tenant_id == "acme"
        assert tracker.check_budget(AGENT, "globex").allowed is True

    def test_status_report(self):
        tracker = self._tracker(global_daily_cost=10.0, per_agent_daily_cost={AGENT: 4.0})
        tracker.record_spend(AGENT, actual_cost=2.0, actual_tokens=100)

        status = tracker.status(agent_type=AGENT)
        limits = {limit["scope"]: limit for limit in status["limits"]}
        assert status["enabled"] is True
        assert status["enforcement"] == "soft"
        assert limits["global_daily_cost"]["remaining"] == pytest.approx(8.0)
        assert limits["per_agent_daily_cost"]["percentage"] == pytest.approx(50.0)
        assert status["usage"]["daily_tokens"] == 100


class TestForecast:
    """Test run-rate spend projection."""

    def test_projects_daily_and_monthly(self):
        counters = UsageCounters(
            tenant_id=GLOBAL_TENANT, scope=TENANT_SCOPE, daily_cost_spent=Decimal("5"), monthly_cost_spent=Decimal("50")
        )
        # Noon on the 10th of a 30-day month
        forecast = forecast_spend(counters, datetime(2026, 4, 10, 12, 0, 0), daily_limit=8.0, monthly_limit=200.0)

        assert forecast.projected_daily == pytest.approx(10.0)
        assert forecast.projected_monthly == pytest.approx(50.0 / (9.5 / 30))
        assert forecast.daily_over_limit is True
        assert forecast.monthly_over_limit is False

    def test_early_morning_uses_minimum_elapsed_fraction(self):
        counters = UsageCounters(tenant_id=GLOBAL_TENANT, scope=TENANT_SCOPE, daily_cost_spent=Decimal("1"))
        forecast = forecast_spend(counters, datetime(2026, 4, 1, 0, 0, 1))
        assert forecast.projected_daily == pytest.approx(24.0)
        assert forecast.daily_over_limit is False
