"""
Budget checks and spend tracking.

Pre-flight ``check_budget`` compares current usage plus the proposed increment
against every configured limit and applies the enforcement mode:

- none: track only
- soft: alert when a limit is reached, allow the call
- hard: alert and raise BudgetExceeded before any provider call

Post-flight ``record_spend`` adds the chosen attempt's cost to the tenant-wide
and per-agent usage rows, rolling daily/monthly windows over atomically.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from ai_reliability_guard.config.loader import BudgetConfig, Enforcement
from ai_reliability_guard.errors import BudgetExceeded
from ai_reliability_guard.storage.counter_store import CounterStore, make_key
from ai_reliability_guard.storage.models import GLOBAL_TENANT, TENANT_SCOPE
from ai_reliability_guard.storage.repository import TenantUsageRepository

from .alerts import BUDGET_HARD_CAP, BUDGET_SOFT_CAP, BUDGET_WARNING, AlertManager
from .budget_config import BudgetConfigResolver, BudgetLayer
from .forecast import SpendForecast, forecast_spend
from .pricing import to_decimal

logger = structlog.get_logger(__name__)

# Repeat alerts for the same tenant, scope and day are suppressed for an hour
ALERT_DEDUP_TTL = 3600


@dataclass(frozen=True)
class LimitCheck:
    """One configured limit evaluated against usage.

    Values are Decimals, exact to the micro-dollar for cost scopes.
    """
    scope: str
    limit: Decimal
    current: Decimal
    projected: Decimal
    exceeded: bool
    warning: bool = False

    @property
    def percentage(self) -> float:
        if self.limit <= 0:
            return 100.0 if self.projected > 0 or self.exceeded else 0.0
        return round(float(self.projected / self.limit * 100), 2)

    @property
    def remaining(self) -> Decimal:
        return max(self.limit - self.current, Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "limit": float(self.limit),
            "current": float(self.current),
            "projected": float(self.projected),
            "remaining": float(self.remaining),
            "percentage": self.percentage,
            "exceeded": self.exceeded,
            "warning": self.warning,
        }


@dataclass(frozen=True)
class BudgetCheckResult:
    """Outcome of a pre-flight budget check."""
    tenant_id: Optional[str]
    agent_type: Optional[str]
    enforcement: Enforcement
    enabled: bool
    checks: List[LimitCheck] = field(default_factory=list)

    @property
    def exceeded(self) -> List[LimitCheck]:
        return [c for c in self.checks if c.exceeded]

    @property
    def warnings(self) -> List[LimitCheck]:
        return [c for c in self.checks if c.warning]

    @property
    def is_exceeded(self) -> bool:
        return bool(self.exceeded)

    @property
    def allowed(self) -> bool:
        return not (self.enforcement is Enforcement.HARD and self.is_exceeded)


class BudgetTracker:
    """Checks and records spend per tenant and per agent."""

    def __init__(
        self,
        resolver: BudgetConfigResolver,
        usage: TenantUsageRepository,
        store: CounterStore,
        alerts: Optional[AlertManager] = None,
        today: Callable[[], date] = date.today
    ):
        self.resolver = resolver
        self.usage = usage
        self.store = store
        self.alerts = alerts or AlertManager()
        self.today = today

    def check_budget(
        self,
        agent_type: str,
        tenant_id: Optional[str] = None,
        proposed_cost: Union[float, Decimal] = 0.0,
        proposed_tokens: int = 0,
        runtime_override: BudgetLayer = None,
        config: Optional[BudgetConfig] = None
    ) -> BudgetCheckResult:
        """Pre-flight check of current usage plus the proposed increment.

        Raises:
            BudgetExceeded: Under hard enforcement when any limit is reached
        """
        config = config or self.resolver.resolve_budget_config(tenant_id, runtime_override)
        result = self._evaluate(
            config, agent_type, tenant_id,
            proposed_cost=to_decimal(proposed_cost),
            proposed_tokens=int(proposed_tokens),
            pending_execution=True
        )
        if not result.enabled or result.enforcement is Enforcement.NONE:
            return result

        self._warn(result)

        if not result.exceeded:
            return result

        if result.enforcement is Enforcement.SOFT:
            for check in result.exceeded:
                logger.warning("budget_soft_cap_reached", **self._alert_payload(result, check))
                self._alert_once(BUDGET_SOFT_CAP, result, check)
            return result

        check = result.exceeded[0]
        logger.warning("budget_exceeded", **self._alert_payload(result, check))
        self._alert_once(BUDGET_HARD_CAP, result, check)
        raise BudgetExceeded(
            scope=check.scope,
            current=float(check.current),
            limit=float(check.limit),
            tenant_id=tenant_id,
            agent_type=agent_type
        )

    def record_spend(
        self,
        agent_type: str,
        tenant_id: Optional[str] = None,
        actual_cost: Union[float, Decimal] = 0.0,
        actual_tokens: int = 0,
        error: bool = False,
        runtime_override: BudgetLayer = None,
        config: Optional[BudgetConfig] = None
    ) -> None:
        """Post-flight increment of usage counters for one logical call."""
        config = config or self.resolver.resolve_budget_config(tenant_id, runtime_override)
        if not config.is_enabled:
            return

        self.usage.record_usage(
            tenant_id or GLOBAL_TENANT,
            agent_type,
            cost=to_decimal(actual_cost),
            tokens=int(actual_tokens),
            error=error,
            today=self.today()
        )
        logger.info(
            "budget_spend_recorded",
            agent_type=agent_type,
            tenant_id=tenant_id,
            cost=float(actual_cost),
            tokens=int(actual_tokens)
        )

        if config.effective_enforcement is Enforcement.NONE:
            return

        result = self._evaluate(config, agent_type, tenant_id, pending_execution=False)
        self._warn(result)
        for check in result.exceeded:
            self._alert_once(BUDGET_SOFT_CAP, result, check)

    def status(
        self,
        agent_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        runtime_override: BudgetLayer = None
    ) -> Dict[str, Any]:
        """Limits, usage, remaining and percentages for a tenant (and agent)."""
        config = self.resolver.resolve_budget_config(tenant_id, runtime_override)
        result = self._evaluate(config, agent_type, tenant_id, pending_execution=False)
        counters = self.usage.get_usage(tenant_id or GLOBAL_TENANT, TENANT_SCOPE, self.today())
        return {
            "tenant_id": tenant_id,
            "agent_type": agent_type,
            "enabled": result.enabled,
            "enforcement": result.enforcement.value,
            "limits": [check.to_dict() for check in result.checks],
            "usage": {
                "daily_cost": float(counters.daily_cost_spent),
                "monthly_cost": float(counters.monthly_cost_spent),
                "daily_tokens": counters.daily_tokens_used,
                "monthly_tokens": counters.monthly_tokens_used,
                "daily_executions": counters.daily_executions_count,
                "monthly_executions": counters.monthly_executions_count,
                "daily_errors": counters.daily_error_count,
                "monthly_errors": counters.monthly_error_count,
            },
        }

    def forecast(
        self,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
        runtime_override: BudgetLayer = None
    ) -> SpendForecast:
        """Project today's and this month's spend from the current run rate."""
        config = self.resolver.resolve_budget_config(tenant_id, runtime_override)
        now = now or datetime.now()
        counters = self.usage.get_usage(tenant_id or GLOBAL_TENANT, TENANT_SCOPE, now.date())
        return forecast_spend(
            counters,
            now,
            daily_limit=config.global_daily_cost,
            monthly_limit=config.global_monthly_cost
        )

    def _evaluate(
        self,
        config: BudgetConfig,
        agent_type: Optional[str],
        tenant_id: Optional[str],
        proposed_cost: Decimal = Decimal("0"),
        proposed_tokens: int = 0,
        pending_execution: bool = True
    ) -> BudgetCheckResult:
        enforcement = config.effective_enforcement
        if not config.is_enabled:
            return BudgetCheckResult(tenant_id, agent_type, enforcement, enabled=False)

        today = self.today()
        key = tenant_id or GLOBAL_TENANT
        tenant_usage = self.usage.get_usage(key, TENANT_SCOPE, today)
        agent_usage = self.usage.get_usage(key, agent_type, today) if agent_type else None
        threshold = to_decimal(config.effective_warning_threshold)
        checks: List[LimitCheck] = []

        def add(scope: str, limit: Optional[float], current: Any, increment: Any, count: bool = False):
            if limit is None:
                return
            limit = to_decimal(limit)
            current = to_decimal(current)
            projected = current + to_decimal(increment)
            # Execution counts block once the count has reached the limit
            exceeded = current >= limit if count else projected >= limit
            warning = not exceeded and limit > 0 and projected >= threshold * limit
            checks.append(LimitCheck(scope, limit, current, projected, exceeded, warning))

        add("global_daily_cost", config.global_daily_cost, tenant_usage.daily_cost_spent, proposed_cost)
        add("global_monthly_cost", config.global_monthly_cost, tenant_usage.monthly_cost_spent, proposed_cost)
        if agent_usage is not None:
            add("per_agent_daily_cost", config.per_agent_daily_cost.get(agent_type),
                agent_usage.daily_cost_spent, proposed_cost)
            add("per_agent_monthly_cost", config.per_agent_monthly_cost.get(agent_type),
                agent_usage.monthly_cost_spent, proposed_cost)
        add("daily_tokens", config.daily_tokens, tenant_usage.daily_tokens_used, proposed_tokens)
        add("monthly_tokens", config.monthly_tokens, tenant_usage.monthly_tokens_used, proposed_tokens)
        pending = 1 if pending_execution else 0
        add("daily_executions", config.daily_executions,
            tenant_usage.daily_executions_count, pending, count=True)
        add("monthly_executions", config.monthly_executions,
            tenant_usage.monthly_executions_count, pending, count=True)

        return BudgetCheckResult(tenant_id, agent_type, enforcement, enabled=True, checks=checks)

    def _warn(self, result: BudgetCheckResult) -> None:
        for check in result.warnings:
            logger.info("budget_warning_threshold_crossed", **self._alert_payload(result, check))
            self._alert_once(BUDGET_WARNING, result, check)

    def _alert_payload(self, result: BudgetCheckResult, check: LimitCheck) -> Dict[str, Any]:
        return {
            "agent_type": result.agent_type,
            "tenant_id": result.tenant_id,
            "scope": check.scope,
            "limit": float(check.limit),
            "current": float(check.current),
            "projected": float(check.projected),
            "percentage": check.percentage,
            "enforcement": result.enforcement.value,
        }

    def _alert_once(self, event: str, result: BudgetCheckResult, check: LimitCheck) -> None:
        scope = check.scope
        if scope.startswith("per_agent"):
            scope = f"{scope}:{result.agent_type}"
        key = make_key(
            "alert", event, result.tenant_id or GLOBAL_TENANT, scope, self.today().isoformat()
        )
        if self.store.increment(key, 1, ttl=ALERT_DEDUP_TTL) == 1:
            self.alerts.notify(event, self._alert_payload(result, check))

