"""
Budget configuration resolution.

The effective budget for a call is resolved per field through a priority chain:

1. Explicit per-call override
2. Tenant config resolver callback
3. Persisted tenant budget record
4. Global configuration

The first layer that sets a field wins. Per-agent limit maps merge per agent.
A field no layer sets stays None, which means unlimited.
"""

from typing import Any, Callable, Mapping, Optional, Union

import structlog

from ai_reliability_guard.config.loader import BudgetConfig, Enforcement, parse_budget_config
from ai_reliability_guard.storage.models import TenantBudgetRecord
from ai_reliability_guard.storage.repository import TenantBudgetRepository

logger = structlog.get_logger(__name__)

BudgetLayer = Union[BudgetConfig, Mapping[str, Any], None]
TenantResolver = Callable[[], Optional[str]]
TenantConfigResolver = Callable[[str], BudgetLayer]


def budget_config_from_record(record: TenantBudgetRecord) -> BudgetConfig:
    """Convert a persisted tenant record into a partial BudgetConfig."""
    return BudgetConfig(
        enforcement=Enforcement(record.enforcement) if record.enforcement else None,
        global_daily_cost=record.global_daily_cost,
        global_monthly_cost=record.global_monthly_cost,
        per_agent_daily_cost=dict(record.per_agent_daily_cost),
        per_agent_monthly_cost=dict(record.per_agent_monthly_cost),
        daily_tokens=record.daily_tokens,
        monthly_tokens=record.monthly_tokens,
        daily_executions=record.daily_executions,
        monthly_executions=record.monthly_executions
    )


def as_budget_config(layer: BudgetLayer, source: str) -> Optional[BudgetConfig]:
    if layer is None:
        return None
    if isinstance(layer, BudgetConfig):
        return layer
    return parse_budget_config(layer, source)


class BudgetConfigResolver:
    """Resolves tenant ids and effective budget configurations."""

    def __init__(
        self,
        global_config: BudgetConfig,
        multi_tenancy_enabled: bool = False,
        tenant_resolver: Optional[TenantResolver] = None,
        tenant_config_resolver: Optional[TenantConfigResolver] = None,
        repository: Optional[TenantBudgetRepository] = None
    ):
        self.global_config = global_config
        self.multi_tenancy_enabled = multi_tenancy_enabled
        self.tenant_resolver = tenant_resolver
        self.tenant_config_resolver = tenant_config_resolver
        self.repository = repository

    def resolve_tenant_id(self, explicit: Optional[str] = None) -> Optional[str]:
        """Tenant for this call, or None when budgets are global-only."""
        if not self.multi_tenancy_enabled:
            return None
        if explicit:
            return explicit
        if self.tenant_resolver is not None:
            return self.tenant_resolver()
        return None

    def resolve_budget_config(
        self,
        tenant_id: Optional[str] = None,
        runtime_override: BudgetLayer = None
    ) -> BudgetConfig:
        """Merge all configured layers, highest priority first."""
        layers = [as_budget_config(runtime_override, "budget override")]

        if tenant_id is not None:
            if self.tenant_config_resolver is not None:
                layers.append(as_budget_config(
                    self.tenant_config_resolver(tenant_id),
                    f"tenant config for {tenant_id}"
                ))
            if self.repository is not None:
                record = self.repository.find_tenant_budget(tenant_id)
                if record is not None:
                    layers.append(budget_config_from_record(record))

        resolved = self.global_config
        for layer in reversed(layers):
            if layer is not None:
                resolved = layer.merged_over(resolved)

        logger.debug(
            "budget_config_resolved",
            tenant_id=tenant_id,
            layers=sum(1 for layer in layers if layer is not None) + 1,
            enforcement=resolved.effective_enforcement.value
        )
        return resolved
