"""
Data models for storage layer.

Defines the persisted execution ledger entry, tenant usage counters and tenant
budget records.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

# Scope of the tenant-wide usage row; per-agent rows use the agent type
TENANT_SCOPE = "*"

# Tenant key used when multi-tenancy is disabled
GLOBAL_TENANT = "global"


@dataclass(frozen=True)
class ExecutionRecord:
    """Immutable record of one logical call.

    Append-only entries in the execution ledger. ``attempts`` is the ordered
    audit trail of every attempt, including short-circuited ones.
    """
    timestamp: datetime
    agent_type: str
    status: str
    requested_model: str
    chosen_model: Optional[str]
    input_tokens: int
    output_tokens: int
    total_cost: Decimal
    duration_ms: int
    tenant_id: Optional[str] = None
    error_class: Optional[str] = None
    error_message: Optional[str] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def attempts_count(self) -> int:
        return len(self.attempts)


@dataclass(frozen=True)
class UsageCounters:
    """Daily and monthly accumulators for one (tenant, scope) row.

    Costs are stored as integer micro-dollars and surfaced as exact Decimals.
    """
    tenant_id: str
    scope: str
    daily_cost_spent: Decimal = Decimal("0")
    monthly_cost_spent: Decimal = Decimal("0")
    daily_tokens_used: int = 0
    monthly_tokens_used: int = 0
    daily_executions_count: int = 0
    monthly_executions_count: int = 0
    daily_error_count: int = 0
    monthly_error_count: int = 0
    daily_reset_date: Optional[date] = None
    monthly_reset_date: Optional[date] = None


@dataclass(frozen=True)
class TenantBudgetRecord:
    """Persisted per-tenant budget override.

    ``None`` fields inherit from the global configuration.
    """
    tenant_id: str
    enforcement: Optional[str] = None
    global_daily_cost: Optional[float] = None
    global_monthly_cost: Optional[float] = None
    per_agent_daily_cost: Dict[str, float] = field(default_factory=dict)
    per_agent_monthly_cost: Dict[str, float] = field(default_factory=dict)
    daily_tokens: Optional[int] = None
    monthly_tokens: Optional[int] = None
    daily_executions: Optional[int] = None
    monthly_executions: Optional[int] = None
