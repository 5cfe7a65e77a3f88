"""
Reliability guard engine.

Composes the budget checks, the attempt loop and the execution ledger for
one logical call:

1. Resolve the tenant and its effective budget
2. Pre-flight budget check (hard enforcement blocks here)
3. Run the orchestrator over the model chain
4. Record spend for the chosen attempt
5. Append the execution record, success or failure
"""

import time
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, List, Optional, Sequence

import structlog

from ai_reliability_guard.config.loader import GuardConfig
from ai_reliability_guard.errors import (
    AllModelsExhausted,
    BudgetExceeded,
    ExecutionCancelled,
    TerminalError,
    TotalTimeoutExceeded,
)
from ai_reliability_guard.logging import bind_execution_context, clear_execution_context
from ai_reliability_guard.storage.counter_store import CounterStore, SQLiteCounterStore
from ai_reliability_guard.storage.db import DEFAULT_DB_PATH
from ai_reliability_guard.storage.models import ExecutionRecord
from ai_reliability_guard.storage.repository import (
    ExecutionRepository,
    TenantBudgetRepository,
    TenantUsageRepository,
    initialize_schema,
)

from .alerts import AlertHandler, AlertManager
from .attempts import AttemptRecord
from .breaker_manager import BreakerManager
from .budget_config import BudgetConfigResolver, BudgetLayer, TenantConfigResolver, TenantResolver
from .budget_tracker import BudgetTracker
from .constraints import CancellationToken
from .orchestrator import ExecutionResult, ReliabilityOrchestrator
from .provider import ProviderInvoker

logger = structlog.get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_TIMEOUT = "timeout"
STATUS_CANCELLED = "cancelled"
STATUS_BUDGET_EXCEEDED = "budget_exceeded"


def status_for(error: Exception) -> str:
    if isinstance(error, TotalTimeoutExceeded):
        return STATUS_TIMEOUT
    if isinstance(error, ExecutionCancelled):
        return STATUS_CANCELLED
    if isinstance(error, BudgetExceeded):
        return STATUS_BUDGET_EXCEEDED
    return STATUS_ERROR


class ReliabilityGuard:
    """Entry point for guarded LLM calls."""

    def __init__(
        self,
        config: GuardConfig,
        invoke: Optional[ProviderInvoker] = None,
        db_path: str = DEFAULT_DB_PATH,
        store: Optional[CounterStore] = None,
        alert_handler: Optional[AlertHandler] = None,
        tenant_resolver: Optional[TenantResolver] = None,
        tenant_config_resolver: Optional[TenantConfigResolver] = None,
        sleeper: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Optional[Callable] = None
    ):
        self.config = config
        self.invoke = invoke
        self.db_path = db_path
        self.sleeper = sleeper
        self.clock = clock

        initialize_schema(db_path)
        self.store = store if store is not None else SQLiteCounterStore(db_path)
        self.alerts = AlertManager(alert_handler)
        self.executions = ExecutionRepository(db_path)
        self.resolver = BudgetConfigResolver(
            config.budgets,
            multi_tenancy_enabled=config.multi_tenancy_enabled,
            tenant_resolver=tenant_resolver,
            tenant_config_resolver=tenant_config_resolver,
            repository=TenantBudgetRepository(db_path)
        )
        tracker_kwargs = {"today": today} if today is not None else {}
        self.budgets = BudgetTracker(
            self.resolver,
            TenantUsageRepository(db_path),
            self.store,
            alerts=self.alerts,
            **tracker_kwargs
        )

    def breakers_for(self, agent_type: str, tenant_id: Optional[str] = None) -> BreakerManager:
        return BreakerManager(
            agent_type,
            self.store,
            config=self.config.reliability_for(agent_type).circuit_breaker,
            tenant_id=tenant_id,
            alerts=self.alerts
        )

    def execute(
        self,
        agent_type: str,
        request: Any,
        model: Optional[str] = None,
        tenant_id: Optional[str] = None,
        budget_override: BudgetLayer = None,
        cancel: Optional[CancellationToken] = None,
        invoke: Optional[ProviderInvoker] = None
    ) -> ExecutionResult:
        """Run one guarded logical call.

        Args:
            agent_type: Agent name used for config, breakers and budgets
            request: Opaque request passed to the provider invoker
            model: Primary model; defaults to the agent's configured model
            tenant_id: Explicit tenant (only used with multi-tenancy enabled)
            budget_override: Per-call budget fields, highest priority
            cancel: Optional cancellation token
            invoke: Optional invoker replacing the engine's default for this call

        Raises:
            BudgetExceeded: Under hard enforcement before any provider call
            TotalTimeoutExceeded: If the total timeout elapses
            ExecutionCancelled: If the call is cancelled
            AllModelsExhausted: If every model failed or was blocked
            Exception: A non-fallback error raised by the invoker, unwrapped
        """
        requested_model = model or self.config.model_for(agent_type)
        if not requested_model:
            raise ValueError(f"No model given and none configured for agent '{agent_type}'")
        invoker = invoke or self.invoke
        if invoker is None:
            raise ValueError("No provider invoker given and none configured on the guard")

        tenant = self.resolver.resolve_tenant_id(tenant_id)
        bind_execution_context(agent_type=agent_type, tenant_id=tenant)
        started = self.clock()
        try:
            budget = self.resolver.resolve_budget_config(tenant, budget_override)
            orchestrator = ReliabilityOrchestrator(
                agent_type,
                self.config.reliability_for(agent_type),
                invoker,
                self.breakers_for(agent_type, tenant),
                pricing=self.config.pricing,
                sleeper=self.sleeper,
                clock=self.clock
            )
            try:
                self.budgets.check_budget(agent_type, tenant, config=budget)
                result = orchestrator.execute(requested_model, request, cancel=cancel)
            except TerminalError as e:
                if not isinstance(e, BudgetExceeded):
                    self.budgets.record_spend(agent_type, tenant, error=True, config=budget)
                self._persist_failure(agent_type, tenant, requested_model, e, started, e.attempts)
                raise
            except orchestrator.config.all_non_fallback_errors as e:
                self.budgets.record_spend(agent_type, tenant, error=True, config=budget)
                self._persist_failure(agent_type, tenant, requested_model, e, started, orchestrator.attempts)
                raise

            result = replace(result, tenant_id=tenant)
            chosen = result.attempts[-1]
            self.budgets.record_spend(
                agent_type,
                tenant,
                actual_cost=result.chosen_cost,
                actual_tokens=chosen.usage.total_tokens,
                config=budget
            )
            self._persist(ExecutionRecord(
                timestamp=datetime.now(timezone.utc),
                agent_type=agent_type,
                status=STATUS_SUCCESS,
                requested_model=requested_model,
                chosen_model=result.chosen_model,
                input_tokens=result.total_usage.input_tokens,
                output_tokens=result.total_usage.output_tokens,
                total_cost=result.total_cost,
                duration_ms=result.duration_ms,
                tenant_id=tenant,
                attempts=[a.to_dict() for a in result.attempts]
            ))
            logger.info(
                "execution_succeeded",
                chosen_model=result.chosen_model,
                attempts=result.attempts_count,
                total_cost=float(result.total_cost)
            )
            return result
        finally:
            clear_execution_context("agent_type", "tenant_id")

    def _persist_failure(
        self,
        agent_type: str,
        tenant_id: Optional[str],
        requested_model: str,
        error: Exception,
        started: float,
        history: Sequence[Any]
    ) -> None:
        attempts: List[AttemptRecord] = [a for a in history if isinstance(a, AttemptRecord)]
        input_tokens = sum(a.input_tokens for a in attempts if not a.short_circuited)
        output_tokens = sum(a.output_tokens for a in attempts if not a.short_circuited)
        total_cost = sum((a.cost(self.config.pricing) for a in attempts), Decimal("0"))
        cause = error.last_error if isinstance(error, AllModelsExhausted) and error.last_error else error

        self._persist(ExecutionRecord(
            timestamp=datetime.now(timezone.utc),
            agent_type=agent_type,
            status=status_for(error),
            requested_model=requested_model,
            chosen_model=None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_cost=total_cost,
            duration_ms=int((self.clock() - started) * 1000),
            tenant_id=tenant_id,
            error_class=type(error).__name__,
            error_message=str(cause)[:1000],
            attempts=[a.to_dict() for a in attempts]
        ))
        logger.warning(
            "execution_failed",
            status=status_for(error),
            error_class=type(error).__name__,
            attempts=len(attempts)
        )

    def _persist(self, record: ExecutionRecord) -> None:
        self.executions.insert_execution(record)
