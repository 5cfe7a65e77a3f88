"""
CLI interface for AI Reliability Guard.

Operational access to budgets, circuit breakers and the execution ledger.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_reliability_guard.config.loader import GuardConfig, load_guard_config
from ai_reliability_guard.core.budget_config import BudgetConfigResolver
from ai_reliability_guard.core.budget_tracker import BudgetTracker
from ai_reliability_guard.core.circuit_breaker import CircuitBreaker
from ai_reliability_guard.logging import configure_logging
from ai_reliability_guard.storage.counter_store import SQLiteCounterStore
from ai_reliability_guard.storage.db import DEFAULT_DB_PATH
from ai_reliability_guard.storage.models import TenantBudgetRecord
from ai_reliability_guard.storage.repository import (
    ExecutionRepository,
    TenantBudgetRepository,
    TenantUsageRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to the guard YAML config")


def _load_config(path: Optional[str]) -> GuardConfig:
    return load_guard_config(path) if path else GuardConfig()


def _format_limit(value: Optional[float]) -> str:
    return "unlimited" if value is None else f"{value:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    log_format: str = typer.Option("console", "--log-format", help="console or json")
):
    """AI Reliability Guard CLI."""
    configure_logging(log_level, log_format)
    if ctx.invoked_subcommand is None:
        console.print("AI Reliability Guard - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the AI Reliability Guard database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def budget(
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Include per-agent limits"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant to report on"),
    config: Optional[str] = CONFIG_OPTION,
    db: str = DB_OPTION
):
    """Show budget limits, usage and forecast."""
    try:
        guard_config = _load_config(config)
        initialize_schema(db)
        resolver = BudgetConfigResolver(
            guard_config.budgets,
            multi_tenancy_enabled=guard_config.multi_tenancy_enabled,
            repository=TenantBudgetRepository(db)
        )
        tracker = BudgetTracker(resolver, TenantUsageRepository(db), SQLiteCounterStore(db))
        tenant_id = resolver.resolve_tenant_id(tenant)
        status = tracker.status(agent_type=agent, tenant_id=tenant_id)

        console.print(f"\n[bold]Budget status[/bold] ({status['tenant_id'] or 'global'})")
        console.print(f"Enforcement: {status['enforcement']}")
        if not status["enabled"]:
            console.print("\n[dim]Budgets are disabled or no limits are configured.[/]")
            sys.exit(EXIT_CODE_PASS)

        table = Table()
        table.add_column("Scope")
        table.add_column("Limit", justify="right")
        table.add_column("Current", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Used", justify="right")
        for limit in status["limits"]:
            style = "red" if limit["exceeded"] else ("yellow" if limit["warning"] else "")
            table.add_row(
                limit["scope"],
                _format_limit(limit["limit"]),
                f"{limit['current']:,.4f}",
                f"{limit['remaining']:,.4f}",
                f"{limit['percentage']:.1f}%",
                style=style
            )
        console.print(table)

        forecast = tracker.forecast(tenant_id)
        console.print(f"Projected today: ${forecast.projected_daily:,.4f}"
                      + (" [red](over limit)[/]" if forecast.daily_over_limit else ""))
        console.print(f"Projected this month: ${forecast.projected_monthly:,.4f}"
                      + (" [red](over limit)[/]" if forecast.monthly_over_limit else ""))
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("tenant-budget")
def tenant_budget(
    tenant: str = typer.Argument(..., help="Tenant identifier"),
    enforcement: Optional[str] = typer.Option(None, "--enforcement", "-e", help="none, soft or hard"),
    daily_cost: Optional[float] = typer.Option(None, "--daily-cost", help="Daily cost limit"),
    monthly_cost: Optional[float] = typer.Option(None, "--monthly-cost", help="Monthly cost limit"),
    daily_tokens: Optional[int] = typer.Option(None, "--daily-tokens", help="Daily token limit"),
    monthly_tokens: Optional[int] = typer.Option(None, "--monthly-tokens", help="Monthly token limit"),
    daily_executions: Optional[int] = typer.Option(None, "--daily-executions", help="Daily execution limit"),
    monthly_executions: Optional[int] = typer.Option(None, "--monthly-executions", help="Monthly execution limit"),
    delete: bool = typer.Option(False, "--delete", help="Remove the tenant's budget record"),
    db: str = DB_OPTION
):
    """Save or remove a tenant's budget override."""
    try:
        initialize_schema(db)
        repository = TenantBudgetRepository(db)
        if delete:
            repository.delete_tenant_budget(tenant)
            console.print(f"[green]✓[/] Budget removed for tenant {tenant}")
            sys.exit(EXIT_CODE_PASS)

        if enforcement is not None and enforcement not in ("none", "soft", "hard"):
            raise ValueError("enforcement must be one of: none, soft, hard")

        repository.save_tenant_budget(TenantBudgetRecord(
            tenant_id=tenant,
            enforcement=enforcement,
            global_daily_cost=daily_cost,
            global_monthly_cost=monthly_cost,
            daily_tokens=daily_tokens,
            monthly_tokens=monthly_tokens,
            daily_executions=daily_executions,
            monthly_executions=monthly_executions
        ))
        console.print(f"[green]✓[/] Budget saved for tenant {tenant}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _breaker(agent: str, model: str, tenant: Optional[str], config: Optional[str], db: str) -> CircuitBreaker:
    guard_config = _load_config(config)
    breaker_config = guard_config.reliability_for(agent).circuit_breaker
    initialize_schema(db)
    return CircuitBreaker(agent, model, SQLiteCounterStore(db), config=breaker_config, tenant_id=tenant)


@app.command()
def breaker(
    agent: str = typer.Argument(..., help="Agent type"),
    model: str = typer.Argument(..., help="Model identifier"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant scope"),
    config: Optional[str] = CONFIG_OPTION,
    db: str = DB_OPTION
):
    """Show circuit breaker state for an agent and model."""
    try:
        status = _breaker(agent, model, tenant, config, db).status()
        state = "[red]OPEN[/]" if status["open"] else "[green]CLOSED[/]"
        console.print(f"\n[bold]Circuit breaker[/bold] {agent} / {model}: {state}")
        console.print(f"Failures in window: {status['failure_count']} / {status['errors_threshold']}")
        if status["open"] and status["time_until_close"] is not None:
            console.print(f"Closes in: {status['time_until_close']:.1f}s")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("reset-breaker")
def reset_breaker(
    agent: str = typer.Argument(..., help="Agent type"),
    model: str = typer.Argument(..., help="Model identifier"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant scope"),
    db: str = DB_OPTION
):
    """Close a circuit breaker and clear its failure count."""
    try:
        _breaker(agent, model, tenant, None, db).reset()
        console.print(f"[green]✓[/] Circuit breaker reset for {agent} / {model}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def executions(
    agent: Optional[str] = typer.Option(None, "--agent", "-a", help="Filter by agent type"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter by tenant"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by final status"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of executions to show"),
    db: str = DB_OPTION
):
    """List recent executions from the ledger."""
    try:
        initialize_schema(db)
        records = ExecutionRepository(db).get_recent_executions(
            agent_type=agent, tenant_id=tenant, status=status, limit=limit
        )
        if not records:
            console.print("\n[dim]No executions recorded yet.[/]")
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="Recent executions")
        table.add_column("Time")
        table.add_column("Agent")
        table.add_column("Tenant")
        table.add_column("Status")
        table.add_column("Model")
        table.add_column("Attempts", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for record in records:
            table.add_row(
                record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                record.agent_type,
                record.tenant_id or "-",
                record.status,
                record.chosen_model or record.requested_model,
                str(record.attempts_count),
                str(record.total_tokens),
                f"${record.total_cost:,.6f}"
            )
        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
