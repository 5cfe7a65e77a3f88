"""
Repository pattern for data access.

Handles the execution ledger, tenant usage counters and tenant budget records.
Costs are persisted as integer micro-dollars and read back as Decimal.
"""

import json
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Optional, Sequence, Union

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    TENANT_SCOPE,
    ExecutionRecord,
    TenantBudgetRecord,
    UsageCounters,
)

MICROS_PER_DOLLAR = Decimal("1000000")


def to_micros(cost: Union[int, float, str, Decimal]) -> int:
    """Convert a dollar amount to whole micro-dollars, rounding half up."""
    if not isinstance(cost, Decimal):
        cost = Decimal(str(cost))
    return int((cost * MICROS_PER_DOLLAR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_micros(micros: Optional[int]) -> Decimal:
    return Decimal(micros or 0) / MICROS_PER_DOLLAR


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    The execution table is an append-only ledger. No UPDATE or DELETE should
    ever be performed on it; usage counters are the mutable aggregate.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS execution (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                agent_type TEXT NOT NULL,
                tenant_id TEXT,
                status TEXT NOT NULL,
                requested_model TEXT NOT NULL,
                chosen_model TEXT,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                total_cost_micros INTEGER NOT NULL DEFAULT 0,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                error_class TEXT,
                error_message TEXT,
                attempts TEXT NOT NULL DEFAULT '[]'
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS tenant_usage (
                tenant_id TEXT NOT NULL,
                scope TEXT NOT NULL,
                daily_cost_micros INTEGER NOT NULL DEFAULT 0,
                monthly_cost_micros INTEGER NOT NULL DEFAULT 0,
                daily_tokens_used INTEGER NOT NULL DEFAULT 0,
                monthly_tokens_used INTEGER NOT NULL DEFAULT 0,
                daily_executions_count INTEGER NOT NULL DEFAULT 0,
                monthly_executions_count INTEGER NOT NULL DEFAULT 0,
                daily_error_count INTEGER NOT NULL DEFAULT 0,
                monthly_error_count INTEGER NOT NULL DEFAULT 0,
                daily_reset_date TEXT,
                monthly_reset_date TEXT,
                PRIMARY KEY (tenant_id, scope)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS tenant_budget (
                tenant_id TEXT PRIMARY KEY,
                enforcement TEXT,
                global_daily_cost REAL,
                global_monthly_cost REAL,
                per_agent_daily_cost TEXT NOT NULL DEFAULT '{}',
                per_agent_monthly_cost TEXT NOT NULL DEFAULT '{}',
                daily_tokens INTEGER,
                monthly_tokens INTEGER,
                daily_executions INTEGER,
                monthly_executions INTEGER
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS counter_entry (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class ExecutionRepository:
    """Append-only ledger of logical calls."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def insert_execution(self, record: ExecutionRecord) -> None:
        """Append one execution record.

        Args:
            record: The execution to record
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO execution
                (timestamp, agent_type, tenant_id, status, requested_model,
                 chosen_model, input_tokens, output_tokens, total_cost_micros,
                 duration_ms, error_class, error_message, attempts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.timestamp.isoformat(),
                record.agent_type,
                record.tenant_id,
                record.status,
                record.requested_model,
                record.chosen_model,
                record.input_tokens,
                record.output_tokens,
                to_micros(record.total_cost),
                record.duration_ms,
                record.error_class,
                record.error_message,
                json.dumps(record.attempts)
            ))
            conn.commit()
        finally:
            conn.close()

    def get_recent_executions(
        self,
        agent_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[ExecutionRecord]:
        """Fetch recent executions, newest first.

        Args:
            agent_type: Optional filter for a specific agent
            tenant_id: Optional filter for a specific tenant
            status: Optional filter for a final status
            limit: Maximum number of records to return

        Returns:
            List of execution records ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT timestamp, agent_type, tenant_id, status, requested_model,
                       chosen_model, input_tokens, output_tokens, total_cost_micros,
                       duration_ms, error_class, error_message, attempts
                FROM execution
            """
            params: List[Any] = []
            conditions = []

            if agent_type:
                conditions.append("agent_type = ?")
                params.append(agent_type)
            if tenant_id:
                conditions.append("tenant_id = ?")
                params.append(tenant_id)
            if status:
                conditions.append("status = ?")
                params.append(status)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

            records = []
            for row in conn.execute(query, params).fetchall():
                records.append(ExecutionRecord(
                    timestamp=datetime.fromisoformat(row[0]),
                    agent_type=row[1],
                    tenant_id=row[2],
                    status=row[3],
                    requested_model=row[4],
                    chosen_model=row[5],
                    input_tokens=row[6],
                    output_tokens=row[7],
                    total_cost=from_micros(row[8]),
                    duration_ms=row[9],
                    error_class=row[10],
                    error_message=row[11],
                    attempts=json.loads(row[12])
                ))
            return records
        finally:
            conn.close()


_USAGE_COLUMNS = (
    "tenant_id, scope, daily_cost_micros, monthly_cost_micros, daily_tokens_used, "
    "monthly_tokens_used, daily_executions_count, monthly_executions_count, "
    "daily_error_count, monthly_error_count, daily_reset_date, monthly_reset_date"
)


def _month_start(day: date) -> date:
    return day.replace(day=1)


def _row_to_usage(row: Sequence[Any]) -> UsageCounters:
    return UsageCounters(
        tenant_id=row[0],
        scope=row[1],
        daily_cost_spent=from_micros(row[2]),
        monthly_cost_spent=from_micros(row[3]),
        daily_tokens_used=row[4],
        monthly_tokens_used=row[5],
        daily_executions_count=row[6],
        monthly_executions_count=row[7],
        daily_error_count=row[8],
        monthly_error_count=row[9],
        daily_reset_date=date.fromisoformat(row[10]) if row[10] else None,
        monthly_reset_date=date.fromisoformat(row[11]) if row[11] else None
    )


class TenantUsageRepository:
    """Rolling daily/monthly usage counters per tenant.

    Each tenant has a tenant-wide row (scope ``*``) and one row per agent type.
    Window rollover happens inside the same UPDATE statement as the increment:
    SQLite evaluates every SET expression against the pre-update row, so a
    stale row is zeroed and incremented atomically, and a concurrent writer that
    commits first leaves a fresh reset date behind so the reset never repeats.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def record_usage(
        self,
        tenant_id: str,
        agent_type: Optional[str],
        cost: Union[float, Decimal],
        tokens: int,
        error: bool = False,
        today: Optional[date] = None
    ) -> None:
        """Atomically add one execution's usage to the tenant and agent rows.

        Args:
            tenant_id: Tenant key (use GLOBAL_TENANT when multi-tenancy is off)
            agent_type: Agent type for the per-agent row, or None
            cost: Cost to add, rounded to the nearest micro-dollar
            tokens: Tokens to add
            error: Whether the execution failed
            today: Current date (defaults to date.today())
        """
        today = today or date.today()
        month = _month_start(today)
        scopes = [TENANT_SCOPE] if not agent_type else [TENANT_SCOPE, agent_type]
        params = {
            "tenant_id": tenant_id,
            "today": today.isoformat(),
            "month": month.isoformat(),
            "cost": to_micros(cost),
            "tokens": int(tokens),
            "errors": 1 if error else 0,
        }

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            for scope in scopes:
                conn.execute("""
                    INSERT INTO tenant_usage (tenant_id, scope, daily_reset_date, monthly_reset_date)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(tenant_id, scope) DO NOTHING
                """, (tenant_id, scope, params["today"], params["month"]))
                conn.execute("""
                    UPDATE tenant_usage SET
                        daily_cost_micros = (CASE WHEN daily_reset_date IS NULL OR daily_reset_date < :today
                                            THEN 0 ELSE daily_cost_micros END) + :cost,
                        daily_tokens_used = (CASE WHEN daily_reset_date IS NULL OR daily_reset_date < :today
                                             THEN 0 ELSE daily_tokens_used END) + :tokens,
                        daily_executions_count = (CASE WHEN daily_reset_date IS NULL OR daily_reset_date < :today
                                                  THEN 0 ELSE daily_executions_count END) + 1,
                        daily_error_count = (CASE WHEN daily_reset_date IS NULL OR daily_reset_date < :today
                                             THEN 0 ELSE daily_error_count END) + :errors,
                        daily_reset_date = CASE WHEN daily_reset_date IS NULL OR daily_reset_date < :today
                                           THEN :today ELSE daily_reset_date END,
                        monthly_cost_micros = (CASE WHEN monthly_reset_date IS NULL OR monthly_reset_date < :month
                                              THEN 0 ELSE monthly_cost_micros END) + :cost,
                        monthly_tokens_used = (CASE WHEN monthly_reset_date IS NULL OR monthly_reset_date < :month
                                               THEN 0 ELSE monthly_tokens_used END) + :tokens,
                        monthly_executions_count = (CASE WHEN monthly_reset_date IS NULL OR monthly_reset_date < :month
                                                    THEN 0 ELSE monthly_executions_count END) + 1,
                        monthly_error_count = (CASE WHEN monthly_reset_date IS NULL OR monthly_reset_date < :month
                                               THEN 0 ELSE monthly_error_count END) + :errors,
                        monthly_reset_date = CASE WHEN monthly_reset_date IS NULL OR monthly_reset_date < :month
                                             THEN :month ELSE monthly_reset_date END
                    WHERE tenant_id = :tenant_id AND scope = :scope
                """, dict(params, scope=scope))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def reset_stale_windows(self, tenant_id: str, today: Optional[date] = None) -> int:
        """Zero any windows of the tenant whose reset date is behind today.

        The WHERE guard makes the reset idempotent: only rows still stale at
        the time of the write are touched.

        Returns:
            Number of row-windows reset
        """
        today = today or date.today()
        month = _month_start(today)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            daily = conn.execute("""
                UPDATE tenant_usage SET
                    daily_cost_micros = 0,
                    daily_tokens_used = 0,
                    daily_executions_count = 0,
                    daily_error_count = 0,
                    daily_reset_date = ?
                WHERE tenant_id = ? AND (daily_reset_date IS NULL OR daily_reset_date < ?)
            """, (today.isoformat(), tenant_id, today.isoformat())).rowcount
            monthly = conn.execute("""
                UPDATE tenant_usage SET
                    monthly_cost_micros = 0,
                    monthly_tokens_used = 0,
                    monthly_executions_count = 0,
                    monthly_error_count = 0,
                    monthly_reset_date = ?
                WHERE tenant_id = ? AND (monthly_reset_date IS NULL OR monthly_reset_date < ?)
            """, (month.isoformat(), tenant_id, month.isoformat())).rowcount
            conn.commit()
            return daily + monthly
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_usage(
        self,
        tenant_id: str,
        scope: str = TENANT_SCOPE,
        today: Optional[date] = None
    ) -> UsageCounters:
        """Current counters for a (tenant, scope) row, after resetting stale windows.

        Returns zeroed counters when the row does not exist yet.
        """
        self.reset_stale_windows(tenant_id, today)
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM tenant_usage WHERE tenant_id = ? AND scope = ?",
                (tenant_id, scope)
            ).fetchone()
            if row is None:
                return UsageCounters(tenant_id=tenant_id, scope=scope)
            return _row_to_usage(row)
        finally:
            conn.close()

    def set_usage(self, counters: UsageCounters) -> None:
        """Overwrite a usage row. Used to reconcile counters from the ledger."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT OR REPLACE INTO tenant_usage ({_USAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                counters.tenant_id,
                counters.scope,
                to_micros(counters.daily_cost_spent),
                to_micros(counters.monthly_cost_spent),
                counters.daily_tokens_used,
                counters.monthly_tokens_used,
                counters.daily_executions_count,
                counters.monthly_executions_count,
                counters.daily_error_count,
                counters.monthly_error_count,
                counters.daily_reset_date.isoformat() if counters.daily_reset_date else None,
                counters.monthly_reset_date.isoformat() if counters.monthly_reset_date else None
            ))
            conn.commit()
        finally:
            conn.close()


class TenantBudgetRepository:
    """Persisted per-tenant budget overrides."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def save_tenant_budget(self, record: TenantBudgetRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO tenant_budget
                (tenant_id, enforcement, global_daily_cost, global_monthly_cost,
                 per_agent_daily_cost, per_agent_monthly_cost, daily_tokens,
                 monthly_tokens, daily_executions, monthly_executions)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.tenant_id,
                record.enforcement,
                record.global_daily_cost,
                record.global_monthly_cost,
                json.dumps(record.per_agent_daily_cost),
                json.dumps(record.per_agent_monthly_cost),
                record.daily_tokens,
                record.monthly_tokens,
                record.daily_executions,
                record.monthly_executions
            ))
            conn.commit()
        finally:
            conn.close()

    def find_tenant_budget(self, tenant_id: str) -> Optional[TenantBudgetRecord]:
        """Look up a tenant's budget record.

        Returns:
            The record, or None when the tenant has no override
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT tenant_id, enforcement, global_daily_cost, global_monthly_cost,
                       per_agent_daily_cost, per_agent_monthly_cost, daily_tokens,
                       monthly_tokens, daily_executions, monthly_executions
                FROM tenant_budget WHERE tenant_id = ?
            """, (tenant_id,)).fetchone()
            if row is None:
                return None
            return TenantBudgetRecord(
                tenant_id=row[0],
                enforcement=row[1],
                global_daily_cost=row[2],
                global_monthly_cost=row[3],
                per_agent_daily_cost=json.loads(row[4]),
                per_agent_monthly_cost=json.loads(row[5]),
                daily_tokens=row[6],
                monthly_tokens=row[7],
                daily_executions=row[8],
                monthly_executions=row[9]
            )
        finally:
            conn.close()

    def delete_tenant_budget(self, tenant_id: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM tenant_budget WHERE tenant_id = ?", (tenant_id,))
            conn.commit()
        finally:
            conn.close()
