"""Read-side queries that feed rule evaluation.

Each method returns a plain snapshot (numbers, dicts, dataclasses) that the
stateless functions in ``triggers.py`` can judge without further I/O.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from clawwatch.alerts.schemas import BudgetStatus
from clawwatch.storage.database import Database

logger = logging.getLogger(__name__)

_COST_SUM_SQL = """
    SELECT COALESCE(SUM(cost), 0) FROM activity_records
    WHERE kind = 'cost' AND timestamp >= $1
"""

_METRIC_SQL: dict[str, str] = {
    "total_cost": _COST_SUM_SQL,
    "cost_per_hour": _COST_SUM_SQL,
    "total_tokens": """
        SELECT COALESCE(SUM(input_tokens + output_tokens
                            + cache_read_tokens + cache_write_tokens), 0)
        FROM activity_records
        WHERE kind = 'cost' AND timestamp >= $1
    """,
    "request_count": """
        SELECT COUNT(*) FROM activity_records
        WHERE kind = 'cost' AND timestamp >= $1
    """,
    "error_count": """
        SELECT COUNT(*) FROM activity_records
        WHERE kind = 'error' AND timestamp >= $1
    """,
}

SUPPORTED_METRICS: frozenset[str] = frozenset(_METRIC_SQL)

_BUDGET_SPEND_SQL = """
    SELECT b.budget_id, b.name, b.limit_dollars,
           COALESCE(SUM(a.cost), 0) AS current_spend
    FROM budgets b
    LEFT JOIN activity_records a
        ON a.kind = 'cost'
        AND a.timestamp >= date_trunc(
            CASE b.period WHEN 'daily' THEN 'day'
                          WHEN 'weekly' THEN 'week'
                          ELSE 'month' END,
            $1::timestamptz)
        AND (b.agent_id IS NULL OR a.agent_id = b.agent_id)
    WHERE b.is_active = TRUE
    GROUP BY b.budget_id, b.name, b.limit_dollars
"""


class SnapshotRepository:
    """Aggregates over activity records and budgets for the rule evaluator."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def metric_value(
        self,
        metric: str,
        window_minutes: float,
        now: datetime,
    ) -> float | None:
        """
        Evaluate a named metric over the trailing window.

        Args:
            metric: One of SUPPORTED_METRICS.
            window_minutes: Window length.
            now: End of the window.

        Returns:
            Metric value, or None for an unknown metric.
        """
        sql = _METRIC_SQL.get(metric)
        if sql is None:
            logger.warning("Unknown metric %r", metric)
            return None

        since = now - timedelta(minutes=window_minutes)
        value = float(await self._db.fetchval(sql, since) or 0)
        if metric == "cost_per_hour":
            value = value / (window_minutes / 60.0)
        return value

    async def error_count(self, since: datetime) -> int:
        count = await self._db.fetchval(_METRIC_SQL["error_count"], since)
        return int(count or 0)

    async def last_activity_by_agent(self, since: datetime) -> dict[str, datetime]:
        """Most recent record of any kind per agent seen since ``since``."""
        rows = await self._db.fetch(
            """
            SELECT agent_id, MAX(timestamp) AS last_seen
            FROM activity_records
            WHERE timestamp >= $1
            GROUP BY agent_id
            """,
            since,
        )
        return {row["agent_id"]: row["last_seen"] for row in rows}

    async def session_tokens(self, since: datetime) -> dict[str, int]:
        """Total tokens per session since ``since``."""
        rows = await self._db.fetch(
            """
            SELECT session_key,
                   SUM(input_tokens + output_tokens
                       + cache_read_tokens + cache_write_tokens) AS tokens
            FROM activity_records
            WHERE kind = 'cost' AND session_key IS NOT NULL AND timestamp >= $1
            GROUP BY session_key
            """,
            since,
        )
        return {row["session_key"]: int(row["tokens"] or 0) for row in rows}

    async def last_message_by_channel(self, since: datetime) -> dict[str, datetime]:
        """Most recent message record per channel seen since ``since``."""
        rows = await self._db.fetch(
            """
            SELECT channel, MAX(timestamp) AS last_seen
            FROM activity_records
            WHERE kind = 'message' AND channel IS NOT NULL AND timestamp >= $1
            GROUP BY channel
            """,
            since,
        )
        return {row["channel"]: row["last_seen"] for row in rows}

    async def budget_statuses(self, now: datetime) -> list[BudgetStatus]:
        """Current-period spend of every active budget."""
        rows = await self._db.fetch(_BUDGET_SPEND_SQL, now)
        return [_row_to_budget(row) for row in rows]


def _row_to_budget(row: Any) -> BudgetStatus:
    return BudgetStatus(
        budget_id=row["budget_id"],
        name=row["name"],
        limit_dollars=float(row["limit_dollars"]),
        current_spend=float(row["current_spend"]),
    )
