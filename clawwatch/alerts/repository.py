"""Alert repository for rules, alerts, channels, and budgets.

Follows the ActivityRepository pattern with asyncpg. The only write that
needs a transaction is ``fire_rule``: claiming a rule's cooldown and
inserting its alert must succeed or fail together.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from clawwatch.alerts.schemas import Alert, AlertRule, ChannelConfig, RuleConfig
from clawwatch.observability.metrics import get_metrics
from clawwatch.storage.database import Database

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS alert_rules (
    rule_id           TEXT PRIMARY KEY,
    name              TEXT NOT NULL,
    type              TEXT NOT NULL,
    config            JSONB NOT NULL DEFAULT '{}',
    channels          TEXT[] NOT NULL DEFAULT '{discord}',
    severity          TEXT NOT NULL,
    cooldown_minutes  DOUBLE PRECISION NOT NULL DEFAULT 60,
    is_active         BOOLEAN NOT NULL DEFAULT TRUE,
    last_triggered_at TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS alerts (
    alert_id              TEXT PRIMARY KEY,
    rule_id               TEXT REFERENCES alert_rules(rule_id) ON DELETE SET NULL,
    type                  TEXT,
    severity              TEXT NOT NULL,
    title                 TEXT NOT NULL,
    message               TEXT NOT NULL,
    channels              TEXT[] NOT NULL DEFAULT '{}',
    trigger_data          JSONB NOT NULL DEFAULT '{}',
    created_at            TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    acknowledged_at       TIMESTAMPTZ,
    resolved_at           TIMESTAMPTZ,
    notification_attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at       TIMESTAMPTZ,
    last_error            TEXT,
    notified_at           TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_alerts_pending
    ON alerts(next_attempt_at NULLS FIRST, created_at)
    WHERE notified_at IS NULL AND resolved_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts(created_at DESC);

CREATE TABLE IF NOT EXISTS notification_channels (
    channel_id  TEXT PRIMARY KEY,
    type        TEXT NOT NULL,
    name        TEXT NOT NULL,
    webhook_url TEXT,
    severities  TEXT[],
    is_active   BOOLEAN NOT NULL DEFAULT TRUE,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS budgets (
    budget_id     TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    limit_dollars DOUBLE PRECISION NOT NULL,
    period        TEXT NOT NULL DEFAULT 'monthly'
                  CHECK (period IN ('daily', 'weekly', 'monthly')),
    agent_id      TEXT,
    is_active     BOOLEAN NOT NULL DEFAULT TRUE,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_INSERT_ALERT_SQL = """
    INSERT INTO alerts (
        alert_id, rule_id, type, severity, title, message,
        channels, trigger_data, created_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    RETURNING *
"""

# Claims the cooldown only if it has expired; zero rows means another
# evaluator got there first.
_CLAIM_RULE_SQL = """
    UPDATE alert_rules SET last_triggered_at = $2
    WHERE rule_id = $1
      AND is_active = TRUE
      AND (last_triggered_at IS NULL
           OR last_triggered_at + cooldown_minutes * INTERVAL '1 minute' <= $2)
    RETURNING rule_id
"""

_RULE_COLUMNS = {
    "name",
    "type",
    "config",
    "channels",
    "severity",
    "cooldown_minutes",
    "is_active",
}

_VALID_BUDGET_PERIODS = frozenset({"daily", "weekly", "monthly"})


class AlertRepository:
    """Repository for alert rules, alerts, and notification channels."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_tables(self) -> None:
        """Create alerting tables and indexes (idempotent)."""
        await self._db.execute(_CREATE_TABLES_SQL)
        logger.info("Alert tables ensured")

    # -- Rules -----------------------------------------------------------

    async def list_rules(self, active_only: bool = True) -> list[AlertRule]:
        sql = "SELECT * FROM alert_rules"
        if active_only:
            sql += " WHERE is_active = TRUE"
        sql += " ORDER BY created_at"
        rows = await self._db.fetch(sql)
        return _convert_rows(rows, _row_to_rule, "alert_rules", "rule_id")

    async def get_rule(self, rule_id: str) -> AlertRule | None:
        row = await self._db.fetchrow(
            "SELECT * FROM alert_rules WHERE rule_id = $1", rule_id,
        )
        return _row_to_rule(row) if row is not None else None

    async def create_rule(self, rule: AlertRule) -> AlertRule:
        """Insert a new rule.

        Args:
            rule: Rule to persist.

        Returns:
            The stored rule.
        """
        sql = """
            INSERT INTO alert_rules (
                rule_id, name, type, config, channels, severity,
                cooldown_minutes, is_active, last_triggered_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
        """
        row = await self._db.fetchrow(
            sql,
            rule.rule_id,
            rule.name,
            rule.type,
            json.dumps(rule.config.to_dict()),
            list(rule.channels),
            rule.severity,
            rule.cooldown_minutes,
            rule.is_active,
            rule.last_triggered_at,
        )
        return _row_to_rule(row)

    async def update_rule(self, rule_id: str, **changes: Any) -> AlertRule | None:
        """Update selected columns of a rule.

        Uses dynamic SQL builder with incremental param_idx.

        Args:
            rule_id: Rule to update.
            **changes: Column values; ``config`` may be a RuleConfig or dict.

        Returns:
            Updated rule, or None if not found.

        Raises:
            ValueError: If an unknown column is given.
        """
        unknown = set(changes) - _RULE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update rule columns: {sorted(unknown)}")
        if not changes:
            return await self.get_rule(rule_id)

        assignments: list[str] = []
        params: list[Any] = []
        param_idx = 1
        for column, value in changes.items():
            if column == "config":
                if isinstance(value, RuleConfig):
                    value = value.to_dict()
                value = json.dumps(value)
            elif column == "channels":
                value = list(value)
            assignments.append(f"{column} = ${param_idx}")
            params.append(value)
            param_idx += 1

        sql = f"""
            UPDATE alert_rules SET {", ".join(assignments)}
            WHERE rule_id = ${param_idx}
            RETURNING *
        """
        params.append(rule_id)
        row = await self._db.fetchrow(sql, *params)
        return _row_to_rule(row) if row is not None else None

    async def fire_rule(
        self,
        rule: AlertRule,
        alert: Alert,
        now: datetime,
    ) -> Alert | None:
        """Atomically start the rule's cooldown and store its alert.

        Args:
            rule: Rule whose condition was met.
            alert: Alert built from the condition.
            now: Evaluation time; becomes ``last_triggered_at``.

        Returns:
            The stored alert, or None when the rule is inactive or still
            cooling down in the database (another evaluator fired it).
        """
        async with self._db.transaction() as conn:
            claimed = await conn.fetchval(_CLAIM_RULE_SQL, rule.rule_id, now)
            if claimed is None:
                return None
            row = await conn.fetchrow(
                _INSERT_ALERT_SQL,
                alert.alert_id,
                rule.rule_id,
                alert.type,
                alert.severity,
                alert.title,
                alert.message,
                list(alert.channels),
                json.dumps(alert.trigger_data),
                alert.created_at,
            )
        rule.last_triggered_at = now
        return _row_to_alert(row)

    # -- Alerts ----------------------------------------------------------

    async def insert_alert(self, alert: Alert) -> Alert:
        """Insert an alert that is not tied to a rule cooldown."""
        row = await self._db.fetchrow(
            _INSERT_ALERT_SQL,
            alert.alert_id,
            alert.rule_id,
            alert.type,
            alert.severity,
            alert.title,
            alert.message,
            list(alert.channels),
            json.dumps(alert.trigger_data),
            alert.created_at,
        )
        return _row_to_alert(row)

    async def get_alert(self, alert_id: str) -> Alert | None:
        row = await self._db.fetchrow(
            "SELECT * FROM alerts WHERE alert_id = $1", alert_id,
        )
        return _row_to_alert(row) if row is not None else None

    async def list_pending_alerts(self, now: datetime, limit: int = 100) -> list[Alert]:
        """Unresolved, undelivered alerts whose next attempt is due.

        Args:
            now: Current time.
            limit: Page size.

        Returns:
            Alerts ordered oldest first.
        """
        sql = """
            SELECT * FROM alerts
            WHERE notified_at IS NULL
              AND resolved_at IS NULL
              AND (next_attempt_at IS NULL OR next_attempt_at <= $1)
            ORDER BY created_at
            LIMIT $2
        """
        rows = await self._db.fetch(sql, now, limit)
        return _convert_rows(rows, _row_to_alert, "alerts", "alert_id")

    async def list_retrying(self, limit: int = 50) -> list[Alert]:
        """Undelivered alerts with at least one failed attempt."""
        sql = """
            SELECT * FROM alerts
            WHERE notified_at IS NULL
              AND resolved_at IS NULL
              AND notification_attempts > 0
            ORDER BY next_attempt_at NULLS FIRST
            LIMIT $1
        """
        rows = await self._db.fetch(sql, limit)
        return _convert_rows(rows, _row_to_alert, "alerts", "alert_id")

    async def mark_alert_attempt(
        self,
        alert_id: str,
        success: bool,
        now: datetime,
        error: str | None = None,
        next_attempt_at: datetime | None = None,
    ) -> bool:
        """Record the outcome of one delivery attempt.

        Args:
            alert_id: Alert that was attempted.
            success: Whether delivery completed.
            now: Attempt time (stored as ``notified_at`` on success).
            error: Failure message, required on failure.
            next_attempt_at: Retry time, required on failure.

        Returns:
            True if the alert was still undelivered and got updated.
        """
        if success:
            return await self.mark_notified(alert_id, now)
        if next_attempt_at is None:
            raise ValueError("next_attempt_at is required for a failed attempt")
        return await self.record_failed_attempt(alert_id, error or "unknown error", next_attempt_at)

    async def mark_notified(self, alert_id: str, now: datetime) -> bool:
        """Record that delivery completed (or had no target)."""
        sql = """
            UPDATE alerts SET notified_at = $2, next_attempt_at = NULL
            WHERE alert_id = $1 AND notified_at IS NULL
            RETURNING alert_id
        """
        return await self._db.fetchval(sql, alert_id, now) is not None

    async def record_failed_attempt(
        self,
        alert_id: str,
        error: str,
        next_attempt_at: datetime,
    ) -> bool:
        """Bump the attempt counter and schedule the next delivery attempt."""
        sql = """
            UPDATE alerts
            SET notification_attempts = notification_attempts + 1,
                last_error = $2,
                next_attempt_at = $3
            WHERE alert_id = $1 AND notified_at IS NULL
            RETURNING alert_id
        """
        return await self._db.fetchval(sql, alert_id, error, next_attempt_at) is not None

    async def acknowledge(self, alert_id: str, now: datetime) -> bool:
        """Mark an alert as acknowledged.

        Returns:
            True if updated, False if not found or already acknowledged.
        """
        sql = """
            UPDATE alerts SET acknowledged_at = $2
            WHERE alert_id = $1 AND acknowledged_at IS NULL
            RETURNING alert_id
        """
        return await self._db.fetchval(sql, alert_id, now) is not None

    async def resolve(self, alert_id: str, now: datetime) -> bool:
        """Resolve an alert; resolved alerts are never delivered again."""
        sql = """
            UPDATE alerts SET resolved_at = $2, next_attempt_at = NULL
            WHERE alert_id = $1 AND resolved_at IS NULL
            RETURNING alert_id
        """
        return await self._db.fetchval(sql, alert_id, now) is not None

    # -- Channels and budgets --------------------------------------------

    async def list_active_channels(self) -> list[ChannelConfig]:
        rows = await self._db.fetch(
            "SELECT * FROM notification_channels WHERE is_active = TRUE ORDER BY created_at",
        )
        return _convert_rows(rows, _row_to_channel, "notification_channels", "channel_id")

    async def create_channel(self, channel: ChannelConfig) -> ChannelConfig:
        sql = """
            INSERT INTO notification_channels (
                channel_id, type, name, webhook_url, severities, is_active
            ) VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
        """
        row = await self._db.fetchrow(
            sql,
            channel.channel_id,
            channel.type,
            channel.name,
            channel.webhook_url,
            list(channel.severities) if channel.severities is not None else None,
            channel.is_active,
        )
        return _row_to_channel(row)

    async def create_budget(
        self,
        budget_id: str,
        name: str,
        limit_dollars: float,
        period: str = "monthly",
        agent_id: str | None = None,
    ) -> str:
        """Insert a spending budget.

        Raises:
            ValueError: For an unknown period or non-positive limit.
        """
        if period not in _VALID_BUDGET_PERIODS:
            raise ValueError(
                f"Invalid period {period!r}. Must be one of: {sorted(_VALID_BUDGET_PERIODS)}"
            )
        if limit_dollars <= 0:
            raise ValueError("limit_dollars must be positive")

        sql = """
            INSERT INTO budgets (budget_id, name, limit_dollars, period, agent_id)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING budget_id
        """
        return await self._db.fetchval(sql, budget_id, name, limit_dollars, period, agent_id)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_rule(row: Any) -> AlertRule:
    """Convert an asyncpg Record to an AlertRule."""
    return AlertRule(
        rule_id=row["rule_id"],
        name=row["name"],
        type=row["type"],
        config=RuleConfig.from_dict(_load_json(row["config"])),
        channels=list(row["channels"] or []),
        severity=row["severity"],
        cooldown_minutes=float(row["cooldown_minutes"]),
        is_active=row["is_active"],
        last_triggered_at=row["last_triggered_at"],
    )


def _row_to_alert(row: Any) -> Alert:
    """Convert an asyncpg Record to an Alert."""
    data = dict(row)
    data["trigger_data"] = _load_json(data.get("trigger_data")) or {}
    return Alert.from_dict(data)


def _row_to_channel(row: Any) -> ChannelConfig:
    severities = row["severities"]
    return ChannelConfig(
        channel_id=row["channel_id"],
        type=row["type"],
        name=row["name"],
        webhook_url=row["webhook_url"],
        severities=tuple(severities) if severities else None,
        is_active=row["is_active"],
    )


T = TypeVar("T")

# Raised by schema validation and JSON decoding of a malformed row
_ROW_ERRORS = (ValueError, TypeError, KeyError, AttributeError)


def _convert_rows(
    rows: list[Any],
    convert: Callable[[Any], T],
    table: str,
    key: str,
) -> list[T]:
    """Convert rows one at a time, skipping any that fail validation."""
    converted: list[T] = []
    for row in rows:
        try:
            converted.append(convert(row))
        except _ROW_ERRORS as e:
            get_metrics().invalid_rows.labels(table=table).inc()
            logger.warning("Skipping invalid %s row %s: %s", table, row.get(key), e)
    return converted
