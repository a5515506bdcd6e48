"""Schema definitions for alert rules, alerts, channels, and budgets.

``AlertRule``, ``Alert`` and ``ChannelConfig`` map 1:1 to the
``alert_rules``, ``alerts`` and ``notification_channels`` tables. Rules are
written by operators and read by the evaluator; alerts are created by the
evaluator and carry their own delivery bookkeeping for the dispatcher.
"""

import json
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

AlertRuleType = Literal[
    "budget_exceeded",
    "agent_offline",
    "error_spike",
    "session_loop",
    "channel_disconnect",
    "custom_threshold",
]

VALID_RULE_TYPES: frozenset[str] = frozenset({
    "budget_exceeded",
    "agent_offline",
    "error_spike",
    "session_loop",
    "channel_disconnect",
    "custom_threshold",
})

AlertSeverity = Literal["critical", "warning", "info"]

VALID_SEVERITIES: frozenset[str] = frozenset({
    "critical",
    "warning",
    "info",
})

Comparison = Literal["gt", "lt", "eq"]

VALID_COMPARISONS: frozenset[str] = frozenset({"gt", "lt", "eq"})

# Channels without explicit severities receive these
DEFAULT_CHANNEL_SEVERITIES: tuple[str, ...] = ("warning", "critical")

DEFAULT_RULE_SEVERITY: dict[str, str] = {
    "budget_exceeded": "critical",
    "agent_offline": "critical",
    "error_spike": "warning",
    "session_loop": "critical",
    "channel_disconnect": "warning",
    "custom_threshold": "warning",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _optional_float(value: Any) -> float | None:
    """Lenient numeric parse: operator-entered config may be blank or junk."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RuleConfig:
    """Type-dependent rule parameters.

    Attributes:
        threshold: Numeric limit (meaning depends on rule type).
        window_minutes: Look-back window for windowed conditions.
        comparison: gt, lt, or eq for custom thresholds.
        metric: Named metric for custom thresholds.
    """

    threshold: float | None = None
    window_minutes: float | None = None
    comparison: str | None = None
    metric: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in {
                "threshold": self.threshold,
                "window_minutes": self.window_minutes,
                "comparison": self.comparison,
                "metric": self.metric,
            }.items()
            if value is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str | None) -> "RuleConfig":
        """Build from stored JSON, accepting camelCase keys from the dashboard."""
        if isinstance(data, str):
            data = json.loads(data)
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError(f"Rule config must be a JSON object, got {type(data).__name__}")
        window = data.get("window_minutes", data.get("windowMinutes"))
        comparison = data.get("comparison")
        metric = data.get("metric")
        return cls(
            threshold=_optional_float(data.get("threshold")),
            window_minutes=_optional_float(window),
            comparison=str(comparison) if comparison else None,
            metric=str(metric) if metric else None,
        )


@dataclass
class AlertRule:
    """An operator-defined alert rule.

    ``type`` is not validated against VALID_RULE_TYPES: rules written by a
    newer release stay loadable and simply never fire here.

    Attributes:
        rule_id: Identifier.
        name: Human-readable rule name.
        type: Condition type.
        config: Type-dependent parameters.
        channels: Channel types alerts from this rule should go to.
        severity: Severity of alerts created by this rule.
        cooldown_minutes: Minimum time between two firings.
        is_active: Disabled rules are never evaluated.
        last_triggered_at: When the rule last fired.
    """

    name: str
    type: str
    config: RuleConfig = field(default_factory=RuleConfig)
    channels: list[str] = field(default_factory=lambda: ["discord"])
    severity: str | None = None
    cooldown_minutes: float = 60.0
    is_active: bool = True
    last_triggered_at: datetime | None = None
    rule_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        if self.severity is None:
            self.severity = DEFAULT_RULE_SEVERITY.get(self.type, "warning")
        if self.severity not in VALID_SEVERITIES:
            raise ValueError(
                f"Invalid severity {self.severity!r}. "
                f"Must be one of: {sorted(VALID_SEVERITIES)}"
            )
        if self.cooldown_minutes < 0:
            raise ValueError("cooldown_minutes must be non-negative")

    def cooldown_ends_at(self) -> datetime | None:
        if self.last_triggered_at is None:
            return None
        return self.last_triggered_at + timedelta(minutes=self.cooldown_minutes)

    def is_cooling_down(self, now: datetime) -> bool:
        """True until ``now >= last_triggered_at + cooldown``."""
        ends_at = self.cooldown_ends_at()
        return ends_at is not None and now < ends_at


@dataclass
class Alert:
    """A persisted alert record from the alerts table.

    Attributes:
        alert_id: UUID4 identifier.
        severity: Urgency level (critical, warning, info).
        title: Short human-readable summary.
        message: Detailed description of the condition.
        channels: Channel types this alert should be delivered to.
        rule_id: Rule that created the alert, if any.
        type: Rule type that created the alert.
        trigger_data: JSONB payload with condition-specific context.
        created_at: When the alert was generated.
        acknowledged_at: When an operator acknowledged it.
        resolved_at: When an operator resolved it (terminal).
        notification_attempts: Failed delivery attempts so far.
        next_attempt_at: Earliest time of the next delivery attempt.
        last_error: Error from the most recent failed attempt.
        notified_at: When delivery completed (or was found unnecessary).
    """

    severity: str
    title: str
    message: str
    channels: list[str] = field(default_factory=list)
    rule_id: str | None = None
    type: str | None = None
    trigger_data: dict[str, Any] = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utc_now)
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None
    notification_attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    notified_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.severity not in VALID_SEVERITIES:
            raise ValueError(
                f"Invalid severity {self.severity!r}. "
                f"Must be one of: {sorted(VALID_SEVERITIES)}"
            )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def is_due(self, now: datetime) -> bool:
        """Whether the dispatcher should attempt delivery at ``now``."""
        if self.is_resolved or self.notified_at is not None:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""

        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "channels": list(self.channels),
            "trigger_data": self.trigger_data,
            "created_at": self.created_at.isoformat(),
            "acknowledged_at": iso(self.acknowledged_at),
            "resolved_at": iso(self.resolved_at),
            "notification_attempts": self.notification_attempts,
            "next_attempt_at": iso(self.next_attempt_at),
            "last_error": self.last_error,
            "notified_at": iso(self.notified_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        """Create an Alert from a dictionary (or a database row).

        Args:
            data: Mapping with alert fields.

        Returns:
            Alert instance.
        """
        trigger_data = data.get("trigger_data") or {}
        if isinstance(trigger_data, str):
            trigger_data = json.loads(trigger_data)

        return cls(
            alert_id=data.get("alert_id", str(uuid.uuid4())),
            rule_id=data.get("rule_id"),
            type=data.get("type"),
            severity=data["severity"],
            title=data["title"],
            message=data["message"],
            channels=list(data.get("channels") or []),
            trigger_data=trigger_data,
            created_at=_parse_dt(data.get("created_at")) or _utc_now(),
            acknowledged_at=_parse_dt(data.get("acknowledged_at")),
            resolved_at=_parse_dt(data.get("resolved_at")),
            notification_attempts=data.get("notification_attempts") or 0,
            next_attempt_at=_parse_dt(data.get("next_attempt_at")),
            last_error=data.get("last_error"),
            notified_at=_parse_dt(data.get("notified_at")),
        )


@dataclass
class ChannelConfig:
    """A configured notification destination.

    Attributes:
        channel_id: Identifier.
        type: Transport type (discord, webhook, slack).
        name: Display name.
        webhook_url: Endpoint the transport posts to.
        severities: Accepted severities; None means warning and critical.
        is_active: Inactive channels never receive alerts.
    """

    type: str
    name: str
    webhook_url: str | None = None
    severities: tuple[str, ...] | None = None
    is_active: bool = True
    channel_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        if self.severities is not None:
            severities = tuple(self.severities)
            if not severities:
                raise ValueError("severities must not be empty when provided")
            invalid = set(severities) - VALID_SEVERITIES
            if invalid:
                raise ValueError(
                    f"Invalid severities {sorted(invalid)}. "
                    f"Must be a subset of: {sorted(VALID_SEVERITIES)}"
                )
            self.severities = severities

    def accepted_severities(
        self, default: Sequence[str] = DEFAULT_CHANNEL_SEVERITIES,
    ) -> tuple[str, ...]:
        """Severities this channel receives; ``default`` applies when none are listed."""
        return self.severities or tuple(default)

    def accepts(
        self, severity: str, default: Sequence[str] = DEFAULT_CHANNEL_SEVERITIES,
    ) -> bool:
        return severity in self.accepted_severities(default)


@dataclass(frozen=True)
class BudgetStatus:
    """Spend of one active budget over its current period."""

    budget_id: str
    name: str
    limit_dollars: float
    current_spend: float

    @property
    def percent_used(self) -> float:
        if self.limit_dollars <= 0:
            return 0.0
        return self.current_spend / self.limit_dollars * 100.0
