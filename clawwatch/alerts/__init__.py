"""Alert rules, evaluation, and notification delivery.

Components:
- AlertRule / Alert / ChannelConfig / BudgetStatus: Dataclasses mapping to the alerting tables
- AlertConfig: Pydantic settings for evaluation cadence and defaults
- AlertRepository: Persistence for rules, alerts, channels, and budgets
- SnapshotRepository: Aggregate queries that feed rule conditions
- RuleEvaluator: Cooldown-aware, per-rule serialised rule firing
- NotificationChannel / WebhookChannel / DiscordChannel / SlackChannel: Transports
- NotificationConfig / NotificationDispatcher: Delivery with backoff retries
- VALID_RULE_TYPES / VALID_SEVERITIES: Frozensets for runtime validation
"""

from clawwatch.alerts.channels import (
    DeliveryError,
    DiscordChannel,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
)
from clawwatch.alerts.config import AlertConfig
from clawwatch.alerts.dispatcher import (
    DispatchSummary,
    NotificationConfig,
    NotificationDispatcher,
)
from clawwatch.alerts.evaluator import RuleEvaluator
from clawwatch.alerts.repository import AlertRepository
from clawwatch.alerts.schemas import (
    VALID_RULE_TYPES,
    VALID_SEVERITIES,
    Alert,
    AlertRule,
    AlertRuleType,
    AlertSeverity,
    BudgetStatus,
    ChannelConfig,
    RuleConfig,
)
from clawwatch.alerts.snapshots import SnapshotRepository

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertRepository",
    "AlertRule",
    "AlertRuleType",
    "AlertSeverity",
    "BudgetStatus",
    "ChannelConfig",
    "DeliveryError",
    "DiscordChannel",
    "DispatchSummary",
    "NotificationChannel",
    "NotificationConfig",
    "NotificationDispatcher",
    "RuleConfig",
    "RuleEvaluator",
    "SlackChannel",
    "SnapshotRepository",
    "VALID_RULE_TYPES",
    "VALID_SEVERITIES",
    "WebhookChannel",
]
