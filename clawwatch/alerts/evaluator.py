"""Rule evaluator: decides which alert rules fire.

Snapshot queries come from SnapshotRepository, condition logic from the
stateless functions in ``triggers.py``. This class adds the parts with side
effects: cooldown enforcement, per-rule serialisation, and persisting the
alert together with the rule's new ``last_triggered_at``.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from clawwatch.alerts.config import AlertConfig
from clawwatch.alerts.repository import AlertRepository
from clawwatch.alerts.schemas import VALID_RULE_TYPES, Alert, AlertRule
from clawwatch.alerts.snapshots import SnapshotRepository
from clawwatch.alerts.triggers import (
    check_agent_offline,
    check_budget_exceeded,
    check_channel_disconnect,
    check_custom_threshold,
    check_error_spike,
    check_session_loop,
    missing_config,
)
from clawwatch.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RuleEvaluator:
    """Evaluates active rules and fires those whose condition holds.

    A pass runs on a timer and can be woken early by ``notify_records``
    (wired as a batch flush listener). Each rule is evaluated under its own
    ``asyncio.Lock``; the repository's conditional update makes firing safe
    across processes too.
    """

    def __init__(
        self,
        alert_repo: AlertRepository,
        snapshots: SnapshotRepository,
        config: AlertConfig | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._alert_repo = alert_repo
        self._snapshots = snapshots
        self._config = config or AlertConfig()
        self._clock = clock
        self._rule_locks: dict[str, asyncio.Lock] = {}
        self._trigger = asyncio.Event()
        self._metrics = get_metrics()

    def _lock_for(self, rule_id: str) -> asyncio.Lock:
        lock = self._rule_locks.get(rule_id)
        if lock is None:
            lock = self._rule_locks[rule_id] = asyncio.Lock()
        return lock

    # -- Wake-ups ----------------------------------------------------------

    def notify_records(self, records: list) -> None:
        """Flush listener: request an evaluation pass soon."""
        if records:
            self._trigger.set()

    def wake(self) -> None:
        self._trigger.set()

    async def wait_for_trigger(self, timeout: float) -> bool:
        """Wait until woken or until ``timeout`` seconds pass.

        Returns:
            True if woken by new records, False on timeout.
        """
        try:
            await asyncio.wait_for(self._trigger.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            self._trigger.clear()
        return True

    # -- Evaluation --------------------------------------------------------

    async def evaluate_all(self, now: datetime | None = None) -> list[Alert]:
        """Evaluate every active rule once.

        A failure in one rule is logged and counted; the pass continues.

        Args:
            now: Evaluation time (defaults to the clock).

        Returns:
            Alerts created during this pass.
        """
        now = now or self._clock()
        rules = await self._alert_repo.list_rules(active_only=True)

        fired: list[Alert] = []
        for rule in rules:
            try:
                alert = await self.evaluate_rule(rule, now)
            except Exception as e:
                logger.error(
                    "Rule %s (%s) evaluation failed: %s", rule.rule_id, rule.type, e,
                )
                self._metrics.record_rule_evaluation(rule.type, "error")
                continue
            if alert is not None:
                fired.append(alert)

        if fired:
            logger.info("Evaluation pass: %d rules, %d fired", len(rules), len(fired))
        return fired

    async def evaluate_rule(self, rule: AlertRule, now: datetime) -> Alert | None:
        """Evaluate a single rule and fire it if its condition holds.

        Args:
            rule: Rule to evaluate (its ``last_triggered_at`` is updated
                in place when it fires).
            now: Evaluation time.

        Returns:
            The persisted Alert, or None when nothing fired.
        """
        async with self._lock_for(rule.rule_id):
            outcome, alert = await self._evaluate_locked(rule, now)
        self._metrics.record_rule_evaluation(rule.type, outcome)
        return alert

    async def _evaluate_locked(
        self,
        rule: AlertRule,
        now: datetime,
    ) -> tuple[str, Alert | None]:
        if not rule.is_active:
            return "inactive", None
        if rule.is_cooling_down(now):
            return "cooldown", None
        if rule.type not in VALID_RULE_TYPES:
            logger.warning("Rule %s has unknown type %r", rule.rule_id, rule.type)
            return "unknown_type", None

        missing = missing_config(rule)
        if missing:
            logger.warning(
                "Rule %s (%s) missing config %s", rule.rule_id, rule.type, missing,
            )
            return "invalid_config", None

        candidate = await self._check(rule, now)
        if candidate is None:
            return "not_met", None

        alert = await self._alert_repo.fire_rule(rule, candidate, now)
        if alert is None:
            # Another evaluator claimed the cooldown first
            return "cooldown", None

        logger.info(
            "Rule %s fired alert %s (%s): %s",
            rule.rule_id, alert.alert_id, alert.severity, alert.title,
        )
        return "fired", alert

    def _window(self, rule: AlertRule) -> float:
        return rule.config.window_minutes or self._config.default_window_minutes

    async def _check(self, rule: AlertRule, now: datetime) -> Alert | None:
        """Fetch the snapshot a rule type needs and run its condition."""
        lookback = now - timedelta(hours=self._config.activity_lookback_hours)

        if rule.type == "custom_threshold":
            value = await self._snapshots.metric_value(
                rule.config.metric, self._window(rule), now,
            )
            return check_custom_threshold(rule, value)

        if rule.type == "budget_exceeded":
            budgets = await self._snapshots.budget_statuses(now)
            return check_budget_exceeded(rule, budgets)

        if rule.type == "agent_offline":
            last_seen = await self._snapshots.last_activity_by_agent(lookback)
            return check_agent_offline(rule, last_seen, now)

        if rule.type == "error_spike":
            since = now - timedelta(minutes=rule.config.window_minutes)
            count = await self._snapshots.error_count(since)
            return check_error_spike(rule, count)

        if rule.type == "session_loop":
            since = now - timedelta(minutes=self._window(rule))
            tokens = await self._snapshots.session_tokens(since)
            return check_session_loop(
                rule, tokens, self._config.session_loop_token_threshold,
            )

        if rule.type == "channel_disconnect":
            last_seen = await self._snapshots.last_message_by_channel(lookback)
            return check_channel_disconnect(rule, last_seen, now)

        return None
