"""Stateless condition functions for alert rules.

Each function checks one rule type against a pre-fetched snapshot and
returns an unsaved Alert if the condition holds, or None otherwise. No I/O,
no state: cooldown, locking, and persistence live in RuleEvaluator.
"""

from datetime import datetime, timedelta

from clawwatch.alerts.schemas import (
    VALID_COMPARISONS,
    Alert,
    AlertRule,
    BudgetStatus,
)

# Config fields a rule must carry before its condition can be judged
REQUIRED_CONFIG: dict[str, tuple[str, ...]] = {
    "custom_threshold": ("threshold", "metric"),
    "budget_exceeded": ("threshold",),
    "agent_offline": ("window_minutes",),
    "error_spike": ("threshold", "window_minutes"),
    "session_loop": (),
    "channel_disconnect": ("window_minutes",),
}

_EQ_TOLERANCE = 1e-9


def missing_config(rule: AlertRule) -> list[str]:
    """Names of required config fields the rule lacks.

    Unknown rule types have no requirements; they are rejected elsewhere.
    """
    required = REQUIRED_CONFIG.get(rule.type, ())
    return [name for name in required if getattr(rule.config, name) is None]


def compare(value: float, threshold: float, comparison: str | None) -> bool:
    """Apply a gt/lt/eq comparison (gt when unspecified).

    Raises:
        ValueError: For an unknown comparison operator.
    """
    comparison = comparison or "gt"
    if comparison not in VALID_COMPARISONS:
        raise ValueError(f"Invalid comparison {comparison!r}")
    if comparison == "gt":
        return value > threshold
    if comparison == "lt":
        return value < threshold
    return abs(value - threshold) <= _EQ_TOLERANCE


def _alert(rule: AlertRule, title: str, message: str, **trigger_data) -> Alert:
    return Alert(
        severity=rule.severity,
        title=title,
        message=message,
        channels=list(rule.channels),
        rule_id=rule.rule_id,
        type=rule.type,
        trigger_data=trigger_data,
    )


def _fmt_minutes(minutes: float) -> str:
    return f"{minutes:g}m"


def check_custom_threshold(rule: AlertRule, value: float | None) -> Alert | None:
    """Compare a named metric against the rule threshold.

    Args:
        rule: Rule with ``metric`` and ``threshold`` set.
        value: Metric value over the rule window (None if unavailable).

    Returns:
        Alert or None.
    """
    cfg = rule.config
    if value is None or cfg.threshold is None:
        return None
    if cfg.comparison is not None and cfg.comparison not in VALID_COMPARISONS:
        return None
    if not compare(value, cfg.threshold, cfg.comparison):
        return None

    op = {"gt": ">", "lt": "<", "eq": "="}[cfg.comparison or "gt"]
    return _alert(
        rule,
        title=f"{rule.name}: {cfg.metric} {op} {cfg.threshold:g}",
        message=f"Metric {cfg.metric} is {value:.4g} ({op} threshold {cfg.threshold:g})",
        metric=cfg.metric,
        value=round(value, 6),
        threshold=cfg.threshold,
        comparison=cfg.comparison or "gt",
    )


def check_budget_exceeded(
    rule: AlertRule,
    budgets: list[BudgetStatus],
) -> Alert | None:
    """Fire when any active budget reaches ``threshold`` percent of its limit.

    Args:
        rule: Rule whose threshold is a percentage (100 = fully spent).
        budgets: Current-period spend per active budget.

    Returns:
        Alert naming the most over-spent budget, or None.
    """
    threshold = rule.config.threshold
    if threshold is None:
        return None

    over = [b for b in budgets if b.limit_dollars > 0 and b.percent_used >= threshold]
    if not over:
        return None

    worst = max(over, key=lambda b: b.percent_used)
    return _alert(
        rule,
        title=f"Budget exceeded: {worst.name}",
        message=(
            f"Budget '{worst.name}' is at {worst.percent_used:.0f}% "
            f"(${worst.current_spend:.2f} of ${worst.limit_dollars:.2f})"
        ),
        budgets=[b.budget_id for b in over],
        percent_used=round(worst.percent_used, 2),
    )


def check_agent_offline(
    rule: AlertRule,
    last_seen: dict[str, datetime],
    now: datetime,
) -> Alert | None:
    """Fire when a known agent sent nothing within the window.

    Args:
        rule: Rule with ``window_minutes`` set.
        last_seen: Most recent activity per agent.
        now: Evaluation time.

    Returns:
        Alert or None.
    """
    window = rule.config.window_minutes
    if window is None:
        return None

    cutoff = now - timedelta(minutes=window)
    offline = sorted(agent for agent, seen in last_seen.items() if seen < cutoff)
    if not offline:
        return None

    return _alert(
        rule,
        title=f"Agent offline: {', '.join(offline)}",
        message=f"No activity from {len(offline)} agent(s) in the last {_fmt_minutes(window)}",
        agents=offline,
    )


def check_error_spike(rule: AlertRule, error_count: int) -> Alert | None:
    """Fire when errors within the window exceed the threshold."""
    cfg = rule.config
    if cfg.threshold is None or cfg.window_minutes is None:
        return None
    if error_count <= cfg.threshold:
        return None

    return _alert(
        rule,
        title=f"Error spike: {error_count} errors",
        message=(
            f"{error_count} errors in the last {_fmt_minutes(cfg.window_minutes)} "
            f"(threshold {cfg.threshold:g})"
        ),
        error_count=error_count,
    )


def check_session_loop(
    rule: AlertRule,
    session_tokens: dict[str, int],
    token_threshold: float,
) -> Alert | None:
    """Fire when a session burns more tokens than the threshold in the window.

    Args:
        rule: Rule; its own threshold overrides ``token_threshold``.
        session_tokens: Tokens per session within the window.
        token_threshold: Default threshold from configuration.

    Returns:
        Alert naming the heaviest session, or None.
    """
    threshold = rule.config.threshold if rule.config.threshold is not None else token_threshold
    looping = {key: tokens for key, tokens in session_tokens.items() if tokens >= threshold}
    if not looping:
        return None

    session_key, tokens = max(looping.items(), key=lambda item: item[1])
    return _alert(
        rule,
        title=f"Possible session loop: {session_key}",
        message=f"Session {session_key} used {tokens:,} tokens (threshold {threshold:,.0f})",
        sessions=sorted(looping),
        tokens=tokens,
    )


def check_channel_disconnect(
    rule: AlertRule,
    last_seen: dict[str, datetime],
    now: datetime,
) -> Alert | None:
    """Fire when a known channel carried no messages within the window."""
    window = rule.config.window_minutes
    if window is None:
        return None

    cutoff = now - timedelta(minutes=window)
    silent = sorted(channel for channel, seen in last_seen.items() if seen < cutoff)
    if not silent:
        return None

    return _alert(
        rule,
        title=f"Channel silent: {', '.join(silent)}",
        message=f"No messages on {len(silent)} channel(s) in the last {_fmt_minutes(window)}",
        channels=silent,
    )
