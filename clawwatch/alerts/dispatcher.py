"""Notification dispatcher delivering pending alerts to their channels.

Each cycle pages through undelivered alerts whose next attempt is due,
matches them to active channels, and records the outcome on the alert
itself. There is no attempt limit: a failing alert is retried with
exponential backoff until it is delivered or resolved, and its attempt
count and last error stay visible to operators.

Pattern: Orchestrator, delegates to stateless transports in ``channels.py``.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from clawwatch.alerts.channels import NotificationChannel, default_transports
from clawwatch.alerts.repository import AlertRepository
from clawwatch.alerts.schemas import DEFAULT_CHANNEL_SEVERITIES, Alert, ChannelConfig
from clawwatch.observability.metrics import get_metrics
from clawwatch.services.backoff import compute_retry_delay

logger = logging.getLogger(__name__)


class NotificationConfig(BaseSettings):
    """Configuration for notification dispatch."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFICATIONS_",
        case_sensitive=False,
        extra="ignore",
    )

    dispatch_interval_seconds: float = Field(
        default=15.0,
        gt=0.0,
        description="Seconds between dispatch cycles",
    )
    page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum pending alerts handled per cycle",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Per-request HTTP timeout for channel webhooks",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Alerts delivered concurrently within one cycle",
    )
    backoff_base_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Delay after the first failed attempt",
    )
    backoff_max_seconds: float = Field(
        default=1800.0,
        gt=0.0,
        description="Upper bound on the delay between attempts",
    )
    default_severities: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CHANNEL_SEVERITIES),
        min_length=1,
        description="Severities accepted by channels that do not list their own",
    )
    username: str = Field(
        default="ClawWatch",
        description="Sender name shown on Discord messages",
    )


@dataclass
class DispatchSummary:
    """Outcome counts of one dispatch cycle."""

    checked: int = 0
    delivered: int = 0
    retried: int = 0
    no_target: int = 0
    errors: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    """Delivers pending alerts and schedules retries for failed ones."""

    def __init__(
        self,
        alert_repo: AlertRepository,
        transports: dict[str, NotificationChannel] | None = None,
        config: NotificationConfig | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._config = config or NotificationConfig()
        self._alert_repo = alert_repo
        self._transports = transports if transports is not None else default_transports(
            timeout=self._config.request_timeout_seconds,
            username=self._config.username,
        )
        self._clock = clock
        self._metrics = get_metrics()

    @property
    def transports(self) -> dict[str, NotificationChannel]:
        return self._transports

    def retry_delay(self, attempt: int) -> timedelta:
        """Delay before attempt ``attempt + 1`` after ``attempt`` failures."""
        seconds = compute_retry_delay(
            attempt,
            base_delay=self._config.backoff_base_seconds,
            max_delay=self._config.backoff_max_seconds,
        )
        return timedelta(seconds=seconds)

    def match_channels(
        self,
        alert: Alert,
        channels: list[ChannelConfig],
    ) -> list[ChannelConfig]:
        """Channels an alert should be delivered to.

        A channel matches when it is active, its type is listed on the
        alert, a transport is registered for the type, it has an endpoint,
        and it accepts the alert's severity.
        """
        wanted = set(alert.channels)
        targets = []
        for channel in channels:
            if not channel.is_active or channel.type not in wanted:
                continue
            if channel.type not in self._transports or not channel.webhook_url:
                continue
            if channel.accepts(alert.severity, self._config.default_severities):
                targets.append(channel)
        return targets

    async def run_cycle(self, now: datetime | None = None) -> DispatchSummary:
        """Attempt delivery of every due alert once.

        Alerts of the page are delivered concurrently (bounded by
        ``max_concurrent_deliveries``), so a slow channel does not hold back
        alerts bound for healthy ones. Failures are isolated per alert.

        Args:
            now: Cycle time (defaults to the clock).

        Returns:
            Counts of checked, delivered, retried, and no-target alerts.
        """
        now = now or self._clock()
        summary = DispatchSummary()

        pending = await self._alert_repo.list_pending_alerts(
            now=now, limit=self._config.page_size,
        )
        if not pending:
            return summary

        channels = await self._alert_repo.list_active_channels()
        summary.checked = len(pending)

        semaphore = asyncio.Semaphore(self._config.max_concurrent_deliveries)

        async def attempt(alert: Alert) -> str:
            async with semaphore:
                try:
                    return await self.dispatch(alert, channels, now)
                except Exception as e:
                    logger.error(
                        "Unexpected error dispatching alert %s: %s", alert.alert_id, e,
                    )
                    return "error"

        outcomes = await asyncio.gather(*(attempt(alert) for alert in pending))
        for outcome in outcomes:
            if outcome == "error":
                summary.errors += 1
            elif outcome == "delivered":
                summary.delivered += 1
            elif outcome == "retried":
                summary.retried += 1
            else:
                summary.no_target += 1

        logger.info(
            "Dispatch cycle: checked=%d delivered=%d retried=%d no_target=%d",
            summary.checked, summary.delivered, summary.retried, summary.no_target,
        )
        return summary

    async def dispatch(
        self,
        alert: Alert,
        channels: list[ChannelConfig],
        now: datetime,
    ) -> str:
        """Deliver one alert to all of its target channels.

        Targets are posted concurrently; any failing target fails the whole
        attempt and schedules a retry to every target.

        Args:
            alert: Pending alert.
            channels: Active channel configurations.
            now: Attempt time.

        Returns:
            ``delivered``, ``retried``, or ``no_target``.
        """
        targets = self.match_channels(alert, channels)
        if not targets:
            await self._alert_repo.mark_alert_attempt(alert.alert_id, True, now)
            self._metrics.record_notification("no_target")
            logger.debug("Alert %s has no matching channel, marked sent", alert.alert_id)
            return "no_target"

        start = time.monotonic()
        results = await asyncio.gather(
            *(self._transports[channel.type].send(channel, alert) for channel in targets),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            first = failures[0]
            error = str(first) or type(first).__name__
            attempts = alert.notification_attempts + 1
            next_attempt_at = now + self.retry_delay(attempts)
            await self._alert_repo.mark_alert_attempt(
                alert.alert_id,
                False,
                now,
                error=error,
                next_attempt_at=next_attempt_at,
            )
            self._metrics.record_notification("failed", time.monotonic() - start)
            logger.warning(
                "Delivery of alert %s failed (attempt %d), retry at %s: %s",
                alert.alert_id, attempts, next_attempt_at.isoformat(), error,
            )
            return "retried"

        await self._alert_repo.mark_alert_attempt(alert.alert_id, True, now)
        self._metrics.record_notification("delivered", time.monotonic() - start)
        logger.info(
            "Delivered alert %s to %d channel(s)", alert.alert_id, len(targets),
        )
        return "delivered"
