"""Notification transports for alert delivery.

Provides an ABC for notification transports plus concrete implementations
for generic webhooks, Discord, and Slack. A transport is stateless: the
endpoint comes from the ChannelConfig passed to ``send``, so one instance
serves every configured channel of its type.

Every failure (non-2xx response, timeout, connection error) is raised as
DeliveryError; retry scheduling belongs to the dispatcher.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from clawwatch.alerts.schemas import Alert, ChannelConfig

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 300


class DeliveryError(Exception):
    """A transport failed to deliver an alert to a channel."""

    def __init__(self, message: str, channel_type: str | None = None) -> None:
        super().__init__(message)
        self.channel_type = channel_type


class NotificationChannel(ABC):
    """Abstract base for notification transports."""

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout

    @property
    @abstractmethod
    def type(self) -> str:
        """Channel type this transport serves (e.g. 'discord', 'webhook')."""

    @abstractmethod
    def build_payload(self, alert: Alert) -> dict[str, Any]:
        """Render an alert into the JSON body for this transport."""

    async def send(self, channel: ChannelConfig, alert: Alert) -> None:
        """Deliver an alert to one configured channel.

        Args:
            channel: Destination (its ``webhook_url`` is the endpoint).
            alert: Alert to deliver.

        Raises:
            DeliveryError: On a missing endpoint, non-2xx response, or
                transport error.
        """
        if not channel.webhook_url:
            raise DeliveryError(
                f"Channel {channel.name!r} has no webhook_url", self.type,
            )
        await self._post_json(channel.webhook_url, self.build_payload(alert))
        logger.debug(
            "Delivered alert %s to %s channel %s",
            alert.alert_id, self.type, channel.name,
        )

    async def _post_json(self, url: str, payload: dict[str, Any]) -> None:
        """POST JSON with a short-lived client, raising DeliveryError on failure."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"{self.type} webhook timed out: {e}", self.type) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"{self.type} webhook failed: {e}", self.type) from e

        if not resp.is_success:
            body = resp.text[:_ERROR_BODY_LIMIT]
            raise DeliveryError(
                f"{self.type} webhook failed ({resp.status_code}): {body}", self.type,
            )


class WebhookChannel(NotificationChannel):
    """Delivers alerts as JSON POST to an arbitrary HTTP endpoint."""

    @property
    def type(self) -> str:
        return "webhook"

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        return {
            "alert_id": alert.alert_id,
            "title": alert.title,
            "message": alert.message,
            "severity": alert.severity,
            "timestamp": alert.created_at.isoformat(),
        }


# Discord embed colours per severity
SEVERITY_COLORS: dict[str, int] = {
    "critical": 0xED4245,
    "warning": 0xFEE75C,
    "info": 0x5865F2,
}


class DiscordChannel(NotificationChannel):
    """Delivers alerts to a Discord webhook as a single embed."""

    def __init__(self, timeout: float = 10.0, username: str = "ClawWatch") -> None:
        super().__init__(timeout=timeout)
        self._username = username

    @property
    def type(self) -> str:
        return "discord"

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        return {
            "username": self._username,
            "embeds": [
                {
                    "title": alert.title,
                    "description": alert.message,
                    "color": SEVERITY_COLORS.get(alert.severity, SEVERITY_COLORS["info"]),
                    "fields": [
                        {"name": "Severity", "value": alert.severity.upper(), "inline": True},
                        {
                            "name": "Triggered",
                            "value": alert.created_at.isoformat(),
                            "inline": True,
                        },
                    ],
                    "footer": {"text": f"{self._username} Alert"},
                },
            ],
        }


class SlackChannel(NotificationChannel):
    """Delivers alerts to a Slack channel via incoming webhook.

    Formats alerts using Slack Block Kit for rich display.
    """

    @property
    def type(self) -> str:
        return "slack"

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        severity_emoji = {
            "critical": ":red_circle:",
            "warning": ":large_orange_circle:",
            "info": ":large_blue_circle:",
        }
        emoji = severity_emoji.get(alert.severity, ":white_circle:")

        return {
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": f"{emoji} {alert.title}"},
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": alert.message},
                },
                {
                    "type": "context",
                    "elements": [
                        {
                            "type": "mrkdwn",
                            "text": (
                                f"*Severity:* {alert.severity} | "
                                f"*Rule type:* {alert.type or 'n/a'} | "
                                f"*Triggered:* {alert.created_at.isoformat()}"
                            ),
                        },
                    ],
                },
            ],
        }


def default_transports(
    timeout: float = 10.0,
    username: str = "ClawWatch",
) -> dict[str, NotificationChannel]:
    """One transport per supported channel type."""
    transports: list[NotificationChannel] = [
        DiscordChannel(timeout=timeout, username=username),
        WebhookChannel(timeout=timeout),
        SlackChannel(timeout=timeout),
    ]
    return {t.type: t for t in transports}
