"""Tests for notification transports."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import make_alert, make_channel

from clawwatch.alerts.channels import (
    SEVERITY_COLORS,
    DeliveryError,
    DiscordChannel,
    SlackChannel,
    WebhookChannel,
    default_transports,
)


def _mock_response(status_code: int = 200, text: str = "") -> httpx.Response:
    """Create a mock httpx.Response."""
    return httpx.Response(
        status_code=status_code,
        text=text,
        request=httpx.Request("POST", "http://test"),
    )


def _patch_client(response=None, side_effect=None):
    """Patch httpx.AsyncClient and return (patcher, mock_client)."""
    patcher = patch("clawwatch.alerts.channels.httpx.AsyncClient")
    mock_client_cls = patcher.start()
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return patcher, mock_client


class TestWebhookChannel:

    @pytest.mark.asyncio
    async def test_successful_send(self):
        patcher, client = _patch_client(_mock_response(204))
        try:
            await WebhookChannel().send(make_channel(type="webhook"), make_alert())
        finally:
            patcher.stop()

        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert url == "https://discord.example/api/webhooks/1"
        assert payload == {
            "alert_id": "alert-1",
            "title": "High spend: cost_per_hour > 5",
            "message": "Metric cost_per_hour is 7.5",
            "severity": "warning",
            "timestamp": "2026-03-01T12:00:00+00:00",
        }

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_body(self):
        patcher, _ = _patch_client(_mock_response(500, "internal oops"))
        try:
            with pytest.raises(DeliveryError, match=r"\(500\): internal oops"):
                await WebhookChannel().send(make_channel(type="webhook"), make_alert())
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        patcher, _ = _patch_client(side_effect=httpx.ReadTimeout("slow"))
        try:
            with pytest.raises(DeliveryError, match="timed out"):
                await WebhookChannel().send(make_channel(type="webhook"), make_alert())
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        patcher, _ = _patch_client(side_effect=httpx.ConnectError("refused"))
        try:
            with pytest.raises(DeliveryError) as exc_info:
                await WebhookChannel().send(make_channel(type="webhook"), make_alert())
        finally:
            patcher.stop()
        assert exc_info.value.channel_type == "webhook"

    @pytest.mark.asyncio
    async def test_missing_url_raises_without_request(self):
        patcher, client = _patch_client(_mock_response(200))
        try:
            with pytest.raises(DeliveryError):
                await WebhookChannel().send(make_channel(webhook_url=None), make_alert())
        finally:
            patcher.stop()
        client.post.assert_not_called()


class TestDiscordChannel:

    def test_embed_payload(self):
        payload = DiscordChannel(username="Watcher").build_payload(make_alert(severity="critical"))
        assert payload["username"] == "Watcher"
        embed = payload["embeds"][0]
        assert embed["title"] == "High spend: cost_per_hour > 5"
        assert embed["description"] == "Metric cost_per_hour is 7.5"
        assert embed["color"] == SEVERITY_COLORS["critical"]
        assert embed["fields"][0] == {"name": "Severity", "value": "CRITICAL", "inline": True}
        assert embed["fields"][1]["value"] == "2026-03-01T12:00:00+00:00"

    @pytest.mark.asyncio
    async def test_send_posts_embed(self):
        patcher, client = _patch_client(_mock_response(200))
        try:
            await DiscordChannel().send(make_channel(), make_alert())
        finally:
            patcher.stop()
        assert "embeds" in client.post.call_args.kwargs["json"]


class TestSlackChannel:

    def test_block_kit_payload(self):
        payload = SlackChannel().build_payload(make_alert(severity="info"))
        header, section, context = payload["blocks"]
        assert header["text"]["text"].startswith(":large_blue_circle:")
        assert section["text"]["text"] == "Metric cost_per_hour is 7.5"
        assert "custom_threshold" in context["elements"][0]["text"]


class TestDefaultTransports:

    def test_one_transport_per_type(self):
        transports = default_transports(timeout=3.0)
        assert sorted(transports) == ["discord", "slack", "webhook"]
        assert all(t.type == name for name, t in transports.items())
