"""Tests for NotificationDispatcher matching, delivery, and retry scheduling."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import NOW, make_alert, make_channel

from clawwatch.alerts.channels import DeliveryError
from clawwatch.alerts.dispatcher import NotificationConfig, NotificationDispatcher


def _transport(channel_type: str, side_effect=None) -> MagicMock:
    transport = MagicMock()
    transport.type = channel_type
    transport.send = AsyncMock(side_effect=side_effect)
    return transport


@pytest.fixture
def alert_repo():
    repo = AsyncMock()
    repo.list_pending_alerts.return_value = []
    repo.list_active_channels.return_value = [make_channel()]
    return repo


@pytest.fixture
def discord():
    return _transport("discord")


@pytest.fixture
def dispatcher(alert_repo, discord):
    return NotificationDispatcher(
        alert_repo,
        transports={"discord": discord},
        config=NotificationConfig(),
        clock=lambda: NOW,
    )


class TestMatchChannels:

    def test_default_severities_exclude_info(self, dispatcher):
        channels = [make_channel()]
        assert dispatcher.match_channels(make_alert(severity="warning"), channels) == channels
        assert dispatcher.match_channels(make_alert(severity="info"), channels) == []

    def test_explicit_severities(self, dispatcher):
        critical_only = make_channel(severities=("critical",))
        assert dispatcher.match_channels(make_alert(severity="warning"), [critical_only]) == []
        assert dispatcher.match_channels(make_alert(severity="critical"), [critical_only]) == [critical_only]

    def test_channel_type_must_be_listed_on_alert(self, dispatcher):
        alert = make_alert(channels=["webhook"])
        assert dispatcher.match_channels(alert, [make_channel()]) == []

    def test_inactive_or_unregistered_or_urlless_channels_skipped(self, dispatcher):
        alert = make_alert(channels=["discord", "slack"])
        channels = [
            make_channel(channel_id="a", is_active=False),
            make_channel(channel_id="b", type="slack"),
            make_channel(channel_id="c", webhook_url=None),
        ]
        assert dispatcher.match_channels(alert, channels) == []

    def test_configured_default_severities_apply_to_unfiltered_channels(self, alert_repo, discord):
        dispatcher = NotificationDispatcher(
            alert_repo,
            transports={"discord": discord},
            config=NotificationConfig(default_severities=["critical"]),
            clock=lambda: NOW,
        )
        channels = [make_channel()]
        assert dispatcher.match_channels(make_alert(severity="warning"), channels) == []
        assert dispatcher.match_channels(make_alert(severity="critical"), channels) == channels


class TestRunCycle:

    @pytest.mark.asyncio
    async def test_nothing_pending(self, dispatcher, alert_repo):
        summary = await dispatcher.run_cycle()
        assert summary.checked == 0
        alert_repo.list_active_channels.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetches_due_page(self, dispatcher, alert_repo):
        await dispatcher.run_cycle()
        alert_repo.list_pending_alerts.assert_awaited_once_with(now=NOW, limit=100)

    @pytest.mark.asyncio
    async def test_successful_delivery_marks_sent(self, dispatcher, alert_repo, discord):
        alert_repo.list_pending_alerts.return_value = [make_alert()]

        summary = await dispatcher.run_cycle()

        assert summary.delivered == 1
        discord.send.assert_awaited_once()
        alert_repo.mark_alert_attempt.assert_awaited_once_with("alert-1", True, NOW)

    @pytest.mark.asyncio
    async def test_critical_only_channel_marks_warning_sent_without_delivery(
        self, dispatcher, alert_repo, discord,
    ):
        alert_repo.list_active_channels.return_value = [make_channel(severities=("critical",))]
        alert_repo.list_pending_alerts.return_value = [make_alert(severity="warning")]

        summary = await dispatcher.run_cycle()

        assert summary.no_target == 1
        discord.send.assert_not_awaited()
        alert_repo.mark_alert_attempt.assert_awaited_once_with("alert-1", True, NOW)

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self, dispatcher, alert_repo, discord):
        discord.send.side_effect = DeliveryError("discord webhook failed (502): bad gateway")
        alert_repo.list_pending_alerts.return_value = [make_alert(notification_attempts=2)]

        summary = await dispatcher.run_cycle()

        assert summary.retried == 1
        alert_repo.mark_alert_attempt.assert_awaited_once_with(
            "alert-1",
            False,
            NOW,
            error="discord webhook failed (502): bad gateway",
            next_attempt_at=NOW + timedelta(seconds=240),
        )

    @pytest.mark.asyncio
    async def test_any_failing_target_fails_whole_attempt(self, dispatcher, alert_repo, discord):
        discord.send.side_effect = [None, DeliveryError("second channel down")]
        alert_repo.list_active_channels.return_value = [
            make_channel(channel_id="a"),
            make_channel(channel_id="b"),
        ]
        alert_repo.list_pending_alerts.return_value = [make_alert()]

        summary = await dispatcher.run_cycle()

        assert summary.retried == 1
        assert alert_repo.mark_alert_attempt.await_args.args[1] is False

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_is_a_failed_attempt(
        self, dispatcher, alert_repo, discord,
    ):
        discord.send.side_effect = RuntimeError("bug")
        alert_repo.list_pending_alerts.return_value = [make_alert()]

        summary = await dispatcher.run_cycle()

        assert summary.retried == 1
        kwargs = alert_repo.mark_alert_attempt.await_args.kwargs
        assert kwargs["error"] == "bug"
        assert kwargs["next_attempt_at"] == NOW + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_per_alert_errors_are_isolated(self, dispatcher, alert_repo):
        alert_repo.list_pending_alerts.return_value = [
            make_alert(alert_id="a1"),
            make_alert(alert_id="a2"),
        ]
        alert_repo.mark_alert_attempt.side_effect = [ConnectionError("db blip"), True]

        summary = await dispatcher.run_cycle()

        assert summary.errors == 1
        assert summary.delivered == 1


class TestRetryDelay:

    @pytest.mark.parametrize("attempt,seconds", [
        (1, 60),
        (2, 120),
        (3, 240),
        (5, 960),
        (6, 1800),
        (50, 1800),
    ])
    def test_schedule(self, dispatcher, attempt, seconds):
        assert dispatcher.retry_delay(attempt) == timedelta(seconds=seconds)


class TestConcurrentDelivery:

    @pytest.mark.asyncio
    async def test_hanging_channel_does_not_hold_back_healthy_alerts(self, alert_repo, discord):
        release = asyncio.Event()
        healthy_marked = asyncio.Event()

        async def hang(channel, alert):
            await release.wait()
            raise DeliveryError("webhook timed out")

        async def mark(alert_id, success, now, **kwargs):
            if alert_id == "healthy":
                healthy_marked.set()
            return True

        webhook = _transport("webhook", side_effect=hang)
        alert_repo.mark_alert_attempt.side_effect = mark
        alert_repo.list_active_channels.return_value = [
            make_channel(channel_id="hook", type="webhook", webhook_url="https://hooks.example/x"),
            make_channel(),
        ]
        alert_repo.list_pending_alerts.return_value = [
            *(make_alert(alert_id=f"stuck-{i}", channels=["webhook"]) for i in range(5)),
            make_alert(alert_id="healthy", channels=["discord"]),
        ]
        dispatcher = NotificationDispatcher(
            alert_repo,
            transports={"discord": discord, "webhook": webhook},
            config=NotificationConfig(),
            clock=lambda: NOW,
        )

        cycle = asyncio.create_task(dispatcher.run_cycle())
        await asyncio.wait_for(healthy_marked.wait(), timeout=1.0)
        release.set()
        summary = await cycle

        assert summary.delivered == 1
        assert summary.retried == 5

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, alert_repo, discord):
        in_flight = 0
        peak = 0

        async def slow_send(channel, alert):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        discord.send.side_effect = slow_send
        alert_repo.list_pending_alerts.return_value = [
            make_alert(alert_id=f"a{i}") for i in range(6)
        ]
        dispatcher = NotificationDispatcher(
            alert_repo,
            transports={"discord": discord},
            config=NotificationConfig(max_concurrent_deliveries=2),
            clock=lambda: NOW,
        )

        summary = await dispatcher.run_cycle()

        assert summary.delivered == 6
        assert peak == 2
