"""
Command-line interface for clawwatch.

Provides commands to run the pipeline, initialize the database, manage
alert rules and channels, and inspect delivery problems.

Usage:
    clawwatch run          # Run all pipeline loops
    clawwatch run-once     # Run one cycle of every stage
    clawwatch init-db      # Initialize database
    clawwatch health       # Check service health
    clawwatch retrying     # List alerts stuck in delivery retry
"""

import asyncio
import json
import signal
import sys
import uuid
from datetime import datetime, timezone

import click

from clawwatch.observability.logging import bind_context, clear_context, setup_logging
from clawwatch.observability.metrics import get_metrics


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """ClawWatch - activity monitoring and alerting for agent sessions."""
    if debug:
        import os
        os.environ["LOG_LEVEL"] = "DEBUG"

    setup_logging()


@main.command()
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
@click.option("--metrics-port", default=None, type=int, help="Metrics server port")
def run(metrics: bool, metrics_port: int | None) -> None:
    """Run the pipeline until SIGINT/SIGTERM."""
    from clawwatch.services.pipeline_service import PipelineService
    from clawwatch.storage.database import Database

    async def run_service():
        bind_context(instance=uuid.uuid4().hex[:8])
        try:
            async with Database() as db:
                service = PipelineService(db)

                if metrics:
                    get_metrics().start_server(port=metrics_port)

                # Handle shutdown signals
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(sig, service.request_stop)

                await service.start()
        finally:
            clear_context()

    asyncio.run(run_service())


@main.command("run-once")
def run_once() -> None:
    """Run one ingest, flush, evaluate, and dispatch cycle."""
    from clawwatch.services.pipeline_service import PipelineService
    from clawwatch.storage.database import Database

    async def run_cycle():
        async with Database() as db:
            service = PipelineService(db)
            results = await service.run_once()

        click.echo("\nCycle Results:")
        click.echo(f"  records ingested: {results['ingested']}")
        click.echo(f"  records unflushed: {results['unflushed']}")
        click.echo(f"  alerts fired: {results['alerts_fired']}")
        notifications = results["notifications"]
        click.echo(
            f"  notifications: checked={notifications['checked']} "
            f"delivered={notifications['delivered']} "
            f"retried={notifications['retried']} "
            f"no_target={notifications['no_target']}"
        )
        return 1 if results["unflushed"] else 0

    sys.exit(asyncio.run(run_cycle()))


@main.command("init-db")
def init_db() -> None:
    """Initialize the database schema."""
    from clawwatch.services.pipeline_service import PipelineService
    from clawwatch.storage.database import Database

    async def run_init():
        async with Database() as db:
            await PipelineService(db).create_tables()
        click.echo("Database initialized successfully")

    asyncio.run(run_init())


@main.command()
def health() -> None:
    """Check health of all dependencies."""
    import structlog
    logger = structlog.get_logger()

    async def check():
        from clawwatch.ingestion.config import IngestionConfig
        from clawwatch.ingestion.tracker import expand_source_globs
        from clawwatch.storage.database import Database

        results: dict[str, bool] = {}

        # Check PostgreSQL
        try:
            async with Database() as db:
                results["postgres"] = await db.health_check()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        # Check sources
        sources = expand_source_globs(IngestionConfig().source_globs)
        results["sources_found"] = bool(sources)

        # Print results
        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
        click.echo(f"  sources: {len(sources)}")

        click.echo("-" * 40)

        if results["postgres"]:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


@main.command()
@click.option("--limit", default=50, help="Maximum alerts to list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
def retrying(limit: int, as_json: bool) -> None:
    """List alerts whose delivery has failed and is being retried."""
    from clawwatch.alerts.repository import AlertRepository
    from clawwatch.storage.database import Database

    async def list_alerts():
        async with Database() as db:
            alerts = await AlertRepository(db).list_retrying(limit=limit)

        if as_json:
            click.echo(json.dumps([a.to_dict() for a in alerts], indent=2))
            return

        if not alerts:
            click.echo("No alerts are waiting for delivery retry")
            return

        now = datetime.now(timezone.utc)
        click.echo(f"\n{len(alerts)} alert(s) retrying:")
        for alert in alerts:
            age_minutes = (now - alert.created_at).total_seconds() / 60
            next_at = alert.next_attempt_at.isoformat() if alert.next_attempt_at else "now"
            click.echo(
                f"  {alert.alert_id} [{alert.severity}] {alert.title}\n"
                f"    attempts={alert.notification_attempts} age={age_minutes:.0f}m "
                f"next={next_at}\n"
                f"    last_error={alert.last_error}"
            )

    asyncio.run(list_alerts())


@main.command()
@click.argument("alert_id")
def acknowledge(alert_id: str) -> None:
    """Acknowledge an alert."""
    from clawwatch.alerts.repository import AlertRepository
    from clawwatch.storage.database import Database

    async def ack():
        async with Database() as db:
            return await AlertRepository(db).acknowledge(alert_id, datetime.now(timezone.utc))

    if asyncio.run(ack()):
        click.echo(f"Alert {alert_id} acknowledged")
    else:
        click.echo(f"Alert {alert_id} not found or already acknowledged", err=True)
        sys.exit(1)


@main.command()
@click.argument("alert_id")
def resolve(alert_id: str) -> None:
    """Resolve an alert; it will not be delivered again."""
    from clawwatch.alerts.repository import AlertRepository
    from clawwatch.storage.database import Database

    async def do_resolve():
        async with Database() as db:
            return await AlertRepository(db).resolve(alert_id, datetime.now(timezone.utc))

    if asyncio.run(do_resolve()):
        click.echo(f"Alert {alert_id} resolved")
    else:
        click.echo(f"Alert {alert_id} not found or already resolved", err=True)
        sys.exit(1)


@main.command("add-rule")
@click.argument("name")
@click.option(
    "--type", "rule_type", required=True,
    type=click.Choice([
        "budget_exceeded", "agent_offline", "error_spike",
        "session_loop", "channel_disconnect", "custom_threshold",
    ]),
    help="Condition type",
)
@click.option("--threshold", type=float, default=None, help="Numeric threshold")
@click.option("--window", "window_minutes", type=float, default=None, help="Window in minutes")
@click.option("--comparison", type=click.Choice(["gt", "lt", "eq"]), default=None)
@click.option("--metric", default=None, help="Metric for custom thresholds")
@click.option("--channel", "channels", multiple=True, default=("discord",),
              help="Channel type to notify (can repeat)")
@click.option("--severity", type=click.Choice(["critical", "warning", "info"]), default=None)
@click.option("--cooldown", "cooldown_minutes", type=float, default=60.0, help="Cooldown in minutes")
def add_rule(
    name: str,
    rule_type: str,
    threshold: float | None,
    window_minutes: float | None,
    comparison: str | None,
    metric: str | None,
    channels: tuple[str, ...],
    severity: str | None,
    cooldown_minutes: float,
) -> None:
    """Create an alert rule."""
    from clawwatch.alerts.repository import AlertRepository
    from clawwatch.alerts.schemas import AlertRule, RuleConfig
    from clawwatch.storage.database import Database

    try:
        rule = AlertRule(
            name=name,
            type=rule_type,
            config=RuleConfig(
                threshold=threshold,
                window_minutes=window_minutes,
                comparison=comparison,
                metric=metric,
            ),
            channels=list(channels),
            severity=severity,
            cooldown_minutes=cooldown_minutes,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    async def create():
        async with Database() as db:
            return await AlertRepository(db).create_rule(rule)

    created = asyncio.run(create())
    click.echo(f"Rule {created.rule_id} created ({created.type}, {created.severity})")


@main.command("set-rule-active")
@click.argument("rule_id")
@click.argument("active", type=bool)
def set_rule_active(rule_id: str, active: bool) -> None:
    """Enable or disable an alert rule."""
    from clawwatch.alerts.repository import AlertRepository
    from clawwatch.storage.database import Database

    async def update():
        async with Database() as db:
            return await AlertRepository(db).update_rule(rule_id, is_active=active)

    rule = asyncio.run(update())
    if rule is None:
        click.echo(f"Rule {rule_id} not found", err=True)
        sys.exit(1)
    click.echo(f"Rule {rule.rule_id} is now {'active' if rule.is_active else 'inactive'}")


@main.command("add-channel")
@click.argument("name")
@click.option("--type", "channel_type", required=True,
              type=click.Choice(["discord", "webhook", "slack"]))
@click.option("--url", "webhook_url", required=True, help="Webhook endpoint")
@click.option("--severity", "severities", multiple=True,
              type=click.Choice(["critical", "warning", "info"]),
              help="Accepted severity (can repeat; default warning+critical)")
def add_channel(
    name: str,
    channel_type: str,
    webhook_url: str,
    severities: tuple[str, ...],
) -> None:
    """Register a notification channel."""
    from clawwatch.alerts.repository import AlertRepository
    from clawwatch.alerts.schemas import ChannelConfig
    from clawwatch.storage.database import Database

    channel = ChannelConfig(
        type=channel_type,
        name=name,
        webhook_url=webhook_url,
        severities=severities or None,
    )

    async def create():
        async with Database() as db:
            return await AlertRepository(db).create_channel(channel)

    created = asyncio.run(create())
    click.echo(f"Channel {created.channel_id} created ({created.type})")


@main.command("add-budget")
@click.argument("name")
@click.option("--limit", "limit_dollars", type=float, required=True, help="Limit in dollars")
@click.option("--period", type=click.Choice(["daily", "weekly", "monthly"]), default="monthly")
@click.option("--agent", "agent_id", default=None, help="Restrict the budget to one agent")
def add_budget(name: str, limit_dollars: float, period: str, agent_id: str | None) -> None:
    """Create a spending budget for budget_exceeded rules."""
    from clawwatch.alerts.repository import AlertRepository
    from clawwatch.storage.database import Database

    async def create():
        async with Database() as db:
            return await AlertRepository(db).create_budget(
                budget_id=str(uuid.uuid4()),
                name=name,
                limit_dollars=limit_dollars,
                period=period,
                agent_id=agent_id,
            )

    try:
        budget_id = asyncio.run(create())
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    click.echo(f"Budget {budget_id} created ({period}, ${limit_dollars:.2f})")


if __name__ == "__main__":
    main()
