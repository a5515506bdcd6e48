"""ClawWatch - ingestion, alerting, and notification for agent activity logs."""

__version__ = "0.1.0"
