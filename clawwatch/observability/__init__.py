"""Observability layer - logging and metrics."""

from clawwatch.observability.logging import setup_logging
from clawwatch.observability.metrics import MetricsCollector, get_metrics

__all__ = ["setup_logging", "MetricsCollector", "get_metrics"]
