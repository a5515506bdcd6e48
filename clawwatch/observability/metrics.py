"""
Prometheus metrics for monitoring the activity pipeline.

Defines and exposes metrics for:
- Source tailing and record ingestion
- Deduplication cache size and hits
- Batch flush outcomes and latency
- Rule evaluation outcomes
- Notification delivery outcomes

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from clawwatch.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for latency histograms (in seconds)
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsCollector:
    """
    Prometheus metrics collector for the clawwatch pipeline.

    Usage:
        metrics = get_metrics()
        metrics.start_server()

        metrics.record_lines_read("agent-a.jsonl", 12)
        metrics.record_flush("success", count=12, latency=0.04)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        # Source tailing
        self.lines_read = Counter(
            "clawwatch_source_lines_read_total",
            "Complete lines returned by the source tracker",
            ["source"],
        )

        self.source_truncations = Counter(
            "clawwatch_source_truncations_total",
            "Sources detected as truncated or rotated",
        )

        self.source_errors = Counter(
            "clawwatch_source_errors_total",
            "Errors while reading a source",
            ["error_type"],
        )

        # Ingestion
        self.records_ingested = Counter(
            "clawwatch_records_ingested_total",
            "Records accepted by the dedup cache and offered for flush",
            ["kind"],
        )

        self.duplicates_skipped = Counter(
            "clawwatch_duplicates_skipped_total",
            "Records skipped because their fingerprint was already seen",
        )

        self.parse_errors = Counter(
            "clawwatch_parse_errors_total",
            "Malformed lines skipped during parsing",
        )

        self.dedup_cache_size = Gauge(
            "clawwatch_dedup_cache_size",
            "Fingerprints currently held by the dedup cache",
        )

        self.dedup_pruned = Counter(
            "clawwatch_dedup_pruned_total",
            "Fingerprints evicted by dedup pruning",
        )

        # Batching
        self.batch_flushes = Counter(
            "clawwatch_batch_flushes_total",
            "Batch flush attempts",
            ["status"],  # success, error
        )

        self.flush_latency = Histogram(
            "clawwatch_batch_flush_latency_seconds",
            "Time to upsert a batch into storage",
            buckets=LATENCY_BUCKETS,
        )

        self.records_flushed = Counter(
            "clawwatch_records_flushed_total",
            "Records written to storage by successful flushes",
        )

        self.pending_records = Gauge(
            "clawwatch_batch_pending_records",
            "Records buffered and not yet flushed",
        )

        # Rules
        self.rule_evaluations = Counter(
            "clawwatch_rule_evaluations_total",
            "Rule evaluations by outcome",
            ["rule_type", "outcome"],  # fired, not_met, cooldown, inactive, unknown_type, invalid_config, error
        )

        self.invalid_rows = Counter(
            "clawwatch_invalid_rows_total",
            "Rule, alert, or channel rows skipped because they failed validation",
            ["table"],
        )

        # Notifications
        self.notifications = Counter(
            "clawwatch_notifications_total",
            "Notification delivery outcomes",
            ["status"],  # delivered, failed, no_target
        )

        self.delivery_latency = Histogram(
            "clawwatch_notification_latency_seconds",
            "Time to deliver an alert to all target channels",
            buckets=LATENCY_BUCKETS,
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info("Prometheus metrics server started on port %s", port)

    # Convenience methods

    def record_lines_read(self, source: str, count: int) -> None:
        """
        Record lines returned for a source.

        Args:
            source: Source path
            count: Number of complete lines
        """
        if count:
            self.lines_read.labels(source=source).inc(count)

    def record_ingested(self, kind: str, count: int = 1) -> None:
        self.records_ingested.labels(kind=kind).inc(count)

    def record_flush(
        self,
        status: str,
        count: int = 0,
        latency: float | None = None,
    ) -> None:
        """
        Record a batch flush attempt.

        Args:
            status: success or error
            count: Records in the batch
            latency: Optional upsert latency in seconds
        """
        self.batch_flushes.labels(status=status).inc()
        if status == "success" and count:
            self.records_flushed.inc(count)
        if latency is not None:
            self.flush_latency.observe(latency)

    def record_rule_evaluation(self, rule_type: str, outcome: str) -> None:
        self.rule_evaluations.labels(rule_type=rule_type, outcome=outcome).inc()

    def record_notification(self, status: str, latency: float | None = None) -> None:
        """
        Record the outcome of one alert delivery attempt.

        Args:
            status: delivered, failed, or no_target
            latency: Optional delivery latency in seconds
        """
        self.notifications.labels(status=status).inc()
        if latency is not None:
            self.delivery_latency.observe(latency)


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
