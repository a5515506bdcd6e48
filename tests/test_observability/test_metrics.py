"""Tests for the Prometheus metrics collector."""

from prometheus_client import REGISTRY

from clawwatch.observability.metrics import get_metrics


def _sample(name: str, labels: dict | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricsCollector:

    def test_singleton(self):
        assert get_metrics() is get_metrics()

    def test_record_flush_counts_records_only_on_success(self):
        metrics = get_metrics()
        flushed = _sample("clawwatch_records_flushed_total")
        errors = _sample("clawwatch_batch_flushes_total", {"status": "error"})

        metrics.record_flush("error", count=50)
        metrics.record_flush("success", count=20, latency=0.02)

        assert _sample("clawwatch_records_flushed_total") == flushed + 20
        assert _sample("clawwatch_batch_flushes_total", {"status": "error"}) == errors + 1

    def test_zero_lines_not_recorded(self):
        metrics = get_metrics()
        labels = {"source": "/tmp/never-read.jsonl"}
        metrics.record_lines_read(labels["source"], 0)
        assert REGISTRY.get_sample_value("clawwatch_source_lines_read_total", labels) is None

        metrics.record_lines_read(labels["source"], 3)
        assert _sample("clawwatch_source_lines_read_total", labels) == 3

    def test_notification_outcomes(self):
        metrics = get_metrics()
        before = _sample("clawwatch_notifications_total", {"status": "no_target"})
        metrics.record_notification("no_target")
        assert _sample("clawwatch_notifications_total", {"status": "no_target"}) == before + 1
