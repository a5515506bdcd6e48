"""Tests for PipelineService wiring, ingestion cycles, and shutdown."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from prometheus_client import REGISTRY

from clawwatch.alerts.config import AlertConfig
from clawwatch.alerts.dispatcher import NotificationConfig
from clawwatch.ingestion.config import IngestionConfig
from clawwatch.services import pipeline_service
from clawwatch.services.pipeline_service import PipelineService


def _event(**fields) -> str:
    data = {"kind": "cost", "timestamp": "2026-03-01T11:00:00Z", "cost": 0.01}
    data.update(fields)
    return json.dumps(data) + "\n"


@pytest.fixture
def sessions_dir(tmp_path):
    path = tmp_path / "agents" / "alpha" / "sessions"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.fetch.return_value = []
    db.health_check.return_value = True
    db.pool_stats = MagicMock(return_value={"size": 2, "idle": 2})
    return db


def _service(mock_db, sessions_dir, **ingest_overrides) -> PipelineService:
    ingest = {
        "source_globs": [str(sessions_dir / "*.jsonl")],
        "poll_interval_seconds": 0.01,
        "batch_max_size": 100,
        "batch_max_hold_seconds": 0.05,
        "dedup_prune_interval_seconds": 0.05,
    }
    ingest.update(ingest_overrides)
    return PipelineService(
        mock_db,
        ingestion_config=IngestionConfig(**ingest),
        alert_config=AlertConfig(evaluation_interval_seconds=0.05),
        notification_config=NotificationConfig(dispatch_interval_seconds=0.05),
        transports={},
    )


class TestIngestOnce:

    @pytest.mark.asyncio
    async def test_reads_parses_and_offers(self, mock_db, sessions_dir):
        (sessions_dir / "s1.jsonl").write_text(_event() + _event(kind="heartbeat"))
        service = _service(mock_db, sessions_dir)

        assert await service.ingest_once() == 2
        assert service.batcher.pending_count == 2
        assert len(service.dedup) == 2

    @pytest.mark.asyncio
    async def test_unchanged_sources_yield_nothing(self, mock_db, sessions_dir):
        (sessions_dir / "s1.jsonl").write_text(_event())
        service = _service(mock_db, sessions_dir)

        await service.ingest_once()
        assert await service.ingest_once() == 0

    @pytest.mark.asyncio
    async def test_reread_lines_are_deduplicated(self, mock_db, sessions_dir):
        path = sessions_dir / "s1.jsonl"
        path.write_text(_event())
        service = _service(mock_db, sessions_dir)
        await service.ingest_once()

        service.tracker.forget(str(path))
        assert await service.ingest_once() == 0
        assert service.batcher.pending_count == 1

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self, mock_db, sessions_dir):
        (sessions_dir / "s1.jsonl").write_text(
            "not json\n" + _event() + '{"kind": "mystery"}\n' + "\n"
        )
        service = _service(mock_db, sessions_dir)
        assert await service.ingest_once() == 1

    @pytest.mark.asyncio
    async def test_unstorable_lines_are_skipped_without_losing_later_lines(
        self, mock_db, sessions_dir,
    ):
        (sessions_dir / "s1.jsonl").write_text(
            _event(cost=0.01)
            + '{"kind": "cost", "inputTokens": Infinity}\n'
            + '{"kind": "cost", "extra": NaN}\n'
            + '{"kind": "cost", "agentId": "a\\u0000b"}\n'
            + '{"kind": "cost", "outputTokens": 1e30}\n'
            + _event(cost=0.02)
            + _event(cost=0.03)
        )
        service = _service(mock_db, sessions_dir)
        parse_errors = REGISTRY.get_sample_value("clawwatch_parse_errors_total") or 0.0

        assert await service.ingest_once() == 3
        assert [r.cost for r in service.batcher._buffer] == [0.01, 0.02, 0.03]
        assert REGISTRY.get_sample_value("clawwatch_parse_errors_total") == parse_errors + 4

    @pytest.mark.asyncio
    async def test_unexpected_parse_failure_is_isolated_to_its_line(
        self, mock_db, sessions_dir,
    ):
        (sessions_dir / "s1.jsonl").write_text(_event(cost=0.01) + _event(cost=0.02))
        service = _service(mock_db, sessions_dir)
        real_parse = pipeline_service.parse_line
        calls = []

        def flaky_parse(line):
            calls.append(line)
            if len(calls) == 1:
                raise OverflowError("boom")
            return real_parse(line)

        with patch.object(pipeline_service, "parse_line", flaky_parse):
            assert await service.ingest_once() == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_backlog_pauses_polling(self, mock_db, sessions_dir):
        mock_db.fetch.side_effect = ConnectionError("db down")
        (sessions_dir / "s1.jsonl").write_text(_event() + _event(cost=0.02))
        service = _service(mock_db, sessions_dir, batch_max_size=1, batch_max_pending=1)

        await service.ingest_once()
        assert service.batcher.is_backlogged

        (sessions_dir / "s2.jsonl").write_text(_event())
        await service._ingest_unless_backlogged()
        assert str(sessions_dir / "s2.jsonl") not in service.tracker.known_paths


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_one_cycle_of_every_stage(self, mock_db, sessions_dir):
        (sessions_dir / "s1.jsonl").write_text(_event())
        service = _service(mock_db, sessions_dir)

        results = await service.run_once()

        assert results["ingested"] == 1
        assert results["unflushed"] == 0
        assert results["alerts_fired"] == 0
        assert results["notifications"]["checked"] == 0
        # upsert, list_rules, list_pending_alerts
        assert mock_db.fetch.await_count == 3


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_graceful_stop_drains(self, mock_db, sessions_dir):
        (sessions_dir / "s1.jsonl").write_text(_event())
        service = _service(mock_db, sessions_dir, batch_max_hold_seconds=60.0)

        runner = asyncio.create_task(service.start())
        for _ in range(100):
            if service.batcher.pending_count:
                break
            await asyncio.sleep(0.01)
        assert service.is_running
        assert service.batcher.pending_count == 1

        await service.stop()
        await asyncio.wait_for(runner, timeout=2.0)

        assert not service.is_running
        assert service.batcher.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_stop_holds_one_stop_task(self, mock_db, sessions_dir):
        service = _service(mock_db, sessions_dir)
        runner = asyncio.create_task(service.start())
        await asyncio.sleep(0.02)

        first = service.request_stop()
        assert service.request_stop() is first
        await asyncio.wait_for(first, timeout=2.0)
        await asyncio.wait_for(runner, timeout=2.0)

        assert first.exception() is None
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_health_check(self, mock_db, sessions_dir):
        service = _service(mock_db, sessions_dir)
        health = await service.health_check()
        assert health["database_healthy"] is True
        assert health["running"] is False
        assert health["failed_batch"] is None
        assert health["db_pool"] == {"size": 2, "idle": 2}

    @pytest.mark.asyncio
    async def test_create_tables(self, mock_db, sessions_dir):
        await _service(mock_db, sessions_dir).create_tables()
        assert mock_db.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_prune_once(self, mock_db, sessions_dir):
        service = _service(mock_db, sessions_dir, dedup_retention_days=1)
        service.dedup.should_ingest("old", now=0)
        assert await service.prune_once() == 1
