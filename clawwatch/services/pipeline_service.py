"""
Pipeline service - runs the ingestion, evaluation, and dispatch loops.

Tails agent session logs, deduplicates and batches the parsed records into
PostgreSQL, evaluates alert rules against the stored activity, and delivers
the resulting alerts to notification channels.

Features:
- Independent periodic loops sharing a few explicit structures
- Backpressure: sources are not polled while the flush backlog is full
- Graceful shutdown: loops finish their cycle, then pending records drain
- Health monitoring
- Metrics collection
"""

import asyncio
import time
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from clawwatch.alerts.channels import NotificationChannel
from clawwatch.alerts.config import AlertConfig
from clawwatch.alerts.dispatcher import NotificationConfig, NotificationDispatcher
from clawwatch.alerts.evaluator import RuleEvaluator
from clawwatch.alerts.repository import AlertRepository
from clawwatch.alerts.snapshots import SnapshotRepository
from clawwatch.ingestion.batcher import BatchAccumulator
from clawwatch.ingestion.config import IngestionConfig
from clawwatch.ingestion.deduplication import SECONDS_PER_DAY, DedupCache
from clawwatch.ingestion.repository import ActivityRepository
from clawwatch.ingestion.schemas import parse_line
from clawwatch.ingestion.tracker import LineSource, SourceTracker, expand_source_globs
from clawwatch.observability.metrics import get_metrics
from clawwatch.services.backoff import ExponentialBackoff
from clawwatch.storage.database import Database

logger = structlog.get_logger(__name__)

# Upper bound on the hold-time flush check interval
_FLUSH_TICK_SECONDS = 1.0


class PipelineService:
    """
    Service that owns the pipeline state and runs its loops.

    Cursor and dedup state belong to the service instance and are handed to
    the components that need them; nothing is kept in module globals.

    Usage:
        async with Database() as db:
            service = PipelineService(db)
            await service.start()  # Runs until stop() is called
    """

    def __init__(
        self,
        database: Database,
        ingestion_config: IngestionConfig | None = None,
        alert_config: AlertConfig | None = None,
        notification_config: NotificationConfig | None = None,
        source: LineSource | None = None,
        transports: dict[str, NotificationChannel] | None = None,
    ):
        """
        Initialize pipeline service.

        Args:
            database: Connected database
            ingestion_config: Source, batching, and dedup settings
            alert_config: Rule evaluation settings
            notification_config: Dispatch settings
            source: Line source (defaults to the local filesystem)
            transports: Channel transports keyed by type (defaults to all)
        """
        self._db = database
        self._config = ingestion_config or IngestionConfig()
        self._alert_config = alert_config or AlertConfig()
        self._notification_config = notification_config or NotificationConfig()

        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._metrics = get_metrics()
        self._cleanup_lock = asyncio.Lock()
        self._cleaned_up = False
        self._stop_task: asyncio.Task | None = None

        self._tracker = SourceTracker(source, max_read_bytes=self._config.max_read_bytes)
        self._dedup = DedupCache(
            retention_seconds=self._config.dedup_retention_days * SECONDS_PER_DAY,
            prune_chunk_size=self._config.dedup_prune_chunk_size,
        )

        self._activity_repo = ActivityRepository(database)
        self._alert_repo = AlertRepository(database)

        self._batcher = BatchAccumulator(
            sink=self._activity_repo.upsert_batch,
            max_size=self._config.batch_max_size,
            max_hold_seconds=self._config.batch_max_hold_seconds,
            max_pending=self._config.batch_max_pending,
            flush_timeout=self._config.flush_timeout_seconds,
            backoff=ExponentialBackoff(
                base_delay=self._config.flush_retry_base_seconds,
                max_delay=self._config.flush_retry_max_seconds,
            ),
        )

        self._evaluator = RuleEvaluator(
            self._alert_repo,
            SnapshotRepository(database),
            config=self._alert_config,
        )
        self._batcher.add_listener(self._evaluator.notify_records)

        self._dispatcher = NotificationDispatcher(
            self._alert_repo,
            transports=transports,
            config=self._notification_config,
        )

        logger.info(
            "Pipeline service initialized",
            source_globs=self._config.source_globs,
            poll_interval=self._config.poll_interval_seconds,
            transports=sorted(self._dispatcher.transports),
        )

    @property
    def tracker(self) -> SourceTracker:
        return self._tracker

    @property
    def dedup(self) -> DedupCache:
        return self._dedup

    @property
    def batcher(self) -> BatchAccumulator:
        return self._batcher

    @property
    def evaluator(self) -> RuleEvaluator:
        return self._evaluator

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def alert_repo(self) -> AlertRepository:
        return self._alert_repo

    @property
    def is_running(self) -> bool:
        """Check if service is running."""
        return self._running

    async def create_tables(self) -> None:
        """Create every table the pipeline uses (idempotent)."""
        await self._activity_repo.create_table()
        await self._alert_repo.create_tables()

    async def start(self) -> None:
        """
        Start all pipeline loops.

        Runs until stop() is called, then drains pending records.
        """
        self._running = True
        self._cleaned_up = False
        self._stop_event.clear()

        logger.info("Starting pipeline service")

        loops: dict[str, Callable[[], Coroutine[Any, Any, None]]] = {
            "ingest": self._ingest_loop,
            "flush": self._flush_loop,
            "prune": self._prune_loop,
            "evaluate": self._evaluate_loop,
            "dispatch": self._dispatch_loop,
        }

        try:
            self._tasks = [
                asyncio.create_task(loop(), name=f"pipeline_{name}")
                for name, loop in loops.items()
            ]
            await asyncio.gather(*self._tasks, return_exceptions=True)

        except asyncio.CancelledError:
            logger.info("Pipeline service cancelled")
        except Exception as e:
            logger.error("Pipeline service error", error=str(e))
            raise
        finally:
            await self._cleanup()

    def request_stop(self) -> asyncio.Task:
        """
        Schedule stop() from synchronous code such as a signal handler.

        The task is held on the service; repeated calls while a stop is in
        progress return the same task.
        """
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.get_running_loop().create_task(
                self.stop(), name="pipeline_stop",
            )
        return self._stop_task

    async def stop(self) -> None:
        """
        Stop the pipeline gracefully.

        Loops finish their current cycle; pending records are then drained
        (each flush bounded by the flush timeout).
        """
        logger.info("Stopping pipeline service")
        self._running = False
        self._stop_event.set()
        self._evaluator.wake()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._cleanup()

    async def _cleanup(self) -> None:
        """Drain the batch accumulator once."""
        async with self._cleanup_lock:
            if self._cleaned_up:
                return
            remaining = await self._batcher.drain()
            self._tasks.clear()
            self._running = False
            self._cleaned_up = True
            logger.info("Pipeline service cleaned up", unflushed_records=remaining)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the service is stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_periodic(
        self,
        name: str,
        body: Callable[[], Coroutine[Any, Any, Any]],
        interval: float,
    ) -> None:
        """Run ``body`` every ``interval`` seconds until stopped, isolating errors."""
        logger.info("Starting loop", loop=name, interval=interval)

        while self._running:
            try:
                await body()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Loop error", loop=name, error=str(e))

            await self._sleep(interval)

        logger.info("Loop stopped", loop=name)

    # -- Loops -------------------------------------------------------------

    async def _ingest_loop(self) -> None:
        await self._run_periodic(
            "ingest", self._ingest_unless_backlogged, self._config.poll_interval_seconds,
        )

    async def _ingest_unless_backlogged(self) -> None:
        if self._batcher.is_backlogged:
            logger.warning(
                "Flush backlog full, pausing source polling",
                pending=self._batcher.pending_count,
            )
            return
        await self.ingest_once()

    async def _flush_loop(self) -> None:
        tick = min(_FLUSH_TICK_SECONDS, self._config.batch_max_hold_seconds)
        await self._run_periodic("flush", self._batcher.flush_if_due, tick)

    async def _prune_loop(self) -> None:
        await self._run_periodic(
            "prune", self.prune_once, self._config.dedup_prune_interval_seconds,
        )

    async def _dispatch_loop(self) -> None:
        await self._run_periodic(
            "dispatch",
            self._dispatcher.run_cycle,
            self._notification_config.dispatch_interval_seconds,
        )

    async def _evaluate_loop(self) -> None:
        """Evaluate on a timer, or as soon as a flush delivers new records."""
        logger.info(
            "Starting loop",
            loop="evaluate",
            interval=self._alert_config.evaluation_interval_seconds,
        )

        while self._running:
            try:
                await self._evaluator.evaluate_all()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Loop error", loop="evaluate", error=str(e))

            if not self._running:
                break
            await self._evaluator.wait_for_trigger(
                self._alert_config.evaluation_interval_seconds,
            )

        logger.info("Loop stopped", loop="evaluate")

    # -- Single cycles -----------------------------------------------------

    async def ingest_once(self) -> int:
        """
        Poll every configured source once and offer new records.

        Malformed lines are counted and skipped; a failing source never
        stops the others.

        Returns:
            Number of records offered to the batch accumulator
        """
        start_time = time.monotonic()
        paths = await asyncio.to_thread(expand_source_globs, self._config.source_globs)
        results = await asyncio.to_thread(self._tracker.poll_many, paths)

        offered = 0
        duplicates = 0
        for path, lines in results.items():
            for line in lines:
                try:
                    record = parse_line(line)
                except Exception as e:
                    self._metrics.parse_errors.inc()
                    logger.debug(
                        "Skipping malformed line", path=path, offset=line.offset, error=str(e),
                    )
                    continue
                if record is None:
                    continue

                if not self._dedup.should_ingest(record.fingerprint):
                    duplicates += 1
                    continue

                await self._batcher.offer(record)
                self._metrics.record_ingested(record.kind.value)
                offered += 1

        if duplicates:
            self._metrics.duplicates_skipped.inc(duplicates)
        self._metrics.dedup_cache_size.set(len(self._dedup))

        if offered or duplicates:
            logger.info(
                "Ingestion cycle completed",
                sources=len(paths),
                records=offered,
                duplicates=duplicates,
                elapsed_seconds=round(time.monotonic() - start_time, 3),
            )
        return offered

    async def prune_once(self) -> int:
        """Evict expired fingerprints without blocking the event loop."""
        pruned = await asyncio.to_thread(self._dedup.prune)
        if pruned:
            self._metrics.dedup_pruned.inc(pruned)
            logger.info("Dedup cache pruned", evicted=pruned, size=len(self._dedup))
        self._metrics.dedup_cache_size.set(len(self._dedup))
        return pruned

    async def run_once(self) -> dict[str, Any]:
        """
        Run one cycle of every stage.

        Useful for testing or manual triggers.

        Returns:
            Dictionary with per-stage results
        """
        ingested = await self.ingest_once()
        unflushed = await self._batcher.drain()
        alerts = await self._evaluator.evaluate_all()
        summary = await self._dispatcher.run_cycle()

        return {
            "ingested": ingested,
            "unflushed": unflushed,
            "alerts_fired": len(alerts),
            "notifications": {
                "checked": summary.checked,
                "delivered": summary.delivered,
                "retried": summary.retried,
                "no_target": summary.no_target,
            },
        }

    async def health_check(self) -> dict[str, Any]:
        """
        Check health of the pipeline.

        Returns:
            Dictionary with health status
        """
        inflight = self._batcher.inflight
        return {
            "running": self._running,
            "database_healthy": await self._db.health_check(),
            "db_pool": self._db.pool_stats(),
            "tracked_sources": len(self._tracker.known_paths),
            "dedup_cache_size": len(self._dedup),
            "pending_records": self._batcher.pending_count,
            "backlogged": self._batcher.is_backlogged,
            "failed_batch": (
                {"attempts": inflight.attempts, "last_error": inflight.last_error}
                if inflight is not None and inflight.attempts
                else None
            ),
            "active_tasks": len([t for t in self._tasks if not t.done()]),
        }
