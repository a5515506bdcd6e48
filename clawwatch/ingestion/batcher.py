"""
Batch accumulation and flushing of deduplicated records.

Records are buffered until either ``max_size`` records are waiting or the
oldest one has been held for ``max_hold_seconds``, then written to storage
in one upsert. A batch that fails to flush is kept intact and retried with
exactly the same contents before any newer record is flushed; storage
upserts are idempotent on the record fingerprint, so a retry after an
ambiguous failure cannot create duplicates.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from clawwatch.ingestion.schemas import ActivityRecord
from clawwatch.observability.metrics import get_metrics
from clawwatch.services.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

BatchSink = Callable[[list[ActivityRecord]], Awaitable[int]]
FlushListener = Callable[[list[ActivityRecord]], None]


@dataclass
class PendingBatch:
    """A frozen batch awaiting a successful flush."""

    records: list[ActivityRecord]
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    attempts: int = 0
    last_error: str | None = None

    def __len__(self) -> int:
        return len(self.records)


class BatchAccumulator:
    """
    Buffers records and flushes them as bounded-size batches.

    Flushes are serialized by an asyncio lock, so a size-triggered flush
    from ``offer()`` and a timer-triggered ``flush_if_due()`` never overlap.

    Usage:
        batcher = BatchAccumulator(sink=repo.upsert_batch, max_size=200)
        await batcher.offer(record)
        ...
        await batcher.flush_if_due()
    """

    def __init__(
        self,
        sink: BatchSink,
        max_size: int = 200,
        max_hold_seconds: float = 5.0,
        max_pending: int = 20_000,
        flush_timeout: float = 15.0,
        backoff: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the accumulator.

        Args:
            sink: Async callable that upserts a list of records.
            max_size: Records per batch.
            max_hold_seconds: Maximum buffering time before a flush is due.
            max_pending: Buffered records at which callers should stop
                producing (see ``is_backlogged``).
            flush_timeout: Timeout for one sink call.
            backoff: Delay policy between retries of a failed batch.
            clock: Monotonic clock in seconds.
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._sink = sink
        self._max_size = max_size
        self._max_hold = max_hold_seconds
        self._max_pending = max_pending
        self._flush_timeout = flush_timeout
        self._backoff = backoff or ExponentialBackoff(base_delay=1.0, max_delay=60.0)
        self._clock = clock

        self._buffer: list[ActivityRecord] = []
        self._buffer_since: float | None = None
        self._inflight: PendingBatch | None = None
        self._retry_at: float | None = None
        self._lock = asyncio.Lock()
        self._listeners: list[FlushListener] = []
        self._metrics = get_metrics()

    @property
    def pending_count(self) -> int:
        """Records buffered or in a batch awaiting a successful flush."""
        inflight = len(self._inflight) if self._inflight else 0
        return len(self._buffer) + inflight

    @property
    def is_backlogged(self) -> bool:
        return self.pending_count >= self._max_pending

    @property
    def inflight(self) -> PendingBatch | None:
        """Batch that failed and is awaiting retry (for inspection/testing)."""
        return self._inflight

    def add_listener(self, listener: FlushListener) -> None:
        """Register a callback invoked with every successfully flushed batch."""
        self._listeners.append(listener)

    async def offer(self, record: ActivityRecord) -> None:
        """
        Append a deduplicated record, flushing when the batch is full.

        Args:
            record: Record already accepted by the dedup cache.
        """
        if not self._buffer:
            self._buffer_since = self._clock()
        self._buffer.append(record)
        self._metrics.pending_records.set(self.pending_count)

        if len(self._buffer) >= self._max_size:
            await self.flush()

    def is_due(self, now: float | None = None) -> bool:
        """Whether a retry or a hold-time flush should run now."""
        now = self._clock() if now is None else now
        if self._inflight is not None:
            return self._retry_at is None or now >= self._retry_at
        return (
            self._buffer_since is not None
            and now - self._buffer_since >= self._max_hold
        )

    async def flush_if_due(self, now: float | None = None) -> bool:
        """
        Flush when the hold time elapsed or a failed batch is due for retry.

        Returns:
            False if a flush ran and failed, True otherwise.
        """
        if not self.is_due(now):
            return True
        return await self.flush()

    async def flush(self, force: bool = False) -> bool:
        """
        Send one batch to storage.

        A previously failed batch is always retried first, with the same
        contents. While that batch is backing off, calls return False
        without touching storage unless ``force`` is set.

        Args:
            force: Ignore the retry delay of a failed batch.

        Returns:
            True if a batch was flushed or there was nothing to flush.
        """
        async with self._lock:
            if self._inflight is None:
                if not self._buffer:
                    return True
                self._inflight = PendingBatch(records=self._buffer[: self._max_size])
                self._buffer = self._buffer[self._max_size :]
                self._buffer_since = self._clock() if self._buffer else None

            now = self._clock()
            if not force and self._retry_at is not None and now < self._retry_at:
                return False

            return await self._send(self._inflight)

    async def drain(self) -> int:
        """
        Flush everything that can be flushed, ignoring retry delays.

        Stops at the first failure. Used on shutdown.

        Returns:
            Records left unflushed.
        """
        while self.pending_count:
            if not await self.flush(force=True):
                break
        if self.pending_count:
            logger.error(
                "Shutdown with %d unflushed records; they will be re-read on restart",
                self.pending_count,
            )
        return self.pending_count

    async def _send(self, batch: PendingBatch) -> bool:
        start = time.monotonic()
        try:
            await asyncio.wait_for(self._sink(batch.records), timeout=self._flush_timeout)
        except Exception as e:
            batch.attempts += 1
            batch.last_error = (
                "flush timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            )
            delay = self._backoff.next_delay()
            self._retry_at = self._clock() + delay
            self._metrics.record_flush("error", count=len(batch))
            logger.warning(
                "Flush of batch %s (%d records) failed on attempt %d: %s; retrying in %.1fs",
                batch.batch_id, len(batch), batch.attempts, batch.last_error, delay,
            )
            return False

        elapsed = time.monotonic() - start
        self._inflight = None
        self._retry_at = None
        self._backoff.reset()
        self._metrics.record_flush("success", count=len(batch), latency=elapsed)
        self._metrics.pending_records.set(self.pending_count)
        logger.debug("Flushed batch %s (%d records)", batch.batch_id, len(batch))

        for listener in self._listeners:
            try:
                listener(batch.records)
            except Exception as e:
                logger.error("Flush listener failed: %s", e)
        return True
