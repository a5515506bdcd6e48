"""
Fingerprint deduplication with time-based eviction.

Sources are re-read on every cold start and after truncation, so the same
line can reach the pipeline many times. The cache remembers each record
fingerprint for a retention window and rejects repeats.

Memory is bounded by the number of distinct fingerprints seen within the
retention window: ``prune()`` runs on a fixed schedule and evicts entries
oldest-first in small chunks, so ingestion threads never wait behind a
full sweep. Storage upserts are idempotent on the same fingerprint, which
keeps correctness independent of eviction.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400.0


class DedupCache:
    """
    Bounded, time-evicting idempotency filter.

    Entries are kept in first-seen order, so pruning stops at the first
    entry that is still inside the retention window.

    Usage:
        cache = DedupCache(retention_seconds=7 * 86400)
        if cache.should_ingest(record.fingerprint):
            await batcher.offer(record)
    """

    def __init__(
        self,
        retention_seconds: float = 7 * SECONDS_PER_DAY,
        prune_chunk_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the cache.

        Args:
            retention_seconds: How long a fingerprint is remembered.
            prune_chunk_size: Entries examined per lock hold while pruning.
            clock: Source of the current time in epoch seconds.
        """
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self._retention = retention_seconds
        self._chunk_size = max(1, prune_chunk_size)
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def retention_seconds(self) -> float:
        return self._retention

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._entries

    def should_ingest(self, fingerprint: str, now: float | None = None) -> bool:
        """
        Check-and-record a fingerprint atomically.

        Args:
            fingerprint: Record fingerprint.
            now: Current epoch seconds (defaults to the cache clock).

        Returns:
            True the first time a fingerprint is seen within the retention
            window, False for every repeat.
        """
        now = self._clock() if now is None else now
        with self._lock:
            seen_at = self._entries.get(fingerprint)
            if seen_at is not None and now - seen_at <= self._retention:
                return False
            # New, or expired but not yet pruned: (re)record at the tail
            self._entries[fingerprint] = now
            self._entries.move_to_end(fingerprint)
            return True

    def discard(self, fingerprints: Iterable[str]) -> int:
        """Forget fingerprints so they can be ingested again."""
        removed = 0
        with self._lock:
            for fp in fingerprints:
                if self._entries.pop(fp, None) is not None:
                    removed += 1
        return removed

    def prune(self, now: float | None = None) -> int:
        """
        Evict entries older than the retention window.

        The lock is released between chunks so concurrent
        ``should_ingest`` calls wait for at most one chunk.

        Args:
            now: Current epoch seconds (defaults to the cache clock).

        Returns:
            Number of evicted entries.
        """
        now = self._clock() if now is None else now
        cutoff = now - self._retention
        evicted = 0

        while True:
            with self._lock:
                done = True
                for _ in range(self._chunk_size):
                    if not self._entries:
                        break
                    fingerprint, seen_at = next(iter(self._entries.items()))
                    if seen_at >= cutoff:
                        break
                    del self._entries[fingerprint]
                    evicted += 1
                else:
                    done = False
            if done:
                break

        if evicted:
            logger.debug("Dedup cache pruned %d entries (%d remain)", evicted, len(self))
        return evicted
