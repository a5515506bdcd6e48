"""
Incremental tailing of append-only, line-oriented sources.

The tracker keeps one ``SourceCursor`` per path and returns only complete
lines that were appended since the previous poll. A source whose size and
modification time are unchanged is skipped without any read, so an idle
multi-gigabyte log costs one ``stat`` per poll.

Truncation (current size below the consumed position) resets the cursor
and the source is read again from byte 0. A source that disappears keeps
its cursor so that reappearing unchanged does not cause reprocessing.
"""

import glob
import logging
import os
import threading
from collections.abc import Iterable
from typing import Protocol

from clawwatch.ingestion.schemas import SourceCursor, SourceLine, SourceStat
from clawwatch.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class LineSource(Protocol):
    """Read access to append-only text sources identified by path."""

    def stat(self, path: str) -> SourceStat | None:
        """Return size and modification time, or None if the source is gone."""

    def read(self, path: str, offset: int, max_bytes: int) -> bytes:
        """Read up to ``max_bytes`` starting at ``offset``."""


class LocalFileSource:
    """LineSource over the local filesystem."""

    def stat(self, path: str) -> SourceStat | None:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        return SourceStat(size_bytes=st.st_size, modified_at=st.st_mtime)

    def read(self, path: str, offset: int, max_bytes: int) -> bytes:
        with open(path, "rb") as fh:
            fh.seek(offset)
            return fh.read(max_bytes)


def expand_source_globs(patterns: Iterable[str]) -> list[str]:
    """Expand user/glob patterns into a sorted, de-duplicated path list."""
    paths: set[str] = set()
    for pattern in patterns:
        for match in glob.glob(os.path.expanduser(pattern)):
            if os.path.isfile(match):
                paths.add(match)
    return sorted(paths)


class SourceTracker:
    """
    Per-source cursors enabling incremental reads of growing text sources.

    Cursors live only in memory; a cold start re-reads every source from
    the beginning and relies on downstream deduplication.

    Usage:
        tracker = SourceTracker(LocalFileSource())
        for line in tracker.poll("/var/log/agent.jsonl"):
            ...
    """

    def __init__(
        self,
        source: LineSource | None = None,
        max_read_bytes: int = 1_048_576,
    ) -> None:
        self._source = source or LocalFileSource()
        self._max_read_bytes = max_read_bytes
        self._cursors: dict[str, SourceCursor] = {}
        self._lock = threading.Lock()
        self._metrics = get_metrics()

    def cursor(self, path: str) -> SourceCursor | None:
        """Current cursor for a path (for inspection/testing)."""
        with self._lock:
            return self._cursors.get(path)

    @property
    def known_paths(self) -> list[str]:
        with self._lock:
            return list(self._cursors)

    def forget(self, path: str) -> bool:
        """Drop the cursor for a path that is no longer monitored."""
        with self._lock:
            return self._cursors.pop(path, None) is not None

    def poll(self, path: str) -> list[SourceLine]:
        """
        Return complete lines appended to ``path`` since the last poll.

        Args:
            path: Source path.

        Returns:
            Lines in file order. Empty when the source is unchanged,
            missing, or has only an unterminated trailing line.
        """
        stat = self._source.stat(path)

        with self._lock:
            cursor = self._cursors.get(path)
            if cursor is None:
                cursor = SourceCursor(path=path)
                self._cursors[path] = cursor

        if stat is None:
            logger.debug("Source %s missing, keeping cursor at %d", path, cursor.read_offset)
            return []

        if (
            stat.size_bytes == cursor.size_bytes
            and stat.modified_at == cursor.modified_at
            and cursor.consumed >= stat.size_bytes
        ):
            return []

        if stat.size_bytes < cursor.consumed:
            logger.info(
                "Source %s truncated (%d < %d), reading from start",
                path, stat.size_bytes, cursor.consumed,
            )
            self._metrics.source_truncations.inc()
            cursor.reset()

        lines: list[SourceLine] = []
        remaining = min(stat.size_bytes - cursor.consumed, self._max_read_bytes)
        while remaining > 0:
            try:
                chunk = self._source.read(path, cursor.consumed, remaining)
            except OSError:
                if not lines:
                    raise
                # Keep what was already split; the stale size snapshot
                # makes the next poll resume from the cursor.
                logger.warning("Read of %s interrupted at %d", path, cursor.consumed)
                return lines
            if not chunk:
                break
            remaining -= len(chunk)
            lines.extend(self._split(cursor, chunk))

        cursor.size_bytes = stat.size_bytes
        cursor.modified_at = stat.modified_at
        return lines

    def poll_many(self, paths: Iterable[str]) -> dict[str, list[SourceLine]]:
        """
        Poll several sources, isolating failures per source.

        Args:
            paths: Source paths.

        Returns:
            Mapping of path to new lines, only for paths with new lines.
        """
        results: dict[str, list[SourceLine]] = {}
        for path in paths:
            try:
                lines = self.poll(path)
            except OSError as e:
                logger.warning("Failed to read source %s: %s", path, e)
                self._metrics.source_errors.labels(error_type=type(e).__name__).inc()
                continue
            self._metrics.record_lines_read(path, len(lines))
            if lines:
                results[path] = lines
        return results

    @staticmethod
    def _split(cursor: SourceCursor, chunk: bytes) -> list[SourceLine]:
        """Split buffered bytes into complete lines and advance the cursor."""
        data = cursor.partial_line + chunk
        lines: list[SourceLine] = []
        start = 0
        while True:
            newline = data.find(b"\n", start)
            if newline < 0:
                break
            raw = data[start:newline]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            lines.append(
                SourceLine(
                    path=cursor.path,
                    offset=cursor.read_offset + start,
                    text=raw.decode("utf-8", errors="replace"),
                )
            )
            start = newline + 1

        cursor.read_offset += start
        cursor.partial_line = data[start:]
        return lines
