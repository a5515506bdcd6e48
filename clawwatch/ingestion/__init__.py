"""Ingestion layer: source tailing, deduplication, and batched storage."""

from clawwatch.ingestion.batcher import BatchAccumulator, PendingBatch
from clawwatch.ingestion.config import IngestionConfig
from clawwatch.ingestion.deduplication import DedupCache
from clawwatch.ingestion.repository import ActivityRepository
from clawwatch.ingestion.schemas import (
    ActivityRecord,
    RecordKind,
    SourceCursor,
    SourceLine,
    SourceStat,
    parse_line,
)
from clawwatch.ingestion.tracker import LineSource, LocalFileSource, SourceTracker

__all__ = [
    "ActivityRecord",
    "ActivityRepository",
    "BatchAccumulator",
    "DedupCache",
    "IngestionConfig",
    "LineSource",
    "LocalFileSource",
    "PendingBatch",
    "RecordKind",
    "SourceCursor",
    "SourceLine",
    "SourceStat",
    "SourceTracker",
    "parse_line",
]
