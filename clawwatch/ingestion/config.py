"""Ingestion pipeline configuration.

Controls source discovery, read sizes, batching, flush retry, and the
dedup retention window. All settings can be overridden via ``INGEST_*``
environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IngestionConfig(BaseSettings):
    """Configuration for source tailing, deduplication, and batch flushing."""

    model_config = SettingsConfigDict(
        env_prefix="INGEST_",
        case_sensitive=False,
        extra="ignore",
    )

    # Source discovery and polling
    source_globs: list[str] = Field(
        default=["~/.openclaw/agents/*/sessions/*.jsonl"],
        description="Glob patterns expanded each cycle to find sources",
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Seconds between source polls",
    )
    max_read_bytes: int = Field(
        default=1_048_576,
        ge=1024,
        description="Maximum bytes read from one source per poll",
    )

    # Batching
    batch_max_size: int = Field(
        default=200,
        ge=1,
        le=10_000,
        description="Records per flushed batch",
    )
    batch_max_hold_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Maximum time a record waits in the buffer before flush",
    )
    batch_max_pending: int = Field(
        default=20_000,
        ge=1,
        description="Buffered records at which source polling pauses",
    )
    flush_timeout_seconds: float = Field(
        default=15.0,
        gt=0.0,
        description="Timeout for one batch upsert",
    )
    flush_retry_base_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="Initial delay before retrying a failed flush",
    )
    flush_retry_max_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Cap on the delay between flush retries",
    )

    # Deduplication
    dedup_retention_days: float = Field(
        default=7.0,
        gt=0.0,
        description="Days a fingerprint is remembered",
    )
    dedup_prune_interval_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds between dedup prune sweeps",
    )
    dedup_prune_chunk_size: int = Field(
        default=1000,
        ge=1,
        description="Entries examined per lock hold while pruning",
    )
