"""Database repository for the activity_records table.

Writes are idempotent on the record fingerprint: re-flushing a batch after
an ambiguous failure, or re-reading a source after a restart, never creates
a second row for the same line.
"""

import json
import logging

from clawwatch.ingestion.schemas import ActivityRecord
from clawwatch.storage.database import Database

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS activity_records (
    fingerprint        TEXT PRIMARY KEY,
    kind               TEXT NOT NULL,
    agent_id           TEXT NOT NULL,
    session_key        TEXT,
    channel            TEXT,
    provider           TEXT,
    model              TEXT,
    input_tokens       BIGINT NOT NULL DEFAULT 0,
    output_tokens      BIGINT NOT NULL DEFAULT 0,
    cache_read_tokens  BIGINT NOT NULL DEFAULT 0,
    cache_write_tokens BIGINT NOT NULL DEFAULT 0,
    cost               DOUBLE PRECISION NOT NULL DEFAULT 0,
    timestamp          TIMESTAMPTZ NOT NULL,
    source_path        TEXT NOT NULL,
    source_offset      BIGINT NOT NULL,
    payload            JSONB NOT NULL DEFAULT '{}',
    ingested_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_activity_kind_timestamp
    ON activity_records(kind, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_activity_agent_timestamp
    ON activity_records(agent_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_activity_session
    ON activity_records(session_key, timestamp DESC)
    WHERE session_key IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_activity_channel
    ON activity_records(channel, timestamp DESC)
    WHERE channel IS NOT NULL;
"""

_BULK_UPSERT_SQL = """
INSERT INTO activity_records (
    fingerprint, kind, agent_id, session_key, channel, provider, model,
    input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
    cost, timestamp, source_path, source_offset, payload
)
SELECT * FROM unnest(
    $1::text[], $2::text[], $3::text[], $4::text[], $5::text[], $6::text[], $7::text[],
    $8::bigint[], $9::bigint[], $10::bigint[], $11::bigint[],
    $12::double precision[], $13::timestamptz[], $14::text[], $15::bigint[], $16::jsonb[]
)
ON CONFLICT (fingerprint) DO NOTHING
RETURNING fingerprint
"""


class ActivityRepository:
    """Idempotent batch storage for activity records."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_table(self) -> None:
        """Create the activity_records table and indexes (idempotent)."""
        await self._db.execute(_CREATE_TABLE_SQL)
        logger.info("Activity records table ensured")

    async def upsert_batch(self, records: list[ActivityRecord]) -> int:
        """Insert a batch in one statement, skipping known fingerprints.

        Args:
            records: Records to store.

        Returns:
            Number of rows actually inserted (already-stored records are
            not counted).
        """
        if not records:
            return 0

        rows = await self._db.fetch(
            _BULK_UPSERT_SQL,
            [r.fingerprint for r in records],
            [r.kind.value for r in records],
            [r.agent_id for r in records],
            [r.session_key for r in records],
            [r.channel for r in records],
            [r.provider for r in records],
            [r.model for r in records],
            [r.input_tokens for r in records],
            [r.output_tokens for r in records],
            [r.cache_read_tokens for r in records],
            [r.cache_write_tokens for r in records],
            [r.cost for r in records],
            [r.timestamp for r in records],
            [r.source_path for r in records],
            [r.source_offset for r in records],
            [json.dumps(r.payload) for r in records],
        )
        inserted = len(rows)
        if inserted < len(records):
            logger.debug(
                "Upsert skipped %d already-stored records", len(records) - inserted,
            )
        return inserted
