"""Tests for ActivityRepository with mocked Database."""

import json
from unittest.mock import AsyncMock

import pytest
from conftest import make_record

from clawwatch.ingestion.repository import ActivityRepository


@pytest.fixture
def mock_db():
    return AsyncMock()


@pytest.fixture
def repo(mock_db):
    return ActivityRepository(mock_db)


class TestUpsertBatch:

    @pytest.mark.asyncio
    async def test_empty_batch_skips_database(self, repo, mock_db):
        assert await repo.upsert_batch([]) == 0
        mock_db.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_statement_with_column_arrays(self, repo, mock_db):
        records = [make_record(0), make_record(1, payload={"k": "v"})]
        mock_db.fetch.return_value = [{"fingerprint": "fp-0"}, {"fingerprint": "fp-1"}]

        inserted = await repo.upsert_batch(records)

        assert inserted == 2
        mock_db.fetch.assert_awaited_once()
        sql, *params = mock_db.fetch.await_args.args
        assert "ON CONFLICT (fingerprint) DO NOTHING" in sql
        assert params[0] == ["fp-0", "fp-1"]
        assert params[1] == ["cost", "cost"]
        assert json.loads(params[15][1]) == {"k": "v"}

    @pytest.mark.asyncio
    async def test_returns_only_newly_inserted_rows(self, repo, mock_db):
        mock_db.fetch.return_value = [{"fingerprint": "fp-1"}]
        assert await repo.upsert_batch([make_record(0), make_record(1)]) == 1

    @pytest.mark.asyncio
    async def test_errors_propagate(self, repo, mock_db):
        mock_db.fetch.side_effect = ConnectionError("gone")
        with pytest.raises(ConnectionError):
            await repo.upsert_batch([make_record(0)])


class TestCreateTable:

    @pytest.mark.asyncio
    async def test_create_table_is_idempotent_ddl(self, repo, mock_db):
        await repo.create_table()
        sql = mock_db.execute.await_args.args[0]
        assert "CREATE TABLE IF NOT EXISTS activity_records" in sql
        assert "fingerprint        TEXT PRIMARY KEY" in sql
