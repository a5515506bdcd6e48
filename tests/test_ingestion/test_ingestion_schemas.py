"""Tests for line parsing and activity record schemas."""

from datetime import datetime, timezone

import pytest
from conftest import make_line

from clawwatch.ingestion.schemas import (
    RecordKind,
    SourceLine,
    agent_id_from_path,
    parse_line,
)


class TestFingerprint:

    def test_stable_for_same_line(self):
        a = SourceLine(path="/x.jsonl", offset=10, text="{}")
        b = SourceLine(path="/x.jsonl", offset=10, text="{}")
        assert a.fingerprint == b.fingerprint
        assert len(a.fingerprint) == 64

    def test_differs_by_offset_path_and_text(self):
        base = SourceLine(path="/x.jsonl", offset=10, text="{}")
        assert base.fingerprint != SourceLine("/x.jsonl", 11, "{}").fingerprint
        assert base.fingerprint != SourceLine("/y.jsonl", 10, "{}").fingerprint
        assert base.fingerprint != SourceLine("/x.jsonl", 10, "{ }").fingerprint


class TestParseLine:

    def test_cost_record_with_camel_case_fields(self):
        line = make_line(
            agentId="beta",
            sessionKey="sess-9",
            provider="anthropic",
            model="claude",
            inputTokens=1200,
            outputTokens=300,
            cacheReadTokens=50,
            cost=0.042,
        )
        record = parse_line(line)

        assert record.kind is RecordKind.COST
        assert record.agent_id == "beta"
        assert record.session_key == "sess-9"
        assert record.input_tokens == 1200
        assert record.total_tokens == 1550
        assert record.cost == pytest.approx(0.042)
        assert record.fingerprint == line.fingerprint
        assert record.timestamp == datetime(2026, 3, 1, 11, 59, tzinfo=timezone.utc)

    def test_usage_block_and_cost_object(self):
        record = parse_line(make_line(
            usage={"input": 10, "output": 5, "cacheRead": 2, "cacheWrite": 1},
            cost={"total": 0.5},
        ))
        assert record.total_tokens == 18
        assert record.cost == 0.5

    def test_agent_id_falls_back_to_path(self):
        record = parse_line(make_line(kind="heartbeat"))
        assert record.kind is RecordKind.HEARTBEAT
        assert record.agent_id == "alpha"

    def test_kind_aliases(self):
        assert parse_line(make_line(kind="usage")).kind is RecordKind.COST
        assert parse_line(make_line(kind="ping")).kind is RecordKind.HEARTBEAT
        assert parse_line(make_line(kind=None, type="error")).kind is RecordKind.ERROR

    def test_epoch_millisecond_timestamp(self):
        record = parse_line(make_line(timestamp=1_772_366_400_000))
        assert record.timestamp == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_blank_line_is_skipped(self):
        assert parse_line(SourceLine(path="/x.jsonl", offset=0, text="   ")) is None

    @pytest.mark.parametrize("text", [
        "not json",
        "[1, 2, 3]",
        '{"kind": "mystery"}',
        '{"message": "no kind"}',
    ])
    def test_malformed_lines_raise_value_error(self, text):
        with pytest.raises(ValueError):
            parse_line(SourceLine(path="/x.jsonl", offset=0, text=text))

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError):
            parse_line(make_line(inputTokens=-5))

    @pytest.mark.parametrize("text", [
        '{"kind": "cost", "inputTokens": Infinity}',
        '{"kind": "cost", "cost": NaN}',
        '{"kind": "cost", "cost": 1e999}',
        '{"kind": "cost", "extra": {"ratio": -Infinity}}',
        '{"kind": "cost", "agentId": "a\\u0000b"}',
        '{"kind": "cost", "extra": ["ok", "bad\\u0000"]}',
        '{"kind": "cost", "outputTokens": 1e30}',
        '{"kind": "cost", "inputTokens": 99999999999999999999999}',
        '{"kind": "cost", "timestamp": 1e300}',
    ])
    def test_values_storage_would_reject_raise_value_error(self, text):
        with pytest.raises(ValueError):
            parse_line(SourceLine(path="/x.jsonl", offset=0, text=text))

    def test_largest_bigint_token_count_accepted(self):
        record = parse_line(make_line(inputTokens=2**63 - 1))
        assert record.input_tokens == 2**63 - 1


class TestAgentIdFromPath:

    def test_sessions_layout(self):
        assert agent_id_from_path("/home/u/.openclaw/agents/main/sessions/abc.jsonl") == "main"

    def test_other_layout_uses_stem(self):
        assert agent_id_from_path("/var/log/worker-3.jsonl") == "worker-3"
