"""Pytest fixtures for clawwatch tests."""

import json
from datetime import datetime, timezone

import pytest

from clawwatch.alerts.schemas import Alert, AlertRule, ChannelConfig, RuleConfig
from clawwatch.ingestion.schemas import ActivityRecord, RecordKind, SourceLine, SourceStat

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class MemorySource:
    """In-memory LineSource that counts stat and read calls."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.mtimes: dict[str, float] = {}
        self.stat_calls = 0
        self.read_calls = 0
        self._tick = 0.0

    def write(self, path: str, data: bytes) -> None:
        self._tick += 1.0
        self.files[path] = data
        self.mtimes[path] = self._tick

    def append(self, path: str, data: bytes) -> None:
        self.write(path, self.files.get(path, b"") + data)

    def remove(self, path: str) -> None:
        self.files.pop(path, None)

    def stat(self, path: str) -> SourceStat | None:
        self.stat_calls += 1
        if path not in self.files:
            return None
        return SourceStat(size_bytes=len(self.files[path]), modified_at=self.mtimes[path])

    def read(self, path: str, offset: int, max_bytes: int) -> bytes:
        self.read_calls += 1
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path][offset:offset + max_bytes]


@pytest.fixture
def memory_source() -> MemorySource:
    return MemorySource()


def make_line(
    path: str = "/data/agents/alpha/sessions/s1.jsonl",
    offset: int = 0,
    **fields,
) -> SourceLine:
    """Build a SourceLine carrying a JSON event."""
    event = {"kind": "cost", "timestamp": "2026-03-01T11:59:00Z"}
    event.update(fields)
    return SourceLine(path=path, offset=offset, text=json.dumps(event))


def make_record(offset: int = 0, kind: RecordKind = RecordKind.COST, **overrides) -> ActivityRecord:
    """Build an ActivityRecord with a unique fingerprint per offset."""
    data = {
        "fingerprint": f"fp-{offset}",
        "kind": kind,
        "agent_id": "alpha",
        "session_key": "s1",
        "input_tokens": 100,
        "output_tokens": 50,
        "cost": 0.01,
        "timestamp": NOW,
        "source_path": "/data/agents/alpha/sessions/s1.jsonl",
        "source_offset": offset,
    }
    data.update(overrides)
    return ActivityRecord(**data)


def make_rule(**overrides) -> AlertRule:
    data = {
        "rule_id": "rule-1",
        "name": "High spend",
        "type": "custom_threshold",
        "config": RuleConfig(threshold=5.0, metric="cost_per_hour"),
        "channels": ["discord"],
        "cooldown_minutes": 10,
    }
    data.update(overrides)
    return AlertRule(**data)


def make_alert(**overrides) -> Alert:
    data = {
        "alert_id": "alert-1",
        "rule_id": "rule-1",
        "type": "custom_threshold",
        "severity": "warning",
        "title": "High spend: cost_per_hour > 5",
        "message": "Metric cost_per_hour is 7.5",
        "channels": ["discord"],
        "created_at": NOW,
    }
    data.update(overrides)
    return Alert(**data)


def make_channel(**overrides) -> ChannelConfig:
    data = {
        "channel_id": "chan-1",
        "type": "discord",
        "name": "ops",
        "webhook_url": "https://discord.example/api/webhooks/1",
    }
    data.update(overrides)
    return ChannelConfig(**data)
