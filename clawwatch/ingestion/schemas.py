"""
Schemas for source tailing and activity records.

``SourceCursor`` / ``SourceLine`` describe where the tracker is in each
append-only source. ``ActivityRecord`` is the canonical parsed form of one
JSON event line and maps 1:1 to the ``activity_records`` table.
"""

import hashlib
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SourceStat:
    """Size and modification time of a source, read without touching content."""

    size_bytes: int
    modified_at: float


@dataclass
class SourceCursor:
    """Read position of one source.

    ``read_offset`` points just past the last complete line handed out;
    ``partial_line`` holds the bytes of an unterminated trailing line that
    were already read from the source.
    """

    path: str
    size_bytes: int = 0
    modified_at: float = 0.0
    read_offset: int = 0
    partial_line: bytes = b""

    @property
    def consumed(self) -> int:
        """Position of the next byte to read from the source."""
        return self.read_offset + len(self.partial_line)

    def reset(self) -> None:
        self.size_bytes = 0
        self.modified_at = 0.0
        self.read_offset = 0
        self.partial_line = b""


@dataclass(frozen=True)
class SourceLine:
    """One complete line returned by the source tracker."""

    path: str
    offset: int
    text: str

    @property
    def fingerprint(self) -> str:
        """Stable identity of this line: path, byte offset, and content."""
        digest = hashlib.sha256()
        digest.update(self.path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(str(self.offset).encode("ascii"))
        digest.update(b"\0")
        digest.update(self.text.encode("utf-8"))
        return digest.hexdigest()


class RecordKind(str, Enum):
    """Event kinds emitted by agent processes."""

    COST = "cost"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    MESSAGE = "message"
    SESSION = "session"


# Aliases seen in agent event streams
_KIND_ALIASES: dict[str, RecordKind] = {
    "cost": RecordKind.COST,
    "usage": RecordKind.COST,
    "heartbeat": RecordKind.HEARTBEAT,
    "ping": RecordKind.HEARTBEAT,
    "error": RecordKind.ERROR,
    "message": RecordKind.MESSAGE,
    "session": RecordKind.SESSION,
}


class ActivityRecord(BaseModel):
    """
    Canonical activity record.

    Every line accepted by the ingestion pipeline is normalized to this
    structure before deduplication and batching. The fingerprint is the
    idempotency key used by both the dedup cache and storage.
    """

    fingerprint: str = Field(..., min_length=1)
    kind: RecordKind
    agent_id: str = Field(..., min_length=1)
    session_key: str | None = None
    channel: str | None = None
    provider: str | None = None
    model: str | None = None
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    cache_write_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0)
    timestamp: datetime = Field(default_factory=_utc_now)
    source_path: str
    source_offset: int = Field(..., ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )


def agent_id_from_path(path: str) -> str:
    """Derive the agent id from a source path.

    Agent event logs live at ``.../agents/<agent_id>/sessions/<file>.jsonl``;
    anything else falls back to the file stem.
    """
    parts = PurePath(path).parts
    if len(parts) >= 3 and parts[-2] == "sessions":
        return parts[-3]
    return PurePath(path).stem


def _parse_timestamp(value: Any) -> datetime:
    """Accept epoch milliseconds, epoch seconds, or ISO-8601 strings."""
    if value is None:
        return _utc_now()
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp {value!r}")
    if isinstance(value, (int, float)):
        try:
            seconds = value / 1000.0 if value > 1e11 else float(value)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp {value!r} out of range") from e
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise ValueError(f"Invalid timestamp {value!r}")


def _first(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


# PostgreSQL BIGINT upper bound
_MAX_COUNT = 2**63 - 1


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-finite number {name}")


def _unstorable_value(value: Any) -> str | None:
    """Describe the first value PostgreSQL text or jsonb columns would reject."""
    if isinstance(value, str):
        return "NUL character" if "\x00" in value else None
    if isinstance(value, float):
        return None if math.isfinite(value) else "Non-finite number"
    if isinstance(value, dict):
        for key, item in value.items():
            problem = _unstorable_value(key) or _unstorable_value(item)
            if problem:
                return problem
    elif isinstance(value, list):
        for item in value:
            problem = _unstorable_value(item)
            if problem:
                return problem
    return None


def _finite(value: Any) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"Non-finite number {value!r}")
    return number


def _count(value: Any) -> int:
    """Token count that fits a BIGINT column."""
    count = value if isinstance(value, int) else int(_finite(value))
    if not 0 <= count <= _MAX_COUNT:
        raise ValueError(f"Token count {value!r} out of range")
    return count


def parse_line(line: SourceLine) -> ActivityRecord | None:
    """Parse one JSON event line into an ActivityRecord.

    Args:
        line: Complete line from the source tracker.

    Returns:
        ActivityRecord, or None for blank lines.

    Raises:
        ValueError: If the line is not a JSON object with a known kind.
    """
    text = line.text.strip()
    if not text:
        return None

    try:
        data = json.loads(text, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed JSON at {line.path}:{line.offset}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Expected JSON object at {line.path}:{line.offset}")

    problem = _unstorable_value(data)
    if problem:
        raise ValueError(f"{problem} at {line.path}:{line.offset}")

    raw_kind = str(_first(data, "kind", "type", default="")).lower()
    kind = _KIND_ALIASES.get(raw_kind)
    if kind is None:
        raise ValueError(f"Unknown record kind {raw_kind!r} at {line.path}:{line.offset}")

    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    cost = _first(data, "cost", default=0.0)
    if isinstance(cost, dict):
        cost = cost.get("total", 0.0)

    return ActivityRecord(
        fingerprint=line.fingerprint,
        kind=kind,
        agent_id=str(_first(data, "agentId", "agent_id", default=agent_id_from_path(line.path))),
        session_key=_first(data, "sessionKey", "session_key", "sessionId"),
        channel=_first(data, "channel"),
        provider=_first(data, "provider"),
        model=_first(data, "model"),
        input_tokens=_count(_first(data, "inputTokens", "input_tokens", default=usage.get("input") or 0)),
        output_tokens=_count(_first(data, "outputTokens", "output_tokens", default=usage.get("output") or 0)),
        cache_read_tokens=_count(_first(data, "cacheReadTokens", default=usage.get("cacheRead") or 0)),
        cache_write_tokens=_count(_first(data, "cacheWriteTokens", default=usage.get("cacheWrite") or 0)),
        cost=_finite(cost),
        timestamp=_parse_timestamp(_first(data, "timestamp", "ts")),
        source_path=line.path,
        source_offset=line.offset,
        payload=data,
    )
