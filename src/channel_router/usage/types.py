"""Usage record and stats summary types.

One UsageRecord is written per provider-call attempt and never modified
afterwards.
"""

import json
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable log entry for one provider-call attempt.

    Attributes:
        id: ``{epoch ms}-{random}``
        timestamp: Epoch milliseconds
        model: Logical model requested
        actual_model: Provider model id sent upstream
        key_index: Index into the channel's api_keys, -1 for a single key
        duration_ms: Wall time of the attempt
        retry_count: Attempts made before this one within the request
        channel_switched: Final channel differs from the first attempted
        switch_chain: Channel ids attempted so far, in order
        source: chat | test | batch-test | health-check
        is_estimated: Token counts came from local estimation
        request: Truncated request summary
        response: Truncated response, kept only for failures
    """

    id: str
    timestamp: int
    channel_id: str = "unknown"
    channel_name: str = "Unknown"
    model: str = "unknown"
    actual_model: Optional[str] = None
    key_index: int = -1
    key_name: str = ""
    strategy: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = 0
    success: bool = True
    error: Optional[str] = None
    error_type: Optional[str] = None
    retry_count: int = 0
    channel_switched: bool = False
    previous_channel_id: Optional[str] = None
    switch_chain: Optional[List[str]] = None
    source: str = "chat"
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    stream: bool = False
    is_estimated: bool = False
    request: Optional[Dict[str, Any]] = None
    response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Serialize to a single JSON line."""
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, line: str) -> "UsageRecord":
        """Deserialize, ignoring fields unknown to this version.

        Raises:
            json.JSONDecodeError: Malformed line
            KeyError: Missing id or timestamp
        """
        data = json.loads(line)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["id"] = data["id"]
        kwargs["timestamp"] = data["timestamp"]
        return cls(**kwargs)


@dataclass
class StatsSummary:
    """Counters for one aggregate bucket.

    The same shape is produced whether the numbers come from the aggregate
    store or from summing in-memory records.
    """

    label: str
    total_calls: int = 0
    success_calls: int = 0
    failed_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_duration_ms: int = 0
    source: str = "aggregate"  # "aggregate" | "memory"

    @property
    def avg_duration_ms(self) -> int:
        if self.total_calls == 0:
            return 0
        return round(self.total_duration_ms / self.total_calls)

    @property
    def success_rate(self) -> int:
        """Percentage of successful calls, rounded."""
        if self.total_calls == 0:
            return 0
        return round(self.success_calls / self.total_calls * 100)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["avg_duration_ms"] = self.avg_duration_ms
        data["success_rate"] = self.success_rate
        return data


@dataclass
class RankingEntry:
    """One row of a model or channel usage ranking."""

    key: str
    calls: int = 0
    success_calls: int = 0
    tokens: int = 0
    duration_ms: int = 0
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AGGREGATE_FIELDS = (
    "total_calls",
    "success_calls",
    "failed_calls",
    "total_input_tokens",
    "total_output_tokens",
    "total_duration_ms",
)


def record_increments(record: UsageRecord) -> Dict[str, int]:
    """Counter deltas contributed by one record."""
    return {
        "total_calls": 1,
        "success_calls": 1 if record.success else 0,
        "failed_calls": 0 if record.success else 1,
        "total_input_tokens": record.input_tokens,
        "total_output_tokens": record.output_tokens,
        "total_duration_ms": record.duration_ms,
    }


def summarize(records: List[UsageRecord], label: str, source: str = "memory") -> StatsSummary:
    """Sum records into a StatsSummary."""
    summary = StatsSummary(label=label, source=source)
    for record in records:
        summary.total_calls += 1
        if record.success:
            summary.success_calls += 1
        else:
            summary.failed_calls += 1
        summary.total_input_tokens += record.input_tokens
        summary.total_output_tokens += record.output_tokens
        summary.total_duration_ms += record.duration_ms
    return summary


__all__ = [
    "UsageRecord",
    "StatsSummary",
    "RankingEntry",
    "AGGREGATE_FIELDS",
    "record_increments",
    "summarize",
]
