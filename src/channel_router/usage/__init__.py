"""Usage recording and stats aggregation.

Usage:
    from channel_router.usage import UsageRecorder, RedisUsageBackend

    recorder = UsageRecorder(backend=RedisUsageBackend("redis://localhost:6379"))
    await recorder.record(channel_id="openai-1a2b3c4d", model="gpt-4o",
                          input_tokens=100, output_tokens=50, duration_ms=820)
    overview = await recorder.aggregator.get_overview()
"""

from .aggregator import StatsAggregator
from .backend import RedisUsageBackend, UsageBackend
from .recorder import UsageRecorder
from .tokens import count_tokens, heuristic_token_count
from .truncation import truncate_request, truncate_response
from .types import RankingEntry, StatsSummary, UsageRecord

__all__ = [
    # Types
    "UsageRecord",
    "StatsSummary",
    "RankingEntry",
    # Storage
    "UsageBackend",
    "RedisUsageBackend",
    # Recording and aggregation
    "UsageRecorder",
    "StatsAggregator",
    # Helpers
    "count_tokens",
    "heuristic_token_count",
    "truncate_request",
    "truncate_response",
]
