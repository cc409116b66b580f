"""Bucketed usage counters.

Every record increments four buckets: the UTC day, the UTC hour, its
channel and (when known) its user. Reads come from the aggregate store and
fall back to summing the in-memory record cache when the store is missing or
failing, with the same StatsSummary shape either way.

clear() has no write barrier: a record being written concurrently may land
just after the wipe.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from ..events import GatewayEventType, emit_event
from ..unified_config import StatsTTLConfig
from .backend import UsageBackend
from .types import (
    RankingEntry,
    StatsSummary,
    UsageRecord,
    record_increments,
    summarize,
)

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400

# Seconds a single aggregate-store call may take before stats degrade to memory
DEFAULT_BACKEND_TIMEOUT = 2.0


def _utc(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def daily_bucket(timestamp_ms: int) -> str:
    return _utc(timestamp_ms).strftime("%Y-%m-%d")


def hourly_bucket(timestamp_ms: int) -> str:
    return "hourly:" + _utc(timestamp_ms).strftime("%Y-%m-%dT%H")


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class StatsAggregator:
    """Maintains and reads aggregate buckets."""

    def __init__(
        self,
        backend: Optional[UsageBackend] = None,
        memory: Optional[Deque[UsageRecord]] = None,
        ttl: Optional[StatsTTLConfig] = None,
        clock: Callable[[], int] = _now_ms,
        timeout: Optional[float] = DEFAULT_BACKEND_TIMEOUT,
    ):
        """Initialize the aggregator.

        Args:
            backend: Aggregate store; None means memory-only stats
            memory: Newest-first record cache shared with the recorder
            ttl: Bucket lifetimes
            clock: Epoch-ms source (injectable for tests)
            timeout: Limit per backend call; None waits indefinitely
        """
        self._backend = backend
        self._memory: Deque[UsageRecord] = memory if memory is not None else deque()
        self._ttl = ttl or StatsTTLConfig()
        self._clock = clock
        self._timeout = timeout
        self._degraded = False

    @property
    def degraded(self) -> bool:
        """True while the last backend operation failed."""
        return self._degraded

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, self._timeout)

    def _backend_failed(self, operation: str, error: Exception) -> None:
        logger.warning(f"Stats backend {operation} failed, using memory: {error!r}")
        if not self._degraded:
            self._degraded = True
            emit_event(
                GatewayEventType.STATS_BACKEND_DEGRADED,
                {"operation": operation, "error": str(error)},
            )

    def _backend_ok(self) -> None:
        if self._degraded:
            logger.info("Stats backend recovered")
        self._degraded = False

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def buckets_for(self, record: UsageRecord) -> Dict[str, int]:
        """Bucket name -> TTL seconds for one record."""
        buckets = {
            daily_bucket(record.timestamp): self._ttl.daily_days * DAY_SECONDS,
            hourly_bucket(record.timestamp): self._ttl.hourly_days * DAY_SECONDS,
            f"channel:{record.channel_id}": self._ttl.channel_days * DAY_SECONDS,
        }
        if record.user_id:
            buckets[f"user:{record.user_id}"] = self._ttl.user_days * DAY_SECONDS
        return buckets

    async def update_aggregates(self, record: UsageRecord) -> bool:
        """Fold one record into its buckets. Never raises.

        All bucket writes for the record share one timeout.

        Returns:
            True if the aggregate store was updated
        """
        if self._backend is None:
            return False
        try:
            await self._bounded(self._write_buckets(record))
        except Exception as e:
            self._backend_failed("update", e)
            return False
        self._backend_ok()
        return True

    async def _write_buckets(self, record: UsageRecord) -> None:
        increments = record_increments(record)
        for bucket, ttl_seconds in self.buckets_for(record).items():
            await self._backend.increment_bucket(bucket, increments, ttl_seconds)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _read(
        self,
        bucket: str,
        label: str,
        matches: Callable[[UsageRecord], bool],
    ) -> StatsSummary:
        if self._backend is not None:
            try:
                counters = await self._bounded(self._backend.read_bucket(bucket))
            except Exception as e:
                self._backend_failed("read", e)
            else:
                self._backend_ok()
                return StatsSummary(label=label, source="aggregate", **counters)
        return summarize([r for r in self._memory if matches(r)], label, source="memory")

    async def get_overview(self) -> StatsSummary:
        """Today's totals (UTC day)."""
        today = daily_bucket(self._clock())
        return await self._read(
            today, today, lambda r: daily_bucket(r.timestamp) == today
        )

    async def get_channel_stats(self, channel_id: str) -> StatsSummary:
        return await self._read(
            f"channel:{channel_id}", channel_id, lambda r: r.channel_id == channel_id
        )

    async def get_user_stats(self, user_id: str) -> StatsSummary:
        return await self._read(
            f"user:{user_id}", user_id, lambda r: r.user_id == user_id
        )

    async def get_recent(
        self,
        limit: int = 50,
        channel_id: Optional[str] = None,
        model: Optional[str] = None,
        success: Optional[bool] = None,
        source: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[UsageRecord]:
        """Newest-first records, optionally filtered.

        With a backend, the newest ``limit * 2`` stored records are scanned,
        so heavily filtered queries may return fewer than ``limit``.
        """
        records: List[UsageRecord]
        if self._backend is not None:
            try:
                records = await self._bounded(self._backend.recent_records(limit * 2))
            except Exception as e:
                self._backend_failed("recent", e)
                records = list(self._memory)
            else:
                self._backend_ok()
        else:
            records = list(self._memory)

        def keep(r: UsageRecord) -> bool:
            if channel_id is not None and r.channel_id != channel_id:
                return False
            if model is not None and r.model != model:
                return False
            if success is not None and r.success != success:
                return False
            if source is not None and r.source != source:
                return False
            if start_time is not None and r.timestamp < start_time:
                return False
            if end_time is not None and r.timestamp > end_time:
                return False
            return True

        return [r for r in records if keep(r)][:limit]

    async def get_model_ranking(self, limit: int = 10) -> List[RankingEntry]:
        """Models by call count over the recent records."""
        return self._rank(await self.get_recent(1000), lambda r: r.model, limit)

    async def get_channel_ranking(self, limit: int = 10) -> List[RankingEntry]:
        """Channels by call count over the recent records."""
        return self._rank(
            await self.get_recent(1000),
            lambda r: r.channel_id,
            limit,
            label=lambda r: r.channel_name,
        )

    @staticmethod
    def _rank(
        records: List[UsageRecord],
        key: Callable[[UsageRecord], str],
        limit: int,
        label: Optional[Callable[[UsageRecord], str]] = None,
    ) -> List[RankingEntry]:
        entries: Dict[str, RankingEntry] = {}
        for record in records:
            bucket = key(record)
            entry = entries.setdefault(bucket, RankingEntry(key=bucket))
            if label is not None and entry.name is None:
                entry.name = label(record)
            entry.calls += 1
            if record.success:
                entry.success_calls += 1
            entry.tokens += record.total_tokens
            entry.duration_ms += record.duration_ms
        ranked = sorted(entries.values(), key=lambda e: e.calls, reverse=True)
        return ranked[:limit]

    async def get_model_stats(self, limit: int = 10) -> Dict[str, Any]:
        """Model and channel rankings for the stats surface."""
        return {
            "models": [e.to_dict() for e in await self.get_model_ranking(limit)],
            "channels": [e.to_dict() for e in await self.get_channel_ranking(limit)],
        }

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def clear(self) -> int:
        """Delete all buckets, the stored records and the memory cache.

        Returns:
            Number of backend keys deleted
        """
        self._memory.clear()
        deleted = 0
        if self._backend is not None:
            try:
                deleted = await self._backend.clear()
            except Exception as e:
                self._backend_failed("clear", e)
            else:
                self._backend_ok()
        emit_event(GatewayEventType.STATS_CLEARED, {"deleted_keys": deleted})
        return deleted
