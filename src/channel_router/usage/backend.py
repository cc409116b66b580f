"""Durable storage for usage records and aggregate buckets.

Records go to a capped Redis list (LPUSH + LTRIM, newest first). Aggregates
are Redis hashes incremented with HINCRBY whose TTL is refreshed on every
write. Backend errors propagate to the caller; the recorder and aggregator
decide how to degrade.
"""

import json
import logging
from typing import Dict, List, Optional, Protocol, runtime_checkable

import redis.asyncio as aioredis

from .types import AGGREGATE_FIELDS, UsageRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class UsageBackend(Protocol):
    """Storage used by UsageRecorder and StatsAggregator."""

    async def push_record(self, record: UsageRecord, max_records: int) -> None:
        ...

    async def recent_records(self, limit: int) -> List[UsageRecord]:
        ...

    async def increment_bucket(
        self, bucket: str, increments: Dict[str, int], ttl_seconds: int
    ) -> None:
        ...

    async def read_bucket(self, bucket: str) -> Dict[str, int]:
        ...

    async def clear(self) -> int:
        ...


class RedisUsageBackend:
    """UsageBackend on redis.asyncio."""

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        prefix: str = "channel_router:usage",
        client: Optional[aioredis.Redis] = None,
    ):
        self.url = url
        self.prefix = prefix
        self._client = client

    async def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self.url, decode_responses=True)
        return self._client

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    @property
    def list_key(self) -> str:
        return self._make_key("list")

    def bucket_key(self, bucket: str) -> str:
        return self._make_key(f"stats:{bucket}")

    async def push_record(self, record: UsageRecord, max_records: int) -> None:
        client = await self._get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.lpush(self.list_key, record.to_json())
            pipe.ltrim(self.list_key, 0, max_records - 1)
            await pipe.execute()

    async def recent_records(self, limit: int) -> List[UsageRecord]:
        """Newest-first records; malformed entries are skipped."""
        client = await self._get_client()
        raw = await client.lrange(self.list_key, 0, max(limit, 1) - 1)
        records = []
        for line in raw:
            try:
                records.append(UsageRecord.from_json(line))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed usage record: {e}")
        return records

    async def increment_bucket(
        self,
        bucket: str,
        increments: Dict[str, int],
        ttl_seconds: int,
    ) -> None:
        client = await self._get_client()
        key = self.bucket_key(bucket)
        async with client.pipeline(transaction=True) as pipe:
            for name, value in increments.items():
                pipe.hincrby(key, name, int(value))
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def read_bucket(self, bucket: str) -> Dict[str, int]:
        client = await self._get_client()
        raw = await client.hgetall(self.bucket_key(bucket))
        return {name: int(raw.get(name, 0) or 0) for name in AGGREGATE_FIELDS}

    async def clear(self) -> int:
        """Delete every key under the prefix. Returns the number deleted."""
        client = await self._get_client()
        keys = [key async for key in client.scan_iter(match=self._make_key("*"))]
        if not keys:
            return 0
        return await client.delete(*keys)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
