"""Usage recording for every provider-call attempt."""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import fields
from typing import Any, Callable, Deque, Dict, List, Optional

from ..unified_config import StatsTTLConfig, UsageConfig
from .aggregator import DEFAULT_BACKEND_TIMEOUT, StatsAggregator
from .backend import UsageBackend
from .tokens import count_message_tokens, count_tokens, load_tokenizer
from .truncation import truncate_request, truncate_response
from .types import UsageRecord

logger = logging.getLogger(__name__)

_RECORD_FIELDS = {f.name for f in fields(UsageRecord)} - {"id", "timestamp"}

# Provider usage dicts name the same counters differently
_INPUT_KEYS = ("prompt_tokens", "promptTokens", "input_tokens", "promptTokenCount")
_OUTPUT_KEYS = (
    "completion_tokens",
    "completionTokens",
    "output_tokens",
    "candidatesTokenCount",
)


def _first(usage: Dict[str, Any], keys) -> Optional[int]:
    """First counter present under any spelling; None if none is reported."""
    for key in keys:
        value = usage.get(key)
        if value is not None:
            return int(value)
    return None


def _now_ms() -> int:
    return int(time.time() * 1000)


class UsageRecorder:
    """Builds, stores and aggregates UsageRecords.

    Records are kept newest-first in a bounded memory cache and pushed to the
    durable capped list when a backend is configured. Backend failures are
    logged and never reach the caller.
    """

    def __init__(
        self,
        backend: Optional[UsageBackend] = None,
        config: Optional[UsageConfig] = None,
        ttl: Optional[StatsTTLConfig] = None,
        clock: Callable[[], int] = _now_ms,
        log_records: bool = True,
        backend_timeout: Optional[float] = DEFAULT_BACKEND_TIMEOUT,
    ):
        self._config = config or UsageConfig()
        self._backend = backend
        self._backend_timeout = backend_timeout
        self._memory: Deque[UsageRecord] = deque(maxlen=self._config.memory_records)
        self._clock = clock
        self._log_records = log_records
        self.aggregator = StatsAggregator(
            backend=backend,
            memory=self._memory,
            ttl=ttl,
            clock=clock,
            timeout=backend_timeout,
        )

    @property
    def memory(self) -> Deque[UsageRecord]:
        """Newest-first cache shared with the aggregator."""
        return self._memory

    def recent(self, limit: Optional[int] = None) -> List[UsageRecord]:
        records = list(self._memory)
        return records if limit is None else records[:limit]

    def build_record(
        self,
        usage: Optional[Dict[str, Any]] = None,
        messages: Optional[List[Dict[str, Any]]] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        response_text: Optional[str] = None,
        raw_response: Any = None,
        **partial: Any,
    ) -> UsageRecord:
        """Fill defaults and derived fields for one attempt.

        Args:
            usage: Provider usage mapping in any of the known spellings
            messages: Request messages, truncated onto the record and used
                      for estimation when no counts are reported
            tools: Tool definitions, truncated onto the record
            response_text: Reply text used for output estimation
            raw_response: Provider payload kept (truncated) on failure
            **partial: Any UsageRecord field

        Raises:
            TypeError: Unknown field in ``partial``
        """
        unknown = set(partial) - _RECORD_FIELDS
        if unknown:
            raise TypeError(f"Unknown usage record fields: {sorted(unknown)}")

        values = {k: v for k, v in partial.items() if v is not None}
        if usage:
            for name, keys in (("input_tokens", _INPUT_KEYS), ("output_tokens", _OUTPUT_KEYS)):
                reported = _first(usage, keys)
                if reported is not None:
                    values.setdefault(name, reported)

        # A reported zero is a real count and is never estimated over
        input_reported = "input_tokens" in values
        output_reported = "output_tokens" in values
        input_tokens = int(values.get("input_tokens") or 0)
        output_tokens = int(values.get("output_tokens") or 0)
        estimated = bool(values.get("is_estimated", False))

        if self._config.estimate_tokens and "total_tokens" not in values:
            encoding = self._config.tokenizer_encoding
            if not input_reported and messages:
                input_tokens = count_message_tokens(messages, encoding)
                estimated = estimated or input_tokens > 0
            if not output_reported and response_text:
                output_tokens = count_tokens(response_text, encoding)
                estimated = estimated or output_tokens > 0

        values["input_tokens"] = input_tokens
        values["output_tokens"] = output_tokens
        values["total_tokens"] = int(values.get("total_tokens") or input_tokens + output_tokens)
        values["is_estimated"] = estimated

        success = values.get("success", True)
        limits = self._config.truncation
        if messages or tools:
            values["request"] = truncate_request(messages, tools, limits)
        if raw_response is not None or "response" in values:
            values["response"] = truncate_response(
                raw_response if raw_response is not None else values.get("response"),
                success,
                limits,
            )

        timestamp = self._clock()
        return UsageRecord(
            id=f"{timestamp}-{uuid.uuid4().hex[:9]}",
            timestamp=timestamp,
            **values,
        )

    async def record(self, **partial: Any) -> UsageRecord:
        """Build a record, store it and fold it into the aggregates.

        Accepts the keyword arguments of build_record(). The tokenizer is
        loaded off the loop first when counts may need estimating, and the
        backend push is bounded by ``backend_timeout``.
        """
        may_estimate = partial.get("messages") or partial.get("response_text")
        if self._config.estimate_tokens and may_estimate:
            await load_tokenizer(
                self._config.tokenizer_encoding,
                timeout=self._config.tokenizer_load_timeout_seconds,
            )
        record = self.build_record(**partial)
        self._log(record)
        self._memory.appendleft(record)

        if self._backend is not None:
            try:
                await asyncio.wait_for(
                    self._backend.push_record(record, self._config.max_records),
                    self._backend_timeout,
                )
            except Exception as e:
                logger.warning(f"Usage record {record.id} kept in memory only: {e!r}")

        await self.aggregator.update_aggregates(record)
        return record

    def _log(self, record: UsageRecord) -> None:
        if not self._log_records:
            return
        key_info = f" key#{record.key_index + 1}({record.key_name})" if record.key_index >= 0 else ""
        token_info = (
            f" tokens:{record.input_tokens}/{record.output_tokens}"
            if record.total_tokens > 0
            else ""
        )
        status = "ok" if record.success else f"failed({record.error_type or 'error'})"
        logger.info(
            f"[{record.source}] {status} {record.channel_name}{key_info} | "
            f"{record.model} | {record.duration_ms}ms{token_info}"
        )

    async def clear(self) -> int:
        """Wipe stored records and aggregates."""
        return await self.aggregator.clear()
