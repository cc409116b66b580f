"""Concurrency-limited batch model tests for one channel.

``BatchTester.run_batch`` is an async generator yielding ``BatchEvent``
items in this order:

    clear (optional) -> start -> {testing, result, progress}* -> complete

At most ``concurrency`` tests are in flight. A poll loop tops the in-flight
set up as slots free. ``stop()`` sets an abort flag that is checked before
each new test starts; tests already in flight run to completion, and once
the abort is observed only the final ``complete`` event is yielded.
"""

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from ..adapters import create_chat_client
from ..adapters.base import ChatClientConfig
from ..channels.keys import KeyRotator
from ..channels.store import ChannelStore
from ..channels.types import WILDCARD_MODEL, Channel
from ..errors import ValidationError, classify_error
from ..events import GatewayEventType, emit_event
from ..unified_config import BatchTestConfig
from ..usage.recorder import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class BatchEvent:
    """One server-sent event from a batch run."""

    event: str
    data: Dict[str, Any]


@dataclass
class _BatchState:
    test_id: str
    channel_id: str
    total: int
    completed: int = 0
    aborted: bool = False
    started_at: float = field(default_factory=time.time)


def _new_test_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"test_{int(time.time() * 1000)}_{suffix}"


class BatchTester:
    """Runs probe requests for many models of one channel."""

    def __init__(
        self,
        store: ChannelStore,
        recorder: UsageRecorder,
        rotator: Optional[KeyRotator] = None,
        client_factory=create_chat_client,
        config: Optional[BatchTestConfig] = None,
        adapter_timeout: float = 120.0,
    ):
        self._store = store
        self._recorder = recorder
        self._rotator = rotator or KeyRotator(lock=store.lock)
        self._client_factory = client_factory
        self._config = config or BatchTestConfig()
        self._adapter_timeout = adapter_timeout
        self._active: Dict[str, _BatchState] = {}

    def resolve_models(self, channel_id: str, models: Optional[List[str]] = None) -> List[str]:
        """Models a batch would test: the explicit list, else the channel's own.

        Raises:
            NotFoundError: Unknown channel id
            ValidationError: Nothing to test
        """
        channel = self._store.require(channel_id)
        if models:
            return list(models)
        own = [m for m in channel.models if m != WILDCARD_MODEL]
        if not own:
            raise ValidationError("No models to test", field="models")
        return own

    async def run_batch(
        self,
        channel_id: str,
        models: Optional[List[str]] = None,
        concurrency: Optional[int] = None,
        clear_previous: bool = True,
        test_id: Optional[str] = None,
    ) -> AsyncIterator[BatchEvent]:
        """Test each model once, yielding progress as events.

        Args:
            channel_id: Channel to test
            models: Models to test (defaults to the channel's concrete models)
            concurrency: In-flight limit (defaults to config)
            clear_previous: Emit a leading ``clear`` event
            test_id: Explicit id, mostly for callers that stop by id

        Raises:
            NotFoundError: Unknown channel id (on first iteration)
            ValidationError: No models to test (on first iteration)
        """
        test_models = self.resolve_models(channel_id, models)
        channel = self._store.require(channel_id)
        limit = max(1, concurrency or self._config.concurrency)
        poll_interval = self._config.poll_interval_ms / 1000

        state = _BatchState(
            test_id=test_id or _new_test_id(),
            channel_id=channel_id,
            total=len(test_models),
        )
        self._active[state.test_id] = state
        emit_event(
            GatewayEventType.BATCH_TEST_STARTED,
            {"test_id": state.test_id, "total": state.total, "concurrency": limit},
            channel_id=channel_id,
        )
        logger.info(
            f"Batch test {state.test_id} started: {channel.name}, "
            f"{state.total} models, concurrency {limit}"
        )

        pending = list(enumerate(test_models))
        in_flight: Dict[asyncio.Task, int] = {}
        results: List[Dict[str, Any]] = []

        try:
            if clear_previous:
                yield BatchEvent("clear", {"message": "Clearing previous results"})
            yield BatchEvent(
                "start",
                {
                    "test_id": state.test_id,
                    "total": state.total,
                    "channel_id": channel_id,
                    "channel_name": channel.name,
                    "concurrency": limit,
                },
            )

            while pending or in_flight:
                while pending and len(in_flight) < limit and not state.aborted:
                    index, model = pending.pop(0)
                    task = asyncio.create_task(self._test_model(channel, model, index))
                    in_flight[task] = index
                    yield BatchEvent(
                        "testing",
                        {"model": model, "index": index, "running": len(in_flight)},
                    )
                if state.aborted:
                    break
                if not in_flight:
                    continue

                done, _ = await asyncio.wait(
                    in_flight, timeout=poll_interval, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    del in_flight[task]
                    result = task.result()
                    results.append(result)
                    state.completed += 1
                    if state.aborted:
                        continue
                    yield BatchEvent("result", result)
                    if state.aborted:
                        continue
                    yield BatchEvent("progress", self._progress(state, results, len(in_flight)))

            if in_flight:
                # Abort observed: let running tests finish, report them only in `complete`
                for result in await asyncio.gather(*in_flight):
                    results.append(result)
                    state.completed += 1
                in_flight.clear()

            results.sort(key=lambda r: r["index"])
            success_count = sum(1 for r in results if r["success"])
            summary = {
                "test_id": state.test_id,
                "total": state.total,
                "success": success_count,
                "failed": len(results) - success_count,
                "aborted": state.aborted,
                "results": results,
            }
            emit_event(
                GatewayEventType.BATCH_TEST_COMPLETE,
                {k: v for k, v in summary.items() if k != "results"},
                channel_id=channel_id,
            )
            logger.info(
                f"Batch test {state.test_id} finished: {success_count} ok, "
                f"{summary['failed']} failed{', aborted' if state.aborted else ''}"
            )
            yield BatchEvent("complete", summary)
        finally:
            for task in in_flight:
                task.cancel()
            self._active.pop(state.test_id, None)

    @staticmethod
    def _progress(
        state: _BatchState, results: List[Dict[str, Any]], running: int
    ) -> Dict[str, Any]:
        success_count = sum(1 for r in results if r["success"])
        return {
            "completed": state.completed,
            "total": state.total,
            "running": running,
            "success_count": success_count,
            "fail_count": len(results) - success_count,
        }

    async def _test_model(self, channel: Channel, model: str, index: int) -> Dict[str, Any]:
        """Send the probe message for one model. Never raises."""
        start_time = time.time()
        key_index, key_name, strategy = -1, "", ""
        message = {
            "role": "user",
            "content": [{"type": "text", "text": self._config.probe_message}],
        }
        try:
            selection = self._rotator.select_key(channel, record_usage=False)
            key_index, key_name, strategy = (
                selection.key_index,
                selection.key_name,
                selection.strategy,
            )
            client = self._client_factory(
                channel.adapter_type,
                ChatClientConfig.from_passthrough(
                    selection.key,
                    channel.base_url,
                    channel.passthrough,
                    timeout=self._adapter_timeout,
                ),
            )
            actual_model = channel.model_mapping.get(model, model)
            response = await client.send_message(
                message, model=actual_model, max_tokens=self._config.max_tokens
            )
        except Exception as e:
            elapsed = int((time.time() - start_time) * 1000)
            await self._recorder.record(
                channel_id=channel.id,
                channel_name=channel.name,
                model=model,
                key_index=key_index,
                key_name=key_name,
                strategy=strategy,
                duration_ms=elapsed,
                success=False,
                error=str(e),
                error_type=classify_error(e),
                source="batch-test",
            )
            return {
                "model": model,
                "index": index,
                "success": False,
                "elapsed": elapsed,
                "error": str(e),
            }

        elapsed = int((time.time() - start_time) * 1000)
        reply = response.text
        await self._recorder.record(
            channel_id=channel.id,
            channel_name=channel.name,
            model=model,
            actual_model=actual_model,
            key_index=key_index,
            key_name=key_name,
            strategy=strategy,
            duration_ms=elapsed,
            success=True,
            usage=response.usage,
            messages=[message],
            response_text=reply,
            source="batch-test",
        )
        key_info = (
            {"name": key_name, "index": key_index} if key_index >= 0 else None
        )
        return {
            "model": model,
            "index": index,
            "success": True,
            "elapsed": elapsed,
            "response": reply[:100],
            "key_info": key_info,
        }

    def stop(self, test_id: Optional[str] = None) -> int:
        """Abort one running batch, or all of them when ``test_id`` is None.

        Returns:
            Number of batches flagged
        """
        if test_id is not None:
            state = self._active.get(test_id)
            if state is None:
                return 0
            targets = [state]
        else:
            targets = list(self._active.values())

        for state in targets:
            state.aborted = True
            emit_event(
                GatewayEventType.BATCH_TEST_STOPPED,
                {"test_id": state.test_id, "completed": state.completed},
                channel_id=state.channel_id,
            )
        logger.info(f"Stopped {len(targets)} batch test(s)")
        return len(targets)

    def active_tests(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": state.test_id,
                "channel_id": state.channel_id,
                "completed": state.completed,
                "total": state.total,
                "aborted": state.aborted,
            }
            for state in self._active.values()
        ]
