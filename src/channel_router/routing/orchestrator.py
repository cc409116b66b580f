"""Fallback orchestration for one logical chat request.

A request walks an ordered candidate list of (channel, model) pairs: the
primary model's channels first, then the channels of each configured
fallback model. The list is rebuilt from current channel health before every
attempt, skipping pairs already tried and channels found misconfigured.
Attempts are strictly sequential and bounded by ``max_retries + 1``.

Every attempt produces one UsageRecord and updates the channel's status.
The caller sees exactly one ChatResult or one terminal error.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Set, Tuple, TypeVar

from ..adapters import create_chat_client
from ..adapters.base import ChatClient, ChatClientConfig, ChatResponse
from ..channels.keys import KeyRotator, mask_key
from ..channels.selector import ChannelSelector
from ..channels.store import ChannelStore
from ..channels.types import AdapterType, Candidate, Channel
from ..errors import (
    ConfigurationError,
    NoChannelAvailableError,
    ProviderCallError,
    RequestTimeoutError,
    classify_error,
)
from ..events import GatewayEventType, emit_event
from ..unified_config import FallbackConfig
from ..usage.recorder import UsageRecorder
from .types import ChatRequest, ChatResult, FallbackNotice

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AdapterType, ChatClientConfig], ChatClient]

T = TypeVar("T")


class _StreamInterrupted(ProviderCallError):
    """Provider failed after chunks reached the caller; not retryable."""


class _DeadlineExpired(Exception):
    """The request deadline ran out during provider work."""


@dataclass
class _RequestState:
    """Mutable bookkeeping for one request, readable after a timeout."""

    tried: Set[Tuple[str, str]] = field(default_factory=set)
    excluded: Set[str] = field(default_factory=set)
    switch_chain: List[str] = field(default_factory=list)
    attempts: int = 0
    first_channel_id: Optional[str] = None
    first_model: Optional[str] = None
    last_error: Optional[Exception] = None
    # Loop time after which provider work is abandoned; None means no limit
    deadline: Optional[float] = None


class FallbackOrchestrator:
    """Drives one request across candidates with bounded retries."""

    def __init__(
        self,
        store: ChannelStore,
        recorder: UsageRecorder,
        config: Optional[FallbackConfig] = None,
        selector: Optional[ChannelSelector] = None,
        rotator: Optional[KeyRotator] = None,
        client_factory: ClientFactory = create_chat_client,
        adapter_timeout: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            store: Channel registry
            recorder: Receives one UsageRecord per attempt
            config: Fallback settings (defaults to FallbackConfig())
            selector: Candidate ranking (defaults to one over ``store``)
            rotator: Key rotation (defaults to one sharing the store lock)
            client_factory: Builds a ChatClient per attempt
            adapter_timeout: Per-call HTTP timeout handed to drivers
            sleep: Awaitable delay between failed attempts (injectable)
        """
        self._store = store
        self._recorder = recorder
        self._config = config or FallbackConfig()
        self._selector = selector or ChannelSelector(store)
        self._rotator = rotator or KeyRotator(lock=store.lock)
        self._client_factory = client_factory
        self._adapter_timeout = adapter_timeout
        self._sleep = sleep

    @property
    def config(self) -> FallbackConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def plan(
        self,
        request: ChatRequest,
        state: Optional[_RequestState] = None,
        config: Optional[FallbackConfig] = None,
    ) -> List[Candidate]:
        """Current ordered candidates for ``request``.

        Primary-model candidates come first, then each fallback model's, in
        configured order. Pairs already tried and excluded channels are
        dropped.
        """
        config = config or self._config
        state = state or _RequestState()

        models = [request.model]
        if config.enabled:
            models += [m for m in config.models if m != request.model]

        candidates: List[Candidate] = []
        seen: Set[Tuple[str, str]] = set()
        for model in models:
            try:
                ranked = self._selector.select_candidates(model, state.excluded)
            except NoChannelAvailableError:
                continue
            for candidate in ranked:
                pair = (candidate.channel_id, candidate.actual_model)
                if pair in state.tried or pair in seen:
                    continue
                seen.add(pair)
                candidates.append(candidate)
        return candidates

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run(
        self,
        request: ChatRequest,
        config: Optional[FallbackConfig] = None,
    ) -> ChatResult:
        """Serve one request.

        The timeout bounds provider calls and the delays between them.
        Usage recording happens outside it, so a slow stats store can
        neither turn a success into a timeout nor be cut short by one.

        Raises:
            NoChannelAvailableError: No candidate exists for the request
            RequestTimeoutError: The deadline expired mid-request
            ProviderCallError: Every attempt failed; carries the switch chain
        """
        config = config or self._config
        state = _RequestState()
        timeout = request.timeout or config.request_timeout_seconds
        if timeout:
            state.deadline = asyncio.get_running_loop().time() + timeout

        try:
            return await self._run(request, state, config)
        except _DeadlineExpired:
            logger.warning(
                f"Request for {request.model} timed out after {timeout}s "
                f"({state.attempts} attempts, chain={state.switch_chain})"
            )
            raise RequestTimeoutError(
                f"Request timed out after {timeout}s",
                switch_chain=state.switch_chain,
                attempts=state.attempts,
            ) from None

    async def _within_deadline(
        self,
        state: _RequestState,
        start: Callable[[], Awaitable[T]],
    ) -> T:
        """Await ``start()`` bounded by what is left of the request deadline."""
        if state.deadline is None:
            return await start()
        loop = asyncio.get_running_loop()
        remaining = state.deadline - loop.time()
        if remaining <= 0:
            raise _DeadlineExpired()
        try:
            return await asyncio.wait_for(start(), remaining)
        except asyncio.TimeoutError:
            if loop.time() < state.deadline:
                raise
            raise _DeadlineExpired() from None

    async def _run(
        self,
        request: ChatRequest,
        state: _RequestState,
        config: FallbackConfig,
    ) -> ChatResult:
        max_attempts = config.max_retries + 1
        candidates = self.plan(request, state, config)
        if not candidates:
            raise NoChannelAvailableError(request.model)

        while True:
            candidate = candidates[0]
            state.tried.add((candidate.channel_id, candidate.actual_model))
            channel = self._store.get(candidate.channel_id)

            if channel is not None:
                result = await self._attempt(request, channel, candidate, state, config)
                if result is not None:
                    return result

            candidates = self.plan(request, state, config)
            if state.attempts >= max_attempts or not candidates:
                break
            if config.retry_delay_ms:
                delay = config.retry_delay_ms / 1000
                await self._within_deadline(state, lambda: self._sleep(delay))
            # Health may have changed while waiting
            candidates = self.plan(request, state, config)
            if not candidates:
                break

        if state.attempts == 0:
            # Every planned channel was deleted before it could be tried
            raise NoChannelAvailableError(request.model)
        raise self._exhausted(request, state)

    def _exhausted(self, request: ChatRequest, state: _RequestState) -> ProviderCallError:
        last_error = state.last_error
        error_type = classify_error(last_error) if last_error else "unknown"
        emit_event(
            GatewayEventType.FALLBACK_EXHAUSTED,
            {
                "model": request.model,
                "attempts": state.attempts,
                "switch_chain": list(state.switch_chain),
                "error": str(last_error) if last_error else None,
            },
        )
        return ProviderCallError(
            f"All {state.attempts} attempts failed for {request.model}: {last_error}",
            error_type=error_type,
            status_code=getattr(last_error, "status_code", None),
            switch_chain=state.switch_chain,
            attempts=state.attempts,
        )

    async def _attempt(
        self,
        request: ChatRequest,
        channel: Channel,
        candidate: Candidate,
        state: _RequestState,
        config: FallbackConfig,
    ) -> Optional[ChatResult]:
        """Run one attempt. Returns a result on success, None on failure."""
        state.attempts += 1
        state.switch_chain.append(channel.id)
        if state.first_channel_id is None:
            state.first_channel_id = channel.id
            state.first_model = candidate.actual_model

        switched = channel.id != state.first_channel_id
        previous = state.switch_chain[-2] if len(state.switch_chain) > 1 else None
        base_record = dict(
            channel_id=channel.id,
            channel_name=channel.name,
            model=candidate.logical_model,
            actual_model=candidate.actual_model,
            retry_count=state.attempts - 1,
            channel_switched=switched,
            previous_channel_id=previous,
            switch_chain=list(state.switch_chain),
            source=request.source,
            user_id=request.user_id,
            group_id=request.group_id,
            stream=request.stream,
            messages=request.messages,
            tools=request.tools or None,
        )

        try:
            selection = self._rotator.select_key(channel, record_usage=True)
        except ConfigurationError as e:
            state.excluded.add(channel.id)
            state.last_error = e
            self._store.mark_failure(channel.id, str(e))
            emit_event(
                GatewayEventType.CHANNEL_EXCLUDED,
                {"reason": str(e), "model": request.model},
                channel_id=channel.id,
            )
            await self._recorder.record(
                success=False, error=str(e), error_type="config", **base_record
            )
            return None

        base_record.update(
            key_index=selection.key_index,
            key_name=selection.key_name,
            strategy=selection.strategy,
        )
        logger.debug(
            f"Attempt {state.attempts} for {request.model}: {channel.id} "
            f"model={candidate.actual_model} key={mask_key(selection.key)}"
        )

        start_time = time.time()
        try:
            client = self._client_factory(
                channel.adapter_type,
                ChatClientConfig.from_passthrough(
                    selection.key,
                    channel.base_url,
                    channel.passthrough,
                    tools=request.tools,
                    timeout=self._adapter_timeout,
                ),
            )
            response = await self._within_deadline(
                state, lambda: self._invoke(client, request, candidate.actual_model)
            )
        except _DeadlineExpired:
            duration_ms = int((time.time() - start_time) * 1000)
            self._store.mark_failure(channel.id, "timeout")
            await self._recorder.record(
                success=False,
                error="Request deadline expired",
                error_type="timeout",
                duration_ms=duration_ms,
                **base_record,
            )
            raise
        except asyncio.CancelledError:
            duration_ms = int((time.time() - start_time) * 1000)
            self._store.mark_failure(channel.id, "cancelled")
            await self._recorder.record(
                success=False,
                error="Request cancelled",
                error_type="cancelled",
                duration_ms=duration_ms,
                **base_record,
            )
            raise
        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            if isinstance(e, ConfigurationError):
                state.excluded.add(channel.id)
            state.last_error = e
            error_type = classify_error(e)
            self._store.mark_failure(channel.id, str(e))
            self._rotator.report_failure(channel, selection.key_index)
            await self._recorder.record(
                success=False,
                error=str(e),
                error_type=error_type,
                duration_ms=duration_ms,
                raw_response=getattr(e, "response_body", None),
                **base_record,
            )
            logger.warning(
                f"Attempt {state.attempts} on {channel.id} ({candidate.actual_model}) "
                f"failed [{error_type}]: {e}"
            )
            if isinstance(e, _StreamInterrupted):
                raise ProviderCallError(
                    str(e),
                    error_type=error_type,
                    switch_chain=state.switch_chain,
                    attempts=state.attempts,
                )
            return None

        duration_ms = int((time.time() - start_time) * 1000)
        self._store.mark_success(channel.id)
        self._rotator.report_success(channel, selection.key_index)
        record = await self._recorder.record(
            success=True,
            duration_ms=duration_ms,
            usage=response.usage,
            response_text=response.text,
            **base_record,
        )

        notice = None
        if switched:
            notice = FallbackNotice(
                from_channel_id=state.first_channel_id,
                to_channel_id=channel.id,
                from_model=state.first_model or request.model,
                to_model=candidate.actual_model,
                attempts=state.attempts,
            )
            emit_event(
                GatewayEventType.FALLBACK_TRIGGERED,
                {
                    "model": request.model,
                    "to_model": candidate.actual_model,
                    "attempts": state.attempts,
                    "switch_chain": list(state.switch_chain),
                },
                channel_id=channel.id,
            )

        return ChatResult(
            response=response,
            channel_id=channel.id,
            channel_name=channel.name,
            model=candidate.logical_model,
            actual_model=candidate.actual_model,
            attempts=state.attempts,
            switch_chain=list(state.switch_chain),
            channel_switched=switched,
            fallback_notice=notice if config.notify_on_fallback else None,
            usage_record=record,
        )

    async def _invoke(
        self,
        client: ChatClient,
        request: ChatRequest,
        actual_model: str,
    ) -> ChatResponse:
        if not request.stream:
            return await client.send_message(
                request.messages[-1],
                model=actual_model,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                history=request.messages[:-1],
            )

        start_time = time.time()
        parts: List[str] = []
        usage = None
        forwarded = False
        try:
            async for chunk in client.stream_message(
                request.messages,
                model=actual_model,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            ):
                if chunk.type == "usage":
                    usage = chunk.usage
                    continue
                parts.append(chunk.text)
                if request.on_chunk is not None:
                    outcome = request.on_chunk(chunk)
                    if inspect.isawaitable(outcome):
                        await outcome
                    forwarded = True
        except ProviderCallError as e:
            if forwarded:
                raise _StreamInterrupted(
                    f"Stream interrupted: {e}", error_type=e.error_type
                )
            raise

        text = "".join(parts)
        if not text:
            raise ProviderCallError("Empty response", error_type="empty")
        return ChatResponse(
            contents=[{"type": "text", "text": text}],
            usage=usage,
            model=actual_model,
            latency_ms=int((time.time() - start_time) * 1000),
        )
