"""HTTP surface for the channel router.

Exposes channel management, diagnostics, usage statistics and an
orchestrated chat endpoint over FastAPI. Batch tests and streamed chats are
delivered as Server-Sent Events.

Usage:
    pip install "llm-channel-router[http]"
    channel-router

Or programmatically:
    from channel_router.http_server import app
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
"""

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .adapters.base import StreamChunk
from .errors import (
    ConfigurationError,
    NoChannelAvailableError,
    NotFoundError,
    ProviderCallError,
    RequestTimeoutError,
    ValidationError,
)
from .routing.types import ChatRequest, ChatResult
from .service import get_services

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

security = HTTPBearer(auto_error=False)


def get_api_token() -> Optional[str]:
    """CHANNEL_ROUTER_API_TOKEN, or None when the API is open."""
    return os.environ.get("CHANNEL_ROUTER_API_TOKEN") or None


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> None:
    """Reject requests without the configured bearer token.

    Raises:
        HTTPException: 401 when a token is configured and not presented
    """
    expected = get_api_token()
    if expected is None:
        return
    if credentials is None or credentials.credentials != expected:
        raise HTTPException(
            status_code=401,
            detail="Missing or wrong API token; send Authorization: Bearer <token>",
        )


auth_dependency = Depends(verify_token)

app = FastAPI(
    title="Channel Router",
    description="Provider channel routing, fallback and usage accounting",
    version="0.4.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# =============================================================================
# Error mapping
# =============================================================================


def _error_body(error: Exception, **extra: Any) -> Dict[str, Any]:
    return {"error": type(error).__name__, "detail": str(error), **extra}


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=_error_body(exc, field=exc.field))


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content=_error_body(exc, channel_id=exc.channel_id))


@app.exception_handler(NoChannelAvailableError)
async def _no_channel(request: Request, exc: NoChannelAvailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content=_error_body(exc, model=exc.model))


@app.exception_handler(ConfigurationError)
async def _configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=_error_body(exc, channel_id=exc.channel_id))


@app.exception_handler(ProviderCallError)
async def _provider_error(request: Request, exc: ProviderCallError) -> JSONResponse:
    status = 504 if isinstance(exc, RequestTimeoutError) else 502
    return JSONResponse(
        status_code=status,
        content=_error_body(
            exc,
            error_type=exc.error_type,
            attempts=exc.attempts,
            switch_chain=exc.switch_chain,
        ),
    )


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


# =============================================================================
# Request models
# =============================================================================


class HealthResponse(BaseModel):
    """Liveness plus a channel count."""

    status: str
    service: str
    channels: int
    stats_degraded: bool


class ChannelPayload(BaseModel):
    """Channel fields accepted on create and update."""

    id: Optional[str] = None
    name: Optional[str] = None
    adapter_type: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_keys: Optional[List[Any]] = None
    key_strategy: Optional[str] = None
    models: Optional[List[str]] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    model_mapping: Optional[Dict[str, str]] = None
    passthrough: Optional[Dict[str, Any]] = None


class ChannelTestRequest(BaseModel):
    model: Optional[str] = None


class BatchTestRequest(BaseModel):
    """Request body for a batch model test."""

    channel_id: str = Field(..., description="Channel to test")
    models: Optional[List[str]] = Field(
        default=None, description="Models to test (defaults to the channel's models)"
    )
    concurrency: Optional[int] = Field(default=None, ge=1, le=50)
    clear_previous: bool = True


class BatchStopRequest(BaseModel):
    test_id: Optional[str] = Field(default=None, description="Omit to stop every batch")


class ChatPayload(BaseModel):
    """Request body for an orchestrated chat."""

    model: str
    messages: List[Dict[str, Any]] = Field(..., min_length=1)
    stream: bool = False
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    tools: List[Dict[str, Any]] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0)
    user_id: Optional[str] = None
    group_id: Optional[str] = None


# =============================================================================
# Health
# =============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    """Health check endpoint."""
    services = get_services()
    return HealthResponse(
        status="ok",
        service="channel-router",
        channels=len(services.store.get_all()),
        stats_degraded=services.recorder.aggregator.degraded,
    )


# =============================================================================
# Channels
# =============================================================================


@app.get("/api/channels", tags=["Channels"], dependencies=[auth_dependency])
async def list_channels() -> List[Dict[str, Any]]:
    """All channels with masked keys and their usage summary."""
    return await get_services().store.get_all_with_stats()


@app.post("/api/channels", status_code=201, tags=["Channels"], dependencies=[auth_dependency])
async def create_channel(payload: ChannelPayload) -> Dict[str, Any]:
    channel = get_services().store.create(payload.model_dump(exclude_none=True))
    return channel.to_public_dict()


@app.get("/api/channels/batch-test/active", tags=["Diagnostics"], dependencies=[auth_dependency])
async def active_batch_tests() -> List[Dict[str, Any]]:
    return get_services().batch.active_tests()


@app.post("/api/channels/batch-test", tags=["Diagnostics"], dependencies=[auth_dependency])
async def batch_test(request: BatchTestRequest) -> StreamingResponse:
    """Test many models of one channel, streaming progress as SSE.

    **Event Types:** clear, start, testing, result, progress, complete.
    """
    batch = get_services().batch
    # Resolve up front so unknown channels and empty model lists get 404/400
    models = batch.resolve_models(request.channel_id, request.models)

    async def events() -> AsyncIterator[str]:
        async for event in batch.run_batch(
            request.channel_id,
            models=models,
            concurrency=request.concurrency,
            clear_previous=request.clear_previous,
        ):
            yield _sse(event.event, event.data)

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/api/channels/batch-test/stop", tags=["Diagnostics"], dependencies=[auth_dependency])
async def stop_batch_test(request: BatchStopRequest) -> Dict[str, Any]:
    stopped = get_services().batch.stop(request.test_id)
    if request.test_id:
        return {"stopped": stopped > 0, "test_id": request.test_id}
    return {"stopped": True, "count": stopped}


@app.get("/api/channels/{channel_id}", tags=["Channels"], dependencies=[auth_dependency])
async def get_channel(channel_id: str) -> Dict[str, Any]:
    return get_services().store.require(channel_id).to_public_dict()


@app.patch("/api/channels/{channel_id}", tags=["Channels"], dependencies=[auth_dependency])
async def update_channel(channel_id: str, payload: ChannelPayload) -> Dict[str, Any]:
    channel = get_services().store.update(channel_id, payload.model_dump(exclude_none=True))
    return channel.to_public_dict()


@app.delete("/api/channels/{channel_id}", tags=["Channels"], dependencies=[auth_dependency])
async def delete_channel(channel_id: str) -> Dict[str, Any]:
    get_services().store.delete(channel_id)
    return {"deleted": True, "channel_id": channel_id}


@app.post("/api/channels/{channel_id}/test", tags=["Diagnostics"], dependencies=[auth_dependency])
async def test_channel(channel_id: str, request: Optional[ChannelTestRequest] = None) -> Dict[str, Any]:
    """Send a short greeting through the channel and report the outcome."""
    model = request.model if request else None
    result = await get_services().probe.test_channel(channel_id, model=model)
    return result.to_dict()


@app.get("/api/channels/{channel_id}/models", tags=["Diagnostics"], dependencies=[auth_dependency])
async def channel_models(channel_id: str) -> Dict[str, Any]:
    models = await get_services().probe.fetch_models(channel_id)
    return {"channel_id": channel_id, "models": models}


# =============================================================================
# Stats
# =============================================================================


@app.get("/api/stats/overview", tags=["Stats"], dependencies=[auth_dependency])
async def stats_overview() -> Dict[str, Any]:
    return (await get_services().recorder.aggregator.get_overview()).to_dict()


@app.get("/api/stats/channels/{channel_id}", tags=["Stats"], dependencies=[auth_dependency])
async def stats_channel(channel_id: str) -> Dict[str, Any]:
    return (await get_services().recorder.aggregator.get_channel_stats(channel_id)).to_dict()


@app.get("/api/stats/models", tags=["Stats"], dependencies=[auth_dependency])
async def stats_models(limit: int = Query(default=10, ge=1, le=100)) -> Dict[str, Any]:
    return await get_services().recorder.aggregator.get_model_stats(limit)


@app.get("/api/stats/users/{user_id}", tags=["Stats"], dependencies=[auth_dependency])
async def stats_user(user_id: str) -> Dict[str, Any]:
    return (await get_services().recorder.aggregator.get_user_stats(user_id)).to_dict()


@app.get("/api/stats/usage", tags=["Stats"], dependencies=[auth_dependency])
async def stats_usage(
    limit: int = Query(default=50, ge=1, le=1000),
    channel_id: Optional[str] = None,
    model: Optional[str] = None,
    success: Optional[bool] = None,
    source: Optional[str] = None,
    start_time: Optional[int] = None,
    end_time: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Recent usage records, newest first."""
    records = await get_services().recorder.aggregator.get_recent(
        limit=limit,
        channel_id=channel_id,
        model=model,
        success=success,
        source=source,
        start_time=start_time,
        end_time=end_time,
    )
    return [r.to_dict() for r in records]


@app.delete("/api/stats", tags=["Stats"], dependencies=[auth_dependency])
async def clear_stats() -> Dict[str, Any]:
    deleted = await get_services().recorder.clear()
    return {"cleared": True, "deleted_keys": deleted}


# =============================================================================
# Chat
# =============================================================================


def _result_body(result: ChatResult) -> Dict[str, Any]:
    notice = result.fallback_notice
    return {
        "text": result.text,
        "contents": result.response.contents,
        "usage": result.response.usage,
        "channel_id": result.channel_id,
        "channel_name": result.channel_name,
        "model": result.model,
        "actual_model": result.actual_model,
        "attempts": result.attempts,
        "switch_chain": result.switch_chain,
        "channel_switched": result.channel_switched,
        "fallback_notice": notice.__dict__ if notice else None,
    }


@app.post("/v1/chat", tags=["Chat"], dependencies=[auth_dependency])
async def chat(payload: ChatPayload):
    """Run one chat request through channel selection and fallback.

    With ``stream: true`` the reply arrives as SSE ``chunk`` events followed
    by ``done`` (or ``error``).
    """
    orchestrator = get_services().orchestrator
    request = ChatRequest(
        model=payload.model,
        messages=payload.messages,
        stream=payload.stream,
        max_tokens=payload.max_tokens,
        temperature=payload.temperature,
        tools=payload.tools,
        timeout=payload.timeout,
        user_id=payload.user_id,
        group_id=payload.group_id,
    )
    if not payload.stream:
        return _result_body(await orchestrator.run(request))

    queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def forward(chunk: StreamChunk) -> None:
        await queue.put(_sse("chunk", {"text": chunk.text}))

    request.on_chunk = forward

    async def run() -> None:
        try:
            result = await orchestrator.run(request)
            await queue.put(_sse("done", _result_body(result)))
        except (NoChannelAvailableError, ProviderCallError) as e:
            logger.warning(f"Streamed chat for {payload.model} failed: {e}")
            await queue.put(
                _sse("error", _error_body(e, error_type=getattr(e, "error_type", None)))
            )
        finally:
            await queue.put(None)

    async def events() -> AsyncIterator[str]:
        task = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)


def main():
    """Entry point for the channel-router command."""
    import uvicorn

    host = os.environ.get("CHANNEL_ROUTER_HOST", "127.0.0.1")
    port = int(os.environ.get("CHANNEL_ROUTER_PORT", "8000"))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
