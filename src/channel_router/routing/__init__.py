"""Fallback orchestration across channels and models.

Example usage:
    from channel_router.routing import ChatRequest, FallbackOrchestrator

    orchestrator = FallbackOrchestrator(store, recorder, config.fallback)
    result = await orchestrator.run(
        ChatRequest(model="gpt-4o", messages=[{"role": "user", "content": "Hi"}])
    )
    if result.fallback_notice:
        ...
"""

from .orchestrator import FallbackOrchestrator
from .types import ChatRequest, ChatResult, FallbackNotice

__all__ = [
    "ChatRequest",
    "ChatResult",
    "FallbackNotice",
    "FallbackOrchestrator",
]
