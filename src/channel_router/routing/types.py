"""Request and result types for fallback orchestration."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..adapters.base import ChatResponse, Message, StreamChunk
from ..usage.types import UsageRecord

ChunkCallback = Callable[[StreamChunk], Union[None, Awaitable[None]]]


@dataclass
class ChatRequest:
    """One logical chat request.

    The last entry of ``messages`` is the message being sent; earlier entries
    are history.
    """

    model: str
    messages: List[Message]
    stream: bool = False
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    timeout: Optional[float] = None  # seconds, overrides the configured deadline
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    source: str = "chat"
    on_chunk: Optional[ChunkCallback] = None


@dataclass
class FallbackNotice:
    """Tells the caller the reply came from a different channel than planned.

    The orchestrator does not render user-facing text; callers decide how to
    surface this.
    """

    from_channel_id: str
    to_channel_id: str
    from_model: str
    to_model: str
    attempts: int


@dataclass
class ChatResult:
    """Successful outcome of an orchestrated request."""

    response: ChatResponse
    channel_id: str
    channel_name: str
    model: str
    actual_model: str
    attempts: int
    switch_chain: List[str]
    channel_switched: bool
    fallback_notice: Optional[FallbackNotice] = None
    usage_record: Optional[UsageRecord] = None

    @property
    def text(self) -> str:
        return self.response.text
