"""Shared test configuration and fixtures."""

import asyncio
import inspect
import os
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from channel_router.adapters.base import ChatResponse, StreamChunk
from channel_router.usage import tokens

_REAL_ENCODER_LOADER = tokens._load_encoder

# =============================================================================
# Environment Reset
# =============================================================================


@pytest.fixture(autouse=True)
def reset_env(monkeypatch):
    """Clear environment variables before each test."""
    for name in list(os.environ):
        if name.startswith("CHANNEL_ROUTER_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)


@pytest.fixture(autouse=True)
def reset_events():
    """Start every test with an empty event log."""
    from channel_router.events import clear_events, set_max_events

    clear_events()
    set_max_events(1000)
    yield
    clear_events()


class _WhitespaceEncoding:
    """Stand-in tokenizer: one token per whitespace-separated word."""

    def encode(self, text: str) -> List[str]:
        return text.split()


@pytest.fixture(autouse=True)
def offline_tokenizer(monkeypatch):
    """Keep token estimation off the network (tiktoken downloads encodings)."""
    monkeypatch.setattr(tokens, "_cached_encoders", {})
    monkeypatch.setattr(tokens, "_load_encoder", lambda encoding_name: _WhitespaceEncoding())


@pytest.fixture
def tiktoken_loader(monkeypatch):
    """Route encoder loads to tiktoken again; patch tiktoken itself in the test."""
    monkeypatch.setattr(tokens, "_load_encoder", _REAL_ENCODER_LOADER)


# =============================================================================
# Component fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path):
    """A ChannelStore persisting to a temporary YAML file."""
    from channel_router.channels.store import ChannelStore

    channel_store = ChannelStore(tmp_path / "channels.yaml")
    channel_store.init()
    return channel_store


@pytest.fixture
def recorder():
    """A memory-only UsageRecorder."""
    from channel_router.usage.recorder import UsageRecorder

    return UsageRecorder(log_records=False)


# =============================================================================
# ChatClient double
# =============================================================================

# A behavior is a reply string, an exception to raise, or a callable taking
# the model name and returning (or awaiting to) either of those.
Behavior = Union[str, Exception, Callable[[str], Any]]


class FakeChatClient:
    """ChatClient double driven by a scripted behavior."""

    def __init__(self, config, behavior: Behavior, calls: List[Tuple[str, str, str]]):
        self.config = config
        self._behavior = behavior
        self._calls = calls

    async def _outcome(self, model: str) -> str:
        self._calls.append((self.config.base_url, model, self.config.api_key))
        outcome = self._behavior(model) if callable(self._behavior) else self._behavior
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def send_message(
        self,
        message,
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        history=None,
    ) -> ChatResponse:
        text = await self._outcome(model)
        return ChatResponse(
            contents=[{"type": "text", "text": text}],
            usage={"prompt_tokens": 10, "completion_tokens": 5},
            model=model,
        )

    async def stream_message(
        self,
        messages,
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        text = await self._outcome(model)
        for word in text.split(" "):
            yield StreamChunk(type="text", text=word)
        yield StreamChunk(type="usage", usage={"prompt_tokens": 3, "completion_tokens": 2})

    async def list_models(self) -> List[str]:
        await self._outcome("models")
        return ["model-a", "model-b"]


class FakeClientFactory:
    """client_factory whose clients behave according to the channel base URL."""

    def __init__(self, default: Behavior = "ok"):
        self.default = default
        self.behaviors: Dict[str, Behavior] = {}
        self.calls: List[Tuple[str, str, str]] = []

    def __call__(self, adapter_type, config) -> FakeChatClient:
        behavior = self.behaviors.get(config.base_url, self.default)
        return FakeChatClient(config, behavior, self.calls)

    def urls_called(self) -> List[str]:
        return [url for url, _, _ in self.calls]


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def slow():
    """Build behaviors that reply after a delay."""

    def build(reply: Behavior, delay: float = 0.01) -> Callable[[str], Any]:
        async def behave(model: str):
            await asyncio.sleep(delay)
            return reply

        return behave

    return build


@pytest.fixture
def make_channel(store):
    """Create channels with sensible defaults.

    Example:
        channel = make_channel("a", models=["gpt-x"], priority=1)
    """

    def factory(name: str, **overrides) -> Any:
        spec = {
            "name": name,
            "adapter_type": "openai",
            "base_url": f"https://{name}.example.com/v1",
            "api_key": f"sk-{name}-0123456789abcdef",
            "models": ["gpt-x"],
        }
        if "api_keys" in overrides:
            spec.pop("api_key")
        spec.update(overrides)
        return store.create(spec)

    return factory
