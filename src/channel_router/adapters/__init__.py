"""Provider drivers behind the ChatClient protocol.

Example usage:
    from channel_router.adapters import ChatClientConfig, create_chat_client

    client = create_chat_client(
        AdapterType.OPENAI,
        ChatClientConfig(api_key="sk-...", base_url="https://api.openai.com/v1"),
    )
    response = await client.send_message(
        {"role": "user", "content": "Hello"}, model="gpt-4o-mini"
    )
"""

from typing import Dict, Type, Union

from ..channels.types import AdapterType
from ..errors import ConfigurationError
from .base import ChatClient, ChatClientConfig, ChatResponse, HttpChatClient, StreamChunk
from .claude import ClaudeClient
from .gemini import GeminiClient
from .openai import OpenAIClient

ADAPTERS: Dict[AdapterType, Type[HttpChatClient]] = {
    AdapterType.OPENAI: OpenAIClient,
    AdapterType.CLAUDE: ClaudeClient,
    AdapterType.GEMINI: GeminiClient,
}


def create_chat_client(
    adapter_type: Union[AdapterType, str],
    config: ChatClientConfig,
) -> ChatClient:
    """Construct the driver for an adapter type.

    Raises:
        ConfigurationError: Unknown adapter type
    """
    try:
        driver = ADAPTERS[AdapterType(adapter_type)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unsupported adapter type: {adapter_type}")
    return driver(config)


__all__ = [
    "ADAPTERS",
    "ChatClient",
    "ChatClientConfig",
    "ChatResponse",
    "StreamChunk",
    "ClaudeClient",
    "GeminiClient",
    "OpenAIClient",
    "create_chat_client",
]
