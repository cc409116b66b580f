"""Anthropic Messages API driver."""

import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from ..errors import ProviderCallError
from .base import ChatResponse, HttpChatClient, Message, StreamChunk, message_text

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

# No public listing endpoint is assumed; known models are returned instead
KNOWN_MODELS = [
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
]


def _to_anthropic(msg: Message) -> Dict[str, Any]:
    content = msg.get("content")
    if isinstance(content, list) and any(b.get("type") == "image" for b in content):
        parts = []
        for block in content:
            if block.get("type") == "text" and block.get("text"):
                parts.append({"type": "text", "text": block["text"]})
            elif block.get("type") == "image" and block.get("image_url"):
                parts.append({
                    "type": "image",
                    "source": {"type": "url", "url": block["image_url"]},
                })
        return {"role": msg.get("role", "user"), "content": parts}
    return {"role": msg.get("role", "user"), "content": message_text(msg)}


def _usage(input_tokens: int, output_tokens: int) -> Dict[str, int]:
    return {
        "prompt_tokens": input_tokens,
        "completion_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


class ClaudeClient(HttpChatClient):
    """Driver for the Anthropic Messages API."""

    adapter_name = "claude"

    def _endpoint(self, model: str, stream: bool) -> str:
        path = self.config.chat_path or "/messages"
        return self.config.base_url.rstrip("/") + "/" + path.lstrip("/")

    def _auth_headers(self) -> Dict[str, str]:
        return {"x-api-key": self.config.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def _payload(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> Dict[str, Any]:
        # Anthropic takes the system prompt separately
        system_parts = [message_text(m) for m in messages if m.get("role") == "system"]
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [_to_anthropic(m) for m in messages if m.get("role") != "system"],
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system_parts:
            payload["system"] = "\n".join(system_parts)
        if temperature is not None:
            payload["temperature"] = temperature
        if self.config.tools:
            payload["tools"] = self.config.tools
        return payload

    async def send_message(
        self,
        message: Message,
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        history: Optional[List[Message]] = None,
    ) -> ChatResponse:
        start_time = time.time()
        messages = list(history or []) + [message]
        data = await self._post_json(
            self._endpoint(model, stream=False),
            self._payload(messages, model, max_tokens, temperature),
        )

        contents = []
        for block in data.get("content") or []:
            if block.get("type") == "text" and block.get("text"):
                contents.append({"type": "text", "text": block["text"]})
            elif block.get("type") == "tool_use":
                contents.append({"type": "tool_call", "tool_call": block})
        if not contents:
            raise ProviderCallError("Empty response", error_type="empty")

        usage = data.get("usage") or {}
        return ChatResponse(
            contents=contents,
            usage=_usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
            model=data.get("model", model),
            latency_ms=self._elapsed_ms(start_time),
        )

    async def stream_message(
        self,
        messages: List[Message],
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        payload = self._payload(messages, model, max_tokens, temperature)
        payload["stream"] = True
        input_tokens = 0
        output_tokens = 0

        async for data in self._stream_lines(self._endpoint(model, stream=True), payload):
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                continue
            event_type = event.get("type")
            if event_type == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                input_tokens = usage.get("input_tokens", input_tokens)
            elif event_type == "content_block_delta":
                text = (event.get("delta") or {}).get("text")
                if text:
                    yield StreamChunk(type="text", text=text)
            elif event_type == "message_delta":
                output_tokens = (event.get("usage") or {}).get("output_tokens", output_tokens)
            elif event_type == "error":
                raise ProviderCallError(
                    str((event.get("error") or {}).get("message", "stream error")),
                    error_type="server",
                )

        if input_tokens or output_tokens:
            yield StreamChunk(type="usage", usage=_usage(input_tokens, output_tokens))

    async def list_models(self) -> List[str]:
        return list(KNOWN_MODELS)
