"""OpenAI-compatible chat completions driver."""

import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..errors import ProviderCallError
from .base import (
    ChatResponse,
    HttpChatClient,
    Message,
    StreamChunk,
    message_text,
    status_error_type,
)


def _to_openai(msg: Message) -> Dict[str, Any]:
    """Convert a canonical message to OpenAI format."""
    content = msg.get("content")
    if isinstance(content, list) and any(b.get("type") == "image" for b in content):
        parts = []
        for block in content:
            if block.get("type") == "text" and block.get("text"):
                parts.append({"type": "text", "text": block["text"]})
            elif block.get("type") == "image" and block.get("image_url"):
                parts.append({"type": "image_url", "image_url": {"url": block["image_url"]}})
        return {"role": msg.get("role", "user"), "content": parts}
    return {"role": msg.get("role", "user"), "content": message_text(msg)}


def _usage(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
    if not raw:
        return None
    return {
        "prompt_tokens": raw.get("prompt_tokens", 0),
        "completion_tokens": raw.get("completion_tokens", 0),
        "total_tokens": raw.get("total_tokens", 0),
    }


class OpenAIClient(HttpChatClient):
    """Driver for OpenAI and OpenAI-compatible endpoints."""

    adapter_name = "openai"

    def _endpoint(self, model: str, stream: bool) -> str:
        path = self.config.chat_path or "/chat/completions"
        return self.config.base_url.rstrip("/") + "/" + path.lstrip("/")

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _payload(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [_to_openai(m) for m in messages],
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
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

        choices = data.get("choices") or []
        if not choices:
            raise ProviderCallError("Empty response: no choices", error_type="empty")
        reply = choices[0].get("message") or {}
        contents = []
        if reply.get("content"):
            contents.append({"type": "text", "text": reply["content"]})
        for call in reply.get("tool_calls") or []:
            contents.append({"type": "tool_call", "tool_call": call})
        if not contents:
            raise ProviderCallError("Empty response", error_type="empty")

        return ChatResponse(
            contents=contents,
            usage=_usage(data.get("usage")),
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
        payload["stream_options"] = {"include_usage": True}

        async for data in self._stream_lines(self._endpoint(model, stream=True), payload):
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                continue
            for choice in event.get("choices") or []:
                text = (choice.get("delta") or {}).get("content")
                if text:
                    yield StreamChunk(type="text", text=text)
            if event.get("usage"):
                yield StreamChunk(type="usage", usage=_usage(event["usage"]))

    async def list_models(self) -> List[str]:
        """GET {base}/models and return the sorted ids."""
        url = self.config.base_url.rstrip("/") + "/models"
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.get(url, headers=self._headers())
        except httpx.TimeoutException:
            raise ProviderCallError(f"Timeout after {self.config.timeout}s", error_type="timeout")
        except httpx.HTTPError as e:
            raise ProviderCallError(f"Connection failed: {e}", error_type="network")

        if response.status_code >= 400:
            raise ProviderCallError(
                f"Model list failed: {response.status_code}",
                error_type=status_error_type(response.status_code),
                status_code=response.status_code,
            )
        return sorted(m["id"] for m in response.json().get("data", []) if m.get("id"))
