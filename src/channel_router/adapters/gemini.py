"""Google Gemini generateContent driver."""

import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from ..errors import ProviderCallError
from .base import ChatResponse, HttpChatClient, Message, StreamChunk, message_text

KNOWN_MODELS = [
    "gemini-pro",
    "gemini-pro-vision",
    "gemini-1.5-pro",
    "gemini-1.5-pro-latest",
    "gemini-1.5-flash",
    "gemini-1.5-flash-latest",
    "gemini-1.5-flash-8b",
    "gemini-2.0-flash-exp",
    "text-embedding-004",
]


def _to_gemini(msg: Message) -> Dict[str, Any]:
    parts = []
    content = msg.get("content")
    if isinstance(content, list):
        for block in content:
            if block.get("type") == "text" and block.get("text"):
                parts.append({"text": block["text"]})
            elif block.get("type") == "image" and block.get("image_url"):
                parts.append({"inlineData": {"mimeType": "image/png", "data": block["image_url"]}})
    else:
        parts.append({"text": message_text(msg)})

    # Gemini uses 'user' and 'model' roles
    role = "model" if msg.get("role") == "assistant" else "user"
    return {"role": role, "parts": parts}


def _usage(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
    if not raw:
        return None
    return {
        "prompt_tokens": raw.get("promptTokenCount", 0),
        "completion_tokens": raw.get("candidatesTokenCount", 0),
        "total_tokens": raw.get("totalTokenCount", 0),
    }


def _candidate_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)


class GeminiClient(HttpChatClient):
    """Driver for the Gemini v1beta API."""

    adapter_name = "gemini"

    def _endpoint(self, model: str, stream: bool) -> str:
        if self.config.chat_path:
            path = self.config.chat_path.replace("{model}", model)
        else:
            action = "streamGenerateContent" if stream else "generateContent"
            path = f"/v1beta/models/{model}:{action}"
        return self.config.base_url.rstrip("/") + "/" + path.lstrip("/")

    def _auth_headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.config.api_key}

    def _payload(
        self,
        messages: List[Message],
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> Dict[str, Any]:
        system_parts = [message_text(m) for m in messages if m.get("role") == "system"]
        payload: Dict[str, Any] = {
            "contents": [_to_gemini(m) for m in messages if m.get("role") != "system"],
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n".join(system_parts)}]}
        if max_tokens is not None or temperature is not None:
            generation_config: Dict[str, Any] = {}
            if max_tokens is not None:
                generation_config["maxOutputTokens"] = max_tokens
            if temperature is not None:
                generation_config["temperature"] = temperature
            payload["generationConfig"] = generation_config
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
            self._payload(messages, max_tokens, temperature),
        )

        text = _candidate_text(data)
        if not text:
            raise ProviderCallError("Empty response", error_type="empty")

        return ChatResponse(
            contents=[{"type": "text", "text": text}],
            usage=_usage(data.get("usageMetadata")),
            model=model,
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
        usage = None
        async for data in self._stream_lines(
            self._endpoint(model, stream=True),
            self._payload(messages, max_tokens, temperature),
            params={"alt": "sse"},
        ):
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                continue
            text = _candidate_text(event)
            if text:
                yield StreamChunk(type="text", text=text)
            if event.get("usageMetadata"):
                usage = _usage(event["usageMetadata"])

        # Gemini repeats cumulative usage on every event; report the last one
        if usage:
            yield StreamChunk(type="usage", usage=usage)

    async def list_models(self) -> List[str]:
        return list(KNOWN_MODELS)
