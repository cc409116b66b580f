"""ChatClient protocol and the shared httpx plumbing behind the drivers.

The routing core only depends on ChatClient. Each AdapterType has one
driver translating the canonical message shape to its provider's wire
format; passthrough settings from the channel (custom headers, templates,
chat path) are applied here, uniformly, without the core inspecting them.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

import httpx

from ..errors import ProviderCallError

logger = logging.getLogger(__name__)

# Canonical message: {"role": "user", "content": "text" | [{"type": "text", "text": ...}]}
Message = Dict[str, Any]


@dataclass
class ChatClientConfig:
    """Construction parameters for one driver instance.

    Attributes:
        api_key: Key picked by the rotator for this attempt
        base_url: Normalized channel base URL
        chat_path: Override for the chat endpoint path
        custom_headers: Extra headers sent verbatim
        headers_template: JSON object of headers; ``{{api_key}}`` is substituted
        request_body_template: JSON object merged over the request payload
        features: Capability flags requested by the caller
        tools: Tool definitions forwarded to the provider
        timeout: Per-call HTTP timeout in seconds
    """

    api_key: str
    base_url: str
    chat_path: Optional[str] = None
    custom_headers: Dict[str, str] = field(default_factory=dict)
    headers_template: str = ""
    request_body_template: Any = ""
    features: List[str] = field(default_factory=lambda: ["chat"])
    tools: List[Dict[str, Any]] = field(default_factory=list)
    timeout: float = 120.0

    @classmethod
    def from_passthrough(
        cls,
        api_key: str,
        base_url: str,
        passthrough: Dict[str, Any],
        **overrides: Any,
    ) -> "ChatClientConfig":
        """Build from a channel's opaque passthrough mapping."""
        return cls(
            api_key=api_key,
            base_url=base_url,
            chat_path=passthrough.get("chat_path"),
            custom_headers=dict(passthrough.get("custom_headers") or {}),
            headers_template=passthrough.get("headers_template") or "",
            request_body_template=passthrough.get("request_body_template") or "",
            **overrides,
        )


@dataclass
class ChatResponse:
    """Non-streaming reply."""

    contents: List[Dict[str, Any]]
    usage: Optional[Dict[str, int]] = None
    model: Optional[str] = None
    latency_ms: int = 0

    @property
    def text(self) -> str:
        return "".join(c.get("text", "") for c in self.contents if c.get("type") == "text")


@dataclass
class StreamChunk:
    """One streamed item: a text delta or a usage report."""

    type: str  # "text" | "usage"
    text: str = ""
    usage: Optional[Dict[str, int]] = None


@runtime_checkable
class ChatClient(Protocol):
    """What the routing core needs from a provider driver."""

    async def send_message(
        self,
        message: Message,
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        history: Optional[List[Message]] = None,
    ) -> ChatResponse:
        ...

    def stream_message(
        self,
        messages: List[Message],
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        ...

    async def list_models(self) -> List[str]:
        ...


def message_text(message: Message) -> str:
    """Flatten a canonical message's text blocks."""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
        )
    return ""


def status_error_type(status_code: int) -> str:
    if status_code in (401, 403):
        return "auth"
    if status_code == 429:
        return "quota"
    if status_code >= 500:
        return "server"
    return "unknown"


class HttpChatClient:
    """Shared httpx request handling for the provider drivers."""

    adapter_name = "base"

    def __init__(self, config: ChatClientConfig):
        self.config = config

    # Subclasses provide these
    def _endpoint(self, model: str, stream: bool) -> str:
        raise NotImplementedError

    def _auth_headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self._auth_headers())
        headers.update(self.config.custom_headers)
        if self.config.headers_template:
            rendered = self.config.headers_template.replace("{{api_key}}", self.config.api_key)
            try:
                template = json.loads(rendered)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid headers template: {e}")
            else:
                headers.update({k: str(v) for k, v in template.items()})
        return headers

    def _apply_body_template(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        template = self.config.request_body_template
        if not template:
            return payload
        if isinstance(template, str):
            try:
                template = json.loads(template)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid request body template: {e}")
                return payload
        if isinstance(template, dict):
            payload = {**payload, **template}
        return payload

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST and return the decoded body, raising ProviderCallError on failure."""
        payload = self._apply_body_template(payload)
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(
                    url, headers=self._headers(), params=params, json=payload
                )
        except httpx.TimeoutException:
            raise ProviderCallError(
                f"Timeout after {self.config.timeout}s", error_type="timeout"
            )
        except httpx.HTTPError as e:
            raise ProviderCallError(f"Connection failed: {e}", error_type="network")

        if response.status_code >= 400:
            raise ProviderCallError(
                f"{self.adapter_name} returned {response.status_code}: {response.text[:200]}",
                error_type=status_error_type(response.status_code),
                status_code=response.status_code,
                response_body=response.text,
            )
        return response.json()

    async def _stream_lines(
        self,
        url: str,
        payload: Dict[str, Any],
        params: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[str]:
        """POST and yield decoded SSE ``data:`` payloads."""
        payload = self._apply_body_template(payload)
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                async with client.stream(
                    "POST", url, headers=self._headers(), params=params, json=payload
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="ignore")
                        raise ProviderCallError(
                            f"{self.adapter_name} returned {response.status_code}: {body[:200]}",
                            error_type=status_error_type(response.status_code),
                            status_code=response.status_code,
                        )
                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data and data != "[DONE]":
                            yield data
        except httpx.TimeoutException:
            raise ProviderCallError(
                f"Timeout after {self.config.timeout}s", error_type="timeout"
            )
        except httpx.HTTPError as e:
            raise ProviderCallError(f"Connection failed: {e}", error_type="network")

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.time() - start_time) * 1000)
