"""Tests for the provider drivers.

HTTP traffic is served by httpx.MockTransport; no network access.
"""

import json

import httpx
import pytest


@pytest.fixture
def mock_http(monkeypatch):
    """Route every httpx.AsyncClient through a MockTransport.

    Usage:
        requests = mock_http(lambda request: httpx.Response(200, json={...}))
    """
    real_client = httpx.AsyncClient

    def install(handler):
        captured = []

        def recording(request: httpx.Request):
            captured.append(request)
            return handler(request)

        def factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(recording)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", factory)
        return captured

    return install


def _sse_body(*events) -> bytes:
    lines = [f"data: {json.dumps(e) if not isinstance(e, str) else e}\n\n" for e in events]
    return "".join(lines).encode()


USER = {"role": "user", "content": [{"type": "text", "text": "Hello"}]}


class TestClientFactory:
    """create_chat_client dispatch."""

    def test_known_adapters(self):
        from channel_router.adapters import (
            ChatClient,
            ChatClientConfig,
            ClaudeClient,
            GeminiClient,
            OpenAIClient,
            create_chat_client,
        )

        config = ChatClientConfig(api_key="k", base_url="https://x.example.com")
        assert isinstance(create_chat_client("openai", config), OpenAIClient)
        assert isinstance(create_chat_client("claude", config), ClaudeClient)
        assert isinstance(create_chat_client("gemini", config), GeminiClient)
        assert isinstance(create_chat_client("openai", config), ChatClient)

    def test_unknown_adapter(self):
        from channel_router.adapters import ChatClientConfig, create_chat_client
        from channel_router.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            create_chat_client("cohere", ChatClientConfig(api_key="k", base_url="https://x"))

    def test_from_passthrough(self):
        from channel_router.adapters import ChatClientConfig

        config = ChatClientConfig.from_passthrough(
            "k",
            "https://x",
            {"chat_path": "/v2/chat", "custom_headers": {"X-Org": "acme"}},
            timeout=5,
        )
        assert config.chat_path == "/v2/chat"
        assert config.custom_headers == {"X-Org": "acme"}
        assert config.timeout == 5


class TestOpenAIClient:
    """OpenAI-compatible chat completions."""

    def _client(self, **overrides):
        from channel_router.adapters import ChatClientConfig, OpenAIClient

        return OpenAIClient(
            ChatClientConfig(api_key="sk-test", base_url="https://api.example.com/v1", **overrides)
        )

    @pytest.mark.asyncio
    async def test_send_message(self, mock_http):
        requests = mock_http(
            lambda request: httpx.Response(
                200,
                json={
                    "model": "gpt-x",
                    "choices": [{"message": {"content": "Hi there"}}],
                    "usage": {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10},
                },
            )
        )

        response = await self._client().send_message(
            USER,
            model="gpt-x",
            max_tokens=50,
            history=[{"role": "system", "content": "Be brief"}],
        )

        assert response.text == "Hi there"
        assert response.usage == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}
        [request] = requests
        assert str(request.url) == "https://api.example.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "gpt-x"
        assert body["max_tokens"] == 50
        assert body["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hello"},
        ]

    @pytest.mark.asyncio
    async def test_passthrough_settings_applied(self, mock_http):
        requests = mock_http(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})
        )
        client = self._client(
            chat_path="/custom/chat",
            custom_headers={"X-Org": "acme"},
            headers_template='{"X-Key-Echo": "{{api_key}}"}',
            request_body_template='{"user": "gateway"}',
        )

        await client.send_message(USER, model="gpt-x")

        [request] = requests
        assert request.url.path == "/v1/custom/chat"
        assert request.headers["x-org"] == "acme"
        assert request.headers["x-key-echo"] == "sk-test"
        assert json.loads(request.content)["user"] == "gateway"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_type",
        [(401, "auth"), (403, "auth"), (429, "quota"), (500, "server"), (503, "server"), (400, "unknown")],
    )
    async def test_http_errors_classified(self, mock_http, status, error_type):
        from channel_router.errors import ProviderCallError

        mock_http(lambda request: httpx.Response(status, text="upstream said no"))

        with pytest.raises(ProviderCallError) as exc_info:
            await self._client().send_message(USER, model="gpt-x")

        assert exc_info.value.error_type == error_type
        assert exc_info.value.status_code == status
        assert exc_info.value.response_body == "upstream said no"

    @pytest.mark.asyncio
    async def test_timeout(self, mock_http):
        from channel_router.errors import ProviderCallError

        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        mock_http(handler)

        with pytest.raises(ProviderCallError) as exc_info:
            await self._client().send_message(USER, model="gpt-x")
        assert exc_info.value.error_type == "timeout"

    @pytest.mark.asyncio
    async def test_connection_error(self, mock_http):
        from channel_router.errors import ProviderCallError

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        mock_http(handler)

        with pytest.raises(ProviderCallError) as exc_info:
            await self._client().send_message(USER, model="gpt-x")
        assert exc_info.value.error_type == "network"

    @pytest.mark.asyncio
    async def test_empty_choices(self, mock_http):
        from channel_router.errors import ProviderCallError

        mock_http(lambda request: httpx.Response(200, json={"choices": []}))

        with pytest.raises(ProviderCallError) as exc_info:
            await self._client().send_message(USER, model="gpt-x")
        assert exc_info.value.error_type == "empty"

    @pytest.mark.asyncio
    async def test_stream(self, mock_http):
        requests = mock_http(
            lambda request: httpx.Response(
                200,
                content=_sse_body(
                    {"choices": [{"delta": {"content": "Hel"}}]},
                    {"choices": [{"delta": {"content": "lo"}}]},
                    {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2}},
                    "[DONE]",
                ),
                headers={"content-type": "text/event-stream"},
            )
        )

        chunks = [c async for c in self._client().stream_message([USER], model="gpt-x")]

        assert [c.text for c in chunks if c.type == "text"] == ["Hel", "lo"]
        assert chunks[-1].type == "usage"
        assert chunks[-1].usage["prompt_tokens"] == 4
        body = json.loads(requests[0].content)
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_list_models_sorted(self, mock_http):
        requests = mock_http(
            lambda request: httpx.Response(
                200, json={"data": [{"id": "gpt-b"}, {"id": "gpt-a"}, {"object": "model"}]}
            )
        )

        assert await self._client().list_models() == ["gpt-a", "gpt-b"]
        assert str(requests[0].url) == "https://api.example.com/v1/models"


class TestClaudeClient:
    """Anthropic Messages API."""

    def _client(self):
        from channel_router.adapters import ChatClientConfig, ClaudeClient

        return ClaudeClient(ChatClientConfig(api_key="sk-ant", base_url="https://api.anthropic.com/v1"))

    @pytest.mark.asyncio
    async def test_send_message(self, mock_http):
        requests = mock_http(
            lambda request: httpx.Response(
                200,
                json={
                    "content": [{"type": "text", "text": "Bonjour"}],
                    "usage": {"input_tokens": 12, "output_tokens": 4},
                },
            )
        )

        response = await self._client().send_message(
            USER, model="claude-x", history=[{"role": "system", "content": "Speak French"}]
        )

        assert response.text == "Bonjour"
        assert response.usage["prompt_tokens"] == 12
        [request] = requests
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(request.content)
        assert body["system"] == "Speak French"
        assert body["max_tokens"] == 4096
        assert [m["role"] for m in body["messages"]] == ["user"]

    @pytest.mark.asyncio
    async def test_stream(self, mock_http):
        mock_http(
            lambda request: httpx.Response(
                200,
                content=_sse_body(
                    {"type": "message_start", "message": {"usage": {"input_tokens": 9}}},
                    {"type": "content_block_delta", "delta": {"text": "Hi"}},
                    {"type": "content_block_delta", "delta": {"text": "!"}},
                    {"type": "message_delta", "usage": {"output_tokens": 2}},
                ),
            )
        )

        chunks = [c async for c in self._client().stream_message([USER], model="claude-x")]

        assert "".join(c.text for c in chunks if c.type == "text") == "Hi!"
        assert chunks[-1].usage == {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11}

    @pytest.mark.asyncio
    async def test_stream_error_event(self, mock_http):
        from channel_router.errors import ProviderCallError

        mock_http(
            lambda request: httpx.Response(
                200, content=_sse_body({"type": "error", "error": {"message": "overloaded"}})
            )
        )

        with pytest.raises(ProviderCallError, match="overloaded"):
            [c async for c in self._client().stream_message([USER], model="claude-x")]

    @pytest.mark.asyncio
    async def test_known_models(self):
        models = await self._client().list_models()
        assert "claude-3-5-sonnet-20241022" in models


class TestGeminiClient:
    """Gemini generateContent."""

    def _client(self):
        from channel_router.adapters import ChatClientConfig, GeminiClient

        return GeminiClient(
            ChatClientConfig(api_key="g-key", base_url="https://generativelanguage.googleapis.com")
        )

    @pytest.mark.asyncio
    async def test_send_message(self, mock_http):
        requests = mock_http(
            lambda request: httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "Hola"}]}}],
                    "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 1},
                },
            )
        )

        response = await self._client().send_message(
            USER,
            model="gemini-x",
            max_tokens=20,
            history=[{"role": "assistant", "content": "Earlier reply"}],
        )

        assert response.text == "Hola"
        assert response.usage["completion_tokens"] == 1
        [request] = requests
        assert request.url.path == "/v1beta/models/gemini-x:generateContent"
        assert request.headers["x-goog-api-key"] == "g-key"
        body = json.loads(request.content)
        assert [c["role"] for c in body["contents"]] == ["model", "user"]
        assert body["generationConfig"] == {"maxOutputTokens": 20}

    @pytest.mark.asyncio
    async def test_stream_uses_sse_alt(self, mock_http):
        requests = mock_http(
            lambda request: httpx.Response(
                200,
                content=_sse_body(
                    {"candidates": [{"content": {"parts": [{"text": "a"}]}}]},
                    {
                        "candidates": [{"content": {"parts": [{"text": "b"}]}}],
                        "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2},
                    },
                ),
            )
        )

        chunks = [c async for c in self._client().stream_message([USER], model="gemini-x")]

        assert [c.text for c in chunks if c.type == "text"] == ["a", "b"]
        assert chunks[-1].usage["prompt_tokens"] == 3
        assert requests[0].url.path.endswith(":streamGenerateContent")
        assert requests[0].url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_empty_candidates(self, mock_http):
        from channel_router.errors import ProviderCallError

        mock_http(lambda request: httpx.Response(200, json={"candidates": []}))

        with pytest.raises(ProviderCallError) as exc_info:
            await self._client().send_message(USER, model="gemini-x")
        assert exc_info.value.error_type == "empty"


class TestClassifyError:
    """classify_error on arbitrary exceptions."""

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("401 Unauthorized", "auth"),
            ("Rate limit exceeded", "quota"),
            ("Request timed out", "timeout"),
            ("ECONNREFUSED", "network"),
            ("Empty response", "empty"),
            ("something odd", "unknown"),
        ],
    )
    def test_message_heuristics(self, message, expected):
        from channel_router.errors import classify_error

        assert classify_error(RuntimeError(message)) == expected

    def test_status_code_attribute(self):
        from channel_router.errors import ProviderCallError, classify_error

        assert classify_error(ProviderCallError("x", status_code=502)) == "server"
        assert classify_error(ProviderCallError("x", error_type="quota")) == "quota"
