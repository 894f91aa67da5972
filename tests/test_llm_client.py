"""
Tests for the LM Studio backend, using httpx.MockTransport instead of a server.

Tests cover:
- Loaded-model listing through the REST API, with /v1/models fallback
- Connection failures mapped to MODEL_UNAVAILABLE
- Streaming chat completions parsed into text fragments
- HTTP errors mapped to MODEL_ERROR
"""

import json

import httpx
import pytest

from local_llm_mcp.config import LLMConfig
from local_llm_mcp.exceptions import ModelCallError, ModelUnavailableError
from local_llm_mcp.llm_client import LMStudioBackend, ModelBackend, ResponseOptions, rest_api_root
from local_llm_mcp.streaming import collect_stream


REST_MODELS = {
    "data": [
        {"id": "qwen2.5-coder-7b", "type": "llm", "arch": "qwen2", "state": "loaded",
         "max_context_length": 32768, "loaded_context_length": 16384},
        {"id": "llama-3-8b", "type": "llm", "arch": "llama", "state": "not-loaded",
         "max_context_length": 8192},
        {"id": "nomic-embed", "type": "embeddings", "state": "loaded", "max_context_length": 2048},
    ]
}


def _sse(chunks: list[str]) -> bytes:
    lines = []
    for i, text in enumerate(chunks):
        event = {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": "qwen2.5-coder-7b",
            "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
        }
        lines.append(f"data: {json.dumps(event)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _backend(handler) -> LMStudioBackend:
    config = LLMConfig(base_url="http://lmstudio.test:1234/v1", allowed_directories=["/"])
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LMStudioBackend(config, http_client=client)


class TestRestApiRoot:
    def test_strips_v1(self):
        assert rest_api_root("http://localhost:1234/v1") == "http://localhost:1234"
        assert rest_api_root("http://localhost:1234/v1/") == "http://localhost:1234"
        assert rest_api_root("http://localhost:1234") == "http://localhost:1234"


class TestListLoadedModels:
    """Tests for list_loaded_models."""

    @pytest.mark.asyncio
    async def test_rest_api_listing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v0/models"
            return httpx.Response(200, json=REST_MODELS)

        backend = _backend(handler)
        models = await backend.list_loaded_models()

        assert [m.identifier for m in models] == ["qwen2.5-coder-7b"]
        assert models[0].architecture == "qwen2"
        assert await backend.get_context_length(models[0]) == 16384
        assert isinstance(backend, ModelBackend)

    @pytest.mark.asyncio
    async def test_falls_back_to_openai_listing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v0/models":
                return httpx.Response(404)
            assert request.url.path == "/v1/models"
            return httpx.Response(200, json={
                "object": "list",
                "data": [{"id": "local-model", "object": "model", "created": 0, "owned_by": "me"}],
            })

        models = await _backend(handler).list_loaded_models()

        assert [m.identifier for m in models] == ["local-model"]
        assert models[0].context_length is None

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ModelUnavailableError) as exc:
            await _backend(handler).list_loaded_models()

        assert exc.value.code == "MODEL_UNAVAILABLE"


class TestRespond:
    """Tests for streamed chat completions."""

    @pytest.mark.asyncio
    async def test_streams_fragments(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v0/models":
                return httpx.Response(200, json=REST_MODELS)
            assert request.url.path == "/v1/chat/completions"
            seen.update(json.loads(request.content))
            return httpx.Response(
                200,
                content=_sse(["Hello", ", ", "world"]),
                headers={"content-type": "text/event-stream"},
            )

        backend = _backend(handler)
        model = (await backend.list_loaded_models())[0]
        messages = [{"role": "user", "content": "hi"}]

        result = await collect_stream(backend.respond(model, messages, ResponseOptions(max_tokens=100)))

        assert result.text == "Hello, world"
        assert seen["stream"] is True
        assert seen["max_tokens"] == 100
        assert seen["temperature"] == 0.1
        assert seen["model"] == "qwen2.5-coder-7b"
        assert backend.get_stats()["api_calls"] == 1

    @pytest.mark.asyncio
    async def test_http_error_becomes_model_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v0/models":
                return httpx.Response(200, json=REST_MODELS)
            return httpx.Response(500, json={"error": "model crashed"})

        backend = _backend(handler)
        model = (await backend.list_loaded_models())[0]

        with pytest.raises(ModelCallError) as exc:
            await collect_stream(backend.respond(model, [{"role": "user", "content": "hi"}], ResponseOptions(10)))

        assert exc.value.code == "MODEL_ERROR"

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        backend = LMStudioBackend(LLMConfig(allowed_directories=["/"]), http_client=client)

        await backend.close()

        assert not client.is_closed
        await client.aclose()
