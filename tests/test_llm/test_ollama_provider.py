import json

import httpx
import pytest

from helmsman.config import ModelConfig
from helmsman.exceptions import ConfigurationError, LLMAPIError
from helmsman.llm import Message, OllamaProvider, ToolCall, ToolDefinition, create_provider


def _provider(handler) -> OllamaProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaProvider(model="qwen3:8b", base_url="http://ollama.test/", client=client)


@pytest.mark.asyncio
async def test_complete_sends_tools_and_parses_tool_calls():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "message": {
                    "content": "",
                    "tool_calls": [
                        {"function": {"name": "read", "arguments": {"path": "a.txt"}}},
                        {"id": "x1", "function": {"name": "echo", "arguments": '{"text": "hi"}'}},
                    ],
                },
                "prompt_eval_count": 12,
                "eval_count": 5,
            },
        )

    provider = _provider(handler)
    try:
        response = await provider.complete(
            [
                Message(role="system", content="sys"),
                Message(role="user", content="read a.txt"),
                Message(
                    role="assistant",
                    content="",
                    tool_calls=[ToolCall(id="c0", name="read", arguments={"path": "b.txt"})],
                ),
                Message(role="tool", content="contents", tool_call_id="c0", tool_name="read"),
            ],
            tools=[ToolDefinition(name="read", description="Read", parameters={"type": "object"})],
        )
    finally:
        await provider.close()

    assert captured["url"] == "http://ollama.test/api/chat"
    body = captured["body"]
    assert body["model"] == "qwen3:8b"
    assert body["stream"] is False
    assert body["tools"][0]["function"]["name"] == "read"
    assert body["messages"][2]["tool_calls"] == [{"function": {"name": "read", "arguments": {"path": "b.txt"}}}]
    assert body["messages"][3] == {"role": "tool", "content": "contents", "tool_name": "read"}

    assert [c.name for c in response.tool_calls] == ["read", "echo"]
    assert response.tool_calls[0].id == ""
    assert response.tool_calls[1].id == "x1"
    assert response.tool_calls[1].arguments == {"text": "hi"}
    assert response.usage == {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17}


@pytest.mark.asyncio
async def test_http_error_status_raises_api_error():
    provider = _provider(lambda request: httpx.Response(503, text="overloaded"))
    try:
        with pytest.raises(LLMAPIError) as exc_info:
            await provider.complete([Message(role="user", content="hi")])
    finally:
        await provider.close()

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_unparseable_arguments_become_empty_dict():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"message": {"content": "", "tool_calls": [{"function": {"name": "echo", "arguments": "{oops"}}]}},
        )

    provider = _provider(handler)
    try:
        response = await provider.complete([Message(role="user", content="hi")])
    finally:
        await provider.close()

    assert response.tool_calls[0].arguments == {}


def test_create_provider_rejects_unknown_backend():
    provider = create_provider(ModelConfig(model="llama3.2"))
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"

    with pytest.raises(ConfigurationError):
        create_provider(ModelConfig(provider="unknown"))
