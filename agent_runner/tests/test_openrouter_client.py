import json

import httpx
import pytest

from agent_runner.domain.exceptions import ApiError, NetworkError, RateLimitError, TransportError, ValidationError
from agent_runner.domain.models import Message, TextDelta, ToolCall, ToolCallFragment, TurnEnd
from agent_runner.providers.openrouter_client import OpenRouterGateway
from agent_runner.tools.definitions import ToolDescriptor


class SettingsStub:
    openrouter_api_key = "sk-or-test-123456"
    openrouter_base_url = "https://openrouter.ai/api/v1"
    default_model = "openai/gpt-4o-mini"
    http_timeout = 1.0
    custom_prompt = "Answer in French."


def _sse(obj):
    return "data: " + json.dumps(obj)


class FakeStreamResponse:
    def __init__(self, status_code=200, lines=(), body=b""):
        self.status_code = status_code
        self._lines = list(lines)
        self._body = body
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *a):
        self.closed = True
        return False

    async def aiter_lines(self):
        for line in self._lines:
            yield line

    async def aread(self):
        return self._body


def _fake_client(captured, response=None, error=None):
    class Client:
        def __init__(self, *a, **kw):
            captured["init"] = kw

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None, **kw):
            if error is not None:
                raise error
            captured["method"] = method
            captured["url"] = url
            captured["json"] = json
            captured["headers"] = headers
            return response

    return Client


async def _collect(gateway, history, tools=()):
    return [event async for event in gateway.stream_turn(history, list(tools))]


@pytest.mark.asyncio
async def test_stream_parses_text_and_tool_fragments(monkeypatch):
    captured = {}
    lines = [
        ": OPENROUTER PROCESSING",
        _sse({"choices": [{"delta": {"content": "Let me "}}]}),
        "",
        _sse({"choices": [{"delta": {"content": "check."}}]}),
        "data: {not json",
        _sse({"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "call_1", "type": "function", "function": {"name": "read_file", "arguments": ""}}
        ]}}]}),
        _sse({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "{\"path\": \"a\"}"}}]}}]}),
        _sse({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}),
        "data: [DONE]",
        _sse({"choices": [{"delta": {"content": "after done"}}]}),
    ]
    response = FakeStreamResponse(lines=lines)
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(captured, response))

    events = await _collect(OpenRouterGateway(SettingsStub()), [Message(role="user", text="read a")])

    assert events == [
        TextDelta(text="Let me "),
        TextDelta(text="check."),
        ToolCallFragment(index=0, id="call_1", type="function", name="read_file", arguments=""),
        ToolCallFragment(index=0, arguments='{"path": "a"}'),
        TurnEnd(finish_reason="tool_calls"),
    ]
    assert response.closed is True


@pytest.mark.asyncio
async def test_request_payload(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _fake_client(captured, FakeStreamResponse(lines=["data: [DONE]"])))
    tool = ToolDescriptor(name="echo", description="Echo", parameters={"type": "object", "properties": {}})
    history = [
        Message(role="user", text="hi"),
        Message(role="assistant", text="", tool_calls=[ToolCall(id="call_1", name="echo", arguments='{"text": "x"}')]),
        Message(role="tool", text="echo: x", tool_call_id="call_1"),
        Message(role="tool", text="plain result"),
        Message(role="assistant", text=""),
    ]

    events = await _collect(OpenRouterGateway(SettingsStub()), history, [tool])

    assert events == [TurnEnd(finish_reason=None)]
    assert captured["method"] == "POST"
    assert captured["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-or-test-123456"
    assert "HTTP-Referer" in captured["headers"] and "X-Title" in captured["headers"]
    payload = captured["json"]
    assert payload["stream"] is True
    assert payload["model"] == "openai/gpt-4o-mini"
    assert payload["tools"] == [tool.to_function_schema()]
    msgs = payload["messages"]
    assert msgs[0]["role"] == "system"
    assert "Answer in French." in msgs[0]["content"]
    assert "[DYNAMIC_TIMESTAMP]" not in msgs[0]["content"]
    assert msgs[1] == {"role": "user", "content": "hi"}
    assert msgs[2]["tool_calls"][0]["function"] == {"name": "echo", "arguments": '{"text": "x"}'}
    assert msgs[3] == {"role": "tool", "tool_call_id": "call_1", "content": "echo: x"}
    assert msgs[4]["role"] == "user" and "plain result" in msgs[4]["content"]
    # 空的 assistant 占位消息不发送
    assert len(msgs) == 5


@pytest.mark.asyncio
async def test_missing_api_key():
    class NoKey(SettingsStub):
        openrouter_api_key = None

    with pytest.raises(ValidationError) as exc:
        await _collect(OpenRouterGateway(NoKey()), [Message(role="user", text="hi")])
    assert exc.value.code == "MISSING_API_KEY"


@pytest.mark.asyncio
@pytest.mark.parametrize("status, error_cls", [(429, RateLimitError), (401, ApiError), (500, ApiError)])
async def test_http_errors_map_to_transport_errors(monkeypatch, status, error_cls):
    response = FakeStreamResponse(status_code=status, body=b'{"error": "nope"}')
    monkeypatch.setattr("httpx.AsyncClient", _fake_client({}, response))
    with pytest.raises(error_cls) as exc:
        await _collect(OpenRouterGateway(SettingsStub()), [Message(role="user", text="hi")])
    assert isinstance(exc.value, TransportError)


@pytest.mark.asyncio
async def test_network_error(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", _fake_client({}, error=httpx.ConnectError("dns failure")))
    with pytest.raises(NetworkError) as exc:
        await _collect(OpenRouterGateway(SettingsStub()), [Message(role="user", text="hi")])
    assert exc.value.message == "dns failure"


@pytest.mark.asyncio
async def test_error_chunk_in_stream(monkeypatch):
    lines = [_sse({"error": {"message": "provider overloaded"}})]
    monkeypatch.setattr("httpx.AsyncClient", _fake_client({}, FakeStreamResponse(lines=lines)))
    with pytest.raises(ApiError) as exc:
        await _collect(OpenRouterGateway(SettingsStub()), [Message(role="user", text="hi")])
    assert exc.value.message == "provider overloaded"


@pytest.mark.asyncio
async def test_closing_iterator_closes_response(monkeypatch):
    lines = [_sse({"choices": [{"delta": {"content": str(i)}}]}) for i in range(5)]
    response = FakeStreamResponse(lines=lines)
    monkeypatch.setattr("httpx.AsyncClient", _fake_client({}, response))

    stream = OpenRouterGateway(SettingsStub()).stream_turn([Message(role="user", text="hi")], [])
    first = await stream.__anext__()
    await stream.aclose()

    assert first == TextDelta(text="0")
    assert response.closed is True
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
