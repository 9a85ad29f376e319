"""
Tests for LLMClient.

HTTP is served by httpx.MockTransport, so these tests exercise the real
request building, error mapping, retry and SSE framing code paths
without a network.
"""

import json
from collections.abc import Callable

import httpx
import pytest

from crabclaw.config import LLMConfig
from crabclaw.errors import AuthError, NetworkError, ProviderApiError
from crabclaw.llm import LLMClient
from crabclaw.types import ContentDelta, Message, StreamDone, ToolCall, ToolCallDelta

TOOLS = [{"name": "file.list", "description": "List", "parameters": {"type": "object"}}]


def _openai_reply(content: str = "Hello!") -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2},
    }


def _sse(*chunks: object, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class Recorder:
    """Serves scripted responses and remembers requests and sleeps."""

    def __init__(self, responses: list[httpx.Response | Exception]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.delays: list[float] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def make_client() -> Callable[..., tuple[LLMClient, Recorder]]:
    def factory(responses: list, **config: object) -> tuple[LLMClient, Recorder]:
        recorder = Recorder(responses)
        settings = {"model": "openai:gpt-4o-mini", "api_key": "sk-test", "retry_delay": 0.5}
        settings.update(config)
        client = LLMClient(
            LLMConfig(**settings),
            transport=httpx.MockTransport(recorder.handler),
            sleep=recorder.sleep,
        )
        return client, recorder

    return factory


class TestChat:
    """Non-streaming requests."""

    async def test_success(self, make_client) -> None:
        client, recorder = make_client([httpx.Response(200, json=_openai_reply())])

        response = await client.chat([Message.user("hi")], system_prompt="SYS", tools=TOOLS)

        assert response.content == "Hello!"
        assert response.usage["prompt_tokens"] == 3
        request = recorder.requests[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o-mini"
        assert body["messages"][0] == {"role": "system", "content": "SYS"}
        assert body["tools"][0]["function"]["name"] == "file__list"

    async def test_tool_call_names_are_mapped_back(self, make_client) -> None:
        reply = {
            "choices": [{
                "message": {"tool_calls": [{
                    "id": "c1", "type": "function",
                    "function": {"name": "file__list", "arguments": "{}"},
                }]},
                "finish_reason": "tool_calls",
            }],
        }
        client, _ = make_client([httpx.Response(200, json=reply)])

        response = await client.chat([Message.user("ls")], tools=TOOLS)

        assert response.tool_calls == [ToolCall("c1", "file.list", {})]

    async def test_auth_error_is_not_retried(self, make_client) -> None:
        client, recorder = make_client([httpx.Response(401, text="bad key")])

        with pytest.raises(AuthError):
            await client.chat([Message.user("hi")])

        assert len(recorder.requests) == 1

    async def test_rate_limit_honours_retry_after(self, make_client) -> None:
        client, recorder = make_client([
            httpx.Response(429, headers={"Retry-After": "0"}, text="slow down"),
            httpx.Response(200, json=_openai_reply("after wait")),
        ])

        response = await client.chat([Message.user("hi")])

        assert response.content == "after wait"
        assert recorder.delays == [0.0]

    async def test_server_error_is_not_retried(self, make_client) -> None:
        client, recorder = make_client([httpx.Response(500, text="internal")])

        with pytest.raises(ProviderApiError) as excinfo:
            await client.chat([Message.user("hi")])

        assert excinfo.value.details["status"] == 500
        assert len(recorder.requests) == 1

    async def test_network_errors_back_off_then_fail(self, make_client) -> None:
        client, recorder = make_client([httpx.ConnectError("refused")], max_retries=2)

        with pytest.raises(NetworkError):
            await client.chat([Message.user("hi")])

        assert len(recorder.requests) == 3
        assert recorder.delays == [0.5, 1.0]

    async def test_error_payload_with_200(self, make_client) -> None:
        client, _ = make_client([
            httpx.Response(200, json={"success": False, "code": 500, "msg": "gateway down"}),
        ])

        with pytest.raises(ProviderApiError):
            await client.chat([Message.user("hi")])

    async def test_anthropic_request(self, make_client) -> None:
        reply = {"type": "message", "content": [{"type": "text", "text": "Hi"}], "stop_reason": "end_turn"}
        client, recorder = make_client(
            [httpx.Response(200, json=reply)], model="anthropic:claude-test", api_key="ak",
        )

        response = await client.chat([Message.user("hi")], system_prompt="SYS")

        assert response.content == "Hi"
        request = recorder.requests[0]
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "ak"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert json.loads(request.content)["system"] == "SYS"


class TestStream:
    """Server-sent event streaming."""

    async def test_openai_stream(self, make_client) -> None:
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
        )
        client, recorder = make_client([httpx.Response(200, content=body)])

        events = [e async for e in client.stream([Message.user("hi")])]

        assert events == [ContentDelta("Hel"), ContentDelta("lo"), StreamDone("stop")]
        assert json.loads(recorder.requests[0].content)["stream"] is True

    async def test_anthropic_stream(self, make_client) -> None:
        events_out = [
            {"type": "message_start", "message": {}},
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "tu_1", "name": "file__list"}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": "{}"}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
            {"type": "message_stop"},
        ]
        body = "".join(
            f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events_out
        ).encode()
        client, _ = make_client([httpx.Response(200, content=body)], model="anthropic:claude-test")

        events = [e async for e in client.stream([Message.user("ls")], tools=TOOLS)]

        assert events == [
            ToolCallDelta(index=0, id="tu_1", name="file.list"),
            ToolCallDelta(index=0, arguments="{}"),
            StreamDone("tool_use"),
        ]

    async def test_truncated_stream_is_a_network_error(self, make_client) -> None:
        body = _sse({"choices": [{"delta": {"content": "partial"}}]}, done=False)
        client, _ = make_client([httpx.Response(200, content=body)], max_retries=0)

        events = []
        with pytest.raises(NetworkError):
            async for event in client.stream([Message.user("hi")]):
                events.append(event)

        assert events == [ContentDelta("partial")]

    async def test_plain_error_body_in_stream_mode(self, make_client) -> None:
        client, _ = make_client([
            httpx.Response(200, content=json.dumps({"error": {"message": "model missing"}}).encode()),
        ])

        with pytest.raises(ProviderApiError):
            [e async for e in client.stream([Message.user("hi")])]

    async def test_stream_retries_before_first_event(self, make_client) -> None:
        body = _sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]})
        client, recorder = make_client([
            httpx.Response(429, text="busy"),
            httpx.Response(200, content=body),
        ])

        events = [e async for e in client.stream([Message.user("hi")])]

        assert events[-1] == StreamDone("stop")
        assert len(recorder.requests) == 2
        assert recorder.delays == [0.5]

    async def test_stream_status_error(self, make_client) -> None:
        client, _ = make_client([httpx.Response(403, text="forbidden")])

        with pytest.raises(AuthError):
            [e async for e in client.stream([Message.user("hi")])]
