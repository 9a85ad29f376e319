"""
Provider conversion - the only place wire formats exist.

Two request/response shapes are supported:

- OPENAI: chat-completions (also used by OpenAI-compatible endpoints).
- ANTHROPIC: messages API. The system prompt moves to a top-level field,
  tool calls become `tool_use` blocks and tool results become `tool_result`
  blocks inside user messages, correlated by id.

Tool names are dotted internally (`file.read`), which function-calling
APIs do not accept, so they are sent as `file__read` and mapped back.
Any other character outside `[A-Za-z0-9_-]` becomes `_`, so the name
map built per request is the only way back to the internal name.
"""

import json
import logging
import re
from enum import Enum
from typing import Any

from crabclaw.errors import ConfigError, ProviderApiError
from crabclaw.types import (
    ChatResponse,
    ContentDelta,
    Message,
    Role,
    StreamDone,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_BASES = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
}

# Function names must match ^[A-Za-z0-9_-]{1,64}$.
_INVALID_WIRE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
MAX_WIRE_NAME_LENGTH = 64


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


def parse_model(model: str) -> tuple[Provider, str]:
    """Split `provider:model`. Raises ConfigError for unknown providers."""
    prefix, sep, name = model.partition(":")
    if not sep or not name:
        raise ConfigError(f"model must look like 'provider:name', got {model!r}")
    try:
        return Provider(prefix.lower()), name
    except ValueError:
        known = ", ".join(p.value for p in Provider)
        raise ConfigError(f"unknown provider {prefix!r} (expected one of: {known})") from None


def endpoint(provider: Provider, api_base: str = "") -> str:
    base = (api_base or DEFAULT_BASES[provider.value]).rstrip("/")
    if provider == Provider.ANTHROPIC:
        return f"{base}/messages"
    return f"{base}/chat/completions"


def headers(provider: Provider, api_key: str) -> dict[str, str]:
    result = {"Content-Type": "application/json"}
    if provider == Provider.ANTHROPIC:
        result["anthropic-version"] = ANTHROPIC_VERSION
        if api_key:
            result["x-api-key"] = api_key
    elif api_key:
        result["Authorization"] = f"Bearer {api_key}"
    return result


def wire_tool_name(name: str) -> str:
    """Encode an internal tool name as a function name both providers accept."""
    wire = _INVALID_WIRE_CHARS.sub("_", name.replace(".", "__"))
    return wire[:MAX_WIRE_NAME_LENGTH] or "tool"


def tool_name_map(tools: list[dict[str, Any]]) -> dict[str, str]:
    """wire name -> internal name for the tools sent with a request."""
    return {wire_tool_name(t["name"]): t["name"] for t in tools}


def unwire_tool_name(wire: str, name_map: dict[str, str]) -> str:
    return name_map.get(wire, wire.replace("__", "."))


def decode_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Tool arguments as a dict; malformed JSON is kept as {"raw": text}."""
    if isinstance(raw, dict):
        return raw
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Tool call arguments are not valid JSON: {raw[:200]!r}")
        return {"raw": raw}
    return value if isinstance(value, dict) else {"value": value}


def check_error_payload(data: Any) -> None:
    """
    Raise ProviderApiError for error bodies returned with HTTP 200.

    Covers `{"error": {...}}`, Anthropic `{"type": "error"}` and the
    `{"success": false, "code": ..., "msg": ...}` shape some gateways use.
    """
    if not isinstance(data, dict):
        raise ProviderApiError("provider returned a non-object body")
    if data.get("type") == "error" or "error" in data and data["error"]:
        error = data.get("error")
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderApiError(f"provider error: {message}", payload=data)
    if data.get("success") is False or ("msg" in data and "code" in data and "choices" not in data):
        raise ProviderApiError(
            f"provider error {data.get('code')}: {data.get('msg') or data.get('message')}",
            payload=data,
        )


# =========================================================================
# OpenAI chat-completions
# =========================================================================


def openai_messages(messages: list[Message], system_prompt: str | None) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})
    for message in messages:
        if message.role == Role.TOOL:
            result.append({
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message.content,
            })
        elif message.role == Role.ASSISTANT and message.tool_calls:
            result.append({
                "role": "assistant",
                "content": message.content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": wire_tool_name(call.name),
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in message.tool_calls
                ],
            })
        else:
            result.append({"role": message.role.value, "content": message.content})
    return result


def openai_request(
    model: str,
    messages: list[Message],
    system_prompt: str | None,
    tools: list[dict[str, Any]],
    max_tokens: int,
    temperature: float | None = None,
    stream: bool = False,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model,
        "messages": openai_messages(messages, system_prompt),
        "max_tokens": max_tokens,
    }
    if tools:
        body["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": wire_tool_name(t["name"]),
                    "description": t["description"],
                    "parameters": t["parameters"],
                },
            }
            for t in tools
        ]
    if temperature is not None:
        body["temperature"] = temperature
    if stream:
        body["stream"] = True
    return body


def parse_openai_response(data: Any, name_map: dict[str, str]) -> ChatResponse:
    check_error_payload(data)
    choices = data.get("choices") or []
    if not choices:
        raise ProviderApiError("response has no choices", payload=data)
    choice = choices[0]
    message = choice.get("message") or {}
    tool_calls = [
        ToolCall(
            id=tc.get("id", ""),
            name=unwire_tool_name(tc.get("function", {}).get("name", ""), name_map),
            arguments=decode_arguments(tc.get("function", {}).get("arguments")),
        )
        for tc in message.get("tool_calls") or []
    ]
    return ChatResponse(
        content=message.get("content") or "",
        tool_calls=tool_calls,
        finish_reason=choice.get("finish_reason"),
        usage=data.get("usage") or {},
    )


class OpenAIStreamDecoder:
    """Turns chat-completion chunks into stream events."""

    def __init__(self, name_map: dict[str, str]) -> None:
        self.name_map = name_map
        self.finish_reason: str | None = None

    def feed(self, data: Any) -> list[StreamEvent]:
        check_error_payload(data)
        events: list[StreamEvent] = []
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                events.append(ContentDelta(delta["content"]))
            for tc in delta.get("tool_calls") or []:
                function = tc.get("function") or {}
                name = function.get("name")
                events.append(ToolCallDelta(
                    index=tc.get("index", 0),
                    id=tc.get("id"),
                    name=unwire_tool_name(name, self.name_map) if name else None,
                    arguments=function.get("arguments") or "",
                ))
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return events

    def done(self) -> StreamDone:
        return StreamDone(self.finish_reason)


# =========================================================================
# Anthropic messages
# =========================================================================


def _append_turn(result: list[dict[str, Any]], role: str, blocks: list[dict[str, Any]]) -> None:
    # Consecutive same-role turns are merged into one message.
    if result and result[-1]["role"] == role:
        result[-1]["content"].extend(blocks)
    else:
        result.append({"role": role, "content": list(blocks)})


def anthropic_messages(
    messages: list[Message],
    system_prompt: str | None,
) -> tuple[str, list[dict[str, Any]]]:
    """Returns (system, messages)."""
    system_parts = [system_prompt] if system_prompt else []
    result: list[dict[str, Any]] = []
    for message in messages:
        if message.role == Role.SYSTEM:
            system_parts.append(message.content)
        elif message.role == Role.TOOL:
            _append_turn(result, "user", [{
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
            }])
        elif message.role == Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": wire_tool_name(call.name),
                    "input": call.arguments,
                })
            if blocks:
                _append_turn(result, "assistant", blocks)
        else:
            _append_turn(result, "user", [{"type": "text", "text": message.content}])
    return "\n\n".join(p for p in system_parts if p), result


def anthropic_request(
    model: str,
    messages: list[Message],
    system_prompt: str | None,
    tools: list[dict[str, Any]],
    max_tokens: int,
    temperature: float | None = None,
    stream: bool = False,
) -> dict[str, Any]:
    system, converted = anthropic_messages(messages, system_prompt)
    body: dict[str, Any] = {
        "model": model,
        "messages": converted,
        "max_tokens": max_tokens,
    }
    if system:
        body["system"] = system
    if tools:
        body["tools"] = [
            {
                "name": wire_tool_name(t["name"]),
                "description": t["description"],
                "input_schema": t["parameters"],
            }
            for t in tools
        ]
    if temperature is not None:
        body["temperature"] = temperature
    if stream:
        body["stream"] = True
    return body


def parse_anthropic_response(data: Any, name_map: dict[str, str]) -> ChatResponse:
    check_error_payload(data)
    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in data.get("content") or []:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            tool_calls.append(ToolCall(
                id=block.get("id", ""),
                name=unwire_tool_name(block.get("name", ""), name_map),
                arguments=decode_arguments(block.get("input")),
            ))
    return ChatResponse(
        content="".join(texts),
        tool_calls=tool_calls,
        finish_reason=data.get("stop_reason"),
        usage=data.get("usage") or {},
    )


class AnthropicStreamDecoder:
    """Turns messages-API stream events into stream events."""

    def __init__(self, name_map: dict[str, str]) -> None:
        self.name_map = name_map
        self.finish_reason: str | None = None
        self.stopped = False

    def feed(self, data: Any) -> list[StreamEvent]:
        check_error_payload(data)
        kind = data.get("type")
        index = data.get("index", 0)
        if kind == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                return [ToolCallDelta(
                    index=index,
                    id=block.get("id"),
                    name=unwire_tool_name(block.get("name", ""), self.name_map),
                )]
            if block.get("type") == "text" and block.get("text"):
                return [ContentDelta(block["text"])]
        elif kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [ContentDelta(delta["text"])]
            if delta.get("type") == "input_json_delta":
                return [ToolCallDelta(index=index, arguments=delta.get("partial_json") or "")]
        elif kind == "message_delta":
            reason = (data.get("delta") or {}).get("stop_reason")
            if reason:
                self.finish_reason = reason
        elif kind == "message_stop":
            self.stopped = True
        return []

    def done(self) -> StreamDone:
        return StreamDone(self.finish_reason)


# =========================================================================
# Dispatch
# =========================================================================


def build_request(provider: Provider, model: str, **kwargs: Any) -> dict[str, Any]:
    if provider == Provider.ANTHROPIC:
        return anthropic_request(model, **kwargs)
    return openai_request(model, **kwargs)


def parse_response(provider: Provider, data: Any, name_map: dict[str, str]) -> ChatResponse:
    if provider == Provider.ANTHROPIC:
        return parse_anthropic_response(data, name_map)
    return parse_openai_response(data, name_map)


def stream_decoder(provider: Provider, name_map: dict[str, str]) -> OpenAIStreamDecoder | AnthropicStreamDecoder:
    if provider == Provider.ANTHROPIC:
        return AnthropicStreamDecoder(name_map)
    return OpenAIStreamDecoder(name_map)
