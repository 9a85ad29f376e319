"""
Core types for the runtime.

These types are the provider-agnostic shapes that flow between the tape,
the context assembler, the model runner and the agent loop. Provider wire
formats never appear here; conversion happens in crabclaw.providers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Roles of tape entries and messages.

    ANCHOR only exists on the tape; it never becomes a message.
    """
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    ANCHOR = "anchor"


@dataclass
class ToolCall:
    """
    A request from the model to execute a tool.

    Arguments are always a decoded dict. Providers that send malformed JSON
    arguments get `{"raw": "<text>"}` so the tool can report the problem.
    """
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            arguments=dict(data.get("arguments") or {}),
        )


@dataclass
class ToolResult:
    """
    The result of executing a tool.

    This becomes a tool-role tape entry, giving the model feedback about
    what happened. Failures are results too (`success=False`).
    """
    tool_call_id: str
    content: str
    success: bool = True
    error: str | None = None


@dataclass
class Message:
    """
    A single provider-agnostic message.

    Messages are derived from tape entries by the context assembler and are
    never persisted on their own.
    """
    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)


@dataclass
class ChatResponse:
    """
    A complete model response, already converted from the provider's shape.

    `content` may be empty when the model only issued tool calls.
    """
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


# =========================================================================
# Streaming events
# =========================================================================


@dataclass
class ContentDelta:
    """A fragment of assistant text."""
    text: str


@dataclass
class ToolCallDelta:
    """
    A fragment of a tool call.

    The first fragment for an index carries `id` and `name`; later ones only
    append to `arguments`.
    """
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class StreamDone:
    """Explicit completion marker. Always the last event of a stream."""
    finish_reason: str | None = None


StreamEvent = ContentDelta | ToolCallDelta | StreamDone


@dataclass
class RunState:
    """
    Transient per-turn state of the agent loop.

    Never persisted: after a crash the next turn resumes from the tape.
    """
    iteration_count: int = 0
    max_iterations: int = 5
    accumulated_visible_text: str = ""
    pending_exit: bool = False
    cancelled: bool = False

    @property
    def cap_reached(self) -> bool:
        return self.iteration_count >= self.max_iterations

    def add_visible_text(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        if self.accumulated_visible_text:
            self.accumulated_visible_text += "\n\n"
        self.accumulated_visible_text += text
