"""
Model Runner - one inference step against any provider.

The runner hides whether a response arrived in one piece or as a stream.
Streamed fragments are passed through to the caller and also folded back
into a ChatResponse, so the agent loop handles both modes the same way.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from crabclaw.providers import decode_arguments
from crabclaw.types import (
    ChatResponse,
    ContentDelta,
    Message,
    StreamDone,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
)

logger = logging.getLogger(__name__)


class ChatClient(Protocol):
    """What the runner needs from a client. LLMClient satisfies it."""

    async def chat(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ChatResponse: ...

    def stream(
        self,
        messages: list[Message],
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


@dataclass
class _PartialCall:
    id: str | None = None
    name: str | None = None
    arguments: list[str] = field(default_factory=list)


class StreamAccumulator:
    """Folds stream events into a ChatResponse."""

    def __init__(self) -> None:
        self._text: list[str] = []
        self._calls: dict[int, _PartialCall] = {}
        self.finish_reason: str | None = None
        self.done = False

    def feed(self, event: StreamEvent) -> None:
        if isinstance(event, ContentDelta):
            self._text.append(event.text)
        elif isinstance(event, ToolCallDelta):
            partial = self._calls.setdefault(event.index, _PartialCall())
            if event.id:
                partial.id = event.id
            if event.name:
                partial.name = event.name
            if event.arguments:
                partial.arguments.append(event.arguments)
        elif isinstance(event, StreamDone):
            self.finish_reason = event.finish_reason
            self.done = True

    def result(self) -> ChatResponse:
        calls = []
        for index in sorted(self._calls):
            partial = self._calls[index]
            if not partial.name:
                logger.warning(f"Dropping streamed tool call {index} without a name")
                continue
            calls.append(ToolCall(
                id=partial.id or f"call_{uuid.uuid4().hex[:12]}",
                name=partial.name,
                arguments=decode_arguments("".join(partial.arguments)),
            ))
        return ChatResponse(
            content="".join(self._text),
            tool_calls=calls,
            finish_reason=self.finish_reason,
        )


class ModelRunner:
    """Runs inference through a ChatClient."""

    def __init__(self, client: ChatClient) -> None:
        self.client = client

    async def complete(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[dict[str, Any]],
    ) -> ChatResponse:
        response = await self.client.chat(messages, system_prompt=system_prompt, tools=tools)
        _fill_missing_ids(response)
        logger.info(
            f"Model responded: {len(response.content)} chars, {len(response.tool_calls)} tool call(s)"
        )
        return response

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str | None,
        tools: list[dict[str, Any]],
        accumulator: StreamAccumulator,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events as they arrive while filling `accumulator`."""
        async for event in self.client.stream(messages, system_prompt=system_prompt, tools=tools):
            accumulator.feed(event)
            yield event

    async def aclose(self) -> None:
        close = getattr(self.client, "aclose", None)
        if close is not None:
            await close()


def _fill_missing_ids(response: ChatResponse) -> None:
    for call in response.tool_calls:
        if not call.id:
            call.id = f"call_{uuid.uuid4().hex[:12]}"
