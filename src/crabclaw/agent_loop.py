"""
Agent Loop - one turn from input text to a persisted result.

For each turn:

1. Route the input. A handled command ends the turn right away.
2. Append the user entry to the tape, build messages and system prompt.
3. Call the model.
4. If it returned tool calls: record the calls, execute them in order,
   record the results, then go back to 3.
5. Otherwise route the reply for embedded commands, append the assistant
   entry and return.

Step 4 runs at most `max_iterations` times per turn. Hitting the cap is a
defined outcome: the turn ends with whatever text exists plus a note.
A cancel request is honoured between steps, never in the middle of one.

Turns of one session run strictly one after another; AgentRuntime keeps
one loop and one lock per session, and different sessions never share a
tape.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from crabclaw.config import AppConfig
from crabclaw.context import ContextAssembler
from crabclaw.errors import (
    AuthError,
    CommandParseError,
    ConfigError,
    LLMError,
    ToolCancelledError,
    ToolError,
)
from crabclaw.llm import LLMClient
from crabclaw.router import AssistantRouteResult, CommandRouter, EnterModel, ShortCircuit
from crabclaw.runner import ModelRunner, StreamAccumulator
from crabclaw.skills import Skill, discover_skills
from crabclaw.tape import TapeStore, tape_name_for
from crabclaw.tools import ToolRegistry, builtin_registry
from crabclaw.types import ChatResponse, ContentDelta, Role, RunState, ToolCall

logger = logging.getLogger(__name__)


def iteration_cap_note(limit: int) -> str:
    return f"[stopped: reached the tool iteration limit ({limit})]"


@dataclass
class TurnResult:
    """What a transport gets back for one turn."""
    immediate_output: str = ""
    assistant_output: str = ""
    exit_requested: bool = False
    iterations: int = 0
    iteration_cap_reached: bool = False
    cancelled: bool = False
    error: dict[str, Any] | None = None
    fatal: bool = False

    def to_reply(self) -> str:
        parts = [self.immediate_output, self.assistant_output]
        if self.error and not self.assistant_output:
            parts.append(f"error: {self.error.get('message', '')}")
        return "\n\n".join(p for p in parts if p)


@dataclass
class TurnEvent:
    """
    One item of a streamed turn.

    kind is "text" (a fragment of model output), "tool_call", "tool_result",
    "routed" or "done". A routed event follows the streamed final reply when
    commands in it were executed, and carries the text with their output
    substituted. The done event is always last and carries the TurnResult.
    """
    kind: str
    text: str = ""
    tool_call: ToolCall | None = None
    is_error: bool = False
    turn: TurnResult | None = None


class AgentLoop:
    """
    The bounded tool-calling loop for one session.

    The loop keeps no history of its own. Everything it needs between
    iterations and between turns is read back from the tape.
    """

    def __init__(
        self,
        tape: TapeStore,
        registry: ToolRegistry,
        runner: ModelRunner,
        config: AppConfig,
        skills: list[Skill] | None = None,
    ) -> None:
        self.tape = tape
        self.registry = registry
        self.runner = runner
        self.config = config
        self.router = CommandRouter(tape, registry, config.workspace, config.tools, skills)
        self.context = ContextAssembler(tape, registry, config.workspace, config.context)
        self._cancel_requested = False
        self._running = False

    def cancel(self) -> None:
        """
        Stop the running turn at the next step boundary: after the model
        call in flight returns, or before the next tool call starts.

        Ignored when no turn is running, so a stale request never cancels
        a later turn.
        """
        if not self._running:
            logger.debug("Cancel ignored: no turn in progress")
            return
        self._cancel_requested = True

    async def handle_turn(self, text: str) -> TurnResult:
        result = TurnResult()
        async for event in self._run(text, streaming=False):
            if event.kind == "done" and event.turn is not None:
                result = event.turn
        return result

    async def handle_turn_stream(self, text: str) -> AsyncIterator[TurnEvent]:
        async for event in self._run(text, streaming=True):
            yield event

    async def _run(self, text: str, streaming: bool) -> AsyncIterator[TurnEvent]:
        self._running = True
        try:
            async for event in self._turn(text, streaming):
                yield event
        finally:
            self._running = False
            self._cancel_requested = False

    async def _turn(self, text: str, streaming: bool) -> AsyncIterator[TurnEvent]:
        if not text.strip():
            yield TurnEvent("done", turn=TurnResult())
            return

        try:
            routed = await self.router.route_user(text)
        except CommandParseError as e:
            logger.info(f"Rejected malformed command: {e.message}")
            yield TurnEvent("done", turn=TurnResult(immediate_output=f"error: {e.message}", error=e.to_dict()))
            return

        if isinstance(routed, ShortCircuit):
            yield TurnEvent("done", turn=TurnResult(
                immediate_output=routed.output_text,
                exit_requested=routed.exit_requested,
            ))
            return

        if isinstance(routed, EnterModel):
            prompt, immediate = routed.prompt, ""
        else:
            prompt, immediate = routed.context, routed.context
        self.tape.append_message(Role.USER, prompt)

        state = RunState(max_iterations=self.config.loop.max_iterations)
        turn = TurnResult(immediate_output=immediate)

        while True:
            messages = self.context.build_messages()
            system_prompt = self.context.build_system_prompt()
            tools = self.registry.schemas()

            try:
                if streaming:
                    accumulator = StreamAccumulator()
                    async for event in self.runner.stream(messages, system_prompt, tools, accumulator):
                        if isinstance(event, ContentDelta):
                            yield TurnEvent("text", text=event.text)
                    response = accumulator.result()
                else:
                    response = await self.runner.complete(messages, system_prompt, tools)
            except (AuthError, ConfigError) as e:
                logger.error(f"Fatal provider error: {e.message}")
                turn.error, turn.fatal = e.to_dict(), True
                turn.iterations = state.iteration_count
                turn.assistant_output = state.accumulated_visible_text
                yield TurnEvent("done", turn=turn)
                return
            except LLMError as e:
                logger.error(f"Provider error ended the turn: {e.message}")
                self.tape.append_error(e.to_dict())
                turn.error = e.to_dict()
                turn.iterations = state.iteration_count
                turn.assistant_output = state.accumulated_visible_text
                yield TurnEvent("done", turn=turn)
                return

            if not response.has_tool_calls:
                routed = await self._finish(response, state)
                if streaming and routed.command_blocks:
                    yield TurnEvent("routed", text=routed.visible_text)
                turn.assistant_output = state.accumulated_visible_text
                break

            if self._cancel_requested:
                logger.info(f"Turn cancelled before running {len(response.tool_calls)} tool call(s)")
                if response.content:
                    self.tape.append_message(Role.ASSISTANT, response.content)
                state.add_visible_text(response.content)
                turn.cancelled = True
                turn.assistant_output = state.accumulated_visible_text
                break

            async for event in self._dispatch(response):
                yield event
            state.add_visible_text(response.content)
            state.iteration_count += 1
            logger.info(f"Tool iteration {state.iteration_count}/{state.max_iterations} complete")

            if state.cap_reached:
                logger.warning(f"Reached the tool iteration limit ({state.max_iterations})")
                note = iteration_cap_note(state.max_iterations)
                output = f"{state.accumulated_visible_text}\n\n{note}" if state.accumulated_visible_text else note
                self.tape.append_message(Role.ASSISTANT, output)
                turn.assistant_output = output
                turn.iteration_cap_reached = True
                break
            if self._cancel_requested:
                logger.info("Turn cancelled")
                turn.cancelled = True
                turn.assistant_output = state.accumulated_visible_text
                break

        turn.iterations = state.iteration_count
        yield TurnEvent("done", turn=turn)

    async def _dispatch(self, response: ChatResponse) -> AsyncIterator[TurnEvent]:
        """
        Record every call, then execute each in order and record its result.

        Once cancel is requested the remaining calls are not run; each still
        gets a `cancelled` error result so every call has its answer.
        """
        for index, call in enumerate(response.tool_calls):
            self.tape.append_tool_call(call, text=response.content if index == 0 else "")

        for call in response.tool_calls:
            yield TurnEvent("tool_call", tool_call=call)
            try:
                if self._cancel_requested:
                    raise ToolCancelledError(call.name)
                result = await self.registry.execute(call.name, call.arguments)
            except ToolError as e:
                logger.info(f"Tool {call.name} failed ({e.kind}): {e.message}")
                output = f"error ({e.kind}): {e.message}"
                self.tape.append_tool_result(call, output, error=e.to_dict())
                yield TurnEvent("tool_result", text=output, tool_call=call, is_error=True)
                continue
            self.tape.append_tool_result(call, result.content)
            yield TurnEvent("tool_result", text=result.content, tool_call=call)

    async def _finish(self, response: ChatResponse, state: RunState) -> AssistantRouteResult:
        # Always closes the turn with an assistant entry, empty when the
        # reply held nothing but rejected commands.
        routed = await self.router.route_assistant(response.content)
        self.tape.append_message(Role.ASSISTANT, routed.visible_text)
        state.add_visible_text(routed.visible_text)
        return routed


class AgentRuntime:
    """
    Entry point for transports: `handle_turn(session_key, text)`.

    Holds one AgentLoop per session. The tool registry is shared; tapes
    and loops are not.
    """

    def __init__(
        self,
        config: AppConfig,
        runner: ModelRunner,
        registry: ToolRegistry | None = None,
        skills: list[Skill] | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.skills = skills if skills is not None else discover_skills(config.workspace)
        self.registry = registry or builtin_registry(config.workspace, config.tools, self.skills)
        self._loops: dict[str, AgentLoop] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "AgentRuntime":
        """Build a runtime talking to the configured provider."""
        return cls(config, ModelRunner(LLMClient(config.llm, transport=transport)))

    def loop_for(self, session_key: str) -> AgentLoop:
        # Keys that map to the same tape file share one loop.
        name = tape_name_for(session_key)
        loop = self._loops.get(name)
        if loop is None:
            tape = TapeStore(self.config.tape_dir, name)
            loop = AgentLoop(tape, self.registry, self.runner, self.config, self.skills)
            self._loops[name] = loop
            self._locks[name] = asyncio.Lock()
            logger.info(f"Opened session {session_key} (tape {name})")
        return loop

    async def handle_turn(self, session_key: str, text: str) -> TurnResult:
        loop = self.loop_for(session_key)
        async with self._locks[tape_name_for(session_key)]:
            return await loop.handle_turn(text)

    async def handle_turn_stream(self, session_key: str, text: str) -> AsyncIterator[TurnEvent]:
        loop = self.loop_for(session_key)
        async with self._locks[tape_name_for(session_key)]:
            async for event in loop.handle_turn_stream(text):
                yield event

    def cancel(self, session_key: str) -> None:
        loop = self._loops.get(tape_name_for(session_key))
        if loop is not None:
            loop.cancel()

    async def aclose(self) -> None:
        await self.runner.aclose()
