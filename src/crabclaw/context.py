"""
Context Assembler - rebuilds model input from the tape.

Nothing here holds conversational state. Every call reads the tape
entries after the most recent anchor and maps them to messages, so the
context is a pure function of the tape.

History is bounded by a sliding window of the most recent messages. When
messages are dropped, the model is told so with a system notice: older
information is LOST, not summarized.
"""

import logging
import re
from datetime import datetime
from pathlib import Path

from crabclaw.config import ContextConfig
from crabclaw.prompts.assembly import assemble_system_prompt
from crabclaw.tape import TapeEntry, TapeStore
from crabclaw.tools import ToolRegistry
from crabclaw.types import Message, Role, ToolCall

logger = logging.getLogger(__name__)

HINT_PATTERN = re.compile(r"\$([A-Za-z0-9_.-]+)")
MISSING_RESULT = "(no result was recorded for this tool call)"


def truncation_notice(dropped: int) -> str:
    return (
        f"[context truncated: {dropped} earlier message(s) were omitted. "
        "Do not assume you remember them.]"
    )


class ContextAssembler:
    """Builds messages and the system prompt for one session."""

    def __init__(
        self,
        tape: TapeStore,
        registry: ToolRegistry,
        workspace: str | Path,
        config: ContextConfig | None = None,
    ) -> None:
        self.tape = tape
        self.registry = registry
        self.workspace = Path(workspace)
        self.config = config or ContextConfig()

    def build_messages(self, max_window: int | None = None) -> list[Message]:
        """
        Messages since the last anchor, limited to the newest `max_window`.

        Command records and anchors are not conversation and are skipped.
        """
        window = max_window if max_window is not None else self.config.max_window
        entries = self.tape.entries_since_last_anchor()
        messages = _repair_tool_pairs(_entries_to_messages(entries))

        handoff = self._handoff_message()
        if window > 0 and len(messages) > window:
            kept = messages[-window:]
            # A window must not start with results whose calls were cut off.
            while kept and kept[0].role == Role.TOOL:
                kept = kept[1:]
            dropped = len(messages) - len(kept)
            logger.warning(
                f"Context truncation: dropped {dropped} messages. Information has been LOST."
            )
            messages = [Message.system(truncation_notice(dropped))] + kept

        if handoff is not None:
            messages.insert(0, handoff)
        return messages

    def build_system_prompt(self, overrides: str | None = None, now: datetime | None = None) -> str:
        configured = overrides if overrides is not None else self.config.system_prompt
        return assemble_system_prompt(
            workspace=self.workspace,
            tool_rows=self.registry.compact_rows(),
            expanded_tools=[self.registry.get(name).to_schema() for name in self.expanded_tools()],
            configured_rules=configured,
            now=now,
        )

    def expanded_tools(self) -> list[str]:
        """
        Tools whose full schema goes into the prompt.

        A tool is expanded once it is hinted as `$name` in a user or
        assistant message, or called, after the last anchor.
        """
        by_lower = {name.lower(): name for name in self.registry.names()}
        expanded: set[str] = set()
        for entry in self.tape.entries_since_last_anchor():
            if entry.kind == "tool_call":
                name = entry.metadata.get("tool_name")
                if name in by_lower.values():
                    expanded.add(name)
            elif entry.role in (Role.USER, Role.ASSISTANT) and isinstance(entry.content, str):
                for hint in HINT_PATTERN.findall(entry.content):
                    name = by_lower.get(hint.rstrip(".").lower())
                    if name is not None:
                        expanded.add(name)
        return sorted(expanded)

    def _handoff_message(self) -> Message | None:
        anchor = self.tape.last_anchor()
        if anchor is None or not isinstance(anchor.content, dict):
            return None
        state = anchor.content.get("state") or {}
        summary = state.get("summary") if isinstance(state, dict) else None
        if not summary:
            return None
        return Message.system(f"Handoff ({anchor.content.get('name')}): {summary}")


def _entries_to_messages(entries: list[TapeEntry]) -> list[Message]:
    messages: list[Message] = []
    for entry in entries:
        if entry.role == Role.ANCHOR or entry.kind == "command":
            continue

        if entry.kind == "tool_call" and isinstance(entry.content, dict):
            call = ToolCall.from_dict(entry.content.get("tool_call") or {})
            text = str(entry.content.get("text") or "")
            last = messages[-1] if messages else None
            # Calls from one model response are stored one per entry; fold them back.
            if last is not None and last.role == Role.ASSISTANT and last.tool_calls and not text:
                last.tool_calls.append(call)
            else:
                messages.append(Message.assistant(text, [call]))
            continue

        if entry.role == Role.TOOL:
            call_id = str(entry.metadata.get("tool_call_id") or "")
            messages.append(Message.tool(call_id, entry.text))
            continue

        text = entry.text
        if not text.strip():
            continue
        if entry.role == Role.USER:
            messages.append(Message.user(text))
        elif entry.role == Role.ASSISTANT:
            messages.append(Message.assistant(text))
        elif entry.role == Role.SYSTEM:
            messages.append(Message.system(text))
    return messages


def _repair_tool_pairs(messages: list[Message]) -> list[Message]:
    """
    Give every tool call a result and drop results with no call.

    A crash between appending a call and its result leaves an unanswered
    call on the tape; providers reject such histories.
    """
    repaired: list[Message] = []
    open_calls: list[str] = []

    def close_open() -> None:
        for call_id in open_calls:
            repaired.append(Message.tool(call_id, MISSING_RESULT))
        open_calls.clear()

    for message in messages:
        if message.role == Role.TOOL:
            if message.tool_call_id in open_calls:
                open_calls.remove(message.tool_call_id)
                repaired.append(message)
            else:
                logger.debug(f"Dropping tool result without a call: {message.tool_call_id}")
            continue
        close_open()
        repaired.append(message)
        if message.role == Role.ASSISTANT and message.tool_calls:
            open_calls.extend(call.id for call in message.tool_calls)
    close_open()
    return repaired

