"""
Command Router - decides what happens to a piece of text.

route_user() classifies human input:

- `,help`, `,tape.info` ...  internal command, answered directly (ShortCircuit)
- `,ls -la`                  shell command; success is answered directly,
                             failure goes to the model (FallbackToModel)
- anything else              natural language for the model (EnterModel)

route_assistant() scans model output for command lines, runs each one
once and substitutes the result into the visible text. A `quit` issued by
the model is rejected: only a human can end a session.

Every executed command is recorded on the tape as a system entry of kind
`command`. These records are audit history and never become model context.
"""

import html
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from crabclaw.commands import (
    COMMAND_PREFIX,
    INTERNAL_COMMANDS,
    DetectedCommand,
    detect_command,
)
from crabclaw.config import ToolConfig
from crabclaw.errors import CommandParseError, CrabClawError, ShellTimeoutError
from crabclaw.shell import run_shell
from crabclaw.skills import Skill
from crabclaw.tape import TapeStore
from crabclaw.tools import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20
DEFAULT_HANDOFF_NAME = "handoff"


# =========================================================================
# Results
# =========================================================================


@dataclass
class ShortCircuit:
    """A command handled without the model."""
    output_text: str
    exit_requested: bool = False


@dataclass
class EnterModel:
    """Natural language for the model."""
    prompt: str


@dataclass
class FallbackToModel:
    """A failed command, wrapped so the model can explain or fix it."""
    context: str


RouterResult = ShortCircuit | EnterModel | FallbackToModel


@dataclass
class CommandBlock:
    """One command found in model output, after execution."""
    line: str
    name: str
    status: str
    output: str


@dataclass
class AssistantRouteResult:
    visible_text: str
    command_blocks: list[CommandBlock] = field(default_factory=list)
    exit_requested: bool = False


@dataclass
class CommandOutcome:
    status: str  # ok | error | rejected
    output: str
    exit_code: int | None = None
    exit_requested: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def shell_failure_envelope(command: str, exit_code: int | str, output: str) -> str:
    return f'<command cmd="{html.escape(command, quote=True)}" exit_code="{exit_code}">\n{output}\n</command>'


def internal_failure_envelope(name: str, output: str) -> str:
    return f'<command name="{html.escape(name, quote=True)}" status="error">\n{output}\n</command>'


# =========================================================================
# Router
# =========================================================================


class CommandRouter:
    """Routes text for one session. Holds no conversational state."""

    def __init__(
        self,
        tape: TapeStore,
        registry: ToolRegistry,
        workspace: str | Path,
        tool_config: ToolConfig | None = None,
        skills: list[Skill] | None = None,
        prefix: str = COMMAND_PREFIX,
    ) -> None:
        self.tape = tape
        self.registry = registry
        self.workspace = Path(workspace).resolve()
        self.tool_config = tool_config or ToolConfig()
        self.skills = list(skills or [])
        self.prefix = prefix
        self._handlers = {
            "help": self._cmd_help,
            "quit": self._cmd_quit,
            "tape.info": self._cmd_tape_info,
            "tape.reset": self._cmd_tape_reset,
            "tape.search": self._cmd_tape_search,
            "tape.anchors": self._cmd_tape_anchors,
            "tape.handoff": self._cmd_tape_handoff,
            "tools": self._cmd_tools,
            "tool.describe": self._cmd_tool_describe,
            "skills": self._cmd_skills,
            "skills.describe": self._cmd_skills_describe,
        }

    @property
    def internal_names(self) -> set[str]:
        return set(self._handlers)

    async def route_user(self, text: str) -> RouterResult:
        """
        Classify and, for commands, execute human input.

        Raises CommandParseError for a malformed command line.
        """
        command = detect_command(text, self.internal_names, self.prefix)
        if command is None:
            return EnterModel(prompt=text.strip())

        logger.info(f"Routing {command.kind.value} command: {command.name}")
        outcome = await self.execute(command, origin="human")
        if outcome.ok:
            return ShortCircuit(output_text=outcome.output, exit_requested=outcome.exit_requested)
        if command.is_internal:
            return FallbackToModel(context=internal_failure_envelope(command.name, outcome.output))
        exit_code = outcome.exit_code if outcome.exit_code is not None else -1
        return FallbackToModel(context=shell_failure_envelope(command.raw, exit_code, outcome.output))

    async def route_assistant(self, model_output: str) -> AssistantRouteResult:
        """
        Execute command lines embedded in model output.

        Each line is looked at once; substituted output is not scanned again.
        """
        blocks: list[CommandBlock] = []
        rendered: list[str] = []
        for line in model_output.splitlines():
            stripped = line.strip()
            if not stripped.startswith(self.prefix):
                rendered.append(line)
                continue
            try:
                command = detect_command(stripped, self.internal_names, self.prefix)
            except CommandParseError:
                rendered.append(line)
                continue
            if command is None:
                rendered.append(line)
                continue

            outcome = await self.execute(command, origin="assistant")
            blocks.append(CommandBlock(stripped, command.name, outcome.status, outcome.output))
            if outcome.status == "rejected":
                continue
            if outcome.ok:
                rendered.append(outcome.output)
            elif command.is_internal:
                rendered.append(internal_failure_envelope(command.name, outcome.output))
            else:
                code = outcome.exit_code if outcome.exit_code is not None else -1
                rendered.append(shell_failure_envelope(command.raw, code, outcome.output))

        return AssistantRouteResult(visible_text="\n".join(rendered).strip(), command_blocks=blocks)

    async def execute(self, command: DetectedCommand, origin: str) -> CommandOutcome:
        """Run one detected command and record it on the tape."""
        if command.is_internal:
            outcome = await self._execute_internal(command, origin)
        else:
            outcome = await self._execute_shell(command)

        record: dict[str, Any] = {
            "origin": origin,
            "kind": command.kind.value,
            "name": command.name,
            "raw": command.raw,
            "status": outcome.status,
            "output": outcome.output,
        }
        if outcome.exit_code is not None:
            record["exit_code"] = outcome.exit_code
        self.tape.append_command(record)
        return outcome

    async def _execute_internal(self, command: DetectedCommand, origin: str) -> CommandOutcome:
        if command.name == "quit" and origin != "human":
            logger.warning("Ignoring quit command issued by the assistant")
            return CommandOutcome(status="rejected", output="quit is only accepted from a human")
        handler = self._handlers[command.name]
        try:
            return handler(command)
        except CrabClawError as e:
            logger.info(f"Internal command {command.name} failed: {e.message}")
            return CommandOutcome(status="error", output=e.message)

    async def _execute_shell(self, command: DetectedCommand) -> CommandOutcome:
        try:
            result = await run_shell(command.raw, self.workspace, self.tool_config.shell_timeout)
        except ShellTimeoutError as e:
            return CommandOutcome(status="error", output=e.message, exit_code=-1)
        except OSError as e:
            return CommandOutcome(status="error", output=f"failed to start command: {e}", exit_code=-1)
        status = "ok" if result.ok else "error"
        return CommandOutcome(status=status, output=result.format(), exit_code=result.exit_code)

    # =========================================================================
    # Internal commands
    # =========================================================================

    def _cmd_help(self, command: DetectedCommand) -> CommandOutcome:
        lines = ["Commands:"]
        width = max(len(name) for name in INTERNAL_COMMANDS) + len(self.prefix)
        for name, description in INTERNAL_COMMANDS.items():
            lines.append(f"  {(self.prefix + name).ljust(width)}  {description}")
        lines.append(f"  {(self.prefix + '<cmd>').ljust(width)}  Run a shell command in the workspace")
        return CommandOutcome(status="ok", output="\n".join(lines))

    def _cmd_quit(self, command: DetectedCommand) -> CommandOutcome:
        return CommandOutcome(status="ok", output="exit", exit_requested=True)

    def _cmd_tape_info(self, command: DetectedCommand) -> CommandOutcome:
        info = self.tape.info()
        lines = [
            f"name: {info.name}",
            f"entries: {info.entries}",
            f"anchors: {info.anchors}",
            f"last_anchor: {info.last_anchor or '-'}",
            f"entries_since_last_anchor: {info.entries_since_last_anchor}",
        ]
        return CommandOutcome(status="ok", output="\n".join(lines))

    def _cmd_tape_reset(self, command: DetectedCommand) -> CommandOutcome:
        archive = command.args.flag("archive") or "archive" in command.args.positional
        archived = self.tape.reset(archive=archive)
        if archived is not None:
            return CommandOutcome(status="ok", output=f"tape reset (archived to {archived.name})")
        return CommandOutcome(status="ok", output="tape reset")

    def _cmd_tape_search(self, command: DetectedCommand) -> CommandOutcome:
        query = command.args.get("query") or command.args.text()
        if not query:
            return CommandOutcome(status="error", output="usage: tape.search <query> [limit=N]")
        try:
            limit = int(command.args.get("limit") or DEFAULT_SEARCH_LIMIT)
        except ValueError:
            return CommandOutcome(status="error", output="limit must be an integer")
        matches = self.tape.search(query, limit=limit)
        if not matches:
            return CommandOutcome(status="ok", output="(no matches)")
        lines = []
        for entry in matches:
            snippet = entry.text.replace("\n", " ")
            if len(snippet) > 120:
                snippet = snippet[:117] + "..."
            lines.append(f"#{entry.sequence_id} [{entry.role.value}] {snippet}")
        return CommandOutcome(status="ok", output="\n".join(lines))

    def _cmd_tape_anchors(self, command: DetectedCommand) -> CommandOutcome:
        anchors = self.tape.anchor_entries()
        if not anchors:
            return CommandOutcome(status="ok", output="(no anchors)")
        lines = []
        for entry in anchors:
            name = entry.content.get("name") if isinstance(entry.content, dict) else entry.content
            lines.append(f"#{entry.sequence_id} {name} ({entry.timestamp})")
        return CommandOutcome(status="ok", output="\n".join(lines))

    def _cmd_tape_handoff(self, command: DetectedCommand) -> CommandOutcome:
        name = command.args.get("name") or DEFAULT_HANDOFF_NAME
        state: dict[str, Any] = {}
        summary = command.args.get("summary") or command.args.text()
        if summary:
            state["summary"] = summary
        self.tape.anchor(name, state)
        return CommandOutcome(status="ok", output=f"anchor added: {name}")

    def _cmd_tools(self, command: DetectedCommand) -> CommandOutcome:
        rows = self.registry.compact_rows()
        return CommandOutcome(status="ok", output="\n".join(rows) if rows else "(no tools)")

    def _cmd_tool_describe(self, command: DetectedCommand) -> CommandOutcome:
        name = command.args.get("name") or command.args.text()
        if not name:
            return CommandOutcome(status="error", output="usage: tool.describe <name>")
        definition = self.registry.get(name)
        schema = json.dumps(definition.parameter_schema, indent=2, sort_keys=True)
        return CommandOutcome(status="ok", output=f"{definition.name}: {definition.description}\n{schema}")

    def _cmd_skills(self, command: DetectedCommand) -> CommandOutcome:
        if not self.skills:
            return CommandOutcome(status="ok", output="(no skills)")
        return CommandOutcome(
            status="ok",
            output="\n".join(f"{s.name}: {s.description}" for s in self.skills),
        )

    def _cmd_skills_describe(self, command: DetectedCommand) -> CommandOutcome:
        name = command.args.get("name") or command.args.text()
        for skill in self.skills:
            if skill.name.casefold() == name.casefold():
                return CommandOutcome(status="ok", output=skill.body)
        return CommandOutcome(status="error", output=f"skill not found: {name}")
