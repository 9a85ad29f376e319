"""
Command detection and argument parsing.

A line starting with the command prefix (`,`) is a command. The rest of
the line is split with shell quoting rules. If the first token names an
internal command it is dispatched in-process; anything else is handed to
the shell as written.

Detection depends only on the text and the set of internal names, never
on history, so the same input always classifies the same way.
"""

import shlex
from dataclasses import dataclass, field
from enum import Enum

from crabclaw.errors import CommandParseError

COMMAND_PREFIX = ","

INTERNAL_COMMANDS: dict[str, str] = {
    "help": "Show available commands",
    "quit": "End the session",
    "tape.info": "Show tape statistics",
    "tape.reset": "Clear the tape (--archive keeps a copy)",
    "tape.search": "Search the tape: tape.search <query> [limit=N]",
    "tape.anchors": "List anchors on the tape",
    "tape.handoff": "Start a new context window: tape.handoff [name=...] [summary=...]",
    "tools": "List available tools",
    "tool.describe": "Show a tool's parameter schema: tool.describe <name>",
    "skills": "List discovered skills",
    "skills.describe": "Show a skill's body: skills.describe <name>",
}

COMMAND_ALIASES: dict[str, str] = {
    "tape": "tape.info",
    "anchors": "tape.anchors",
    "handoff": "tape.handoff",
    "exit": "quit",
}


class CommandKind(str, Enum):
    INTERNAL = "internal"
    SHELL = "shell"


@dataclass
class ParsedArgs:
    """
    Arguments after the command name.

    Supports positional tokens, `key=value`, `--key value`, `--key=value`
    and bare `--flag` (stored as "true").
    """
    positional: list[str] = field(default_factory=list)
    kwargs: dict[str, str] = field(default_factory=dict)

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.kwargs.get(key, default)

    def flag(self, key: str) -> bool:
        return self.kwargs.get(key, "").lower() in ("true", "1", "yes")

    def text(self) -> str:
        return " ".join(self.positional)


@dataclass
class DetectedCommand:
    kind: CommandKind
    name: str
    args: ParsedArgs
    raw: str

    @property
    def is_internal(self) -> bool:
        return self.kind == CommandKind.INTERNAL


def split_tokens(body: str) -> list[str]:
    try:
        return shlex.split(body)
    except ValueError as e:
        raise CommandParseError(f"malformed command: {e}", raw=body) from e


def parse_args(tokens: list[str]) -> ParsedArgs:
    args = ParsedArgs()
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.startswith("--") and len(token) > 2:
            key, sep, value = token[2:].partition("=")
            if sep:
                args.kwargs[key] = value
            elif index + 1 < len(tokens) and not tokens[index + 1].startswith("--"):
                args.kwargs[key] = tokens[index + 1]
                index += 1
            else:
                args.kwargs[key] = "true"
        elif "=" in token and not token.startswith("="):
            key, _, value = token.partition("=")
            args.kwargs[key] = value
        else:
            args.positional.append(token)
        index += 1
    return args


def detect_command(
    text: str,
    internal_names: set[str] | None = None,
    prefix: str = COMMAND_PREFIX,
) -> DetectedCommand | None:
    """
    Classify one line. Returns None for text without the prefix.

    Raises CommandParseError for an empty command name or unbalanced quotes.
    """
    stripped = text.strip()
    if not stripped.startswith(prefix):
        return None
    body = stripped[len(prefix):].strip()
    if not body:
        raise CommandParseError("empty command name", raw=stripped)

    tokens = split_tokens(body)
    if not tokens or not tokens[0].strip():
        raise CommandParseError("empty command name", raw=stripped)

    names = internal_names if internal_names is not None else set(INTERNAL_COMMANDS)
    name = COMMAND_ALIASES.get(tokens[0], tokens[0])
    if name in names:
        return DetectedCommand(CommandKind.INTERNAL, name, parse_args(tokens[1:]), body)
    return DetectedCommand(CommandKind.SHELL, tokens[0], ParsedArgs(positional=tokens[1:]), body)
