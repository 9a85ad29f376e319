"""
Tool System - the only way the model affects the world.

The model cannot touch files or run processes directly. It emits tool
calls, and the runtime executes them through this registry. The registry
is built once at startup and passed by reference to the router and the
agent loop.

Registration order is preserved (dict insertion order) so the tool list
shown to the model is identical from run to run. Registering a name twice
replaces the earlier handler.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from crabclaw.config import ToolConfig
from crabclaw.errors import (
    InvalidToolArgumentsError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
)
from crabclaw.file_ops import FileTools
from crabclaw.shell import run_shell
from crabclaw.skills import Skill
from crabclaw.types import ToolResult
from crabclaw.web import WebTools

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., str | Awaitable[str]]


@dataclass(frozen=True)
class ToolDefinition:
    """
    A tool as the model sees it.

    - name: dotted identifier (`file.read`, `shell.exec`, `skill.<name>`)
    - description: one line shown in the compact tool view
    - parameter_schema: JSON Schema object for the arguments
    """
    name: str
    description: str
    parameter_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameter_schema,
        }


@dataclass
class _RegisteredTool:
    definition: ToolDefinition
    handler: ToolHandler


class ToolRegistry:
    """Ordered collection of tools and their handlers."""

    def __init__(self) -> None:
        self._tools: dict[str, _RegisteredTool] = {}

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        if definition.name in self._tools:
            # Replacing keeps the original position in the listing.
            logger.warning(f"Overwriting existing tool: {definition.name}")
        self._tools[definition.name] = _RegisteredTool(definition, handler)
        logger.debug(f"Registered tool: {definition.name}")

    def list(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool.definition

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        """Provider-neutral schemas, in registration order."""
        return [t.definition.to_schema() for t in self._tools.values()]

    def compact_rows(self) -> list[str]:
        return [f"{d.name}: {d.description}" for d in self.list()]

    async def execute(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """
        Run a tool.

        Raises ToolNotFoundError for an unknown name, InvalidToolArgumentsError
        when the arguments don't fit the handler, and ToolExecutionError (or a
        subclass) when the handler fails.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        arguments = dict(arguments or {})

        try:
            inspect.signature(tool.handler).bind(**arguments)
        except TypeError as e:
            raise InvalidToolArgumentsError(f"invalid arguments for {name}: {e}", tool=name) from e

        logger.info(f"Executing tool: {name}")
        try:
            output = tool.handler(**arguments)
            if inspect.isawaitable(output):
                output = await output
        except ToolError:
            raise
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            raise ToolExecutionError(f"{name} failed: {e}", tool=name) from e
        return ToolResult(tool_call_id="", content=str(output), success=True)


# =========================================================================
# Built-in tools
# =========================================================================


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_PATH = {"type": "string", "description": "Path relative to the workspace root"}


def register_file_tools(registry: ToolRegistry, files: FileTools) -> None:
    registry.register(
        ToolDefinition(
            "file.read",
            "Read a text file from the workspace",
            _schema({"path": _PATH}, ["path"]),
        ),
        files.read,
    )
    registry.register(
        ToolDefinition(
            "file.write",
            "Create or overwrite a file in the workspace",
            _schema({"path": _PATH, "content": {"type": "string"}}, ["path", "content"]),
        ),
        files.write,
    )
    registry.register(
        ToolDefinition(
            "file.edit",
            "Replace exact text in a file (first occurrence, or all with replace_all)",
            _schema(
                {
                    "path": _PATH,
                    "old": {"type": "string", "description": "Exact text to replace"},
                    "new": {"type": "string", "description": "Replacement text"},
                    "replace_all": {"type": "boolean", "default": False},
                },
                ["path", "old", "new"],
            ),
        ),
        files.edit,
    )
    registry.register(
        ToolDefinition(
            "file.list",
            "List the entries of a workspace directory",
            _schema({"path": {**_PATH, "default": "."}}, []),
        ),
        files.list,
    )
    registry.register(
        ToolDefinition(
            "file.search",
            "Search workspace text files for a substring (case-insensitive)",
            _schema(
                {"pattern": {"type": "string"}, "path": {**_PATH, "default": "."}},
                ["pattern"],
            ),
        ),
        files.search,
    )


def register_shell_tool(registry: ToolRegistry, workspace: Path, config: ToolConfig) -> None:
    async def shell_exec(cmd: str, timeout: float | None = None) -> str:
        if not cmd.strip():
            raise InvalidToolArgumentsError("cmd must not be empty", tool="shell.exec")
        limit = min(timeout, config.shell_timeout) if timeout else config.shell_timeout
        result = await run_shell(cmd, workspace, limit)
        if not result.ok:
            raise ToolExecutionError(
                f"command exited with code {result.exit_code}\n{result.format()}",
                exit_code=result.exit_code,
            )
        return result.format()

    registry.register(
        ToolDefinition(
            "shell.exec",
            "Run a shell command in the workspace directory",
            _schema(
                {
                    "cmd": {"type": "string", "description": "Command line for /bin/sh"},
                    "timeout": {"type": "number", "description": "Seconds (capped by config)"},
                },
                ["cmd"],
            ),
        ),
        shell_exec,
    )


def register_web_tools(registry: ToolRegistry, web: WebTools) -> None:
    registry.register(
        ToolDefinition(
            "web.fetch",
            "Fetch a URL and return its content as text (HTML is converted to markdown)",
            _schema({"url": {"type": "string", "description": "http(s) URL; https is assumed"}}, ["url"]),
        ),
        web.fetch,
    )
    registry.register(
        ToolDefinition(
            "web.search",
            "Build a web search URL for a query; read results with web.fetch",
            _schema({"query": {"type": "string"}}, ["query"]),
        ),
        web.search,
    )


def register_skill_tools(registry: ToolRegistry, skills: list[Skill]) -> None:
    for skill in skills:
        registry.register(
            ToolDefinition(skill.tool_name, skill.description, _schema({}, [])),
            _skill_handler(skill),
        )


def _skill_handler(skill: Skill) -> Callable[..., str]:
    def handler(**_: Any) -> str:
        return skill.body
    return handler


def builtin_registry(
    workspace: str | Path,
    config: ToolConfig | None = None,
    skills: list[Skill] | None = None,
    web_transport: httpx.AsyncBaseTransport | None = None,
) -> ToolRegistry:
    """Registry with the file, shell and web tools, plus one tool per skill."""
    config = config or ToolConfig()
    root = Path(workspace).resolve()
    registry = ToolRegistry()
    register_file_tools(registry, FileTools(root, config))
    register_shell_tool(registry, root, config)
    register_web_tools(registry, WebTools(config, transport=web_transport))
    register_skill_tools(registry, skills or [])
    return registry
