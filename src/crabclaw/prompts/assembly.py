"""
System prompt assembly.

The prompt is a fixed sequence of sections joined by separators:

1. Identity (stable)
2. Working rules: explicit config value, else the workspace AGENTS.md,
   else the built-in default
3. Runtime context (workspace path)
4. Current date-time
5. Tools contract (compact list, plus full schemas only for expanded tools)

The stable parts come first so providers that cache prompt prefixes can
reuse them across turns.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

PROMPT_DIR = Path(__file__).parent
WORKSPACE_PROMPT_FILE = "AGENTS.md"
SECTION_SEPARATOR = "\n\n---\n\n"


def load_module(name: str) -> str:
    """
    Load a prompt module by name.

    Args:
        name: Module path relative to the prompts directory (e.g., "core/identity")

    Returns:
        Contents of the markdown file, stripped
    """
    path = PROMPT_DIR / f"{name}.md"
    if not path.exists():
        raise FileNotFoundError(f"Prompt module not found: {path}")
    return path.read_text(encoding="utf-8").strip()


def read_workspace_prompt(workspace: str | Path) -> str | None:
    path = Path(workspace) / WORKSPACE_PROMPT_FILE
    if not path.is_file():
        return None
    text = path.read_text(encoding="utf-8").strip()
    return text or None


def resolve_rules(workspace: str | Path, configured: str | None = None) -> str:
    """First present wins: config value, workspace file, built-in default."""
    if configured and configured.strip():
        return configured.strip()
    workspace_prompt = read_workspace_prompt(workspace)
    if workspace_prompt:
        return workspace_prompt
    return load_module("core/default")


def format_runtime(workspace: str | Path) -> str:
    return f"## Runtime\n\nWorkspace: {Path(workspace)}"


def format_datetime(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"## Current Time\n\n{now.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}"


def format_tool_view(rows: list[str]) -> str:
    lines = ["<tool_view>"]
    lines.extend(f"  - {row}" for row in rows)
    lines.append("</tool_view>")
    return "\n".join(lines)


def format_tool_details(schemas: list[dict[str, Any]]) -> str:
    """Full schemas for the expanded tools, or "" when none are expanded."""
    if not schemas:
        return ""
    lines = ["<tool_details>"]
    for schema in schemas:
        lines.append(f'  <tool name="{schema["name"]}">')
        lines.append(f"    description: {schema['description']}")
        lines.append(f"    parameters: {json.dumps(schema['parameters'], sort_keys=True)}")
        lines.append("  </tool>")
    lines.append("</tool_details>")
    return "\n".join(lines)


def format_tool_contract(rows: list[str], expanded: list[dict[str, Any]]) -> str:
    parts = [load_module("tools/contract"), format_tool_view(rows)]
    details = format_tool_details(expanded)
    if details:
        parts.append(details)
    return "\n\n".join(parts)


def assemble_system_prompt(
    workspace: str | Path,
    tool_rows: list[str],
    expanded_tools: list[dict[str, Any]] | None = None,
    configured_rules: str | None = None,
    now: datetime | None = None,
) -> str:
    """
    Assemble the full system prompt.

    Args:
        workspace: Workspace root, shown to the model and searched for AGENTS.md
        tool_rows: Compact `name: description` rows in registration order
        expanded_tools: Schemas of tools whose details should be inlined
        configured_rules: Explicit rules override from configuration
        now: Timestamp for the date-time section (defaults to the current time)

    Returns:
        Complete system prompt
    """
    sections = [
        load_module("core/identity"),
        resolve_rules(workspace, configured_rules),
        format_runtime(workspace),
        format_datetime(now),
        format_tool_contract(tool_rows, expanded_tools or []),
    ]
    return SECTION_SEPARATOR.join(sections)
