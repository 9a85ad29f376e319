"""Prompt templates for CrabClaw."""

from crabclaw.prompts.assembly import (
    PROMPT_DIR,
    SECTION_SEPARATOR,
    WORKSPACE_PROMPT_FILE,
    assemble_system_prompt,
    load_module,
    resolve_rules,
)

__all__ = [
    "PROMPT_DIR",
    "SECTION_SEPARATOR",
    "WORKSPACE_PROMPT_FILE",
    "assemble_system_prompt",
    "load_module",
    "resolve_rules",
]
