"""
Tests for ContextAssembler and system prompt assembly.

Messages are rebuilt from the tape on every call; when the window drops
messages the model is told, so information loss is never silent.
"""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from crabclaw.config import ContextConfig
from crabclaw.context import MISSING_RESULT, ContextAssembler
from crabclaw.prompts import SECTION_SEPARATOR, load_module
from crabclaw.tape import TapeStore
from crabclaw.tools import builtin_registry
from crabclaw.types import Role, ToolCall


@pytest.fixture
def tape(tape_dir: Path) -> TapeStore:
    return TapeStore(tape_dir, "ctx")


def _assembler(tape: TapeStore, workspace: Path, **config: object) -> ContextAssembler:
    return ContextAssembler(tape, builtin_registry(workspace), workspace, ContextConfig(**config))


class TestBuildMessages:
    """Tape entries to messages."""

    def test_maps_roles_and_folds_tool_calls(self, tape: TapeStore, workspace: Path) -> None:
        first = ToolCall("c1", "file.read", {"path": "a"})
        second = ToolCall("c2", "file.list", {})
        tape.append_message(Role.USER, "look around")
        tape.append_tool_call(first, text="Checking.")
        tape.append_tool_call(second)
        tape.append_tool_result(first, "A")
        tape.append_tool_result(second, "a\nb")
        tape.append_message(Role.ASSISTANT, "Done.")

        messages = _assembler(tape, workspace).build_messages()

        assert [m.role for m in messages] == [
            Role.USER, Role.ASSISTANT, Role.TOOL, Role.TOOL, Role.ASSISTANT,
        ]
        assert messages[1].content == "Checking."
        assert [c.id for c in messages[1].tool_calls] == ["c1", "c2"]
        assert [m.tool_call_id for m in messages[2:4]] == ["c1", "c2"]

    def test_skips_commands_and_respects_anchor(self, tape: TapeStore, workspace: Path) -> None:
        tape.append_message(Role.USER, "before anchor")
        tape.anchor("fresh")
        tape.append_command({"origin": "human", "name": "help", "status": "ok", "output": "..."})
        tape.append_message(Role.USER, "after anchor")

        messages = _assembler(tape, workspace).build_messages()

        assert [m.content for m in messages] == ["after anchor"]

    def test_handoff_summary_is_carried_over(self, tape: TapeStore, workspace: Path) -> None:
        tape.append_message(Role.USER, "old work")
        tape.anchor("phase2", {"summary": "tests are green"})
        tape.append_message(Role.USER, "next")

        messages = _assembler(tape, workspace).build_messages()

        assert messages[0].role == Role.SYSTEM
        assert "tests are green" in messages[0].content
        assert messages[1].content == "next"

    def test_error_entries_are_visible(self, tape: TapeStore, workspace: Path) -> None:
        tape.append_message(Role.USER, "hi")
        tape.append_error({"kind": "network", "message": "timed out"})

        messages = _assembler(tape, workspace).build_messages()

        assert messages[-1].role == Role.SYSTEM
        assert "timed out" in messages[-1].content


class TestWindow:
    """Sliding window truncation."""

    def test_truncation_injects_notice(self, tape: TapeStore, workspace: Path) -> None:
        for i in range(10):
            tape.append_message(Role.USER, f"m{i}")

        messages = _assembler(tape, workspace).build_messages(max_window=4)

        assert messages[0].role == Role.SYSTEM
        assert "truncated" in messages[0].content
        assert [m.content for m in messages[1:]] == ["m6", "m7", "m8", "m9"]

    def test_no_notice_when_within_window(self, tape: TapeStore, workspace: Path) -> None:
        for i in range(3):
            tape.append_message(Role.USER, f"m{i}")

        messages = _assembler(tape, workspace).build_messages(max_window=50)

        assert [m.content for m in messages] == ["m0", "m1", "m2"]

    def test_default_window_from_config(self, tape: TapeStore, workspace: Path) -> None:
        for i in range(5):
            tape.append_message(Role.USER, f"m{i}")

        messages = _assembler(tape, workspace, max_window=2).build_messages()

        assert [m.content for m in messages[1:]] == ["m3", "m4"]

    def test_window_never_starts_with_orphan_result(self, tape: TapeStore, workspace: Path) -> None:
        call = ToolCall("c1", "file.list", {})
        tape.append_message(Role.USER, "go")
        tape.append_tool_call(call)
        tape.append_tool_result(call, "listing")
        tape.append_message(Role.ASSISTANT, "done")

        messages = _assembler(tape, workspace).build_messages(max_window=2)

        assert messages[0].role == Role.SYSTEM
        assert [m.role for m in messages[1:]] == [Role.ASSISTANT]

    def test_unanswered_call_gets_placeholder(self, tape: TapeStore, workspace: Path) -> None:
        tape.append_message(Role.USER, "go")
        tape.append_tool_call(ToolCall("c1", "file.list", {}))

        messages = _assembler(tape, workspace).build_messages()

        assert messages[-1].role == Role.TOOL
        assert messages[-1].tool_call_id == "c1"
        assert messages[-1].content == MISSING_RESULT


class TestSystemPrompt:
    """Prompt sections, precedence and the progressive tool view."""

    def test_sections_in_order(self, tape: TapeStore, workspace: Path) -> None:
        now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)

        prompt = _assembler(tape, workspace).build_system_prompt(now=now)
        sections = prompt.split(SECTION_SEPARATOR)

        assert sections[0] == load_module("core/identity")
        assert sections[1] == load_module("core/default")
        assert sections[2] == f"## Runtime\n\nWorkspace: {workspace}"
        assert "2026-01-02 03:04:05" in sections[3]
        assert "<tool_view>" in sections[4]
        assert "  - file.read: " in sections[4]

    def test_workspace_file_overrides_default(self, tape: TapeStore, workspace: Path) -> None:
        (workspace / "AGENTS.md").write_text("Always answer in haiku.")

        prompt = _assembler(tape, workspace).build_system_prompt()

        assert "Always answer in haiku." in prompt
        assert load_module("core/default") not in prompt

    def test_config_overrides_workspace_file(self, tape: TapeStore, workspace: Path) -> None:
        (workspace / "AGENTS.md").write_text("Always answer in haiku.")

        prompt = _assembler(tape, workspace, system_prompt="Be terse.").build_system_prompt()

        assert "Be terse." in prompt
        assert "haiku" not in prompt

    def test_explicit_override_argument(self, tape: TapeStore, workspace: Path) -> None:
        prompt = _assembler(tape, workspace).build_system_prompt(overrides="Only use shell.")

        assert "Only use shell." in prompt

    def test_schemas_not_inlined_by_default(self, tape: TapeStore, workspace: Path) -> None:
        prompt = _assembler(tape, workspace).build_system_prompt()

        assert "<tool_details>" not in prompt

    def test_hint_expands_tool(self, tape: TapeStore, workspace: Path) -> None:
        tape.append_message(Role.USER, "use $FILE.EDIT please.")

        assembler = _assembler(tape, workspace)
        prompt = assembler.build_system_prompt()

        assert assembler.expanded_tools() == ["file.edit"]
        assert '<tool name="file.edit">' in prompt
        assert '"replace_all"' in prompt

    def test_called_tool_is_expanded_until_anchor(self, tape: TapeStore, workspace: Path) -> None:
        tape.append_tool_call(ToolCall("c1", "shell.exec", {"cmd": "ls"}))
        assembler = _assembler(tape, workspace)
        assert assembler.expanded_tools() == ["shell.exec"]

        tape.anchor("reset")

        assert assembler.expanded_tools() == []
