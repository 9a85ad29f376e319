"""
Tests for CommandRouter.

Human input is either answered directly, handed to the model, or (for
failed commands) handed to the model wrapped in a failure envelope.
Model output is scanned for commands, which run once; a model cannot quit.
"""

import re
from pathlib import Path

import pytest

from crabclaw.errors import CommandParseError
from crabclaw.router import CommandRouter, EnterModel, FallbackToModel, ShortCircuit
from crabclaw.skills import Skill
from crabclaw.tape import TapeStore
from crabclaw.tools import builtin_registry
from crabclaw.types import Role


@pytest.fixture
def tape(tape_dir: Path) -> TapeStore:
    return TapeStore(tape_dir, "router")


@pytest.fixture
def router(tape: TapeStore, workspace: Path) -> CommandRouter:
    skills = [Skill("deploy", "How to deploy", "Run make deploy.", workspace / "SKILL.md")]
    return CommandRouter(tape, builtin_registry(workspace, skills=skills), workspace, skills=skills)


def _commands(tape: TapeStore) -> list[dict]:
    return [e.content for e in tape.read_all() if e.kind == "command"]


class TestRouteUser:
    """Classification of human input."""

    async def test_help_short_circuits(self, router: CommandRouter, tape: TapeStore) -> None:
        result = await router.route_user(",help")

        assert isinstance(result, ShortCircuit)
        assert ",tape.info" in result.output_text
        assert ",quit" in result.output_text
        assert [e.role for e in tape.read_all()] == [Role.SYSTEM]
        assert _commands(tape)[0]["status"] == "ok"
        assert _commands(tape)[0]["origin"] == "human"

    async def test_natural_language_enters_model(self, router: CommandRouter, tape: TapeStore) -> None:
        result = await router.route_user("  list files  ")

        assert result == EnterModel(prompt="list files")
        assert tape.read_all() == []

    async def test_failed_shell_command_falls_back(self, router: CommandRouter, tape: TapeStore) -> None:
        result = await router.route_user(",nonexistent-cmd-crabclaw")

        assert isinstance(result, FallbackToModel)
        match = re.match(r'<command cmd="nonexistent-cmd-crabclaw" exit_code="(\d+)">\n', result.context)
        assert match is not None
        assert match.group(1) != "0"
        assert result.context.endswith("\n</command>")
        assert "[stderr]" in result.context
        assert _commands(tape)[0]["status"] == "error"

    async def test_successful_shell_command(self, router: CommandRouter) -> None:
        result = await router.route_user(",echo hello")

        assert result == ShortCircuit(output_text="hello")

    async def test_shell_runs_in_workspace(self, router: CommandRouter, workspace: Path) -> None:
        (workspace / "marker.txt").write_text("")

        result = await router.route_user(",ls")

        assert isinstance(result, ShortCircuit)
        assert "marker.txt" in result.output_text

    async def test_empty_command_raises(self, router: CommandRouter) -> None:
        with pytest.raises(CommandParseError):
            await router.route_user(",")

    async def test_quit_from_human(self, router: CommandRouter) -> None:
        result = await router.route_user(",quit")

        assert isinstance(result, ShortCircuit)
        assert result.exit_requested

    async def test_failed_internal_command_falls_back(self, router: CommandRouter) -> None:
        result = await router.route_user(",tool.describe no.such.tool")

        assert isinstance(result, FallbackToModel)
        assert result.context.startswith('<command name="tool.describe" status="error">\n')
        assert "tool not found: no.such.tool" in result.context

    async def test_routing_does_not_depend_on_history(self, router: CommandRouter) -> None:
        first = await router.route_user(",help")
        await router.route_user("some chatter")
        second = await router.route_user(",help")

        assert type(first) is type(second)
        assert first == second


class TestInternalCommands:
    """The built-in command set."""

    async def test_tape_info(self, router: CommandRouter, tape: TapeStore) -> None:
        tape.append_message(Role.USER, "hello")

        result = await router.route_user(",tape.info")

        assert isinstance(result, ShortCircuit)
        assert "name: router" in result.output_text
        assert "entries: 1" in result.output_text

    async def test_handoff_and_anchors(self, router: CommandRouter, tape: TapeStore) -> None:
        await router.route_user(",handoff name=phase2 summary=done")

        anchor = tape.last_anchor()
        assert anchor is not None
        assert anchor.content == {"name": "phase2", "state": {"summary": "done"}}

        result = await router.route_user(",anchors")
        assert isinstance(result, ShortCircuit)
        assert "phase2" in result.output_text

    async def test_tape_search(self, router: CommandRouter, tape: TapeStore) -> None:
        tape.append_message(Role.USER, "The Deployment failed")

        result = await router.route_user(",tape.search deployment")

        assert isinstance(result, ShortCircuit)
        assert result.output_text.startswith("#1 [user] The Deployment failed")

    async def test_tape_reset_archive(self, router: CommandRouter, tape: TapeStore, tape_dir: Path) -> None:
        tape.append_message(Role.USER, "old")

        result = await router.route_user(",tape.reset --archive")

        assert isinstance(result, ShortCircuit)
        assert "archived" in result.output_text
        assert len(list(tape_dir.glob("router.jsonl.*.bak"))) == 1
        assert [e.kind for e in tape.read_all()] == ["command"]

    async def test_tools_and_describe(self, router: CommandRouter) -> None:
        listing = await router.route_user(",tools")
        described = await router.route_user(",tool.describe file.edit")

        assert isinstance(listing, ShortCircuit)
        assert listing.output_text.splitlines()[0].startswith("file.read: ")
        assert isinstance(described, ShortCircuit)
        assert '"replace_all"' in described.output_text

    async def test_skills(self, router: CommandRouter) -> None:
        listing = await router.route_user(",skills")
        body = await router.route_user(",skills.describe DEPLOY")

        assert listing == ShortCircuit(output_text="deploy: How to deploy")
        assert body == ShortCircuit(output_text="Run make deploy.")


class TestRouteAssistant:
    """Commands embedded in model output."""

    async def test_command_line_replaced_by_output(self, router: CommandRouter) -> None:
        result = await router.route_assistant("Let me check.\n,echo hi\nDone.")

        assert result.visible_text == "Let me check.\nhi\nDone."
        assert len(result.command_blocks) == 1
        assert result.command_blocks[0].status == "ok"

    async def test_commands_inside_fences(self, router: CommandRouter) -> None:
        result = await router.route_assistant("```\n,echo fenced\n```")

        assert result.visible_text == "```\nfenced\n```"

    async def test_prose_untouched(self, router: CommandRouter, tape: TapeStore) -> None:
        result = await router.route_assistant("Nothing to run here, really.")

        assert result.visible_text == "Nothing to run here, really."
        assert result.command_blocks == []
        assert tape.read_all() == []

    async def test_quit_from_model_is_rejected(self, router: CommandRouter, tape: TapeStore) -> None:
        result = await router.route_assistant("Goodbye!\n,quit")

        assert not result.exit_requested
        assert result.visible_text == "Goodbye!"
        assert result.command_blocks[0].status == "rejected"
        assert _commands(tape)[0]["origin"] == "assistant"
        assert _commands(tape)[0]["status"] == "rejected"

    async def test_output_is_not_rescanned(self, router: CommandRouter) -> None:
        result = await router.route_assistant(",echo ,echo nested")

        assert result.visible_text == ",echo nested"
        assert len(result.command_blocks) == 1

    async def test_failed_command_shows_envelope(self, router: CommandRouter) -> None:
        result = await router.route_assistant(",nonexistent-cmd-crabclaw")

        assert result.visible_text.startswith('<command cmd="nonexistent-cmd-crabclaw"')
        assert result.command_blocks[0].status == "error"
