"""
CrabClaw CLI - a thin terminal transport over AgentRuntime.

    crabclaw run "list the files here"
    crabclaw repl --session cli:me

The CLI only feeds text in and prints what comes back; all routing,
tool use and persistence happen in the runtime.
"""

import argparse
import asyncio
import logging
import sys

from crabclaw.agent_loop import AgentRuntime, TurnResult
from crabclaw.config import AppConfig
from crabclaw.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "cli:default"


def _print_result(result: TurnResult) -> None:
    reply = result.to_reply()
    if reply:
        print(reply)


async def run_once(runtime: AgentRuntime, session: str, text: str) -> int:
    try:
        result = await runtime.handle_turn(session, text)
    finally:
        await runtime.aclose()
    _print_result(result)
    return 1 if result.fatal else 0


async def repl(runtime: AgentRuntime, session: str) -> int:
    print("crabclaw - type ,help for commands, ,quit to exit")
    try:
        while True:
            try:
                text = await asyncio.to_thread(input, "> ")
            except EOFError:
                print()
                return 0

            streamed = False
            async for event in runtime.handle_turn_stream(session, text):
                if event.kind == "text":
                    streamed = True
                    print(event.text, end="", flush=True)
                elif event.kind == "tool_call" and event.tool_call is not None:
                    print(f"\n[tool] {event.tool_call.name} {event.tool_call.arguments}", flush=True)
                elif event.kind == "tool_result" and event.is_error:
                    print(f"[tool error] {event.text}", flush=True)
                elif event.kind == "routed" and event.text:
                    # The raw reply was already streamed; show it with command output filled in.
                    print(f"\n{event.text}", flush=True)
                elif event.kind == "done" and event.turn is not None:
                    turn = event.turn
                    if streamed:
                        print()
                        if turn.iteration_cap_reached or turn.error:
                            print(turn.to_reply())
                    else:
                        _print_result(turn)
                    if turn.fatal:
                        return 1
                    if turn.exit_requested:
                        return 0
    finally:
        await runtime.aclose()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(prog="crabclaw", description="CrabClaw agent runtime")
    parser.add_argument("--workspace", default=None, help="Workspace root (default: current directory)")
    parser.add_argument("--session", default=DEFAULT_SESSION, help="Session key")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Run a single turn")
    run_parser.add_argument("text", nargs="+", help="Input text")

    subparsers.add_parser("repl", help="Interactive session")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command not in ("run", "repl"):
        parser.print_help()
        return 2

    try:
        config = AppConfig.from_env(workspace=args.workspace)
        runtime = AgentRuntime.from_config(config)
    except ConfigError as e:
        print(f"configuration error: {e.message}", file=sys.stderr)
        return 2

    if args.command == "run":
        return asyncio.run(run_once(runtime, args.session, " ".join(args.text)))
    return asyncio.run(repl(runtime, args.session))


if __name__ == "__main__":
    sys.exit(main())
