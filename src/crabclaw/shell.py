"""
Shell execution with a hard wall-clock timeout.

Commands run through the OS shell in the workspace directory. The process
is started in its own session so that on timeout the whole process group
(the shell and anything it spawned) can be killed. A command never hangs
the caller.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path

from crabclaw.errors import ShellTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class ShellResult:
    """Captured outcome of one shell command."""
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def format(self) -> str:
        return format_shell_output(self.stdout, self.stderr)


def format_shell_output(stdout: str, stderr: str) -> str:
    """stdout first, then stderr marked as such, or a placeholder for silence."""
    parts = []
    if stdout.strip():
        parts.append(stdout.rstrip())
    if stderr.strip():
        parts.append(f"[stderr] {stderr.strip()}")
    if not parts:
        return "(no output)"
    return "\n".join(parts)


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


async def run_shell(command: str, cwd: str | Path, timeout: float) -> ShellResult:
    """
    Run `command` with /bin/sh in `cwd`.

    Raises ShellTimeoutError after killing the process when `timeout`
    seconds elapse.
    """
    logger.info(f"Running shell command: {command!r}")
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await process.communicate()
    except TimeoutError:
        _kill_process_group(process)
        await process.wait()
        logger.warning(f"Shell command timed out after {timeout}s: {command!r}")
        raise ShellTimeoutError(
            f"command timed out after {timeout:g}s: {command}",
            command=command,
            timeout=timeout,
        ) from None
    except asyncio.CancelledError:
        _kill_process_group(process)
        raise

    result = ShellResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    logger.debug(f"Shell command exited with {result.exit_code}")
    return result
