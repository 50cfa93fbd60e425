"""Command executor: the one place realm spawns external programs.

Every runtime and git invocation goes through :func:`run_command`. Two stdio
modes: ``CAPTURE`` collects stdout/stderr for parsing and diagnostics;
``INTERACTIVE`` hands the caller's terminal to the child (attach sessions).
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import os
import shlex
import sys
from asyncio.subprocess import PIPE
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from realm.errors import CommandTimeoutError, ExternalToolError, ToolNotFoundError
from realm.logger import logger


class StdioMode(enum.Enum):
    CAPTURE = "capture"
    INTERACTIVE = "inherit_interactive"


@dataclass
class CommandResult:
    """Outcome of an external command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def diagnostic(self) -> str:
        """Best available error text (stderr first, stdout as fallback)."""
        return (self.stderr or self.stdout).strip()


def format_command(program: str, args: Sequence[str]) -> str:
    return shlex.join([program, *args])


async def run_command(
    program: str,
    args: Sequence[str] = (),
    *,
    env: Mapping[str, str] | None = None,
    cwd: Path | str | None = None,
    mode: StdioMode = StdioMode.CAPTURE,
    timeout: float | None = None,
) -> CommandResult:
    """Run *program* with *args* and wait for it to exit.

    Args:
        env: Extra environment entries layered over ``os.environ``.
        timeout: Ceiling in seconds for captured calls. On expiry the child is
            killed and :class:`CommandTimeoutError` is raised. Ignored for
            interactive calls, which last as long as the user stays attached.

    Raises:
        ToolNotFoundError: *program* is not installed.
        CommandTimeoutError: the call exceeded *timeout*.
    """
    command = format_command(program, args)
    full_env = {**os.environ, **env} if env else None
    interactive = mode is StdioMode.INTERACTIVE
    logger.debug("Running command", command=command, cwd=str(cwd) if cwd else None)

    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            cwd=str(cwd) if cwd else None,
            env=full_env,
            stdin=None if interactive else asyncio.subprocess.DEVNULL,
            stdout=None if interactive else PIPE,
            stderr=None if interactive else PIPE,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(f"'{program}' is not installed or not on PATH.") from exc

    if interactive:
        try:
            exit_code = await proc.wait()
        finally:
            restore_terminal()
        return CommandResult(exit_code=exit_code)

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(Exception):
            await proc.communicate()
        logger.warning("Command timed out", command=command, timeout=timeout)
        raise CommandTimeoutError(command, timeout or 0) from None

    result = CommandResult(
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    if not result.ok:
        logger.debug("Command failed", command=command, exit_code=result.exit_code)
    return result


def require_success(result: CommandResult, program: str, args: Sequence[str]) -> str:
    """Raise ExternalToolError unless *result* succeeded; return stripped stdout."""
    if not result.ok:
        raise ExternalToolError(format_command(program, args), result.exit_code, result.diagnostic)
    return result.stdout.strip()


def restore_terminal() -> None:
    """Show the cursor and reset attributes after an interactive session.

    Best-effort: a closed or redirected stdout is not an error.
    """
    if not sys.stdout.isatty():
        return
    with contextlib.suppress(OSError, ValueError):
        sys.stdout.write("\x1b[?25h\x1b[0m")
        sys.stdout.flush()
