"""Entry point for `python -m realm` / `realm`.

Subcommands:
    realm                   Open the session browser
    realm <name> [-- CMD]   Create or resume a session
    realm list              List sessions with live status
    realm stop <name>       Stop a session's container
    realm rm <name>         Remove a session (container, workspace, record)
    realm path <name>       Print a session's workspace path
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from realm.types import LaunchResult, SessionOptions, SessionView

KEYWORDS = ("list", "stop", "rm", "path")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="realm",
        description="Sandboxed container sessions over isolated clones of the current git repository",
        epilog="Everything after `--` is the command to run in a new session's container.",
    )
    parser.add_argument("target", nargs="?", help="Session name, or one of: " + ", ".join(KEYWORDS))
    parser.add_argument("name", nargs="?", help="Session name for stop / rm / path")
    parser.add_argument(
        "-d", "--detach", action="store_true", help="Start the container without attaching"
    )
    parser.add_argument("--image", help="Container image (new sessions only)")
    parser.add_argument(
        "--runtime-args",
        help="Extra flags for the container runtime, shell-quoted (applied on every launch)",
    )
    parser.add_argument(
        "-e",
        "--env",
        action="append",
        default=[],
        metavar="KEY[=VALUE]",
        help="Environment variable for new sessions (repeatable)",
    )
    parser.add_argument("--mount-path", help="Workspace mount path inside the container (new sessions only)")
    parser.add_argument("--project-dir", type=Path, help="Repository to clone (default: current directory)")
    parser.add_argument("--no-ssh", action="store_true", help="Disable SSH agent forwarding")
    parser.add_argument(
        "--recreate",
        action="store_true",
        help="Rebuild the container of a dangling session from its saved options",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    return parser


def _split_command(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split argv at the first ``--``: realm's own args, then the container command."""
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1 :]
    return argv, []


class _ActionFailed(Exception):
    """An action failed and its message was already printed."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(exit_code)
        self.exit_code = exit_code


def _fail(message: str, code: int = 1) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return code


async def _run(action: Awaitable[Any], label: str) -> Any:
    """Await *action*; print its error and abort the command on failure."""
    from realm.results import Outcome, run_action

    result = await run_action(action, label=label)
    if not result.ok:
        prefix = "Fatal" if result.outcome is Outcome.FATAL else "Error"
        print(f"{prefix}: {result.message}", file=sys.stderr)
        raise _ActionFailed(result.exit_code or 1)
    return result.value


def _format_listing(views: list[SessionView]) -> str:
    from realm.browser import humanize_age

    if not views:
        return "No sessions."
    rows = [("NAME", "STATUS", "IMAGE", "PROJECT", "CREATED")]
    for view in views:
        s = view.session
        rows.append((s.name, view.status.value, s.image, str(s.project_path), humanize_age(s.created_at)))
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return "\n".join(
        "  ".join(cell.ljust(width) for cell, width in zip(row, widths, strict=True)).rstrip()
        for row in rows
    )


def _report_launch(result: LaunchResult) -> int:
    name = result.session.name
    match result.action:
        case "created":
            print(f"Created session '{name}' in {result.session.workspace_path}", file=sys.stderr)
        case "recreated":
            print(f"Recreated container for session '{name}'", file=sys.stderr)
        case "already-running":
            print(f"Session '{name}' is already running", file=sys.stderr)
        case _:
            pass
    return result.exit_code


async def _session(name: str, options: SessionOptions) -> int:
    from realm.orchestrator import Orchestrator

    orchestrator = Orchestrator()
    return _report_launch(await _run(orchestrator.create_or_resume(name, options), "Launch session"))


async def _browse() -> int:
    from realm.browser import browse
    from realm.orchestrator import Orchestrator
    from realm.types import SessionOptions

    orchestrator = Orchestrator()
    action = await browse(orchestrator)
    match action.kind:
        case "resume":
            options = SessionOptions()
        case "new":
            options = SessionOptions(image=action.image, command=list(action.command))
        case "path":
            print(await _run(orchestrator.workspace_path(action.name), "Resolve workspace path"))
            return 0
        case _:
            return 0
    return _report_launch(
        await _run(orchestrator.create_or_resume(action.name, options), "Launch session")
    )


async def _keyword(keyword: str, name: str | None) -> int:
    from realm.orchestrator import Orchestrator
    from realm.types import SessionStatus

    orchestrator = Orchestrator()
    match keyword:
        case "list":
            print(_format_listing(await _run(orchestrator.list(), "List sessions")))
        case "stop":
            status = await _run(orchestrator.stop(name), "Stop session")
            verb = "Stopped" if status is SessionStatus.RUNNING else "Already stopped:"
            print(f"{verb} {name}", file=sys.stderr)
        case "rm":
            report = await _run(orchestrator.remove(name), "Remove session")
            if report.found:
                print(f"Removed {name} ({', '.join(report.removed)})", file=sys.stderr)
            else:
                print(f"Nothing to remove for {name}", file=sys.stderr)
        case "path":
            print(await _run(orchestrator.workspace_path(name), "Resolve workspace path"))
    return 0


def _dispatch(args: argparse.Namespace, command: list[str]) -> int:
    from realm.types import SessionOptions

    if args.target is None:
        if args.detach or command:
            return _fail("a session name is required with -d or a command")
        return asyncio.run(_browse())

    if args.target in KEYWORDS:
        if args.target == "list":
            if args.name:
                return _fail("`realm list` takes no arguments")
        elif not args.name:
            return _fail(f"usage: realm {args.target} <name>")
        if command:
            return _fail(f"`realm {args.target}` does not take a command")
        return asyncio.run(_keyword(args.target, args.name))

    if args.name:
        return _fail(
            f"unexpected argument '{args.name}'. Put the container command after `--`, "
            f"e.g. `realm {args.target} -- {args.name}`"
        )

    options = SessionOptions(
        image=args.image,
        mount_path=args.mount_path,
        project_dir=args.project_dir,
        env=list(args.env),
        command=command,
        runtime_args=args.runtime_args,
        ssh=False if args.no_ssh else None,
        detached=args.detach,
        recreate=args.recreate,
    )
    return asyncio.run(_session(args.target, options))


def main(argv: list[str] | None = None) -> None:
    own, command = _split_command(list(sys.argv[1:] if argv is None else argv))
    args = _build_parser().parse_args(own)

    from realm.config import get_settings
    from realm.logger import set_level

    if args.verbose:
        set_level("DEBUG" if args.verbose > 1 else "INFO")
    else:
        set_level(get_settings().logging.level)

    try:
        code = _dispatch(args, command)
    except _ActionFailed as exc:
        code = exc.exit_code
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
