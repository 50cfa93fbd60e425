"""Shared git helpers used by the workspace provisioner and the orchestrator."""

from __future__ import annotations

from pathlib import Path

from realm.config import get_settings
from realm.executor import CommandResult, run_command
from realm.logger import logger


async def run_git(
    *args: str,
    cwd: Path | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run a git command with the configured timeout and captured output."""
    git_args = ["-C", str(cwd), *args] if cwd else list(args)
    return await run_command(
        "git",
        git_args,
        timeout=timeout if timeout is not None else get_settings().git.timeout_seconds,
    )


def is_repo(path: Path) -> bool:
    """True when *path* holds a ``.git`` directory, or a ``.git`` file (worktrees, submodules)."""
    return (path / ".git").exists()


def find_repo_root(path: Path) -> Path | None:
    """Walk up from *path* to the nearest ancestor that is a repository."""
    current = path.resolve()
    for candidate in (current, *current.parents):
        if is_repo(candidate):
            return candidate
    return None


async def get_remote_url(repo: Path, remote: str = "origin") -> str | None:
    """Return the configured URL of *remote*, or None if the repo has no such remote."""
    result = await run_git("remote", "get-url", remote, cwd=repo)
    if not result.ok:
        logger.debug("No remote URL", repo=str(repo), remote=remote, err=result.diagnostic)
        return None
    return result.stdout.strip() or None
