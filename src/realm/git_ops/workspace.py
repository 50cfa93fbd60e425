"""Workspace provisioning: an independent clone of the project per session.

``git clone --local`` hardlinks the object store when source and destination
share a filesystem (near-zero disk overhead) but writes a brand-new ``.git``
directory: refs, index, config and hooks belong to the clone alone. Branch
deletion, history rewrites or ``gc`` inside the workspace never reach the
project repository.

A local clone points ``origin`` at the host path, which doesn't exist inside
the container, so the clone's ``origin`` is repointed at the project's own
upstream URL.
"""

from __future__ import annotations

import os
import shutil
import stat
from pathlib import Path

from realm.errors import (
    CloneFailedError,
    DestinationExistsError,
    SourceNotARepoError,
    WorkspaceDeleteError,
    WorkspaceNotFoundError,
)
from realm.git_ops.utils import get_remote_url, is_repo, run_git
from realm.logger import logger


async def provision(project_path: Path, workspace_path: Path) -> Path:
    """Clone *project_path* into *workspace_path*.

    The destination is claimed with an exclusive mkdir before cloning; a
    failed clone leaves no partial directory behind.

    Raises:
        SourceNotARepoError: *project_path* is not a git repository.
        DestinationExistsError: *workspace_path* already exists.
        CloneFailedError: git exited non-zero (or timed out).
    """
    project_path = project_path.resolve()
    if not is_repo(project_path):
        raise SourceNotARepoError(f"'{project_path}' is not a git repository.")
    workspace_path.parent.mkdir(parents=True, exist_ok=True)
    # Claim the destination atomically; a concurrent creator of the same
    # session loses here instead of racing inside git.
    try:
        workspace_path.mkdir()
    except FileExistsError as exc:
        raise DestinationExistsError(f"Workspace '{workspace_path}' already exists.") from exc

    logger.info("Cloning workspace", source=str(project_path), dest=str(workspace_path))
    try:
        clone = await run_git("clone", "--local", str(project_path), str(workspace_path))
    except BaseException:
        _remove_partial(workspace_path)
        raise
    if not clone.ok:
        _remove_partial(workspace_path)
        raise CloneFailedError(f"git clone --local failed: {clone.diagnostic}")

    upstream = await get_remote_url(project_path)
    if upstream:
        set_url = await run_git("remote", "set-url", "origin", upstream, cwd=workspace_path)
        if set_url.ok:
            logger.info("Repointed workspace origin", url=upstream)
        else:
            logger.warning("Failed to repoint workspace origin", err=set_url.diagnostic)
    else:
        # Without an upstream the clone would keep pointing at the host path,
        # which is meaningless inside the container.
        await run_git("remote", "remove", "origin", cwd=workspace_path)
        logger.info("Project has no origin remote; workspace left without one")

    # Non-root container users need to write into the mount.
    try:
        workspace_path.chmod(0o777)
    except OSError as exc:
        logger.warning("Could not relax workspace permissions", path=str(workspace_path), err=str(exc))

    return workspace_path


def teardown(workspace_path: Path, *, missing_ok: bool = False) -> None:
    """Recursively delete a workspace. Safe on partially created trees.

    Raises:
        WorkspaceNotFoundError: the path doesn't exist and *missing_ok* is False.
        WorkspaceDeleteError: deletion failed part-way.
    """
    if not workspace_path.exists() and not workspace_path.is_symlink():
        if missing_ok:
            return
        raise WorkspaceNotFoundError(f"Workspace '{workspace_path}' not found.")

    try:
        if workspace_path.is_symlink() or workspace_path.is_file():
            workspace_path.unlink()
        else:
            shutil.rmtree(workspace_path, onexc=_make_writable_and_retry)
    except OSError as exc:
        raise WorkspaceDeleteError(f"Failed to remove workspace '{workspace_path}': {exc}") from exc
    logger.info("Workspace removed", path=str(workspace_path))


def _remove_partial(workspace_path: Path) -> None:
    if workspace_path.exists():
        shutil.rmtree(workspace_path, ignore_errors=True)


def _make_writable_and_retry(func, path, _exc) -> None:  # noqa: ANN001
    """rmtree error hook: git packs objects read-only; chmod and retry once."""
    parent = os.path.dirname(path)
    if parent:
        os.chmod(parent, os.stat(parent).st_mode | stat.S_IWUSR | stat.S_IXUSR)
    os.chmod(path, os.stat(path).st_mode | stat.S_IWUSR)
    func(path)

