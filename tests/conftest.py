"""Shared test fixtures for realm."""

from __future__ import annotations

import subprocess
import uuid
from collections.abc import Sequence
from pathlib import Path

import pytest

from realm.errors import ExternalToolError, ToolNotFoundError
from realm.executor import CommandResult
from realm.types import SessionStatus

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"home_dir", "registry_path", "workspaces_dir"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container, sessions, state_root, ...) and
    cached property overrides (home_dir, workspaces_dir, ...).

    Usage::

        s = make_settings(state_root=tmp_path / "state")
        s = make_settings(sessions=SessionsConfig(on_dangling="recreate"))
    """
    from realm.config import (
        ContainerConfig,
        GitConfig,
        LoggingConfig,
        RegistryConfig,
        SessionsConfig,
        Settings,
        SshConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "container": ContainerConfig(),
        "ssh": SshConfig(),
        "git": GitConfig(),
        "sessions": SessionsConfig(),
        "registry": RegistryConfig(),
        "logging": LoggingConfig(),
        "state_root": Path("/nonexistent/realm-state"),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def make_repo(path: Path, *, files: dict[str, str] | None = None) -> Path:
    """Create a git repository at *path* with one commit on main."""
    path.mkdir(parents=True)
    git(path, "init", "--initial-branch=main")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "user.name", "Test")
    for rel, content in (files or {"README.md": "initial"}).items():
        (path / rel).parent.mkdir(parents=True, exist_ok=True)
        (path / rel).write_text(content)
    git(path, "add", ".")
    git(path, "commit", "-m", "initial commit")
    return path


def make_bare_origin(tmp_path: Path) -> Path:
    """Create a bare 'origin' repo with one commit on main."""
    origin = tmp_path / "origin.git"
    origin.mkdir()
    git(origin, "init", "--bare", "--initial-branch=main")
    seed = make_repo(tmp_path / "seed")
    git(seed, "remote", "add", "origin", str(origin))
    git(seed, "push", "origin", "main")
    return origin


class FakeRuntime:
    """In-memory RuntimeProvider. Containers are dicts keyed by id."""

    name = "fake"
    cli = "fake"
    vm_bridged = False

    def __init__(self) -> None:
        self.containers: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.daemon_up = True
        self.fail_on: dict[str, Exception] = {}  # verb -> error to raise once

    # -- helpers for tests ---------------------------------------------------

    def lookup(self, ref: str) -> dict | None:
        if ref in self.containers:
            return self.containers[ref]
        for container in self.containers.values():
            if container["name"] == ref:
                return container
        return None

    def verbs(self) -> list[str]:
        return [verb for verb, _ in self.calls]

    def _maybe_fail(self, verb: str) -> None:
        exc = self.fail_on.pop(verb, None)
        if exc is not None:
            raise exc

    # -- RuntimeProvider -------------------------------------------------------

    def is_available(self) -> bool:
        return True

    async def ensure_running(self) -> None:
        if not self.daemon_up:
            raise ToolNotFoundError("The fake daemon is not running.")

    async def inspect(self, ref: str) -> SessionStatus:
        self._maybe_fail("inspect")
        container = self.lookup(ref)
        if container is None:
            return SessionStatus.ABSENT
        return SessionStatus.RUNNING if container["running"] else SessionStatus.STOPPED

    async def create(self, args: Sequence[str]) -> str:
        self._maybe_fail("create")
        args = list(args)
        name = args[args.index("--name") + 1]
        if self.lookup(name) is not None:
            raise ExternalToolError(
                "fake create",
                125,
                f'Conflict. The container name "/{name}" is already in use',
            )
        ref = uuid.uuid4().hex
        self.containers[ref] = {"id": ref, "name": name, "running": False, "args": args}
        self.calls.append(("create", ref))
        return ref

    async def start(self, ref: str) -> None:
        self._maybe_fail("start")
        self.lookup(ref)["running"] = True
        self.calls.append(("start", ref))

    async def stop(self, ref: str) -> None:
        self._maybe_fail("stop")
        self.lookup(ref)["running"] = False
        self.calls.append(("stop", ref))

    async def remove(self, ref: str) -> None:
        self._maybe_fail("remove")
        container = self.lookup(ref)
        if container is not None:
            del self.containers[container["id"]]
        self.calls.append(("remove", ref))

    async def attach(self, ref: str) -> int:
        self.calls.append(("attach", ref))
        return 0

    async def exec(self, ref: str, command: Sequence[str], *, interactive: bool = True) -> int:
        self.calls.append(("exec", ref))
        return 0

    async def run_oneshot(self, args: Sequence[str]) -> CommandResult:
        self.calls.append(("run_oneshot", " ".join(args)))
        return CommandResult(exit_code=0)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True, scope="session")
def _clean_git_env():
    """Strip git env vars that pre-commit leaks during its stash cycle."""
    import os

    for var in ("GIT_INDEX_FILE", "GIT_DIR", "GIT_WORK_TREE"):
        os.environ.pop(var, None)


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Each test gets pure-default settings rooted in its own tmp dir.

    No config.toml and no env overrides leak in from the developer machine.
    """
    for var in ("REALM_DEFAULT_IMAGE", "REALM_DOCKER_ARGS", "SSH_AUTH_SOCK"):
        monkeypatch.delenv(var, raising=False)
    from realm.runtime import reset_runtime

    safe = make_settings(state_root=tmp_path / "state", home_dir=tmp_path / "home")
    monkeypatch.setattr("realm.config._settings", safe)
    reset_runtime()
    yield safe
    reset_runtime()


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
