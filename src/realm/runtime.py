"""Container runtime adapter with plugin-extensible providers.

Docker and Podman are built in; both speak the same CLI dialect. Other
docker-compatible CLIs (nerdctl, ...) can be provided by plugins via the
``realm_container_runtime`` hook.

All container operations go through :mod:`realm.executor`, so every call
honours the configured timeout and surfaces the CLI's stderr on failure.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from realm.errors import ExternalToolError, ToolNotFoundError
from realm.executor import CommandResult, StdioMode, require_success, run_command
from realm.logger import logger
from realm.types import SessionStatus


@runtime_checkable
class RuntimeProvider(Protocol):
    """Runtime contract implemented by built-ins and plugins."""

    name: str
    cli: str
    vm_bridged: bool  # containers run inside a VM, not on the host kernel

    def is_available(self) -> bool: ...
    async def ensure_running(self) -> None: ...
    async def inspect(self, ref: str) -> SessionStatus: ...
    async def create(self, args: Sequence[str]) -> str: ...
    async def start(self, ref: str) -> None: ...
    async def stop(self, ref: str) -> None: ...
    async def remove(self, ref: str) -> None: ...
    async def attach(self, ref: str) -> int: ...
    async def exec(self, ref: str, command: Sequence[str], *, interactive: bool = True) -> int: ...
    async def run_oneshot(self, args: Sequence[str]) -> CommandResult: ...


def _is_missing(result: CommandResult) -> bool:
    return "no such" in result.diagnostic.lower()


# `docker info` engines that run containers in a VM even on a Linux host.
_VM_ENGINE_RE = re.compile(r"Operating System:\s*(Docker Desktop|OrbStack)")


def _default_vm_bridged(name: str) -> bool:
    # podman machine does not bridge the host agent into its VM
    if name != "docker":
        return False
    from realm.credentials import detect_host_platform

    return detect_host_platform() == "vm-bridged"


class ContainerRuntime:
    """Adapter for a docker-compatible container CLI."""

    def __init__(
        self,
        name: str,
        cli: str,
        *,
        timeout: float | None = None,
        vm_bridged: bool | None = None,
    ) -> None:
        self.name = name
        self.cli = cli
        self.timeout = timeout
        self.vm_bridged = _default_vm_bridged(name) if vm_bridged is None else vm_bridged

    def __repr__(self) -> str:
        return f"ContainerRuntime(name={self.name!r}, cli={self.cli!r})"

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    async def _run(self, *args: str) -> CommandResult:
        return await run_command(self.cli, args, timeout=self.timeout)

    async def _check(self, *args: str) -> str:
        return require_success(await self._run(*args), self.cli, args)

    async def ensure_running(self) -> None:
        """Verify the CLI is installed and its daemon answers."""
        if not self.is_available():
            raise ToolNotFoundError(f"{self.cli} is not installed. See https://docs.docker.com/get-docker/")
        result = await self._run("info")
        if not result.ok:
            raise ToolNotFoundError(
                f"The {self.name} daemon is not running. Please start {self.name}.\n{result.diagnostic}"
            )
        if not self.vm_bridged and _VM_ENGINE_RE.search(result.stdout):
            self.vm_bridged = True
            logger.debug("Container runtime runs in a VM", runtime=self.name)
        logger.debug("Container runtime is running", runtime=self.name)

    async def inspect(self, ref: str) -> SessionStatus:
        result = await self._run("container", "inspect", "-f", "{{.State.Running}}", ref)
        if result.ok:
            running = result.stdout.strip().lower() == "true"
            return SessionStatus.RUNNING if running else SessionStatus.STOPPED
        if _is_missing(result):
            return SessionStatus.ABSENT
        raise ExternalToolError(f"{self.cli} container inspect {ref}", result.exit_code, result.diagnostic)

    async def create(self, args: Sequence[str]) -> str:
        """Create (but don't start) a container; return its id."""
        return await self._check("create", *args)

    async def start(self, ref: str) -> None:
        await self._check("start", ref)

    async def stop(self, ref: str) -> None:
        """Stop *ref*. Already-stopped containers are a no-op."""
        await self._check("stop", ref)

    async def remove(self, ref: str) -> None:
        """Force-remove *ref* (idempotent, no error if absent)."""
        result = await self._run("rm", "-f", ref)
        if not result.ok and not _is_missing(result):
            raise ExternalToolError(f"{self.cli} rm -f {ref}", result.exit_code, result.diagnostic)

    async def attach(self, ref: str) -> int:
        """Hand the terminal to *ref* until it exits or the user detaches."""
        result = await run_command(self.cli, ["attach", ref], mode=StdioMode.INTERACTIVE)
        return result.exit_code

    async def exec(self, ref: str, command: Sequence[str], *, interactive: bool = True) -> int:
        if interactive:
            result = await run_command(
                self.cli, ["exec", "-it", ref, *command], mode=StdioMode.INTERACTIVE
            )
        else:
            result = await self._run("exec", ref, *command)
        return result.exit_code

    async def run_oneshot(self, args: Sequence[str]) -> CommandResult:
        """``run --rm`` a throwaway container (captured output)."""
        return await self._run("run", "--rm", *args)


_BUILTIN_CLIS: dict[str, str] = {"docker": "docker", "podman": "podman"}


def _builtin_runtimes(timeout: float | None) -> dict[str, RuntimeProvider]:
    return {name: ContainerRuntime(name, cli, timeout=timeout) for name, cli in _BUILTIN_CLIS.items()}


def _iter_plugin_runtimes() -> list[RuntimeProvider]:
    try:
        from realm.plugin import get_plugin_manager

        provided: list[Any] = get_plugin_manager().hook.realm_container_runtime()
    except Exception:
        logger.exception("Failed to resolve runtime plugins")
        return []

    runtimes: list[RuntimeProvider] = []
    for runtime in provided:
        if runtime is None:
            continue
        if not isinstance(runtime, RuntimeProvider):
            logger.warning(
                "Ignoring invalid plugin runtime object",
                runtime_type=type(runtime).__name__,
            )
            continue
        runtimes.append(runtime)
    return runtimes


def detect_runtime() -> RuntimeProvider:
    """Detect the container runtime to use.

    Priority:
    1) settings.container.runtime override (if known)
    2) first available built-in (docker, then podman)
    3) first available plugin runtime, then docker fallback
    """
    from realm.config import get_settings

    s = get_settings()
    override = (s.container.runtime or "").lower().strip()
    candidates = _builtin_runtimes(s.container.timeout_seconds)
    for runtime in _iter_plugin_runtimes():
        name = str(runtime.name).lower().strip()
        if not name:
            continue
        if name in candidates:
            logger.warning("Duplicate runtime provider ignored", runtime=name)
            continue
        candidates[name] = runtime

    if override:
        selected = candidates.get(override)
        if selected is not None:
            return selected
        logger.warning("Unknown runtime override; falling back to auto-detection", runtime=override)

    for runtime in candidates.values():
        if runtime.is_available():
            return runtime

    return candidates["docker"]


_runtime: RuntimeProvider | None = None


def get_runtime() -> RuntimeProvider:
    """Lazy singleton caching the result of detect_runtime()."""
    global _runtime
    if _runtime is None:
        _runtime = detect_runtime()
        logger.info("Container runtime detected", name=_runtime.name, cli=_runtime.cli)
    return _runtime


def reset_runtime() -> None:
    """Clear the cached runtime (for tests)."""
    global _runtime
    _runtime = None
