"""Tests for the container runtime adapter and its detection."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from conftest import make_settings

from realm.config import ContainerConfig
from realm.errors import ExternalToolError, ToolNotFoundError
from realm.executor import CommandResult, StdioMode
from realm.plugin import get_plugin_manager, hookimpl, reset_plugin_manager
from realm.runtime import ContainerRuntime, RuntimeProvider, detect_runtime, get_runtime
from realm.types import SessionStatus


def _patch_run(*results: CommandResult):
    mock = AsyncMock(side_effect=list(results))
    return patch("realm.runtime.run_command", mock)


class TestInspect:
    @pytest.mark.asyncio
    async def test_running(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(0, stdout="true\n")) as run:
            assert await rt.inspect("abc") is SessionStatus.RUNNING
        args = run.call_args.args
        assert args[0] == "docker"
        assert list(args[1]) == ["container", "inspect", "-f", "{{.State.Running}}", "abc"]

    @pytest.mark.asyncio
    async def test_stopped(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(0, stdout="false\n")):
            assert await rt.inspect("abc") is SessionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_absent(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(1, stderr="Error: No such container: abc")):
            assert await rt.inspect("abc") is SessionStatus.ABSENT

    @pytest.mark.asyncio
    async def test_other_failure_raises(self):
        rt = ContainerRuntime("docker", "docker")
        with (
            _patch_run(CommandResult(1, stderr="permission denied while trying to connect")),
            pytest.raises(ExternalToolError, match="permission denied"),
        ):
            await rt.inspect("abc")


class TestLifecycleCommands:
    @pytest.mark.asyncio
    async def test_create_returns_id(self):
        rt = ContainerRuntime("podman", "podman", timeout=30)
        with _patch_run(CommandResult(0, stdout="f00dfeed\n")) as run:
            ref = await rt.create(["-it", "--name", "realm-a", "alpine"])
        assert ref == "f00dfeed"
        assert list(run.call_args.args[1]) == ["create", "-it", "--name", "realm-a", "alpine"]
        assert run.call_args.kwargs["timeout"] == 30

    @pytest.mark.asyncio
    async def test_create_failure_carries_diagnostic(self):
        rt = ContainerRuntime("docker", "docker")
        with (
            _patch_run(CommandResult(125, stderr='The container name "/realm-a" is already in use')),
            pytest.raises(ExternalToolError) as exc_info,
        ):
            await rt.create(["--name", "realm-a", "alpine"])
        assert "already in use" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_remove_absent_is_ok(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(1, stderr="Error: No such container: abc")):
            await rt.remove("abc")

    @pytest.mark.asyncio
    async def test_remove_failure_raises(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(1, stderr="device busy")), pytest.raises(ExternalToolError):
            await rt.remove("abc")

    @pytest.mark.asyncio
    async def test_attach_is_interactive(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(7)) as run:
            assert await rt.attach("abc") == 7
        assert list(run.call_args.args[1]) == ["attach", "abc"]
        assert run.call_args.kwargs["mode"] is StdioMode.INTERACTIVE

    @pytest.mark.asyncio
    async def test_exec_interactive_allocates_tty(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(0)) as run:
            await rt.exec("abc", ["bash"])
        assert list(run.call_args.args[1]) == ["exec", "-it", "abc", "bash"]

    @pytest.mark.asyncio
    async def test_run_oneshot_removes_container(self):
        rt = ContainerRuntime("docker", "docker")
        with _patch_run(CommandResult(0)) as run:
            await rt.run_oneshot(["alpine", "true"])
        assert list(run.call_args.args[1]) == ["run", "--rm", "alpine", "true"]


class TestEnsureRunning:
    @pytest.mark.asyncio
    async def test_binary_missing(self):
        rt = ContainerRuntime("docker", "docker")
        with (
            patch("realm.runtime.shutil.which", return_value=None),
            pytest.raises(ToolNotFoundError, match="not installed"),
        ):
            await rt.ensure_running()

    @pytest.mark.asyncio
    async def test_daemon_down(self):
        rt = ContainerRuntime("docker", "docker")
        with (
            patch("realm.runtime.shutil.which", return_value="/usr/bin/docker"),
            _patch_run(CommandResult(1, stderr="Cannot connect to the Docker daemon")),
            pytest.raises(ToolNotFoundError, match="not running"),
        ):
            await rt.ensure_running()

    @pytest.mark.asyncio
    async def test_ok(self):
        rt = ContainerRuntime("docker", "docker", vm_bridged=False)
        with (
            patch("realm.runtime.shutil.which", return_value="/usr/bin/docker"),
            _patch_run(CommandResult(0, stdout="Server Version: 27")),
        ):
            await rt.ensure_running()
        assert rt.vm_bridged is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("engine", ["Docker Desktop", "OrbStack"])
    async def test_vm_engine_on_linux_host_is_bridged(self, engine):
        rt = ContainerRuntime("docker", "docker", vm_bridged=False)
        info = f"Server Version: 27\n Operating System: {engine}\n OSType: linux"
        with (
            patch("realm.runtime.shutil.which", return_value="/usr/bin/docker"),
            _patch_run(CommandResult(0, stdout=info)),
        ):
            await rt.ensure_running()
        assert rt.vm_bridged is True


class TestVmBridged:
    def test_docker_follows_host_platform(self):
        with patch("realm.credentials.detect_host_platform", return_value="vm-bridged"):
            assert ContainerRuntime("docker", "docker").vm_bridged is True
        with patch("realm.credentials.detect_host_platform", return_value="native"):
            assert ContainerRuntime("docker", "docker").vm_bridged is False

    def test_podman_is_never_bridged(self):
        with patch("realm.credentials.detect_host_platform", return_value="vm-bridged"):
            assert ContainerRuntime("podman", "podman").vm_bridged is False

    def test_explicit_value_wins(self):
        assert ContainerRuntime("nerdctl", "nerdctl", vm_bridged=True).vm_bridged is True


class _NerdctlPlugin:
    @hookimpl
    def realm_container_runtime(self):
        return ContainerRuntime("nerdctl", "nerdctl")


class _BrokenPlugin:
    @hookimpl
    def realm_container_runtime(self):
        return object()


@pytest.fixture
def plugin_manager():
    reset_plugin_manager()
    yield get_plugin_manager()
    reset_plugin_manager()


class TestDetectRuntime:
    def test_override(self):
        s = make_settings(container=ContainerConfig(runtime="podman"))
        with patch("realm.config.get_settings", return_value=s):
            r = detect_runtime()
        assert r.name == "podman"
        assert r.cli == "podman"

    def test_first_available_builtin(self):
        with patch("realm.runtime.shutil.which") as which:
            which.side_effect = lambda cmd: "/usr/bin/podman" if cmd == "podman" else None
            r = detect_runtime()
        assert r.name == "podman"

    def test_fallback_when_nothing_found(self):
        with patch("realm.runtime.shutil.which", return_value=None):
            r = detect_runtime()
        assert r.name == "docker"

    def test_unknown_override_falls_back(self):
        s = make_settings(container=ContainerConfig(runtime="lxc"))
        with (
            patch("realm.config.get_settings", return_value=s),
            patch("realm.runtime.shutil.which", return_value="/usr/bin/docker"),
        ):
            r = detect_runtime()
        assert r.name == "docker"

    def test_plugin_runtime_selected_by_override(self, plugin_manager):
        plugin_manager.register(_NerdctlPlugin())
        s = make_settings(container=ContainerConfig(runtime="nerdctl"))
        with patch("realm.config.get_settings", return_value=s):
            r = detect_runtime()
        assert r.name == "nerdctl"
        assert isinstance(r, RuntimeProvider)

    def test_invalid_plugin_runtime_ignored(self, plugin_manager):
        plugin_manager.register(_BrokenPlugin())
        with patch("realm.runtime.shutil.which", return_value=None):
            r = detect_runtime()
        assert r.name == "docker"

    def test_get_runtime_caches(self):
        with patch("realm.runtime.shutil.which", return_value=None):
            assert get_runtime() is get_runtime()
